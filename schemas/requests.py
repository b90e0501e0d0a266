# User value: This file validates what reviewers and clients send so malformed requests are refused before they touch a record.
from typing import Dict, Optional

from pydantic import BaseModel, Field, field_validator


class ProcessDocumentRequest(BaseModel):
    # User value: lets a caller shorten or stretch the wait for slow scans without changing server config.
    max_attempts: Optional[int] = Field(default=None, ge=1, le=600)
    interval_ms: Optional[int] = Field(default=None, ge=0, le=60000)


class FieldEditsRequest(BaseModel):
    edits: Dict[str, Optional[str]] = Field(..., min_length=1)

    @field_validator("edits")
    @classmethod
    def validate_keys(cls, v: Dict[str, Optional[str]]) -> Dict[str, Optional[str]]:
        if any(not str(k or "").strip() for k in v):
            raise ValueError("field keys must not be blank")
        return v


class ApproveRequest(BaseModel):
    edits: Dict[str, Optional[str]] = Field(default_factory=dict)
    # User value: lets a reviewer confirm a flagged result as-is, on the record.
    override: bool = False


class RejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("reason must not be blank")
        return v
