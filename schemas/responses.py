# User value: This file fixes the shape of every response so upload, batch and review screens render the same fields every time.
from dataclasses import asdict
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from schemas.models import AutoPopulateSuggestion, BatchResult, ReviewRecord, UploadItem
from services.review_state_machine import PresentedField


class UploadItemResponse(BaseModel):
    item_id: str
    filename: str
    content_type: str
    size_bytes: int
    category: str
    status: str
    progress: int = Field(ge=0, le=100)
    server_document_id: Optional[str] = None
    error_detail: Optional[Dict[str, Any]] = None
    # User value: tells the client whether a retry will need the file again.
    resume_phase: Optional[str] = None
    attempts: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_item(cls, item: UploadItem) -> "UploadItemResponse":
        data = item.to_dict()
        data.pop("handle", None)
        return cls(**data)


class BatchSuccessEntry(BaseModel):
    index: int
    key: str
    outcome: Any = None


class BatchFailureEntry(BaseModel):
    index: int
    key: str
    error_code: str
    reason: str
    detail: Optional[Dict[str, Any]] = None


class BatchResultResponse(BaseModel):
    total: int
    succeeded_count: int
    failed_count: int
    cancelled: bool = False
    succeeded: List[BatchSuccessEntry] = Field(default_factory=list)
    failed: List[BatchFailureEntry] = Field(default_factory=list)

    @classmethod
    def from_result(cls, result: BatchResult, *, outcome=None) -> "BatchResultResponse":
        outcome = outcome or (lambda value: value)
        return cls(
            total=result.total,
            succeeded_count=result.succeeded_count,
            failed_count=result.failed_count,
            cancelled=result.cancelled,
            succeeded=[BatchSuccessEntry(index=s.index, key=s.key, outcome=outcome(s.outcome)) for s in result.succeeded],
            failed=[
                BatchFailureEntry(index=f.index, key=f.key, error_code=f.error_code, reason=f.reason, detail=f.detail)
                for f in result.failed
            ],
        )


class ReviewFieldResponse(BaseModel):
    key: str
    normalized_key: str
    value: str
    confidence: Optional[float] = None
    # User value: a high/medium/low badge per field so reviewers check the weak ones first.
    tier: Optional[Literal["high", "medium", "low"]] = None
    needs_attention: bool = False
    edited: bool = False
    page_number: Optional[int] = None
    detection_count: int = 0

    @classmethod
    def from_field(cls, field: PresentedField) -> "ReviewFieldResponse":
        return cls(**asdict(field))


class ReviewRecordResponse(BaseModel):
    review_id: str
    document_id: str
    state: str
    document_type: str
    overall_confidence: int
    fields: List[ReviewFieldResponse] = Field(default_factory=list)
    detections: List[Dict[str, Any]] = Field(default_factory=list)
    edits: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    jobs: List[str] = Field(default_factory=list)
    decision: Optional[Dict[str, Any]] = None
    error_detail: Optional[Dict[str, Any]] = None
    delivery_status: str
    delivery_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, record: ReviewRecord, fields: List[PresentedField]) -> "ReviewRecordResponse":
        data = record.to_dict()
        data.pop("raw_text", None)
        data["fields"] = [ReviewFieldResponse.from_field(f) for f in fields]
        return cls(**data)


class AutoPopulateResponse(BaseModel):
    review_id: str
    document_type: str
    target: Literal["business", "employee", "none"]
    confidence: Optional[int] = None
    fields: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_suggestion(
        cls, review_id: str, document_type: str, suggestion: Optional[AutoPopulateSuggestion]
    ) -> "AutoPopulateResponse":
        if suggestion is None:
            return cls(review_id=review_id, document_type=document_type, target="none")
        return cls(
            review_id=review_id,
            document_type=suggestion.document_type,
            target=suggestion.target,
            confidence=suggestion.confidence,
            fields=suggestion.fields,
        )
