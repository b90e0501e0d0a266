# User value: This file defines the records that carry a user's file from upload through extraction to a reviewer's decision.
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from schemas.pipeline_contract import (
    DELIVERY_SKIPPED,
    EXTRACTION_PENDING,
    POLL_OUTCOME_TIMEOUT,
    REVIEW_UNPROCESSED,
    UPLOAD_QUEUED,
)
from utils.field_keys import normalize_field_key


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


@dataclass(frozen=True)
class UploadPayload:
    """Immutable reference to the bytes of one file plus what the client declared about it."""

    filename: str
    content_type: str
    size_bytes: int
    data: bytes = b""


@dataclass(frozen=True)
class UploadHandle:
    """Transfer target issued by the Registration Service for a single upload."""

    registration_id: str
    upload_url: str
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict:
        return {
            "registration_id": self.registration_id,
            "upload_url": self.upload_url,
            "expires_at": _iso(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["UploadHandle"]:
        if not data:
            return None
        return cls(
            registration_id=str(data["registration_id"]),
            upload_url=str(data["upload_url"]),
            expires_at=_parse_dt(data.get("expires_at")),
        )


@dataclass
class UploadItem:
    item_id: str
    filename: str
    content_type: str
    size_bytes: int
    category: str
    status: str = UPLOAD_QUEUED
    progress: int = 0
    server_document_id: Optional[str] = None
    error_detail: Optional[Dict[str, Any]] = None
    # phase a retry resumes at; only "confirm" skips re-sending bytes
    resume_phase: Optional[str] = None
    handle: Optional[UploadHandle] = None
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self) -> "UploadItem":
        return replace(self, error_detail=dict(self.error_detail) if self.error_detail else None)

    def to_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "filename": self.filename,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "category": self.category,
            "status": self.status,
            "progress": self.progress,
            "server_document_id": self.server_document_id,
            "error_detail": self.error_detail,
            "resume_phase": self.resume_phase,
            "handle": self.handle.to_dict() if self.handle else None,
            "attempts": self.attempts,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UploadItem":
        return cls(
            item_id=str(data["item_id"]),
            filename=str(data.get("filename") or ""),
            content_type=str(data.get("content_type") or ""),
            size_bytes=int(data.get("size_bytes") or 0),
            category=str(data.get("category") or ""),
            status=str(data.get("status") or UPLOAD_QUEUED),
            progress=int(data.get("progress") or 0),
            server_document_id=data.get("server_document_id"),
            error_detail=data.get("error_detail"),
            resume_phase=data.get("resume_phase"),
            handle=UploadHandle.from_dict(data.get("handle")),
            attempts=int(data.get("attempts") or 0),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass(frozen=True)
class BatchSuccess:
    index: int
    key: str
    outcome: Any


@dataclass(frozen=True)
class BatchFailure:
    index: int
    key: str
    error_code: str
    reason: str
    detail: Optional[Dict[str, Any]] = None


@dataclass
class BatchResult:
    """Aggregate of one fan-out run. Entries carry their originating index."""

    total: int
    succeeded: List[BatchSuccess] = field(default_factory=list)
    failed: List[BatchFailure] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def is_complete(self) -> bool:
        return self.succeeded_count + self.failed_count == self.total

    def failed_indices(self) -> List[int]:
        return [f.index for f in self.failed]

    def succeeded_indices(self) -> List[int]:
        return [s.index for s in self.succeeded]


@dataclass(frozen=True)
class ExtractedField:
    """One raw detection from the Extraction Service. Never mutated, kept for audit."""

    key: str
    value: str
    confidence: float
    page_number: Optional[int] = None

    @property
    def normalized_key(self) -> str:
        return normalize_field_key(self.key)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExtractedField":
        page = data.get("page_number", data.get("pageNumber"))
        return cls(
            key=str(data.get("key") or ""),
            value="" if data.get("value") is None else str(data.get("value")),
            confidence=float(data.get("confidence") or 0.0),
            page_number=int(page) if page not in (None, "") else None,
        )


@dataclass(frozen=True)
class ExtractionResult:
    fields: Tuple[ExtractedField, ...] = ()
    raw_text: str = ""
    document_type: str = "unknown"
    overall_confidence: int = 0


@dataclass
class ExtractionJob:
    """One submit-and-poll cycle. Owned by the poller for its whole lifetime."""

    job_id: str
    document_id: str
    max_attempts: int
    interval_ms: int
    state: str = EXTRACTION_PENDING
    attempt_count: int = 0
    transport_errors: int = 0
    result: Optional[ExtractionResult] = None
    error: Optional[str] = None
    # terminal service state, or "timeout" / "cancelled" when the poller gave up
    outcome: Optional[str] = None
    review_id: Optional[str] = None
    submitted_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def timed_out(self) -> bool:
        return self.outcome == POLL_OUTCOME_TIMEOUT

    @property
    def is_finished(self) -> bool:
        return self.outcome is not None


@dataclass(frozen=True)
class FieldEdit:
    key: str
    value: str
    edited_by: str
    edited_at: datetime

    def to_dict(self) -> dict:
        return {"key": self.key, "value": self.value, "edited_by": self.edited_by, "edited_at": _iso(self.edited_at)}

    @classmethod
    def from_dict(cls, data: dict) -> "FieldEdit":
        return cls(
            key=str(data["key"]),
            value=str(data.get("value") or ""),
            edited_by=str(data.get("edited_by") or ""),
            edited_at=_parse_dt(data.get("edited_at")) or utcnow(),
        )


@dataclass(frozen=True)
class DecidedField:
    key: str
    value: str
    confidence: Optional[float]
    edited: bool


@dataclass(frozen=True)
class ReviewDecision:
    """Terminal, immutable outcome of human review."""

    review_id: str
    document_id: str
    outcome: str
    reviewer: str
    decided_at: datetime
    fields: Tuple[DecidedField, ...] = ()
    reason: Optional[str] = None
    override_used: bool = False
    edit_count: int = 0

    def field_values(self) -> Dict[str, str]:
        return {normalize_field_key(f.key): f.value for f in self.fields}

    def to_dict(self) -> dict:
        return {
            "review_id": self.review_id,
            "document_id": self.document_id,
            "outcome": self.outcome,
            "reviewer": self.reviewer,
            "decided_at": _iso(self.decided_at),
            "fields": [asdict(f) for f in self.fields],
            "reason": self.reason,
            "override_used": self.override_used,
            "edit_count": self.edit_count,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["ReviewDecision"]:
        if not data:
            return None
        return cls(
            review_id=str(data["review_id"]),
            document_id=str(data["document_id"]),
            outcome=str(data["outcome"]),
            reviewer=str(data.get("reviewer") or ""),
            decided_at=_parse_dt(data.get("decided_at")) or utcnow(),
            fields=tuple(DecidedField(**f) for f in data.get("fields") or []),
            reason=data.get("reason"),
            override_used=bool(data.get("override_used")),
            edit_count=int(data.get("edit_count") or 0),
        )


@dataclass
class ReviewRecord:
    review_id: str
    document_id: str
    state: str = REVIEW_UNPROCESSED
    jobs: List[str] = field(default_factory=list)
    detections: List[ExtractedField] = field(default_factory=list)
    raw_text: str = ""
    document_type: str = "unknown"
    overall_confidence: int = 0
    edits: Dict[str, FieldEdit] = field(default_factory=dict)
    decision: Optional[ReviewDecision] = None
    error_detail: Optional[Dict[str, Any]] = None
    delivery_status: str = DELIVERY_SKIPPED
    delivery_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self) -> "ReviewRecord":
        return replace(
            self,
            jobs=list(self.jobs),
            detections=list(self.detections),
            edits=dict(self.edits),
            error_detail=dict(self.error_detail) if self.error_detail else None,
        )

    def to_dict(self) -> dict:
        return {
            "review_id": self.review_id,
            "document_id": self.document_id,
            "state": self.state,
            "jobs": list(self.jobs),
            "detections": [d.to_dict() for d in self.detections],
            "raw_text": self.raw_text,
            "document_type": self.document_type,
            "overall_confidence": self.overall_confidence,
            "edits": {k: v.to_dict() for k, v in self.edits.items()},
            "decision": self.decision.to_dict() if self.decision else None,
            "error_detail": self.error_detail,
            "delivery_status": self.delivery_status,
            "delivery_error": self.delivery_error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ReviewRecord":
        return cls(
            review_id=str(data["review_id"]),
            document_id=str(data["document_id"]),
            state=str(data.get("state") or REVIEW_UNPROCESSED),
            jobs=[str(j) for j in data.get("jobs") or []],
            detections=[ExtractedField.from_dict(d) for d in data.get("detections") or []],
            raw_text=str(data.get("raw_text") or ""),
            document_type=str(data.get("document_type") or "unknown"),
            overall_confidence=int(data.get("overall_confidence") or 0),
            edits={k: FieldEdit.from_dict(v) for k, v in (data.get("edits") or {}).items()},
            decision=ReviewDecision.from_dict(data.get("decision")),
            error_detail=data.get("error_detail"),
            delivery_status=str(data.get("delivery_status") or DELIVERY_SKIPPED),
            delivery_error=data.get("delivery_error"),
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


@dataclass(frozen=True)
class AutoPopulateSuggestion:
    document_type: str
    target: str
    confidence: int
    fields: Dict[str, Any] = field(default_factory=dict)
