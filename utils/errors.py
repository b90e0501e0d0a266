# User value: This file gives every pipeline failure a typed, human-readable error so users always know what went wrong and whether to retry.
from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Base for every error the ingestion/review pipeline raises to a caller."""

    error_code = "PIPELINE_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, error_code: Optional[str] = None, **context: Any) -> None:
        self.message = str(message or "").strip() or self.__class__.__name__
        if error_code:
            self.error_code = error_code
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(self.message)

    # User value: keeps error payloads identical across API responses, batch slots and stored items.
    def to_detail(self) -> Dict[str, Any]:
        detail = {
            "error_code": self.error_code,
            "error_message": self.message,
            "retryable": self.retryable,
        }
        detail.update(self.context)
        return detail


class ValidationError(PipelineError):
    """Bad input caught before any network call. Fix the input, do not retry as-is."""

    error_code = "VALIDATION_ERROR"
    status_code = 400


class RegistrationError(PipelineError):
    """Registration Service rejected or failed phase 1 (initialize) or phase 3 (confirm)."""

    status_code = 502

    KIND_REJECTED = "rejected"
    KIND_TRANSIENT = "transient"

    def __init__(self, message: str, *, phase: str, kind: str = KIND_TRANSIENT, **context: Any) -> None:
        self.phase = phase
        self.kind = kind
        self.retryable = kind == self.KIND_TRANSIENT
        code = "REGISTRATION_REJECTED" if kind == self.KIND_REJECTED else "REGISTRATION_UNAVAILABLE"
        if kind == self.KIND_REJECTED:
            self.status_code = 422
        super().__init__(message, error_code=code, phase=phase, kind=kind, **context)


class TransferError(PipelineError):
    """Byte transfer to the storage endpoint failed. Retry restarts from phase 1."""

    error_code = "TRANSFER_FAILED"
    status_code = 502
    retryable = True


class ExtractionServiceError(PipelineError):
    """Extraction Service could not accept a job submission."""

    error_code = "EXTRACTION_UNAVAILABLE"
    status_code = 503
    retryable = True

    def __init__(self, message: str, *, transient: bool = True, **context: Any) -> None:
        self.retryable = transient
        if not transient:
            self.status_code = 422
        super().__init__(
            message,
            error_code="EXTRACTION_UNAVAILABLE" if transient else "EXTRACTION_REJECTED",
            **context,
        )


class ExtractionTimeoutError(PipelineError):
    """Poll budget (attempts or wall clock) ran out while the job was still processing."""

    error_code = "EXTRACTION_TIMEOUT"
    status_code = 504
    retryable = True


class ExtractionFailedError(PipelineError):
    """Extraction Service reported a terminal failure for the job."""

    error_code = "EXTRACTION_FAILED"
    status_code = 422


class ExtractionCancelledError(PipelineError):
    error_code = "EXTRACTION_CANCELLED"
    status_code = 409


class ProfileServiceError(PipelineError):
    """Profile/Compliance service refused or could not take a create or a decision payload."""

    error_code = "PROFILE_UNAVAILABLE"
    status_code = 502
    retryable = True

    def __init__(self, message: str, *, transient: bool = True, **context: Any) -> None:
        self.retryable = transient
        if not transient:
            self.status_code = 422
        super().__init__(
            message,
            error_code="PROFILE_UNAVAILABLE" if transient else "PROFILE_REJECTED",
            **context,
        )


class ReviewPolicyError(PipelineError):
    """Approval attempted on a requires_review result without an edit or explicit override."""

    error_code = "REVIEW_POLICY_VIOLATION"
    status_code = 422


class InvalidTransitionError(PipelineError):
    error_code = "STATE_CONFLICT"
    status_code = 409

    def __init__(self, message: str, *, current: Optional[str] = None, target: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, current=current, target=target, **context)


class OwnershipError(PipelineError):
    """A second writer tried to mutate a record that another operation owns."""

    error_code = "RECORD_BUSY"
    status_code = 409


class NotFoundError(PipelineError):
    error_code = "RESOURCE_NOT_FOUND"
    status_code = 404


_BY_CODE = {
    "VALIDATION_ERROR": ValidationError,
    "TRANSFER_FAILED": TransferError,
    "EXTRACTION_TIMEOUT": ExtractionTimeoutError,
    "EXTRACTION_FAILED": ExtractionFailedError,
    "EXTRACTION_CANCELLED": ExtractionCancelledError,
    "REVIEW_POLICY_VIOLATION": ReviewPolicyError,
    "STATE_CONFLICT": InvalidTransitionError,
    "RECORD_BUSY": OwnershipError,
    "RESOURCE_NOT_FOUND": NotFoundError,
}


# User value: rebuilds the typed error from a stored item so callers of single-item uploads get the same exception as the failed phase raised.
def error_from_detail(detail: Optional[Dict[str, Any]]) -> PipelineError:
    data = dict(detail or {})
    code = str(data.pop("error_code", "") or "PIPELINE_ERROR").upper()
    message = str(data.pop("error_message", "") or "Upload failed")
    data.pop("retryable", None)

    if code in {"REGISTRATION_REJECTED", "REGISTRATION_UNAVAILABLE"}:
        phase = str(data.pop("phase", "") or "initialize")
        data.pop("kind", None)
        kind = RegistrationError.KIND_REJECTED if code == "REGISTRATION_REJECTED" else RegistrationError.KIND_TRANSIENT
        return RegistrationError(message, phase=phase, kind=kind, **data)

    cls = _BY_CODE.get(code)
    if cls is None:
        return PipelineError(message, error_code=code, **data)
    return cls(message, **data)
