# User value: This file fixes the status vocabulary so upload, extraction and review screens always agree on what a state means.
CONTRACT_VERSION = "2026-10-01-ingest-review-1"

DOCUMENT_CATEGORIES = (
    "certification",
    "employee_verification",
    "ownership",
    "contract",
    "compliance_report",
    "miscellaneous",
)

# Upload item lifecycle
UPLOAD_QUEUED = "queued"
UPLOAD_TRANSFERRING = "transferring"
UPLOAD_CONFIRMING = "confirming"
UPLOAD_COMPLETE = "complete"
UPLOAD_ERROR = "error"
UPLOAD_CANCELLED = "cancelled"

UPLOAD_STATUSES = (
    UPLOAD_QUEUED,
    UPLOAD_TRANSFERRING,
    UPLOAD_CONFIRMING,
    UPLOAD_COMPLETE,
    UPLOAD_ERROR,
    UPLOAD_CANCELLED,
)

UPLOAD_TERMINAL_STATUSES = (UPLOAD_COMPLETE, UPLOAD_ERROR, UPLOAD_CANCELLED)

PHASE_INITIALIZE = "initialize"
PHASE_TRANSFER = "transfer"
PHASE_CONFIRM = "confirm"

UPLOAD_PHASES = (PHASE_INITIALIZE, PHASE_TRANSFER, PHASE_CONFIRM)

# Extraction job lifecycle as reported by the Extraction Service
EXTRACTION_PENDING = "pending"
EXTRACTION_PROCESSING = "processing"
EXTRACTION_COMPLETED = "completed"
EXTRACTION_FAILED = "failed"
EXTRACTION_REQUIRES_REVIEW = "requires_review"

EXTRACTION_STATES = (
    EXTRACTION_PENDING,
    EXTRACTION_PROCESSING,
    EXTRACTION_COMPLETED,
    EXTRACTION_FAILED,
    EXTRACTION_REQUIRES_REVIEW,
)

EXTRACTION_TERMINAL_STATES = (
    EXTRACTION_COMPLETED,
    EXTRACTION_FAILED,
    EXTRACTION_REQUIRES_REVIEW,
)

EXTRACTION_RESULT_STATES = (EXTRACTION_COMPLETED, EXTRACTION_REQUIRES_REVIEW)

# Poller outcome that is not a service state: budget ran out while still processing.
POLL_OUTCOME_TIMEOUT = "timeout"
POLL_OUTCOME_CANCELLED = "cancelled"

# Review record lifecycle
REVIEW_UNPROCESSED = "unprocessed"
REVIEW_PROCESSING = "processing"
REVIEW_COMPLETED = "completed"
REVIEW_FAILED = "failed"
REVIEW_REQUIRES_REVIEW = "requires_review"
REVIEW_APPROVED = "approved"
REVIEW_REJECTED = "rejected"

REVIEW_STATES = (
    REVIEW_UNPROCESSED,
    REVIEW_PROCESSING,
    REVIEW_COMPLETED,
    REVIEW_FAILED,
    REVIEW_REQUIRES_REVIEW,
    REVIEW_APPROVED,
    REVIEW_REJECTED,
)

REVIEW_EDITABLE_STATES = (REVIEW_COMPLETED, REVIEW_REQUIRES_REVIEW)
REVIEW_TERMINAL_STATES = (REVIEW_APPROVED, REVIEW_REJECTED)

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"

DELIVERY_PENDING = "pending"
DELIVERY_DELIVERED = "delivered"
DELIVERY_FAILED = "failed"
DELIVERY_SKIPPED = "skipped"

DOCUMENT_TYPES = ("w9", "license", "certificate", "contract", "unknown")

UPLOAD_ITEM_FIELDS = (
    "item_id",
    "filename",
    "content_type",
    "size_bytes",
    "category",
    "status",
    "progress",
    "server_document_id",
    "error_detail",
    "resume_phase",
    "attempts",
    "created_at",
    "updated_at",
)

REVIEW_RECORD_FIELDS = (
    "review_id",
    "document_id",
    "state",
    "document_type",
    "overall_confidence",
    "fields",
    "detections",
    "edits",
    "jobs",
    "decision",
    "delivery_status",
    "created_at",
    "updated_at",
)
