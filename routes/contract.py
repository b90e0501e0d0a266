# User value: This file publishes the status vocabulary and switches in effect so clients render the same states the server writes.
from fastapi import APIRouter

from config import CONFIDENCE_HIGH_THRESHOLD, CONFIDENCE_MEDIUM_THRESHOLD, MAX_UPLOAD_FILE_SIZE_BYTES
from schemas.pipeline_contract import (
    CONTRACT_VERSION,
    DOCUMENT_CATEGORIES,
    DOCUMENT_TYPES,
    EXTRACTION_STATES,
    REVIEW_RECORD_FIELDS,
    REVIEW_STATES,
    REVIEW_TERMINAL_STATES,
    UPLOAD_ITEM_FIELDS,
    UPLOAD_STATUSES,
    UPLOAD_TERMINAL_STATUSES,
)
from services.auto_populate import AUTO_POPULATE_MAPS
from services.feature_flags import (
    is_auto_populate_enabled,
    is_decision_delivery_enabled,
    is_redis_store_enabled,
    is_strict_review_policy_enabled,
)
from services.upload_validation import ALLOWED_EXTENSIONS

router = APIRouter()


@router.get("/contract/pipeline")
# User value: keeps upload/review fields consistent across every client view.
def pipeline_contract():
    return {
        "contract_version": CONTRACT_VERSION,
        "upload_statuses": list(UPLOAD_STATUSES),
        "upload_terminal_statuses": list(UPLOAD_TERMINAL_STATUSES),
        "extraction_states": list(EXTRACTION_STATES),
        "review_states": list(REVIEW_STATES),
        "review_terminal_states": list(REVIEW_TERMINAL_STATES),
        "document_categories": list(DOCUMENT_CATEGORIES),
        "document_types": list(DOCUMENT_TYPES),
        "upload_item_fields": list(UPLOAD_ITEM_FIELDS),
        "review_record_fields": list(REVIEW_RECORD_FIELDS),
        "limits": {
            "max_upload_bytes": MAX_UPLOAD_FILE_SIZE_BYTES,
            "allowed_extensions": sorted(ALLOWED_EXTENSIONS),
            "confidence_high": CONFIDENCE_HIGH_THRESHOLD,
            "confidence_medium": CONFIDENCE_MEDIUM_THRESHOLD,
        },
        "auto_populate_targets": {doc_type: target for doc_type, (target, _) in AUTO_POPULATE_MAPS.items()},
        "capabilities": {
            "strict_review_policy_enabled": is_strict_review_policy_enabled(),
            "auto_populate_enabled": is_auto_populate_enabled(),
            "decision_delivery_enabled": is_decision_delivery_enabled(),
            "redis_store_enabled": is_redis_store_enabled(),
        },
    }
