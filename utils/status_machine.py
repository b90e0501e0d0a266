# User value: This file blocks impossible state jumps so an item or review never shows a status it could not have reached.
import logging
from typing import Mapping, Optional

from schemas.pipeline_contract import (
    REVIEW_APPROVED,
    REVIEW_COMPLETED,
    REVIEW_FAILED,
    REVIEW_PROCESSING,
    REVIEW_REJECTED,
    REVIEW_REQUIRES_REVIEW,
    REVIEW_UNPROCESSED,
    UPLOAD_CANCELLED,
    UPLOAD_COMPLETE,
    UPLOAD_CONFIRMING,
    UPLOAD_ERROR,
    UPLOAD_QUEUED,
    UPLOAD_TRANSFERRING,
)
from utils.errors import InvalidTransitionError

logger = logging.getLogger("api.status_machine")

TransitionTable = Mapping[Optional[str], frozenset]

UPLOAD_TRANSITIONS: TransitionTable = {
    None: frozenset({UPLOAD_QUEUED}),
    # phase 1 runs while queued; confirming directly is the confirm-only resume path
    UPLOAD_QUEUED: frozenset({UPLOAD_TRANSFERRING, UPLOAD_CONFIRMING, UPLOAD_ERROR, UPLOAD_CANCELLED}),
    UPLOAD_TRANSFERRING: frozenset({UPLOAD_TRANSFERRING, UPLOAD_CONFIRMING, UPLOAD_ERROR, UPLOAD_CANCELLED}),
    UPLOAD_CONFIRMING: frozenset({UPLOAD_COMPLETE, UPLOAD_ERROR}),
    UPLOAD_ERROR: frozenset({UPLOAD_QUEUED, UPLOAD_CANCELLED}),
    UPLOAD_COMPLETE: frozenset(),
    UPLOAD_CANCELLED: frozenset(),
}

REVIEW_TRANSITIONS: TransitionTable = {
    None: frozenset({REVIEW_UNPROCESSED}),
    REVIEW_UNPROCESSED: frozenset({REVIEW_PROCESSING}),
    REVIEW_PROCESSING: frozenset({REVIEW_COMPLETED, REVIEW_REQUIRES_REVIEW, REVIEW_FAILED, REVIEW_UNPROCESSED}),
    REVIEW_COMPLETED: frozenset({REVIEW_COMPLETED, REVIEW_APPROVED, REVIEW_REJECTED}),
    REVIEW_REQUIRES_REVIEW: frozenset({REVIEW_REQUIRES_REVIEW, REVIEW_APPROVED, REVIEW_REJECTED}),
    REVIEW_FAILED: frozenset({REVIEW_PROCESSING}),
    REVIEW_APPROVED: frozenset(),
    REVIEW_REJECTED: frozenset(),
}


def _norm(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    s = str(status).strip().lower()
    return s or None


def is_allowed_transition(table: TransitionTable, current: Optional[str], target: Optional[str]) -> bool:
    target_n = _norm(target)
    if not target_n:
        return False
    current_n = _norm(current)
    if current_n not in table:
        return False
    return target_n in table[current_n]


# User value: refuses an illegal status write with a clear conflict error instead of silently corrupting state.
def ensure_transition(
    table: TransitionTable,
    current: Optional[str],
    target: Optional[str],
    *,
    context: str,
    entity_id: str = "",
) -> str:
    if not is_allowed_transition(table, current, target):
        logger.warning(
            "status_transition_blocked context=%s entity_id=%s current=%s target=%s",
            context,
            entity_id,
            current,
            target,
        )
        raise InvalidTransitionError(
            f"Invalid status transition to {target or 'NONE'} from {current or 'NONE'}",
            current=_norm(current),
            target=_norm(target),
            entity_id=entity_id or None,
        )
    return _norm(target)
