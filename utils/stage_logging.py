import json
import logging
from datetime import datetime, timezone
from typing import Any

from utils.request_id import get_batch_id, get_request_id

logger = logging.getLogger("api.stage")


def _norm(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        return value
    return str(value)


def log_stage(
    *,
    entity_id: str,
    stage: str,
    event: str,
    category: str | None = None,
    document_id: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    payload = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "entity_id": entity_id,
        "stage": stage,
        "event": event.upper(),
    }

    request_id = get_request_id()
    if request_id:
        payload["request_id"] = request_id
    batch_id = get_batch_id()
    if batch_id:
        payload["batch_id"] = batch_id
    if category:
        payload["category"] = category
    if document_id:
        payload["document_id"] = document_id
    if error:
        payload["error"] = error

    for key, value in extra.items():
        norm = _norm(value)
        if norm is not None:
            payload[key] = norm

    msg = json.dumps(payload, ensure_ascii=False)
    if error or payload["event"] == "FAILED":
        logger.error("stage_event %s", msg)
    else:
        logger.info("stage_event %s", msg)
