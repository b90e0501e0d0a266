import re
import uuid
from contextvars import ContextVar

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_CTX: ContextVar[str | None] = ContextVar("request_id", default=None)
_BATCH_ID_CTX: ContextVar[str | None] = ContextVar("batch_id", default=None)
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")


def normalize_request_id(raw: str | None) -> str:
    value = (raw or "").strip()
    if value and _REQUEST_ID_RE.match(value):
        return value
    return f"req-{uuid.uuid4().hex}"


def set_request_id(value: str | None) -> None:
    _REQUEST_ID_CTX.set(value)


def get_request_id() -> str | None:
    return _REQUEST_ID_CTX.get()


# Batch members run as separate tasks; each task copies the context at creation,
# so setting the batch id before fan-out tags every member's log lines.
def new_batch_id() -> str:
    return f"batch-{uuid.uuid4().hex[:16]}"


def set_batch_id(value: str | None) -> None:
    _BATCH_ID_CTX.set(value)


def get_batch_id() -> str | None:
    return _BATCH_ID_CTX.get()
