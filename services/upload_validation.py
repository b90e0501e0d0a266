# User value: This file rejects bad files before anything is sent so users get instant, specific feedback instead of a failed upload.
import os
import re
import unicodedata

from config import MAX_UPLOAD_FILE_SIZE_BYTES
from schemas.models import UploadPayload
from schemas.pipeline_contract import DOCUMENT_CATEGORIES
from utils.errors import ValidationError
from utils.metrics import incr

EXTENSION_TO_MIME = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
}

ALLOWED_EXTENSIONS = frozenset(EXTENSION_TO_MIME)
ALLOWED_MIME_TYPES = frozenset(EXTENSION_TO_MIME.values())

# Browsers often send these when they cannot tell; the extension decides then.
_GENERIC_MIME_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


# User value: supports _extension so the same file always maps to the same type decision.
def _extension(filename: str | None) -> str:
    return os.path.splitext(str(filename or "").strip().lower())[1]


# User value: formats byte counts the way users read them in error messages.
def format_file_size(size_bytes: int) -> str:
    size = float(max(0, int(size_bytes)))
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            text = f"{size:.1f}".rstrip("0").rstrip(".")
            return f"{text} {unit}"
        size /= 1024
    return f"{size_bytes} B"


# User value: keeps stored names safe while still recognisable to the user who uploaded them.
def normalize_filename(filename: str | None) -> str:
    base = os.path.basename(str(filename or "").replace("\\", "/")).strip()
    stem, ext = os.path.splitext(base)
    stem = unicodedata.normalize("NFKC", stem)
    stem = re.sub(r"[^A-Za-z0-9._-]+", "_", stem).strip("_.")
    if not stem:
        stem = "document"
    return f"{stem}{ext.lower()}"


def resolve_content_type(filename: str, declared: str | None) -> str:
    mime = str(declared or "").strip().lower().split(";")[0].strip()
    if mime in _GENERIC_MIME_TYPES:
        return EXTENSION_TO_MIME.get(_extension(filename), mime)
    return mime


def _reject(error_code: str, message: str, **context) -> ValidationError:
    incr("upload_validation_failed_total", reason=error_code.lower())
    return ValidationError(message, error_code=error_code, **context)


# User value: enforces the size ceiling and type allow-list up front so no network call is made for a file that would be refused anyway.
def validate_upload(
    payload: UploadPayload,
    *,
    category: str,
    max_size_bytes: int = MAX_UPLOAD_FILE_SIZE_BYTES,
    allowed_extensions: frozenset = ALLOWED_EXTENSIONS,
) -> UploadPayload:
    filename = str(payload.filename or "").strip()
    if not filename:
        raise _reject("INVALID_FILENAME", "Filename is required")

    if category not in DOCUMENT_CATEGORIES:
        raise _reject(
            "INVALID_CATEGORY",
            f"Unknown document category '{category}'. Use one of: {', '.join(DOCUMENT_CATEGORIES)}",
            filename=filename,
        )

    if payload.size_bytes <= 0:
        raise _reject("EMPTY_FILE", "File is empty", filename=filename)

    if payload.size_bytes > max_size_bytes:
        raise _reject(
            "FILE_TOO_LARGE",
            f"File size {format_file_size(payload.size_bytes)} exceeds {format_file_size(max_size_bytes)} limit",
            filename=filename,
            size_bytes=payload.size_bytes,
            max_size_bytes=max_size_bytes,
        )

    ext = _extension(filename)
    if ext not in allowed_extensions:
        accepted = ", ".join(sorted(e.lstrip(".").upper() for e in allowed_extensions))
        raise _reject(
            "UNSUPPORTED_FILE_TYPE",
            f"File type {ext or '(none)'} is not allowed. Accepted: {accepted}",
            filename=filename,
        )

    mime = resolve_content_type(filename, payload.content_type)
    if mime not in ALLOWED_MIME_TYPES:
        raise _reject("UNSUPPORTED_MIME_TYPE", f"Unsupported MIME type: {mime}", filename=filename)
    if EXTENSION_TO_MIME[ext] != mime:
        raise _reject(
            "MIME_EXTENSION_MISMATCH",
            f"Declared type {mime} does not match extension {ext}",
            filename=filename,
        )

    return UploadPayload(
        filename=normalize_filename(filename),
        content_type=mime,
        size_bytes=int(payload.size_bytes),
        data=payload.data,
    )
