# User value: This file imports a whole employee spreadsheet at once, reporting each bad row by number while every good row still gets created.
import csv
import io
import logging
import re
from datetime import date
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from config import MAX_BULK_CSV_SIZE_BYTES
from schemas.models import BatchResult
from services.batch_coordinator import BatchCoordinator
from services.profile_client import ProfileClient
from services.upload_validation import format_file_size
from utils.errors import ValidationError
from utils.metrics import incr

logger = logging.getLogger("api.bulk_import")

CSV_COLUMNS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "job_title",
    "department",
    "employment_date",
    "street1",
    "street2",
    "city",
    "state",
    "zip_code",
)
REQUIRED_COLUMNS = ("first_name", "last_name", "employment_date", "street1", "city", "state", "zip_code")

_ZIP_RE = re.compile(r"^\d{5}(-\d{4})?$")
_STATE_RE = re.compile(r"^[A-Z]{2}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class EmployeeImportRow(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: Optional[str] = None
    phone: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    employment_date: date
    street1: str = Field(..., min_length=1, max_length=200)
    street2: Optional[str] = None
    city: str = Field(..., min_length=1, max_length=100)
    state: str
    zip_code: str

    @field_validator("state")
    @classmethod
    def validate_state(cls, v: str) -> str:
        v = v.strip().upper()
        if not _STATE_RE.match(v):
            raise ValueError("state must be a 2-letter code")
        return v

    @field_validator("zip_code")
    @classmethod
    def validate_zip_code(cls, v: str) -> str:
        v = v.strip()
        if not _ZIP_RE.match(v):
            raise ValueError("zip_code must be 5 digits or ZIP+4")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not _EMAIL_RE.match(v):
            raise ValueError("email is not a valid address")
        return v

    # Blank cells count as missing so required columns fail as "Field required".
    @classmethod
    def from_csv_row(cls, raw: dict) -> "EmployeeImportRow":
        values = {k: v for k, v in raw.items() if k in CSV_COLUMNS and str(v or "").strip()}
        return cls(**{k: str(v).strip() for k, v in values.items()})


def _row_error(exc: PydanticValidationError, index: int) -> ValidationError:
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())) or "row"
    message = str(first.get("msg") or "invalid value")
    return ValidationError(
        f"Row {index}: {field} - {message}",
        error_code="INVALID_ROW",
        row=index,
        field=field,
        error_count=len(errors),
    )


def ensure_csv_size(size_bytes: int, *, max_size_bytes: int = MAX_BULK_CSV_SIZE_BYTES) -> None:
    if size_bytes <= 0:
        raise ValidationError("CSV file is empty", error_code="EMPTY_FILE")
    if size_bytes > max_size_bytes:
        raise ValidationError(
            f"CSV size {format_file_size(size_bytes)} exceeds {format_file_size(max_size_bytes)} limit",
            error_code="FILE_TOO_LARGE",
        )


# User value: reads the uploaded CSV and refuses files that are too big or missing required columns before any row is touched.
def parse_employee_csv(data: bytes, *, max_size_bytes: int = MAX_BULK_CSV_SIZE_BYTES) -> List[dict]:
    ensure_csv_size(len(data or b""), max_size_bytes=max_size_bytes)
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ValidationError("CSV must be UTF-8 encoded", error_code="INVALID_CSV") from exc

    reader = csv.DictReader(io.StringIO(text))
    header = [str(h or "").strip().lower() for h in (reader.fieldnames or [])]
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise ValidationError(
            f"CSV is missing required columns: {', '.join(missing)}",
            error_code="INVALID_CSV_HEADER",
            missing=missing,
        )

    rows = []
    for raw in reader:
        rows.append({str(k).strip().lower(): (v or "").strip() for k, v in raw.items() if k is not None and isinstance(v, str)})
    if not rows:
        raise ValidationError("CSV has no data rows", error_code="EMPTY_CSV")
    return rows


def _row_key(row: dict) -> str:
    return row.get("email") or f"{row.get('first_name', '')} {row.get('last_name', '')}".strip()


# User value: creates every valid row through the profile service; invalid rows fail on their own without a create call.
async def run_bulk_import(
    data: bytes,
    *,
    coordinator: BatchCoordinator,
    profile: ProfileClient,
    concurrency: Optional[int] = None,
    max_size_bytes: int = MAX_BULK_CSV_SIZE_BYTES,
) -> BatchResult:
    rows = parse_employee_csv(data, max_size_bytes=max_size_bytes)

    async def import_row(raw: dict, index: int, cancel_event) -> dict:
        try:
            row = EmployeeImportRow.from_csv_row(raw)
        except PydanticValidationError as exc:
            incr("bulk_import_rows_total", outcome="invalid")
            raise _row_error(exc, index) from exc
        employee_id = await profile.create_employee(row.model_dump(mode="json"))
        incr("bulk_import_rows_total", outcome="created")
        return {"row": index, "employee_id": employee_id}

    result = await coordinator.run_batch(
        rows,
        import_row,
        keys=[_row_key(r) for r in rows],
        index_base=1,
        concurrency=concurrency,
    )
    logger.info(
        "bulk_import_done total=%s succeeded=%s failed=%s",
        result.total,
        result.succeeded_count,
        result.failed_count,
    )
    return result
