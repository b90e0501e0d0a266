# User value: This file turns an approved W-9 or license into ready-to-use business or employee profile values so users do not retype what was already reviewed.
import re
from typing import Callable, Dict, Optional, Tuple

from schemas.models import AutoPopulateSuggestion, ReviewRecord
from schemas.pipeline_contract import REVIEW_APPROVED
from services.feature_flags import is_auto_populate_enabled
from utils.field_keys import normalize_field_key

CITY_STATE_ZIP_KEYS = ("city, state, and zip", "city, state, zip", "city state zip")

W9_KEYS = {
    "name": ("name", "business name", "legal name", "entity name"),
    "address": ("address", "street address", "number, street"),
    "ein": ("employer identification number", "ein", "tax id", "federal tax id"),
}

LICENSE_KEYS = {
    "id_number": ("id", "dl", "license number", "id number", "document number", "lic no"),
    "first_name": ("first name", "fn", "given name"),
    "last_name": ("last name", "ln", "surname", "family name"),
    "middle_name": ("middle name", "mn", "middle"),
    "full_name": ("name", "full name"),
    "date_of_birth": ("dob", "date of birth", "birth date", "born"),
    "address": ("address", "street", "addr"),
    "city": ("city",),
    "state": ("state", "st"),
    "zip_code": ("zip", "zip code", "postal code"),
    "expiration_date": ("expiration", "exp", "expires", "expiration date", "valid until"),
}

_CITY_STATE_ZIP_RE = re.compile(r"^(.+?),?\s+([A-Za-z]{2})\s+(\d{5}(?:-\d{4})?)$")


def find_value(values: Dict[str, str], aliases) -> Optional[str]:
    for alias in aliases:
        value = values.get(normalize_field_key(alias))
        if value not in (None, ""):
            return value
    return None


def parse_city_state_zip(value: Optional[str]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    match = _CITY_STATE_ZIP_RE.match(str(value or "").strip())
    if not match:
        return None, None, None
    return match.group(1).strip(), match.group(2).upper(), match.group(3)


def _compact(data: dict) -> dict:
    return {k: v for k, v in data.items() if v not in (None, "", {})}


def _address(values: Dict[str, str], street_keys, *, city=None, state=None, zip_code=None) -> dict:
    parsed_city, parsed_state, parsed_zip = parse_city_state_zip(find_value(values, CITY_STATE_ZIP_KEYS))
    return _compact(
        {
            "street1": find_value(values, street_keys),
            "city": city or parsed_city,
            "state": (state or parsed_state or "").upper() or None,
            "zip_code": zip_code or parsed_zip,
        }
    )


def business_fields_from_w9(values: Dict[str, str]) -> dict:
    ein = find_value(values, W9_KEYS["ein"])
    return _compact(
        {
            "name": find_value(values, W9_KEYS["name"]),
            "ein": re.sub(r"[^0-9-]", "", ein) if ein else None,
            "primary_address": _address(values, W9_KEYS["address"]),
        }
    )


def employee_fields_from_license(values: Dict[str, str]) -> dict:
    first = find_value(values, LICENSE_KEYS["first_name"])
    last = find_value(values, LICENSE_KEYS["last_name"])
    middle = find_value(values, LICENSE_KEYS["middle_name"])
    full = find_value(values, LICENSE_KEYS["full_name"])
    if full and not first:
        parts = full.split()
        if len(parts) >= 2:
            first, last = parts[0], parts[-1]
            if len(parts) > 2:
                middle = " ".join(parts[1:-1])
    return _compact(
        {
            "first_name": first,
            "last_name": last,
            "middle_name": middle,
            "date_of_birth": find_value(values, LICENSE_KEYS["date_of_birth"]),
            "residential_address": _address(
                values,
                LICENSE_KEYS["address"],
                city=find_value(values, LICENSE_KEYS["city"]),
                state=find_value(values, LICENSE_KEYS["state"]),
                zip_code=find_value(values, LICENSE_KEYS["zip_code"]),
            ),
            "identification_number": find_value(values, LICENSE_KEYS["id_number"]),
            "identification_expiry": find_value(values, LICENSE_KEYS["expiration_date"]),
        }
    )


# document type -> (profile target, field builder); anything else gets no suggestion
AUTO_POPULATE_MAPS: Dict[str, Tuple[str, Callable[[Dict[str, str]], dict]]] = {
    "w9": ("business", business_fields_from_w9),
    "license": ("employee", employee_fields_from_license),
}


# User value: suggests profile values only from approved data and only for document types it knows, never guessing for the rest.
def suggest(record: ReviewRecord) -> Optional[AutoPopulateSuggestion]:
    if not is_auto_populate_enabled():
        return None
    if record.state != REVIEW_APPROVED or record.decision is None:
        return None
    mapping = AUTO_POPULATE_MAPS.get(record.document_type)
    if mapping is None:
        return None

    target, build = mapping
    fields = build(record.decision.field_values())
    fields["ocr_source"] = {
        "document_id": record.document_id,
        "review_id": record.review_id,
        "confidence": record.overall_confidence,
        "decided_at": record.decision.decided_at.isoformat(),
    }
    return AutoPopulateSuggestion(
        document_type=record.document_type,
        target=target,
        confidence=record.overall_confidence,
        fields=fields,
    )
