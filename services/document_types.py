# User value: This file recognises W-9s, licenses, certificates and contracts even when the extraction service does not say, so the right profile suggestions appear.
from typing import Iterable

from schemas.models import ExtractedField


def detect_document_type(fields: Iterable[ExtractedField], raw_text: str = "") -> str:
    text = str(raw_text or "").lower()
    keys = " ".join(str(f.key).lower() for f in fields)

    if "w-9" in text or "form w9" in text or "taxpayer identification" in text or "employer identification" in keys:
        return "w9"
    if ("driver" in text and "license" in text) or "identification card" in text:
        return "license"
    if "date of birth" in keys or "expiration date" in keys:
        return "license"
    if "certificate" in text or "certification" in text or "hubzone" in text:
        return "certificate"
    if "contract" in text or "agreement" in text or "parties" in text:
        return "contract"
    return "unknown"
