# User value: This file labels every extracted value high, medium or low so reviewers know exactly which fields to double-check.
import math
from typing import Iterable, Optional

from config import CONFIDENCE_HIGH_THRESHOLD, CONFIDENCE_MEDIUM_THRESHOLD
from schemas.models import ExtractedField
from schemas.pipeline_contract import CONFIDENCE_HIGH, CONFIDENCE_LOW, CONFIDENCE_MEDIUM


def classify_confidence(
    confidence: Optional[float],
    *,
    high: float = CONFIDENCE_HIGH_THRESHOLD,
    medium: float = CONFIDENCE_MEDIUM_THRESHOLD,
) -> Optional[str]:
    if confidence is None:
        return None
    value = float(confidence)
    if value >= high:
        return CONFIDENCE_HIGH
    if value >= medium:
        return CONFIDENCE_MEDIUM
    return CONFIDENCE_LOW


# Low fields are flagged for the reviewer; they never block approval on their own.
def needs_attention(confidence: Optional[float], *, medium: float = CONFIDENCE_MEDIUM_THRESHOLD) -> bool:
    return confidence is not None and float(confidence) < medium


def overall_confidence(fields: Iterable[ExtractedField]) -> int:
    values = [float(f.confidence) for f in fields]
    if not values:
        return 0
    # half-up, so 92.5 reads as 93
    return int(math.floor(sum(values) / len(values) + 0.5))
