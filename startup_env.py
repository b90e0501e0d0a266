import logging
import os
from typing import List

from services.feature_flags import BOOL_FALSE, BOOL_TRUE, FLAG_NAMES

logger = logging.getLogger("api.startup")

SERVICE_URL_KEYS = ("REGISTRATION_SERVICE_URL", "EXTRACTION_SERVICE_URL", "PROFILE_SERVICE_URL")


def _is_blank(value: str | None) -> bool:
    return value is None or not str(value).strip()


def _validate_redis_url(value: str | None, key: str, errors: List[str]) -> None:
    if _is_blank(value):
        errors.append(f"{key} is required")
        return
    if not (value.startswith("redis://") or value.startswith("rediss://")):
        errors.append(f"{key} must start with redis:// or rediss://")


def _validate_service_url(value: str | None, key: str, errors: List[str]) -> None:
    if _is_blank(value):
        errors.append(f"{key} is required")
        return
    if not (value.startswith("http://") or value.startswith("https://")):
        errors.append(f"{key} must start with http:// or https://")


def _validate_bool_flag_env(name: str, errors: List[str]) -> None:
    raw = os.getenv(name)
    if raw is None:
        return
    value = str(raw).strip().lower()
    if value not in BOOL_TRUE | BOOL_FALSE:
        errors.append(f"{name} must be one of {sorted(BOOL_TRUE | BOOL_FALSE)}, got {raw!r}")


def _read_number(name: str, default: str, errors: List[str]) -> float | None:
    raw = os.getenv(name, default)
    try:
        return float(raw)
    except (TypeError, ValueError):
        errors.append(f"{name} must be a number, got {raw!r}")
        return None


def _validate_thresholds(errors: List[str]) -> None:
    high = _read_number("CONFIDENCE_HIGH_THRESHOLD", "95", errors)
    medium = _read_number("CONFIDENCE_MEDIUM_THRESHOLD", "80", errors)
    if high is None or medium is None:
        return
    for name, value in (("CONFIDENCE_HIGH_THRESHOLD", high), ("CONFIDENCE_MEDIUM_THRESHOLD", medium)):
        if not 0 <= value <= 100:
            errors.append(f"{name} must be between 0 and 100")
    if high < medium:
        errors.append("CONFIDENCE_HIGH_THRESHOLD must be >= CONFIDENCE_MEDIUM_THRESHOLD")


def _validate_poll_budget(errors: List[str]) -> None:
    attempts = _read_number("EXTRACTION_POLL_MAX_ATTEMPTS", "30", errors)
    interval = _read_number("EXTRACTION_POLL_INTERVAL_MS", "2000", errors)
    if attempts is not None and attempts < 1:
        errors.append("EXTRACTION_POLL_MAX_ATTEMPTS must be >= 1")
    if interval is not None and interval < 0:
        errors.append("EXTRACTION_POLL_INTERVAL_MS must be >= 0")


def validate_startup_env() -> None:
    errors: List[str] = []
    warnings: List[str] = []

    for key in SERVICE_URL_KEYS:
        _validate_service_url(os.getenv(key, "http://localhost"), key, errors)

    for name in FLAG_NAMES:
        _validate_bool_flag_env(name, errors)

    redis_flag = str(os.getenv("FEATURE_REDIS_STORE", "0")).strip().lower()
    if redis_flag in BOOL_TRUE:
        _validate_redis_url(os.getenv("REDIS_URL"), "REDIS_URL", errors)

    _validate_thresholds(errors)
    _validate_poll_budget(errors)

    if _is_blank(os.getenv("SERVICE_API_TOKEN")):
        warnings.append("SERVICE_API_TOKEN is not set; outbound service calls carry no bearer token")

    if errors:
        for err in errors:
            logger.error("startup_env_invalid %s", err)
        raise RuntimeError("Startup env validation failed: " + "; ".join(errors))

    for warning in warnings:
        logger.warning("startup_env_warning %s", warning)

    logger.info("startup_env_validated keys=%s", list(SERVICE_URL_KEYS) + list(FLAG_NAMES))
