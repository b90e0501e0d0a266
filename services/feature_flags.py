# User value: This file lets operators roll review policy and storage changes out safely without code changes.
import os

BOOL_TRUE = {"1", "true", "yes", "on"}
BOOL_FALSE = {"0", "false", "no", "off"}


# User value: supports _flag so rollout switches behave the same in every environment.
def _flag(name: str, default: bool = False) -> bool:
    raw = str(os.getenv(name, "1" if default else "0")).strip().lower()
    return raw in BOOL_TRUE


FEATURE_STRICT_REVIEW_POLICY = _flag("FEATURE_STRICT_REVIEW_POLICY", True)
FEATURE_AUTO_POPULATE = _flag("FEATURE_AUTO_POPULATE", True)
FEATURE_REDIS_STORE = _flag("FEATURE_REDIS_STORE", False)
FEATURE_DECISION_DELIVERY = _flag("FEATURE_DECISION_DELIVERY", True)

FLAG_NAMES = (
    "FEATURE_STRICT_REVIEW_POLICY",
    "FEATURE_AUTO_POPULATE",
    "FEATURE_REDIS_STORE",
    "FEATURE_DECISION_DELIVERY",
)


# User value: keeps reviewers from approving machine-flagged results blind unless operators relax the rule.
def is_strict_review_policy_enabled() -> bool:
    return FEATURE_STRICT_REVIEW_POLICY


# User value: supports is_auto_populate_enabled so profile suggestions only appear when they are switched on.
def is_auto_populate_enabled() -> bool:
    return FEATURE_AUTO_POPULATE


def is_redis_store_enabled() -> bool:
    return FEATURE_REDIS_STORE


# User value: lets downstream compliance receive approved data automatically when delivery is enabled.
def is_decision_delivery_enabled() -> bool:
    return FEATURE_DECISION_DELIVERY
