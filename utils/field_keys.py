# User value: This file matches field labels reliably so a reviewer never loses a confidence badge because of spacing or punctuation.
import re

_NON_ALNUM = re.compile(r"[^0-9a-z]")


# Contract: casefold, then drop every character outside [0-9a-z].
def normalize_field_key(key: str | None) -> str:
    return _NON_ALNUM.sub("", str(key or "").casefold())
