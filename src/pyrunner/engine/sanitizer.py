import keyword
import re
from typing import Optional

_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_]")
_VALID_START = re.compile(r"^[A-Za-z_]")


def sanitize_variable_name(key: str, prefix: str = "var") -> Optional[str]:
    """
    Turns an arbitrary key (column name, credential name) into a legal Python
    identifier, or returns None when nothing usable is left.

    The prefix is always joined with a single underscore, so "123" becomes
    "var_123" and "@#$%" becomes "var_____" (prefix, separator, four
    replaced characters).
    """
    if not key or key.strip() == "":
        return None

    safe_name = _INVALID_CHARS.sub("_", key)

    if (
        not _VALID_START.match(safe_name)
        or safe_name.strip("_") == ""
        or keyword.iskeyword(safe_name)
    ):
        safe_name = f"{prefix}_{safe_name}"

    if not safe_name or safe_name.strip() == "" or safe_name == f"{prefix}_":
        return None

    return safe_name
