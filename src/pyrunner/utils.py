# src/pyrunner/utils.py
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

# --- Centralized Path Constant ---
# Single source of truth for the runner's home directory (config.yaml lives here).
PYRUNNER_HOME = Path(os.getenv("PYRUNNER_HOME", Path.home() / ".pyrunner"))


def safe_serialize(data: Any) -> Any:
    """
    Recursively traverses a data structure and converts common, non-standard
    JSON types into a JSON-compatible form before it is rendered as a literal.
    """
    if isinstance(data, (list, tuple)):
        return [safe_serialize(item) for item in data]

    if isinstance(data, dict):
        return {str(key): safe_serialize(value) for key, value in data.items()}

    # datetime is a subclass of date, so it must be checked first.
    if isinstance(data, datetime):
        if data.tzinfo is None:
            # Naive datetimes are treated as UTC.
            data = data.replace(tzinfo=timezone.utc)
        return data.isoformat().replace("+00:00", "Z")

    if isinstance(data, date):
        return data.isoformat()

    if isinstance(data, UUID):
        return str(data)

    if isinstance(data, Decimal):
        return float(data)

    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")

    return data


def file_extension(file_name: str) -> str:
    """Lowercase extension without the dot, or "" when the name has none."""
    suffix = Path(file_name).suffix
    return suffix[1:].lower() if suffix else ""
