import json
import math
from typing import Any

from ..utils import safe_serialize


def _float_literal(value: float) -> str:
    if math.isnan(value):
        return 'float("nan")'
    if math.isinf(value):
        return 'float("inf")' if value > 0 else '-float("inf")'
    return repr(value)


def _string_literal(value: str) -> str:
    try:
        # Non-ASCII stays literal; the script file is written as UTF-8.
        literal = json.dumps(value, ensure_ascii=False)
        literal.encode("utf-8")
        return literal
    except UnicodeEncodeError:
        # Lone surrogates cannot be written as UTF-8 text.
        return repr(value)


def to_python_literal(value: Any) -> str:
    """
    Renders a JSON-compatible value as Python source text.

    Booleans and null are emitted as True/False/None, never as the JSON
    spellings, and mapping keys are always rendered as string literals.
    `ast.literal_eval` of the result reconstructs an equal value.
    """
    if value is None:
        return "None"

    # bool is a subclass of int, so it must be handled before numbers.
    if isinstance(value, bool):
        return "True" if value else "False"

    if isinstance(value, str):
        return _string_literal(value)

    if isinstance(value, int):
        return str(value)

    if isinstance(value, float):
        return _float_literal(value)

    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(to_python_literal(item) for item in value) + "]"

    if isinstance(value, dict):
        entries = [
            f"{_string_literal(str(key))}: {to_python_literal(val)}"
            for key, val in value.items()
        ]
        return "{" + ", ".join(entries) + "}"

    normalized = safe_serialize(value)
    if normalized is value:
        # Unknown objects are rendered by their string form rather than failing.
        return _string_literal(str(value))
    return to_python_literal(normalized)
