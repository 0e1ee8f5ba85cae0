import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import structlog

from ..data.schemas import InputFileDescriptor, InputItem, ScriptGenerationConfig
from ..errors import ScriptGenerationError
from .sanitizer import sanitize_variable_name
from .serializer import to_python_literal

logger = structlog.get_logger(__name__)

FUTURE_IMPORT_PATTERN = re.compile(r"^\s*from\s+__future__\s+import\s+\S.*$")
HIDDEN_VALUE = '"***hidden***"'
SCRIPT_HEADER = [
    "#!/usr/bin/env python3",
    "# Auto-generated script for pyrunner Python Function",
]
BASELINE_IMPORTS = ["import json", "import sys"]
USER_CODE_MARKER = "# User code starts here"

ItemLike = Union[InputItem, Mapping[str, Any]]


def _paren_depth(line: str) -> int:
    code = line.split("#", 1)[0]
    return code.count("(") - code.count(")")


def extract_future_imports(user_code: str) -> Tuple[List[str], str]:
    """
    Pulls every `from __future__ import ...` statement out of the user code,
    including parenthesized import lists that span several lines.

    Returns the directives in their original order and the remaining code.
    Only the removed lines change: blank lines left doubled by a removal are
    collapsed, and every other line is kept as written.
    """
    directives: List[str] = []
    kept: List[str] = []
    just_removed = False

    # str.splitlines() would also cut at \x0c, \x85, U+2028 and friends, which
    # are not line breaks in Python source and may sit inside string literals.
    lines = user_code.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    index = 0
    while index < len(lines):
        line = lines[index]
        index += 1
        if FUTURE_IMPORT_PATTERN.match(line):
            block = [line.strip()]
            depth = _paren_depth(line)
            # A parenthesized import list may continue over several lines.
            while depth > 0 and index < len(lines):
                block.append(lines[index].rstrip())
                depth += _paren_depth(lines[index])
                index += 1
            directives.append("\n".join(block))
            just_removed = True
            continue
        if just_removed and not line.strip() and (not kept or not kept[-1].strip()):
            continue
        just_removed = False
        kept.append(line)

    return directives, "\n".join(kept)


def _item_fields(item: ItemLike) -> Dict[str, Any]:
    if isinstance(item, InputItem):
        return item.fields
    return InputItem.model_validate(item).fields


def _render(value: Any, hide: bool) -> str:
    return HIDDEN_VALUE if hide else to_python_literal(value)


def _assignment_block(
    comment: str, values: Mapping[str, Any], prefix: str, hide: bool
) -> List[str]:
    lines = []
    for key, value in values.items():
        name = sanitize_variable_name(str(key), prefix)
        if name is None:
            logger.debug("composer.key_skipped", key=key, prefix=prefix)
            continue
        lines.append(f"{name} = {_render(value, hide)}")
    return [comment] + lines + [""] if lines else []


def _input_files_block(
    input_files: Sequence[InputFileDescriptor], hide: bool
) -> List[str]:
    descriptors = []
    for descriptor in input_files:
        entry = descriptor.to_literal_dict()
        if hide and "base64_data" in entry:
            entry["base64_data"] = "***hidden***"
        descriptors.append(entry)
    return [
        "# Binary files from input items",
        f"input_files = {to_python_literal(descriptors)}",
        "",
    ]


def _check_scaffold(scaffold: str, user_body: str) -> None:
    """Fails fast if the generated part of the script cannot be compiled."""
    if any(FUTURE_IMPORT_PATTERN.match(line) for line in user_body.split("\n")):
        raise ScriptGenerationError(
            "A __future__ import was left in the user code body; it must precede all other statements."
        )
    try:
        compile(scaffold, "<generated scaffold>", "exec")
    except SyntaxError as e:
        raise ScriptGenerationError(
            f"Generated script preamble is invalid (line {e.lineno}): {e.msg}"
        ) from e


def compose_script(
    user_code: str,
    items: Optional[Sequence[ItemLike]] = None,
    env_vars: Optional[Mapping[str, str]] = None,
    input_files: Optional[Sequence[InputFileDescriptor]] = None,
    output_dir: Optional[Union[str, Path]] = None,
    config: Optional[ScriptGenerationConfig] = None,
) -> str:
    """
    Assembles a complete, runnable script from user code and injected data.

    Variables are injected as plain assignment statements in a fixed order:
    environment variables, then fields of the first item (so item fields win
    on a name collision), then `input_files`, the legacy aggregates and
    `output_dir`. The output depends only on the arguments.

    Raises:
        ScriptGenerationError: If the generated preamble would not compile,
            e.g. because of an unknown __future__ feature.
    """
    config = config or ScriptGenerationConfig()
    items = list(items or [])
    env_vars = dict(env_vars or {})
    hide = config.hide_variable_values

    directives, user_body = extract_future_imports(user_code or "")

    lines: List[str] = list(SCRIPT_HEADER)
    if directives:
        lines.extend(directives)
        lines.append("")
    lines.extend(BASELINE_IMPORTS)
    lines.append("")

    if env_vars:
        lines.extend(
            _assignment_block(
                "# Environment variables (from credentials and system)",
                env_vars,
                "env",
                hide,
            )
        )

    if items:
        lines.extend(
            _assignment_block(
                "# Individual variables from first input item",
                _item_fields(items[0]),
                "var",
                hide,
            )
        )

    if input_files:
        lines.extend(_input_files_block(input_files, hide))

    legacy: List[str] = []
    if config.include_input_items:
        all_fields = [_item_fields(item) for item in items]
        legacy.append(f"input_items = {_render(all_fields, hide)}")
    if config.include_env_vars_dict:
        legacy.append(f"env_vars = {_render(env_vars, hide)}")
    if legacy:
        lines.append("# Legacy compatibility objects")
        lines.extend(legacy)
        lines.append("")

    if output_dir is not None:
        lines.append("# Output directory for generated files")
        lines.append(f"output_dir = {to_python_literal(str(output_dir))}")
        lines.append("")

    scaffold = "\n".join(lines)
    _check_scaffold(scaffold, user_body)

    logger.debug(
        "composer.script_generated",
        future_imports=len(directives),
        env_vars=len(env_vars),
        items=len(items),
        input_files=len(input_files or []),
        has_output_dir=output_dir is not None,
    )
    return f"{scaffold}\n{USER_CODE_MARKER}\n{user_body}\n"


def compose_export_script(
    user_code: str,
    items: Optional[Sequence[ItemLike]] = None,
    input_files: Optional[Sequence[InputFileDescriptor]] = None,
    output_dir: Optional[Union[str, Path]] = None,
    config: Optional[ScriptGenerationConfig] = None,
) -> str:
    """The human-facing variant of a script: identical, minus every environment variable."""
    config = (config or ScriptGenerationConfig()).model_copy(
        update={"include_env_vars_dict": False}
    )
    return compose_script(
        user_code,
        items=items,
        env_vars=None,
        input_files=input_files,
        output_dir=output_dir,
        config=config,
    )


def user_code_line_offset(script_text: str) -> Optional[int]:
    """Lines generated above the user code, or None when the marker is missing."""
    for number, line in enumerate(script_text.split("\n")):
        if line == USER_CODE_MARKER:
            return number + 1
    return None
