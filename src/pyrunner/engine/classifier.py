import re
from pathlib import Path
from typing import List, Optional, Tuple, Union

import structlog

from ..data.schemas import ErrorDetail, ErrorKind
from ..environments.base import TIMEOUT_EXIT_CODE

logger = structlog.get_logger(__name__)

_TRACEBACK_START = "Traceback (most recent call last):"
_EXCEPTION_LINE = re.compile(
    r"^(?P<type>[A-Za-z_][\w.]*(?:Error|Exception|Exit|Interrupt|Warning))(?::\s?(?P<message>.*))?$"
)
_LINE_NUMBER = re.compile(r'File "([^"]*)", line (\d+)')
_MISSING_MODULE = re.compile(r"No module named ['\"]([^'\"]+)['\"]")

_KIND_BY_TYPE = {
    "NameError": ErrorKind.NAME,
    "UnboundLocalError": ErrorKind.NAME,
    "TypeError": ErrorKind.TYPE,
    "SyntaxError": ErrorKind.SYNTAX,
    "IndentationError": ErrorKind.SYNTAX,
    "TabError": ErrorKind.SYNTAX,
    "ImportError": ErrorKind.IMPORT,
    "ModuleNotFoundError": ErrorKind.IMPORT,
}


def _last_exception_line(lines: List[str]) -> Optional[re.Match]:
    for line in reversed(lines):
        match = _EXCEPTION_LINE.match(line.strip())
        if match:
            return match
    return None


def _traceback_block(stderr: str) -> Optional[str]:
    index = stderr.rfind(_TRACEBACK_START)
    if index == -1:
        # SyntaxErrors raised while compiling the script carry no "Traceback" header.
        if _LINE_NUMBER.search(stderr):
            return stderr.strip()
        return None
    return stderr[index:].strip()


def _missing_modules(stderr: str) -> List[str]:
    modules: List[str] = []
    for name in _MISSING_MODULE.findall(stderr):
        if name not in modules:
            modules.append(name)
    return modules


def _error_location(
    stderr: str,
    script_path: Optional[Union[str, Path]],
    line_offset: Optional[int],
) -> Tuple[Optional[int], Optional[int]]:
    """Picks the last frame in the executed script, or the last frame at all."""
    frames = [(path, int(line)) for path, line in _LINE_NUMBER.findall(stderr)]
    if not frames:
        return None, None

    script_name = Path(script_path).name if script_path else None
    script_frames = [f for f in frames if script_name and Path(f[0]).name == script_name]
    if not script_frames:
        return frames[-1][1], None

    line_number = script_frames[-1][1]
    user_line_number = None
    if line_offset is not None and line_number > line_offset:
        user_line_number = line_number - line_offset
    return line_number, user_line_number


def classify_error(
    exit_code: int,
    stderr: str,
    script_path: Optional[Union[str, Path]] = None,
    line_offset: Optional[int] = None,
) -> Optional[ErrorDetail]:
    """
    Maps a finished interpreter run onto a structured error.

    Returns None for a zero exit code. Anything else yields an ErrorDetail;
    stderr that matches no known interpreter signature becomes a `generic`
    error carrying the raw text, so nothing is lost.

    Args:
        exit_code: The interpreter's exit code.
        stderr: The captured standard error.
        script_path: The executed script. When given, `line_number` comes from
            the last frame in that file rather than from library frames.
        line_offset: Lines generated above the user code; used to derive
            `user_line_number` for frames in the executed script.
    """
    if exit_code == 0:
        return None

    stderr = stderr or ""

    if exit_code == TIMEOUT_EXIT_CODE:
        return ErrorDetail(kind=ErrorKind.TIMEOUT, message=stderr.strip())

    lines = stderr.strip().splitlines()
    match = _last_exception_line(lines)
    line_number, user_line_number = _error_location(stderr, script_path, line_offset)
    traceback = _traceback_block(stderr)

    if match is None:
        logger.debug("classifier.unrecognized", exit_code=exit_code)
        return ErrorDetail(
            kind=ErrorKind.GENERIC,
            message=stderr.strip() or f"Process exited with code {exit_code}",
            line_number=line_number,
            user_line_number=user_line_number,
            traceback=traceback,
        )

    error_type = match.group("type").rsplit(".", 1)[-1]
    message = (match.group("message") or "").strip() or error_type
    kind = _KIND_BY_TYPE.get(error_type, ErrorKind.GENERIC)
    missing = _missing_modules(stderr) if kind == ErrorKind.IMPORT else []

    detail = ErrorDetail(
        kind=kind,
        error_type=error_type,
        message=message,
        line_number=line_number,
        user_line_number=user_line_number,
        missing_modules=missing,
        traceback=traceback,
    )
    logger.debug(
        "classifier.classified",
        exit_code=exit_code,
        kind=detail.kind.value,
        error_type=error_type,
        line_number=line_number,
    )
    return detail
