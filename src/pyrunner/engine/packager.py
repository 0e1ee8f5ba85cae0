import base64
import json
from datetime import datetime, timezone
from typing import Optional, Sequence

import structlog

from ..data.schemas import (
    ExecutionResult,
    ExportArtifact,
    ExportBundle,
    OutputFileRecord,
    ParsedOutput,
    ParseMode,
    ResponsePayload,
)

logger = structlog.get_logger(__name__)

EXPORT_FORMAT_VERSION = "1.0"
EXPORT_NODE_TYPE = "pyrunner.pythonFunction"
EXPORT_DESCRIPTION = "Results of a Python script executed by pyrunner"
SCRIPT_MIME_TYPE = "text/x-python"


def _try_json(text: str) -> ParsedOutput:
    # Over-long integers raise a plain ValueError and deep nesting a RecursionError.
    try:
        return ParsedOutput(success=True, value=json.loads(text), mode="json")
    except (ValueError, RecursionError):
        return ParsedOutput(success=False, value=text, mode="json")


def parse_stdout(stdout: str, mode: ParseMode = "smart") -> ParsedOutput:
    """
    Best-effort structured decode of a script's standard output.

    `json` decodes the whole text, `lines` splits it into non-empty lines, and
    `smart` tries the whole text as JSON, then its last non-empty line (so a
    script can log first and print its result last). A failed decode keeps
    the raw text as the value.
    """
    text = (stdout or "").strip()

    if mode == "none":
        return ParsedOutput(success=False, value=stdout, mode=mode)

    if not text:
        return ParsedOutput(success=False, value=stdout or "", mode=mode)

    if mode == "json":
        return _try_json(text)

    lines = [line for line in text.splitlines() if line.strip()]
    if mode == "lines":
        return ParsedOutput(success=True, value=lines, mode=mode)

    whole = _try_json(text)
    if whole.success:
        return whole.model_copy(update={"mode": mode})
    last_line = _try_json(lines[-1].strip())
    if last_line.success:
        return last_line.model_copy(update={"mode": mode})
    return ParsedOutput(success=False, value=stdout, mode=mode)


def package_result(
    result: ExecutionResult,
    output_files: Optional[Sequence[OutputFileRecord]] = None,
    export_artifacts: Optional[Sequence[ExportArtifact]] = None,
    input_items_count: int = 0,
    item_index: Optional[int] = None,
    output_directory: Optional[str] = None,
) -> ResponsePayload:
    """Merges the execution result, its classified error and the scanned files into one payload."""
    payload = ResponsePayload(
        result=result,
        parsed_stdout=result.parsed_stdout,
        parsing_success=result.parsing_success,
        error=result.error,
        output_files=list(output_files or []),
        export_artifacts=list(export_artifacts or []),
        input_items_count=input_items_count,
        item_index=item_index,
        output_directory=output_directory,
    )
    logger.debug(
        "packager.packaged",
        success=result.success,
        output_files=len(payload.output_files),
        export_artifacts=len(payload.export_artifacts),
    )
    return payload


def _artifact(file_name: str, mime_type: str, extension: str, content: str) -> ExportArtifact:
    return ExportArtifact(
        file_name=file_name,
        mime_type=mime_type,
        file_extension=extension,
        data=base64.b64encode(content.encode("utf-8")).decode("ascii"),
    )


def create_script_artifact(script_text: str, stamp: str) -> ExportArtifact:
    return _artifact(f"python_script_{stamp}.py", SCRIPT_MIME_TYPE, "py", script_text)


def create_metadata_artifact(result: ExecutionResult, stamp: str) -> ExportArtifact:
    exported_at = datetime.now(timezone.utc).isoformat()
    document = {
        "timestamp": exported_at,
        "execution_results": result.model_dump(mode="json"),
        "export_info": {
            "description": EXPORT_DESCRIPTION,
            "format_version": EXPORT_FORMAT_VERSION,
            "exported_at": exported_at,
            "node_type": EXPORT_NODE_TYPE,
        },
    }
    content = json.dumps(document, ensure_ascii=False, indent=2)
    return _artifact(f"output_{stamp}.json", "application/json", "json", content)


def build_export_artifacts(
    script_text: str,
    result: ExecutionResult,
    include_script: bool = True,
    include_metadata: bool = True,
) -> ExportBundle:
    """
    Produces the downloadable artifacts for one execution: the exact script
    that ran and a JSON metadata document. Either can be switched off.
    """
    stamp = result.executed_at.strftime("%Y%m%dT%H%M%S%fZ")
    return ExportBundle(
        script_file=create_script_artifact(script_text, stamp) if include_script else None,
        metadata_file=create_metadata_artifact(result, stamp)
        if include_metadata
        else None,
    )

