import base64
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, computed_field, model_validator

ParseMode = Literal["none", "json", "lines", "smart"]
ExecutionMode = Literal["once", "per_item"]


# --- Input Schemas (supplied by the host per invocation) ---


class BinaryAttachment(BaseModel):
    """A named binary attachment on an input item, carried as base64 text."""

    data: str = Field(..., description="The raw bytes of the attachment, base64-encoded.")
    file_name: str = Field(..., alias="fileName")
    mime_type: str = Field("application/octet-stream", alias="mimeType")

    model_config = {"populate_by_name": True}


class InputItem(BaseModel):
    """One unit of upstream data: ordered fields plus optional binary attachments."""

    fields: Dict[str, Any] = Field(default_factory=dict, alias="json")
    binary: Dict[str, BinaryAttachment] = Field(default_factory=dict)

    model_config = {"populate_by_name": True, "frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _accept_bare_mapping(cls, data: Any) -> Any:
        # Hosts may pass bare field mappings instead of {"json": ..., "binary": ...}.
        # Only a mapping made solely of wrapper keys, each holding a mapping, is
        # a wrapper; a column that happens to be called "json" is a field.
        if not isinstance(data, dict):
            return data
        wrapper_keys = {"json", "fields", "binary"}
        is_wrapper = (
            bool(data)
            and set(data) <= wrapper_keys
            and ("json" in data or "fields" in data)
            and all(isinstance(value, dict) for value in data.values())
        )
        return data if is_wrapper else {"json": data}


class InputFileDescriptor(BaseModel):
    """Describes one input attachment as it is exposed to the script in `input_files`."""

    filename: str
    mimetype: str
    size: int = Field(..., ge=0)
    extension: str = ""
    binary_key: str = Field(..., description="The attachment key on the owning item.")
    item_index: int = Field(..., ge=0)
    temp_path: Optional[str] = Field(
        None, description="Absolute path of a decoded temporary copy, if materialized."
    )
    base64_data: Optional[str] = None

    def to_literal_dict(self) -> Dict[str, Any]:
        """The mapping rendered into the script; optional keys are omitted when unset."""
        return self.model_dump(exclude_none=True)


class ScriptGenerationConfig(BaseModel):
    """Independent toggles controlling script composition. Every combination must compose."""

    include_input_items: bool = Field(
        True, description="Emit the legacy `input_items` aggregate."
    )
    include_env_vars_dict: bool = Field(
        False, description="Emit the legacy `env_vars` aggregate."
    )
    hide_variable_values: bool = Field(
        False,
        description="Replace values with a placeholder. For human-facing/export scripts only.",
    )
    enable_output_dir: bool = Field(
        False, description="Create a scratch directory and expose it as `output_dir`."
    )
    materialize_input_files: bool = Field(
        False, description="Decode input attachments to temporary files (`temp_path`)."
    )
    include_file_base64: bool = Field(
        False, description="Embed each input attachment's base64 payload in `input_files`."
    )


# --- Execution & Result Schemas ---


class ErrorKind(str, Enum):
    NAME = "name_error"
    TYPE = "type_error"
    SYNTAX = "syntax_error"
    IMPORT = "import_error"
    TIMEOUT = "timeout"
    GENERIC = "generic"


class ErrorDetail(BaseModel):
    """A classified interpreter failure."""

    kind: ErrorKind
    error_type: Optional[str] = Field(
        None, description="The exception class name, e.g. 'ModuleNotFoundError'."
    )
    message: str
    line_number: Optional[int] = Field(
        None, description="Line in the executed script, preferring frames in that file."
    )
    user_line_number: Optional[int] = Field(
        None, description="The same line counted from the start of the user code."
    )
    missing_modules: List[str] = Field(default_factory=list)
    traceback: Optional[str] = None


class ProcessOutcome(BaseModel):
    """The raw outcome of one interpreter subprocess."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False


class ParsedOutput(BaseModel):
    """Best-effort structured interpretation of a script's stdout."""

    success: bool
    value: Any = None
    mode: ParseMode = "smart"


class ExecutionResult(BaseModel):
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    executed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    timed_out: bool = False
    parsed_stdout: Any = None
    parsing_success: bool = False
    error: Optional[ErrorDetail] = None

    @computed_field
    @property
    def success(self) -> bool:
        return self.exit_code == 0


class OutputFileRecord(BaseModel):
    """One file discovered in the scratch directory after execution."""

    filename: str
    extension: str
    size: int
    mimetype: str
    base64_data: str
    binary_key: str

    def to_attachment(self) -> Dict[str, Any]:
        return {
            "data": self.base64_data,
            "fileName": self.filename,
            "mimeType": self.mimetype,
            "fileExtension": self.extension,
        }


class ExportArtifact(BaseModel):
    """A downloadable file produced on demand (the executed script, the metadata document)."""

    file_name: str
    mime_type: str
    file_extension: str
    data: str = Field(..., description="File content, base64-encoded.")

    def content(self) -> bytes:
        return base64.b64decode(self.data)

    def to_attachment(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "fileName": self.file_name,
            "mimeType": self.mime_type,
            "fileExtension": self.file_extension,
        }


class ExportBundle(BaseModel):
    """The optional export artifacts of one execution."""

    script_file: Optional[ExportArtifact] = None
    metadata_file: Optional[ExportArtifact] = None

    def artifacts(self) -> List[ExportArtifact]:
        return [a for a in (self.script_file, self.metadata_file) if a is not None]


class ResponsePayload(BaseModel):
    """The single response object handed back to the host for one execution."""

    result: ExecutionResult
    parsed_stdout: Any = None
    parsing_success: bool = False
    error: Optional[ErrorDetail] = None
    output_files: List[OutputFileRecord] = Field(default_factory=list)
    export_artifacts: List[ExportArtifact] = Field(default_factory=list)
    input_items_count: int = 0
    item_index: Optional[int] = Field(
        None, description="Index of the processed item in per_item execution mode."
    )
    output_directory: Optional[str] = None

    @computed_field
    @property
    def generated_files_info(self) -> List[Dict[str, Any]]:
        return [
            {
                "filename": f.filename,
                "size": f.size,
                "mimetype": f.mimetype,
                "binary_key": f.binary_key,
            }
            for f in self.output_files
        ]

    def to_host_item(self) -> Dict[str, Any]:
        """Maps the payload onto the host's {"json": ..., "binary": ...} item shape."""
        json_part = self.model_dump(
            mode="json", exclude={"output_files", "export_artifacts"}
        )
        binary: Dict[str, Any] = {}
        for record in self.output_files:
            binary[record.binary_key] = record.to_attachment()
        for artifact in self.export_artifacts:
            binary[artifact.file_name] = artifact.to_attachment()
        return {"json": json_part, "binary": binary}


class ExecutionRequest(BaseModel):
    """Everything the host supplies for one pipeline invocation."""

    user_code: str
    items: List[InputItem] = Field(default_factory=list)
    env_vars: Dict[str, str] = Field(default_factory=dict)
    config: ScriptGenerationConfig = Field(default_factory=ScriptGenerationConfig)
    execution_mode: ExecutionMode = "once"
    parse_output: ParseMode = "smart"
    timeout_ms: Optional[int] = Field(None, gt=0)
    export_script: bool = False
    export_output_json: bool = False
