import tempfile
from pathlib import Path
from typing import List, Mapping, Optional, Sequence, Union

import structlog

from ..config import RunnerSettings
from ..data.schemas import (
    ExecutionRequest,
    ExecutionResult,
    ExportBundle,
    InputFileDescriptor,
    InputItem,
    OutputFileRecord,
    ParseMode,
    ResponsePayload,
    ScriptGenerationConfig,
)
from ..environments.base import BaseEnvironment
from ..environments.local_provider import LocalPythonEnvironment
from ..management.output_scanner import scan_output_dir
from ..management.scratch_manager import create_scratch_dir, remove_scratch_dir
from .classifier import classify_error
from .composer import ItemLike, compose_script, user_code_line_offset
from .input_files import cleanup_input_files, detect_input_files
from .packager import build_export_artifacts, package_result, parse_stdout

logger = structlog.get_logger(__name__)


class PythonFunctionService:
    """
    The host-facing entry point: generates scripts, runs them, collects their
    output files and packages the results.

    Generation and launch failures raise (ScriptGenerationError,
    InterpreterLaunchError). A script that fails or times out is a completed
    run whose payload carries the error.
    """

    def __init__(
        self,
        settings: Optional[RunnerSettings] = None,
        environment: Optional[BaseEnvironment] = None,
    ):
        self.settings = settings or RunnerSettings()
        self.environment = environment or LocalPythonEnvironment(
            python_path=self.settings.python_path,
            working_dir=self.settings.working_dir,
        )

    def generate_script(
        self,
        user_code: str,
        items: Optional[Sequence[ItemLike]] = None,
        env_vars: Optional[Mapping[str, str]] = None,
        input_files: Optional[Sequence[InputFileDescriptor]] = None,
        output_dir: Optional[Union[str, Path]] = None,
        config: Optional[ScriptGenerationConfig] = None,
    ) -> str:
        return compose_script(user_code, items, env_vars, input_files, output_dir, config)

    def run_script(
        self,
        script_text: str,
        timeout_ms: Optional[int] = None,
        parse_output: Optional[ParseMode] = None,
    ) -> ExecutionResult:
        """
        Writes the script to a temporary .py file, executes it and deletes the
        file again, whatever the outcome.
        """
        timeout_ms = timeout_ms or self.settings.timeout_ms
        parse_mode = parse_output or self.settings.parse_output

        with tempfile.NamedTemporaryFile(
            mode="w",
            delete=False,
            suffix=".py",
            prefix="pyrunner_script_",
            encoding="utf-8",
        ) as tmp_script:
            tmp_script.write(script_text)
            script_path = Path(tmp_script.name)

        try:
            outcome = self.environment.execute(script_path, timeout_ms)
        finally:
            try:
                script_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(
                    "service.script_cleanup_failed",
                    path=str(script_path),
                    error=str(e),
                )

        parsed = parse_stdout(outcome.stdout, parse_mode)
        return ExecutionResult(
            exit_code=outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            timed_out=outcome.timed_out,
            parsed_stdout=parsed.value,
            parsing_success=parsed.success,
            error=classify_error(
                outcome.exit_code,
                outcome.stderr,
                script_path=script_path,
                line_offset=user_code_line_offset(script_text),
            ),
        )

    def collect_outputs(
        self,
        scratch_dir: Union[str, Path],
        max_file_size_bytes: Optional[int] = None,
    ) -> List[OutputFileRecord]:
        return scan_output_dir(
            scratch_dir,
            max_file_size_bytes or self.settings.max_output_file_size_bytes,
            max_files=self.settings.max_output_files,
        )

    def build_export_artifacts(
        self,
        script_text: str,
        result: ExecutionResult,
        include_script: bool = True,
        include_metadata: bool = True,
    ) -> ExportBundle:
        return build_export_artifacts(
            script_text, result, include_script, include_metadata
        )

    def execute(self, request: ExecutionRequest) -> List[ResponsePayload]:
        """
        Runs the full pipeline. `once` mode runs all items in one subprocess
        and returns one payload; `per_item` runs one subprocess per item, in
        order, and returns one payload each.
        """
        if request.execution_mode == "per_item" and request.items:
            return [
                self._execute_batch(request, [item], item_index=index)
                for index, item in enumerate(request.items)
            ]
        return [self._execute_batch(request, request.items)]

    def _execute_batch(
        self,
        request: ExecutionRequest,
        items: Sequence[InputItem],
        item_index: Optional[int] = None,
    ) -> ResponsePayload:
        config = request.config
        log = logger.bind(item_index=item_index, items=len(items))

        scratch_dir: Optional[Path] = None
        temp_inputs: List[Path] = []
        try:
            if config.enable_output_dir:
                scratch_dir = create_scratch_dir(self.settings.scratch_base_dir)

            input_files, temp_inputs = detect_input_files(
                items,
                materialize=config.materialize_input_files,
                include_base64=config.include_file_base64,
                start_index=item_index or 0,
            )

            # Redaction only ever applies to the exported copy.
            run_config = config.model_copy(update={"hide_variable_values": False})
            script_text = self.generate_script(
                request.user_code,
                items,
                request.env_vars,
                input_files,
                scratch_dir,
                run_config,
            )

            result = self.run_script(script_text, request.timeout_ms, request.parse_output)
            log.info(
                "service.script_finished",
                exit_code=result.exit_code,
                timed_out=result.timed_out,
            )

            output_files = self.collect_outputs(scratch_dir) if scratch_dir else []

            artifacts = []
            if request.export_script or request.export_output_json:
                export_text = script_text
                if config.hide_variable_values:
                    export_text = self.generate_script(
                        request.user_code,
                        items,
                        request.env_vars,
                        input_files,
                        scratch_dir,
                        config,
                    )
                artifacts = self.build_export_artifacts(
                    export_text,
                    result,
                    include_script=request.export_script,
                    include_metadata=request.export_output_json,
                ).artifacts()

            return package_result(
                result,
                output_files=output_files,
                export_artifacts=artifacts,
                input_items_count=len(items),
                item_index=item_index,
                output_directory=str(scratch_dir) if scratch_dir else None,
            )
        finally:
            cleanup_input_files(temp_inputs)
            if scratch_dir is not None:
                if self.settings.keep_scratch_dir:
                    log.info("service.scratch_dir_kept", path=str(scratch_dir))
                else:
                    remove_scratch_dir(scratch_dir)
