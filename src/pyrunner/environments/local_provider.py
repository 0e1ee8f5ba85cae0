import os
import subprocess
from pathlib import Path
from typing import Dict, Optional, Union

import structlog

from ..data.schemas import ProcessOutcome
from ..errors import InterpreterLaunchError
from .base import TIMEOUT_EXIT_CODE, TIMEOUT_MESSAGE, BaseEnvironment

logger = structlog.get_logger(__name__)


def _as_text(stream: Union[str, bytes, None]) -> str:
    # TimeoutExpired carries raw bytes even when the process ran in text mode.
    if stream is None:
        return ""
    if isinstance(stream, bytes):
        return stream.decode("utf-8", errors="replace")
    return stream


class LocalPythonEnvironment(BaseEnvironment):
    """
    An environment provider that runs scripts with a Python interpreter
    resolved from PATH or given as an explicit path.
    """

    def __init__(self, python_path: str = "python3", working_dir: Optional[Path] = None):
        super().__init__(working_dir)
        self.python_path = python_path

    def execute(
        self,
        script_path: Path,
        timeout_ms: int,
        env_vars: Optional[Dict[str, str]] = None,
    ) -> ProcessOutcome:
        """
        Executes the script with the configured interpreter, capturing both
        output streams as UTF-8 text.
        """
        command = [self.python_path, str(script_path)]

        process_env = os.environ.copy()
        process_env["PYTHONIOENCODING"] = "utf-8"
        if env_vars:
            process_env.update(env_vars)

        log = logger.bind(command=" ".join(command), timeout_ms=timeout_ms)
        log.info("executor.execute")

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout_ms / 1000,
                env=process_env,
                cwd=self.working_dir,
            )
        except subprocess.TimeoutExpired as e:
            # subprocess.run has already killed and reaped the child here.
            log.warning("executor.timeout")
            return ProcessOutcome(
                exit_code=TIMEOUT_EXIT_CODE,
                stdout=_as_text(e.stdout),
                stderr=TIMEOUT_MESSAGE,
                timed_out=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            log.error("executor.launch_failed", error=str(e))
            raise InterpreterLaunchError(
                f"Could not start Python interpreter '{self.python_path}': {e}"
            ) from e

        log.info("executor.execution_complete", return_code=result.returncode)
        return ProcessOutcome(
            exit_code=result.returncode, stdout=result.stdout, stderr=result.stderr
        )
