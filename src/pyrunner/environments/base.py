from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from ..data.schemas import ProcessOutcome

# Real interpreter exit codes are 0-255, or -N when killed by signal N.
TIMEOUT_EXIT_CODE = -1000
TIMEOUT_MESSAGE = "Script execution timed out and was terminated."


class BaseEnvironment(ABC):
    """
    The abstract contract for all interpreter environments.

    An environment knows how to launch the target interpreter against a
    script file and report the raw outcome.
    """

    def __init__(self, working_dir: Optional[Path] = None):
        """
        Initializes the provider with the directory scripts are launched from
        (the current directory when None).
        """
        self.working_dir = working_dir

    @abstractmethod
    def execute(
        self,
        script_path: Path,
        timeout_ms: int,
        env_vars: Optional[Dict[str, str]] = None,
    ) -> ProcessOutcome:
        """
        Runs a single script file to completion or until the timeout.

        Args:
            script_path: The script to pass as the interpreter's sole argument.
            timeout_ms: Hard wall-clock budget in milliseconds.
            env_vars: Optional extra variables for the child process environment.

        Returns:
            A ProcessOutcome. A non-zero exit is a normal outcome; a timeout is
            reported with TIMEOUT_EXIT_CODE and TIMEOUT_MESSAGE.

        Raises:
            InterpreterLaunchError: If the interpreter cannot be started.
        """
        raise NotImplementedError
