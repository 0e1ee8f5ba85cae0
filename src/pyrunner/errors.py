"""
Custom exceptions raised by the script pipeline.

Only failures that make the whole invocation unusable are raised. A script
that runs and exits non-zero, or times out, is reported as data on the
ExecutionResult instead.
"""


class PyRunnerError(Exception):
    """Base exception for all pipeline errors."""

    pass


class ScriptGenerationError(PyRunnerError):
    """The inputs cannot be turned into a valid script. Raised before any subprocess is spawned."""

    pass


class InterpreterLaunchError(PyRunnerError):
    """The interpreter could not be started (missing binary, permission denied)."""

    pass


class ConfigurationError(PyRunnerError):
    """Error related to runner configuration (config.yaml or PYRUNNER_* variables)."""

    pass
