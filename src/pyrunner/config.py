# src/pyrunner/config.py
import os
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

from .data.schemas import ExecutionMode, ParseMode
from .errors import ConfigurationError
from .utils import PYRUNNER_HOME

logger = structlog.get_logger(__name__)

CONFIG_FILE_NAME = "config.yaml"
ENV_PREFIX = "PYRUNNER_"


class RunnerSettings(BaseModel):
    """Runtime settings for the execution pipeline (config.yaml plus PYRUNNER_* overrides)."""

    python_path: str = Field(
        "python3", description="Interpreter executable, resolved on PATH or absolute."
    )
    timeout_ms: int = Field(60_000, gt=0, description="Wall-clock budget per script run.")
    max_output_file_size_bytes: int = Field(
        10 * 1024 * 1024, gt=0, description="Output files above this size are skipped."
    )
    max_output_files: int = Field(100, gt=0)
    scratch_base_dir: Optional[Path] = Field(
        None, description="Parent for scratch directories; the system temp dir when unset."
    )
    keep_scratch_dir: bool = Field(
        False, description="Leave scratch directories on disk for debugging."
    )
    working_dir: Optional[Path] = None
    parse_output: ParseMode = "smart"
    execution_mode: ExecutionMode = "once"


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for name in RunnerSettings.model_fields:
        env_key = f"{ENV_PREFIX}{name.upper()}"
        if env_key in os.environ:
            overrides[name] = os.environ[env_key]
    return overrides


def load_settings(home_path: Optional[Path] = None) -> RunnerSettings:
    """
    Loads settings from `<home>/config.yaml` when it exists, then applies any
    PYRUNNER_<FIELD> environment variables on top.

    Raises:
        ConfigurationError: If the file is not valid YAML or a value fails validation.
    """
    config_path = (home_path or PYRUNNER_HOME) / CONFIG_FILE_NAME
    data: Dict[str, Any] = {}

    if config_path.exists():
        try:
            loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Could not parse {config_path}: {e}") from e
        if loaded is not None and not isinstance(loaded, dict):
            raise ConfigurationError(
                f"{config_path} must contain a mapping, got {type(loaded).__name__}."
            )
        data.update(loaded or {})
        logger.debug("config.file_loaded", path=str(config_path))

    data.update(_env_overrides())

    try:
        return RunnerSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid runner settings: {e}") from e
