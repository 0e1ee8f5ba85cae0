import secrets
import shutil
import string
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

import structlog

logger = structlog.get_logger(__name__)

SCRATCH_DIR_LABEL = "pyrunner_output"
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_SUFFIX_LENGTH = 6


def _scratch_dir_name() -> str:
    timestamp_ms = int(time.time() * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return f"{SCRATCH_DIR_LABEL}_{timestamp_ms}_{suffix}"


def create_scratch_dir(base_dir: Optional[Union[str, Path]] = None) -> Path:
    """
    Creates a uniquely named directory for one execution and returns its
    absolute path. Defaults to the system temp directory as the parent.
    """
    parent = Path(base_dir) if base_dir else Path(tempfile.gettempdir())
    path = (parent / _scratch_dir_name()).resolve()
    path.mkdir(parents=True, exist_ok=True)
    logger.debug("scratch_manager.created", path=str(path))
    return path


def remove_scratch_dir(path: Union[str, Path]) -> None:
    """Recursively deletes a scratch directory. Never raises."""
    path = Path(path)
    try:
        shutil.rmtree(path)
        logger.debug("scratch_manager.removed", path=str(path))
    except FileNotFoundError:
        logger.info("scratch_manager.already_removed", path=str(path))
    except OSError as e:
        logger.warning("scratch_manager.remove_failed", path=str(path), error=str(e))


@contextmanager
def scratch_directory(
    base_dir: Optional[Union[str, Path]] = None, keep: bool = False
) -> Iterator[Path]:
    """Yields a fresh scratch directory and removes it afterwards unless `keep` is set."""
    path = create_scratch_dir(base_dir)
    try:
        yield path
    finally:
        if keep:
            logger.info("scratch_manager.kept", path=str(path))
        else:
            remove_scratch_dir(path)
