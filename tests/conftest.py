import shutil
import sys
from pathlib import Path

import pytest

from pyrunner.config import RunnerSettings


@pytest.fixture
def isolated_pyrunner_home(tmp_path: Path, monkeypatch) -> Path:
    """
    Provides a pristine, isolated, and empty ~/.pyrunner directory for each test
    function, and points PYRUNNER_HOME at it.
    """
    test_home = tmp_path / ".pyrunner"
    if test_home.exists():
        shutil.rmtree(test_home)
    test_home.mkdir()
    monkeypatch.setenv("PYRUNNER_HOME", str(test_home))
    monkeypatch.setattr("pyrunner.config.PYRUNNER_HOME", test_home)

    yield test_home


@pytest.fixture
def runner_settings(tmp_path: Path) -> RunnerSettings:
    """Settings that run scripts with the interpreter running the tests, in a private temp dir."""
    scratch_base = tmp_path / "scratch"
    scratch_base.mkdir()
    return RunnerSettings(
        python_path=sys.executable,
        timeout_ms=20_000,
        scratch_base_dir=scratch_base,
    )
