import base64
import json
from pathlib import Path

import pytest
from pytest_mock import MockerFixture

from pyrunner.config import RunnerSettings
from pyrunner.data.schemas import (
    ErrorKind,
    ExecutionRequest,
    ProcessOutcome,
    ScriptGenerationConfig,
)
from pyrunner.engine.service import PythonFunctionService
from pyrunner.environments.base import TIMEOUT_EXIT_CODE, TIMEOUT_MESSAGE
from pyrunner.errors import InterpreterLaunchError, ScriptGenerationError


@pytest.fixture
def service(runner_settings: RunnerSettings) -> PythonFunctionService:
    return PythonFunctionService(settings=runner_settings)


def _binary_item(fields: dict, name: str, content: bytes) -> dict:
    return {
        "json": fields,
        "binary": {
            "attachment": {
                "data": base64.b64encode(content).decode("ascii"),
                "fileName": name,
                "mimeType": "text/plain",
            }
        },
    }


def test_run_script_parses_output_and_removes_temp_file(
    service: PythonFunctionService, mocker: MockerFixture
):
    execute = mocker.spy(service.environment, "execute")
    script = service.generate_script(
        "print(json.dumps({'total': sum(item['n'] for item in input_items)}))",
        items=[{"n": 1}, {"n": 2}],
    )

    result = service.run_script(script)

    assert result.success is True
    assert result.parsed_stdout == {"total": 3}
    assert result.parsing_success is True
    assert result.error is None
    script_path = execute.call_args.args[0]
    assert script_path.suffix == ".py"
    assert not script_path.exists()


def test_run_script_classifies_runtime_errors(service: PythonFunctionService):
    result = service.run_script(service.generate_script("import numpy_does_not_exist_xyz"))

    assert result.success is False
    assert result.exit_code == 1
    assert result.error.kind == ErrorKind.IMPORT
    assert result.error.missing_modules == ["numpy_does_not_exist_xyz"]


def test_run_script_reports_timeouts(runner_settings: RunnerSettings, mocker: MockerFixture):
    environment = mocker.Mock()
    environment.execute.return_value = ProcessOutcome(
        exit_code=TIMEOUT_EXIT_CODE, stdout="partial\n", stderr=TIMEOUT_MESSAGE, timed_out=True
    )
    service = PythonFunctionService(settings=runner_settings, environment=environment)

    result = service.run_script("print('partial')", timeout_ms=10)

    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert result.stderr == TIMEOUT_MESSAGE
    assert result.timed_out is True
    assert result.error.kind == ErrorKind.TIMEOUT
    assert environment.execute.call_args.args[1] == 10


def test_execute_collects_output_files_and_removes_scratch_dir(
    service: PythonFunctionService, runner_settings: RunnerSettings
):
    """
    Integration Test: A script writes into output_dir; the files come back as
    records and the scratch directory is gone afterwards.
    """
    request = ExecutionRequest(
        user_code=(
            "import os\n"
            "with open(os.path.join(output_dir, 'report.txt'), 'w') as f:\n"
            "    f.write(f'{name} has {count} items')\n"
            "print(json.dumps({'written': True}))\n"
        ),
        items=[{"name": "Ada", "count": 3}],
        config=ScriptGenerationConfig(enable_output_dir=True),
    )

    (payload,) = service.execute(request)

    assert payload.result.success, payload.result.stderr
    assert payload.parsed_stdout == {"written": True}
    assert payload.input_items_count == 1
    (record,) = payload.output_files
    assert record.binary_key == "output_report.txt"
    assert base64.b64decode(record.base64_data) == b"Ada has 3 items"
    assert not Path(payload.output_directory).exists()
    assert list(runner_settings.scratch_base_dir.iterdir()) == []


def test_execute_keeps_scratch_dir_when_configured(runner_settings: RunnerSettings):
    settings = runner_settings.model_copy(update={"keep_scratch_dir": True})
    service = PythonFunctionService(settings=settings)
    request = ExecutionRequest(
        user_code="print(output_dir)", config=ScriptGenerationConfig(enable_output_dir=True)
    )

    (payload,) = service.execute(request)

    assert Path(payload.output_directory).is_dir()


def test_execute_per_item_runs_each_item_separately(service: PythonFunctionService):
    request = ExecutionRequest(
        user_code="print(json.dumps({'id': id, 'seen': len(input_items)}))",
        items=[{"id": 1}, {"id": 2}, {"id": 3}],
        execution_mode="per_item",
    )

    payloads = service.execute(request)

    assert [p.item_index for p in payloads] == [0, 1, 2]
    assert [p.parsed_stdout for p in payloads] == [
        {"id": 1, "seen": 1},
        {"id": 2, "seen": 1},
        {"id": 3, "seen": 1},
    ]


def test_execute_once_with_no_items(service: PythonFunctionService):
    (payload,) = service.execute(ExecutionRequest(user_code="print(len(input_items))"))

    assert payload.parsed_stdout == 0
    assert payload.item_index is None


def test_execute_materializes_input_files_and_cleans_them_up(service: PythonFunctionService):
    request = ExecutionRequest(
        user_code=(
            "with open(input_files[0]['temp_path']) as f:\n"
            "    content = f.read()\n"
            "print(json.dumps({'content': content, 'path': input_files[0]['temp_path']}))\n"
        ),
        items=[_binary_item({"id": 1}, "notes.txt", b"from upstream")],
        config=ScriptGenerationConfig(materialize_input_files=True),
    )

    (payload,) = service.execute(request)

    assert payload.parsed_stdout["content"] == "from upstream"
    assert not Path(payload.parsed_stdout["path"]).exists()


def test_execute_injects_env_vars(service: PythonFunctionService):
    request = ExecutionRequest(
        user_code="print(json.dumps([API_KEY, env_vars['API_KEY']]))",
        env_vars={"API_KEY": "secret123"},
        config=ScriptGenerationConfig(include_env_vars_dict=True),
    )

    (payload,) = service.execute(request)

    assert payload.parsed_stdout == ["secret123", "secret123"]


def test_execute_attaches_export_artifacts(service: PythonFunctionService):
    request = ExecutionRequest(
        user_code="print(API_KEY == 'secret123')",
        env_vars={"API_KEY": "secret123"},
        config=ScriptGenerationConfig(hide_variable_values=True),
        export_script=True,
        export_output_json=True,
    )

    (payload,) = service.execute(request)

    # Redaction only affects the exported copy; the executed script saw real values.
    assert payload.result.stdout.strip() == "True"
    script_artifact, metadata_artifact = payload.export_artifacts
    assert script_artifact.file_name.startswith("python_script_")
    exported = script_artifact.content().decode("utf-8")
    assert 'API_KEY = "***hidden***"' in exported
    assert "secret123" not in exported
    document = json.loads(metadata_artifact.content())
    assert document["execution_results"]["exit_code"] == 0
    assert set(payload.to_host_item()["binary"]) == {
        script_artifact.file_name,
        metadata_artifact.file_name,
    }


def test_generation_errors_propagate_before_spawning(
    service: PythonFunctionService, mocker: MockerFixture
):
    execute = mocker.spy(service.environment, "execute")

    with pytest.raises(ScriptGenerationError):
        service.execute(ExecutionRequest(user_code="from __future__ import nonsense"))

    execute.assert_not_called()


def test_launch_errors_propagate(runner_settings: RunnerSettings, tmp_path: Path):
    settings = runner_settings.model_copy(
        update={"python_path": str(tmp_path / "missing-python")}
    )
    service = PythonFunctionService(settings=settings)

    with pytest.raises(InterpreterLaunchError):
        service.execute(ExecutionRequest(user_code="print(1)"))


def test_per_item_input_files_keep_their_original_item_index(service: PythonFunctionService):
    request = ExecutionRequest(
        user_code="print(json.dumps([f['item_index'] for f in input_files]))",
        items=[
            _binary_item({"id": 1}, "first.txt", b"one"),
            _binary_item({"id": 2}, "second.txt", b"two"),
        ],
        execution_mode="per_item",
    )

    payloads = service.execute(request)

    assert [p.parsed_stdout for p in payloads] == [[0], [1]]


def test_unparseable_deep_output_is_still_a_successful_run(service: PythonFunctionService):
    result = service.run_script(service.generate_script("print('[' * 100000)"))

    assert result.success is True
    assert result.parsing_success is False
    assert result.parsed_stdout.strip() == "[" * 100_000


def test_errors_report_the_user_code_line(service: PythonFunctionService):
    """
    Integration Test: A failure inside a library call is located in the user
    code, counted from the first user line.
    """
    result = service.run_script(
        service.generate_script("data = '{not json'\n\njson.loads(data)\n", items=[{"a": 1}])
    )

    assert result.error.error_type == "JSONDecodeError"
    assert result.error.user_line_number == 3
    assert result.error.line_number > 3
