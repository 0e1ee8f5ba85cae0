import functools
import importlib.metadata
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import structlog
import typer
from rich.console import Console
from rich.syntax import Syntax
from rich.traceback import Traceback

from .config import load_settings
from .data.schemas import ExecutionRequest, InputItem, ScriptGenerationConfig
from .engine.composer import compose_export_script
from .engine.credentials import build_env_vars
from .engine.service import PythonFunctionService
from .state import APP_STATE

console = Console()
logger = structlog.get_logger(__name__)


def version_callback(value: bool):
    """Prints the application version and exits."""
    if value:
        try:
            version = importlib.metadata.version("pyrunner")
            console.print(f"pyrunner version: {version}")
        except importlib.metadata.PackageNotFoundError:
            console.print("pyrunner version: unknown (package not installed)")
        raise typer.Exit()


def setup_logging(verbose: bool):
    log_level = logging.DEBUG if verbose else logging.WARNING
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.format_exc_info,
    ]
    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processor=structlog.dev.ConsoleRenderer(),
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)


def handle_exceptions(func):
    """A decorator to catch and format exceptions for all CLI commands."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        error_console = Console(stderr=True)
        try:
            return func(*args, **kwargs)
        except typer.Exit:
            raise
        except Exception as e:
            error_console.print(f"[bold red]Error:[/bold red] {e}")
            if APP_STATE.verbose_mode:
                error_console.print(
                    Traceback.from_exception(
                        type(e), e, e.__traceback__, show_locals=True
                    )
                )
            raise typer.Exit(code=1)

    return wrapper


def _load_items(items_json: Optional[str]) -> List[InputItem]:
    """Accepts a JSON array of items, or a single object treated as one item."""
    if not items_json:
        return []
    data = json.loads(items_json)
    if isinstance(data, dict):
        data = [data]
    return [InputItem.model_validate(item) for item in data]


def _load_env_vars(env_files: Optional[List[Path]], strategy: str):
    contents = [path.read_text(encoding="utf-8") for path in env_files or []]
    return build_env_vars(contents, strategy=strategy)


app = typer.Typer(
    name="pyrunner",
    help="Generate and run self-contained Python scripts from code, items and credentials.",
    no_args_is_help=True,
    rich_markup_mode="markdown",
)


@app.callback()
def main_callback(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose DEBUG logging."
    ),
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the application's version and exit.",
    ),
):
    """Main entry point. Handles global options."""
    APP_STATE.verbose_mode = verbose
    setup_logging(verbose)


@app.command()
@handle_exceptions
def generate(
    code_file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="File containing the user code."
    ),
    items: Optional[str] = typer.Option(
        None, "--items", help="Input items as a JSON array (or a single object)."
    ),
    env_file: Optional[List[Path]] = typer.Option(
        None, "--env-file", help="A .env credential file. Repeat for several sources."
    ),
    merge_strategy: str = typer.Option(
        "last_wins", "--merge-strategy", help="last_wins, first_wins or prefixed."
    ),
    hide_values: bool = typer.Option(
        False, "--hide-values", help="Replace every injected value with a placeholder."
    ),
    no_input_items: bool = typer.Option(
        False, "--no-input-items", help="Omit the legacy `input_items` aggregate."
    ),
    env_vars_dict: bool = typer.Option(
        False, "--env-vars-dict", help="Emit the legacy `env_vars` aggregate."
    ),
    shareable: bool = typer.Option(
        False, "--shareable", help="Render the export variant, without environment variables."
    ),
):
    """Prints the script that would be executed for CODE_FILE."""
    user_code = code_file.read_text(encoding="utf-8")
    input_items = _load_items(items)
    config = ScriptGenerationConfig(
        include_input_items=not no_input_items,
        include_env_vars_dict=env_vars_dict,
        hide_variable_values=hide_values,
    )

    if shareable:
        script = compose_export_script(user_code, items=input_items, config=config)
    else:
        service = PythonFunctionService(settings=load_settings())
        script = service.generate_script(
            user_code,
            items=input_items,
            env_vars=_load_env_vars(env_file, merge_strategy),
            config=config,
        )

    console.print(Syntax(script, "python", line_numbers=APP_STATE.verbose_mode))


@app.command()
@handle_exceptions
def run(
    code_file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="File containing the user code."
    ),
    items: Optional[str] = typer.Option(
        None, "--items", help="Input items as a JSON array (or a single object)."
    ),
    env_file: Optional[List[Path]] = typer.Option(
        None, "--env-file", help="A .env credential file. Repeat for several sources."
    ),
    merge_strategy: str = typer.Option(
        "last_wins", "--merge-strategy", help="last_wins, first_wins or prefixed."
    ),
    timeout: Optional[int] = typer.Option(
        None, "--timeout", help="Timeout in milliseconds."
    ),
    python: Optional[str] = typer.Option(
        None, "--python", help="The interpreter used to run the script."
    ),
    mode: Optional[str] = typer.Option(
        None, "--mode", help="Execution mode: once or per_item."
    ),
    parse: Optional[str] = typer.Option(
        None, "--parse", help="Stdout parsing: none, json, lines or smart."
    ),
    output_dir: bool = typer.Option(
        False, "--output-dir", help="Give the script an `output_dir` and collect its files."
    ),
    export: bool = typer.Option(
        False, "--export", help="Attach the executed script and a metadata document."
    ),
):
    """Runs CODE_FILE with the given items and credentials and prints the result payload."""
    settings = load_settings()
    updates = {}
    if python:
        updates["python_path"] = python
    if timeout:
        updates["timeout_ms"] = timeout
    if updates:
        settings = settings.model_copy(update=updates)

    request = ExecutionRequest(
        user_code=code_file.read_text(encoding="utf-8"),
        items=_load_items(items),
        env_vars=_load_env_vars(env_file, merge_strategy),
        config=ScriptGenerationConfig(enable_output_dir=output_dir),
        execution_mode=mode or settings.execution_mode,
        parse_output=parse or settings.parse_output,
        timeout_ms=settings.timeout_ms,
        export_script=export,
        export_output_json=export,
    )

    service = PythonFunctionService(settings=settings)
    payloads = service.execute(request)

    results = [payload.to_host_item() for payload in payloads]
    console.print_json(data=results if len(results) > 1 else results[0])

    if any(not payload.result.success for payload in payloads):
        raise typer.Exit(code=1)
