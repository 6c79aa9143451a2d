import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from coderunner.config.environment import EngineSettings, Environment
from coderunner.config.logging_config import configure_logging, get_logger
from coderunner.runners.backends import SUPPORTED_BACKENDS
from coderunner.runners.classifier import Outcome
from coderunner.runners.engine import ExecutionEngine, build_engine, build_registry
from coderunner.runners.errors import ExecutionError, UnsupportedLanguageError

console = Console(stderr=True)
log = get_logger(__name__)

# Same convention as coreutils `timeout`
TIMED_OUT_EXIT_CODE = 124


def _settings(backend: Optional[str]) -> EngineSettings:
    settings = Environment.get_engine_settings()
    if backend:
        settings = settings.model_copy(update={"backend": backend})
    return settings


def _guess_language(engine: ExecutionEngine, path: Path) -> Optional[str]:
    """Pick the profile whose staged file shares the source file's suffix."""
    for language_id, profile in engine.registry.items():
        if Path(profile.staged_file_name).suffix == path.suffix:
            return language_id
    return None


backend_option = click.option(
    "--backend",
    "-b",
    type=click.Choice(sorted(SUPPORTED_BACKENDS)),
    default=None,
    help="Override the configured isolation backend.",
)


@click.group()
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR).")
def cli(log_level: Optional[str]):
    """coderunner - run untrusted snippets in isolated, resource-bounded sandboxes."""
    configure_logging(log_level or Environment.get_log_level())


@cli.command("run")
@click.argument("source", type=click.File("r", encoding="utf-8"))
@click.option("--language", "-l", default=None, help="Language id. Guessed from the file suffix if omitted.")
@click.option("--timeout", "-t", type=float, default=None, help="Deadline in seconds.")
@backend_option
def run(source, language: Optional[str], timeout: Optional[float], backend: Optional[str]):
    """Run SOURCE (a file, or - for stdin) and print its output."""
    settings = _settings(backend)
    engine = build_engine(settings)

    if language is None:
        language = _guess_language(engine, Path(source.name))
        if language is None:
            raise click.UsageError("could not guess the language; pass --language")

    code = source.read()
    try:
        result = engine.execute(code, language, timeout or settings.timeout_seconds)
    except UnsupportedLanguageError as e:
        raise click.BadParameter(str(e), param_hint="--language") from e
    except ExecutionError as e:
        console.print(f"[red]✗ {e}[/]")
        sys.exit(1)

    click.echo(result.stdout, nl=False)
    click.echo(result.stderr, nl=False, err=True)

    if result.stdout_truncated or result.stderr_truncated:
        console.print("[yellow]output truncated[/]")
    if result.outcome is Outcome.TIMED_OUT:
        console.print(f"[yellow]{result.message}[/]")
        sys.exit(TIMED_OUT_EXIT_CODE)
    if result.outcome is Outcome.RUNTIME_FAILURE:
        console.print(f"[red]{result.message}[/]")
        sys.exit(result.exit_code if result.exit_code and result.exit_code > 0 else 1)


@cli.command("languages")
def languages():
    """List registered language profiles."""
    registry = build_registry(Environment.get_engine_settings())
    table = Table(title="Language profiles")
    table.add_column("Language", style="cyan")
    table.add_column("Image")
    table.add_column("File")
    table.add_column("Command")
    for language_id, profile in registry.items():
        table.add_row(
            language_id,
            profile.runtime_identity,
            profile.staged_file_name,
            " ".join(profile.invocation_command),
        )
    Console().print(table)


@cli.command("doctor")
@backend_option
def doctor(backend: Optional[str]):
    """Check that the isolation backend is usable."""
    settings = _settings(backend)
    engine = build_engine(settings)
    healthy, detail = engine.backend.check_health()
    if healthy:
        console.print(f"[green]✓ {engine.backend.name}: {detail}[/]")
    else:
        console.print(f"[red]✗ {engine.backend.name}: {detail}[/]")
        sys.exit(1)
    if not engine.backend.isolated:
        console.print(f"[yellow]! {engine.backend.name} provides no isolation[/]")


@cli.command("prepare")
@backend_option
def prepare(backend: Optional[str]):
    """Pull the runtime images of every registered language."""
    engine = build_engine(_settings(backend))
    try:
        engine.backend.prepare(profile for _, profile in engine.registry.items())
    except ExecutionError as e:
        console.print(f"[red]✗ {e}[/]")
        sys.exit(1)
    console.print(f"[green]✓ ready: {', '.join(engine.registry.languages())}[/]")


@cli.group()
def settings():
    """Commands for managing coderunner settings."""
    pass


@settings.command("show")
def show_settings():
    """Show every setting with its resolved value."""
    from coderunner.config.settings import SETTINGS_FILE, get_settings_registry, get_system_file_path

    table = Table(title="Settings")
    table.add_column("Setting", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    table.add_column("Description", style="yellow")

    for setting in get_settings_registry():
        value = Environment.get(setting.env_var)
        table.add_row(setting.env_var, "" if value is None else str(value), setting.description)

    Console().print(table)
    settings_file = get_system_file_path(SETTINGS_FILE)
    if Environment.has_settings():
        console.print(f"settings file: {settings_file}")
    else:
        console.print(f"no settings file at {settings_file}")


@settings.command("set")
@click.argument("key")
@click.argument("value")
def set_setting(key: str, value: str):
    """Store KEY=VALUE in the settings file."""
    from coderunner.config.settings import get_settings_registry, load_settings, save_settings

    registry = {s.env_var: s for s in get_settings_registry()}
    setting = registry.get(key)
    if setting is None:
        raise click.BadParameter(f"unknown setting {key}", param_hint="KEY")
    if setting.enum and value not in setting.enum:
        raise click.BadParameter(
            f"must be one of {', '.join(setting.enum)}", param_hint="VALUE"
        )

    data = load_settings()
    data[key] = value
    save_settings(data)
    Environment.reset()
    console.print(f"[green]✓ {key} = {value}[/]")


@cli.command("serve")
@click.option("--host", default="127.0.0.1", help="Host address to serve on.")
@click.option("--port", default=4000, type=int, help="Port to serve on.")
@click.option("--reload", is_flag=True, help="Reload on code changes.")
def serve(host: str, port: int, reload: bool):
    """Serve the HTTP run endpoint."""
    from coderunner.api.server import run_server

    run_server(host=host, port=port, reload=reload)


if __name__ == "__main__":
    cli()
