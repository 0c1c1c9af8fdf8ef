"""embedpy CLI entry point."""

import asyncio
import sys
from collections.abc import Awaitable, Callable
from datetime import date
from pathlib import Path
from typing import Annotated, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from embedpy import __version__, cli_logger, exit_codes
from embedpy.errors import EmbedPyError, handle_cli_error
from embedpy.home import get_embedpy_home
from embedpy.instance_schema import InstanceRecord
from embedpy.manager import InstanceManager
from embedpy.version import parse_version

T = TypeVar("T")

app = typer.Typer(
    name="embedpy",
    help="Acquire and manage standalone Python interpreter instances.",
    no_args_is_help=True,
)

venv_app = typer.Typer(help="Manage named virtual environments of an instance.", no_args_is_help=True)
app.add_typer(venv_app, name="venv")

console = Console()


def _manager() -> InstanceManager:
    """Build an InstanceManager rooted at embedpy Home."""
    return InstanceManager(get_embedpy_home())


def _parse_build_date(value: str | None) -> date | None:
    """Parse a --build-date option.

    Raises:
        typer.Exit: With INVALID_ARGS if the date is malformed.
    """
    if value is None:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        cli_logger.error(f"Invalid build date '{value}'. Expected YYYY-MM-DD.")
        raise typer.Exit(exit_codes.INVALID_ARGS) from None


def _validate_version(value: str) -> str:
    try:
        parse_version(value)
    except EmbedPyError as e:
        cli_logger.error(str(e))
        raise typer.Exit(e.exit_code) from None
    return value


def _run_with_manager(operation: Callable[[InstanceManager], Awaitable[T]]) -> T:
    """Run an async manager operation, mapping domain errors to exit codes."""

    async def runner() -> T:
        async with _manager() as manager:
            return await operation(manager)

    try:
        return asyncio.run(runner())
    except EmbedPyError as e:
        cli_logger.error(str(e))
        raise typer.Exit(e.exit_code) from None


def _call_manager(operation: Callable[[InstanceManager], T]) -> T:
    """Synchronous counterpart of _run_with_manager."""

    async def wrapped(manager: InstanceManager) -> T:
        return operation(manager)

    return _run_with_manager(wrapped)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"embedpy {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show embedpy version and exit.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging."),
) -> None:
    """Acquire and manage standalone Python interpreter instances."""
    cli_logger.configure_logging(verbose)


@app.command()
def install(
    version: Annotated[
        str,
        typer.Argument(help="Python version, exact (3.12.5) or partial (3.12)."),
    ],
    build_date: Annotated[
        str | None,
        typer.Option("--build-date", help="Minimum build date (YYYY-MM-DD). Defaults to latest."),
    ] = None,
) -> None:
    """Install a Python instance, or reuse a matching installed one."""
    version = _validate_version(version)
    minimum = _parse_build_date(build_date)

    record = _run_with_manager(lambda m: m.get_or_create_instance(version, minimum))
    cli_logger.success(
        f"Python {record.python_version} (build {record.build_date.isoformat()}) ready"
    )
    cli_logger.dim(f"  {record.directory}")


@app.command("list")
def list_instances() -> None:
    """List installed Python instances."""
    records = _call_manager(lambda m: m.list_instances())

    if not records:
        cli_logger.dim("No Python instances installed.")
        raise typer.Exit(exit_codes.SUCCESS)

    _print_instance_table(records)


@app.command()
def remove(
    version: Annotated[str, typer.Argument(help="Python version to remove.")],
    build_date: Annotated[
        str | None,
        typer.Option("--build-date", help="Build date (YYYY-MM-DD). Defaults to the latest build."),
    ] = None,
) -> None:
    """Remove an installed Python instance and its default-located environments."""
    version = _validate_version(version)
    exact_date = _parse_build_date(build_date)

    removed = _call_manager(lambda m: m.delete_instance(version, exact_date))
    if removed:
        cli_logger.success(f"Removed Python {version}")
    else:
        cli_logger.warning(f"No installed instance removed for Python {version}")


@app.command()
def available(
    tag: Annotated[
        str | None,
        typer.Option("--tag", help="Release tag to inspect. Defaults to the latest release."),
    ] = None,
    latest: Annotated[
        bool,
        typer.Option("--latest", help="Only print the newest version of the latest release."),
    ] = False,
) -> None:
    """List Python versions offered by a release."""
    if latest:
        newest = _run_with_manager(lambda m: m.get_latest_python_version())
        if newest is None:
            cli_logger.dim("No versions available.")
        else:
            cli_logger.info(newest)
        raise typer.Exit(exit_codes.SUCCESS)

    versions = _run_with_manager(lambda m: m.list_available_versions(tag))

    if not versions:
        cli_logger.dim("No versions available.")
        raise typer.Exit(exit_codes.SUCCESS)

    for version in versions:
        cli_logger.info(version)


@app.command()
def doctor() -> None:
    """Check the platform, embedpy Home, network access and installed instances."""

    async def collect(manager: InstanceManager) -> tuple[dict, list[str]]:
        return manager.get_system_requirements(), await manager.diagnose_issues()

    requirements, issues = _run_with_manager(collect)

    for key, value in requirements.items():
        cli_logger.dim(f"{key}: {value}")

    if not issues:
        cli_logger.success("No issues found")
        return

    for issue in issues:
        cli_logger.warning(issue)
    raise typer.Exit(exit_codes.GENERAL_ERROR)


@venv_app.command("create")
def venv_create(
    version: Annotated[str, typer.Argument(help="Python version of the owning instance.")],
    name: Annotated[str, typer.Argument(help="Environment name.")],
    path: Annotated[
        Path | None,
        typer.Option("--path", help="Create the environment at this external location."),
    ] = None,
    recreate: Annotated[
        bool,
        typer.Option("--recreate", help="Rebuild the environment even if it already exists."),
    ] = False,
    build_date: Annotated[
        str | None,
        typer.Option("--build-date", help="Build date of the owning instance (YYYY-MM-DD)."),
    ] = None,
) -> None:
    """Create a named virtual environment for an installed instance."""
    version = _validate_version(version)
    exact_date = _parse_build_date(build_date)

    try:
        env_path = _run_with_manager(
            lambda m: m.create_environment(
                version, name, build_date=exact_date, external_path=path, recreate=recreate
            )
        )
    except ValueError as e:
        cli_logger.error(str(e))
        raise typer.Exit(exit_codes.INVALID_ARGS) from None

    cli_logger.success(f"Virtual environment '{name}' ready")
    cli_logger.dim(f"  {env_path}")


@venv_app.command("delete")
def venv_delete(
    version: Annotated[str, typer.Argument(help="Python version of the owning instance.")],
    name: Annotated[str, typer.Argument(help="Environment name.")],
    keep_files: Annotated[
        bool,
        typer.Option("--keep-files", help="Only unregister; leave the environment's files on disk."),
    ] = False,
    build_date: Annotated[
        str | None,
        typer.Option("--build-date", help="Build date of the owning instance (YYYY-MM-DD)."),
    ] = None,
) -> None:
    """Delete a named virtual environment."""
    version = _validate_version(version)
    exact_date = _parse_build_date(build_date)

    _call_manager(
        lambda m: m.delete_environment(
            version, name, build_date=exact_date, remove_files=not keep_files
        )
    )

    if keep_files:
        cli_logger.success(f"Unregistered virtual environment '{name}' (files kept)")
    else:
        cli_logger.success(f"Deleted virtual environment '{name}'")


@venv_app.command("list")
def venv_list(
    version: Annotated[str, typer.Argument(help="Python version of the owning instance.")],
    build_date: Annotated[
        str | None,
        typer.Option("--build-date", help="Build date of the owning instance (YYYY-MM-DD)."),
    ] = None,
) -> None:
    """List the virtual environments of an installed instance."""
    version = _validate_version(version)
    exact_date = _parse_build_date(build_date)

    def collect(manager: InstanceManager) -> list[tuple[str, Path, bool]]:
        record = manager.require_instance(version, exact_date)
        return [
            (env.name, record.resolve_environment_path(env.name), env.is_external)
            for env in record.list_environments()
        ]

    entries = _call_manager(collect)

    if not entries:
        cli_logger.dim("No virtual environments.")
        raise typer.Exit(exit_codes.SUCCESS)

    table = Table(show_header=True, header_style="bold")
    table.add_column("NAME", style="cyan")
    table.add_column("PATH")
    table.add_column("LOCATION")
    for env_name, env_path, external in entries:
        table.add_row(env_name, str(env_path), "external" if external else "default")
    console.print(table)


def _print_instance_table(records: list[InstanceRecord]) -> None:
    """Print a table of installed instances."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("VERSION", style="cyan")
    table.add_column("BUILD DATE")
    table.add_column("LATEST")
    table.add_column("ENVIRONMENTS")
    table.add_column("PATH")

    for record in records:
        table.add_row(
            record.python_version,
            record.build_date.isoformat(),
            "[green]yes[/green]" if record.was_latest_build else "-",
            str(len(record.environments)),
            str(record.directory),
        )

    console.print(table)


def main_cli() -> None:
    """CLI entry point with top-level exception handling.

    Wraps the Typer app to catch any unhandled exceptions and format them
    as clean error messages instead of raw tracebacks.
    """
    try:
        app()
    except Exception as e:
        sys.exit(handle_cli_error(e))


if __name__ == "__main__":
    main_cli()
