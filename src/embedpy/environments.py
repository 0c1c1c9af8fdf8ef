"""Named virtual environments derived from an installed instance.

Environments live under the instance (``venvs/<name>``) unless created
with an external path. Creating and updating have different collision
rules: ``InstanceRecord.set_environment`` replaces an entry outright,
while ``create_environment`` refuses to move an existing name to a
different location.
"""

import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path

from embedpy.archive import python_executable
from embedpy.errors import (
    EnvironmentCreationError,
    VirtualEnvironmentConflictError,
    VirtualEnvironmentNotFoundError,
)
from embedpy.instance_schema import EnvironmentRecord, InstanceRecord, save_instance_record
from embedpy.process import ProcessRunner

logger = logging.getLogger(__name__)


def is_valid_environment(path: Path) -> bool:
    """Check whether ``path`` holds a virtual environment interpreter."""
    if os.name == "nt":
        return (path / "Scripts" / "python.exe").exists()
    return (path / "bin" / "python3").exists()


def validate_environment_name(name: str) -> None:
    """Require a plain, non-empty directory name.

    Raises:
        ValueError: If the name is empty or contains path components.
    """
    if not name or not name.strip():
        msg = "Virtual environment name cannot be empty"
        raise ValueError(msg)
    if name in (".", "..") or "/" in name or "\\" in name:
        msg = f"Invalid virtual environment name: '{name}'"
        raise ValueError(msg)


def _absolute(path: Path | str) -> Path:
    path = Path(path).expanduser()
    return path if path.is_absolute() else Path.cwd() / path


def _same_location(a: Path, b: Path) -> bool:
    return os.path.normcase(os.path.abspath(a)) == os.path.normcase(os.path.abspath(b))


async def create_environment(
    record: InstanceRecord,
    name: str,
    runner: ProcessRunner,
    external_path: Path | str | None = None,
    recreate: bool = False,
) -> Path:
    """Create (or reuse) a named virtual environment for an instance.

    Args:
        record: Instance whose interpreter creates the environment.
        name: Environment name, unique per instance ignoring case.
        runner: Runs ``python -m venv``.
        external_path: Location outside the instance tree, if any.
        recreate: Rebuild the environment even if a valid one exists.

    Returns:
        Path to the environment directory.

    Raises:
        ValueError: If the name is invalid.
        VirtualEnvironmentConflictError: If the name is registered at a different location.
        EnvironmentCreationError: If the interpreter fails to create it.
    """
    validate_environment_name(name)

    existing = record.get_environment(name)
    if existing is not None:
        name = existing.name

    default_path = record.default_environment_path(name)
    requested = _absolute(external_path) if external_path else default_path

    if existing is not None:
        existing_path = existing.resolved_path(default_path)
        if not _same_location(existing_path, requested):
            raise VirtualEnvironmentConflictError(name, existing_path, requested)
        if is_valid_environment(requested) and not recreate:
            logger.info("Reusing virtual environment '%s' at %s", name, requested)
            return requested

    if is_valid_environment(requested) and not recreate:
        logger.info("Registering existing virtual environment at %s", requested)
    else:
        await _run_venv(record, requested, runner, clear=recreate)

    record.set_environment(
        EnvironmentRecord(
            name=name,
            external_path=str(requested) if external_path else None,
            created_at=datetime.now(timezone.utc),
        )
    )
    save_instance_record(record)
    return requested


async def _run_venv(record: InstanceRecord, path: Path, runner: ProcessRunner, clear: bool) -> None:
    executable = python_executable(record.directory) if record.directory else None
    if executable is None:
        raise EnvironmentCreationError(
            path, -1, f"Python executable not found for Python {record.python_version}"
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    args = [str(executable), "-m", "venv"]
    if clear:
        args.append("--clear")
    args.append(str(path))

    logger.info("Creating virtual environment at %s", path)
    result = await runner.run(args)
    if result.exit_code != 0:
        raise EnvironmentCreationError(path, result.exit_code, result.stderr or result.stdout)


def delete_environment(record: InstanceRecord, name: str, remove_files: bool = True) -> bool:
    """Unregister a virtual environment, optionally deleting its files.

    With ``remove_files=False`` only the registry entry goes; the
    directory (external or not) is left in place.

    Returns:
        True if a directory was deleted.

    Raises:
        VirtualEnvironmentNotFoundError: If the name is not registered.
    """
    if record.get_environment(name) is None:
        raise VirtualEnvironmentNotFoundError(name, record.python_version)

    path = record.resolve_environment_path(name)
    deleted = False
    if remove_files and path.exists():
        shutil.rmtree(path)
        deleted = True
        logger.info("Deleted virtual environment files at %s", path)

    record.remove_environment(name)
    save_instance_record(record)
    return deleted


def list_environments(record: InstanceRecord) -> list[EnvironmentRecord]:
    return record.list_environments()
