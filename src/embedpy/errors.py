"""Error types and formatting utilities for embedpy.

Every domain failure raised by the library derives from EmbedPyError and
carries the context a user needs to act on it (requested version, date,
platform) without re-deriving it. The CLI boundary turns these into clean
messages and exit codes.
"""

import subprocess
from datetime import date
from pathlib import Path

import httpx
import yaml
from pydantic import ValidationError

from embedpy import cli_logger, exit_codes


class EmbedPyError(Exception):
    """Base class for embedpy domain errors."""

    exit_code = exit_codes.GENERAL_ERROR


class VersionFormatError(EmbedPyError, ValueError):
    """Raised when a version specification cannot be parsed."""

    exit_code = exit_codes.VERSION_INVALID

    def __init__(self, text: str, reason: str | None = None) -> None:
        """Initialize with the offending version text."""
        self.text = text
        message = f"Invalid version format: '{text}'. Expected major.minor[.patch] (e.g., 3.12 or 3.12.5)"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class PlatformUnsupportedError(EmbedPyError):
    """Raised when the running platform cannot host a standalone build."""

    exit_code = exit_codes.PLATFORM_UNSUPPORTED

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        supported: list[str] | None = None,
    ) -> None:
        """Initialize with the detected platform and the supported set."""
        self.platform = platform
        self.supported = sorted(supported or [])
        if self.supported:
            message += f"\nSupported platforms: {', '.join(self.supported)}"
        super().__init__(message)


class AssetNotFoundError(EmbedPyError):
    """Raised when no release asset satisfies version, date and platform."""

    exit_code = exit_codes.ASSET_NOT_FOUND

    def __init__(
        self,
        version: str,
        build_date: date | None,
        target_triple: str,
        release_tag: str | None = None,
    ) -> None:
        """Initialize with the full request context."""
        self.version = version
        self.build_date = build_date
        self.target_triple = target_triple
        self.release_tag = release_tag
        date_text = build_date.isoformat() if build_date else "latest"
        message = (
            f"No release asset found for Python {version}, "
            f"build date {date_text}, platform {target_triple}"
        )
        if release_tag:
            message += f" (release {release_tag})"
        super().__init__(message)


class ReleaseSourceError(EmbedPyError):
    """Raised when the remote release catalog cannot be queried or downloaded from."""

    exit_code = exit_codes.NETWORK_ERROR

    def __init__(self, message: str, transient: bool = False) -> None:
        """Initialize with whether a retry could plausibly succeed."""
        self.transient = transient
        super().__init__(message)


class ArchiveExtractionError(EmbedPyError):
    """Raised when an archive cannot be decoded or unpacked."""

    exit_code = exit_codes.INSTALLATION_FAILED

    def __init__(self, message: str, transient: bool = True) -> None:
        """Initialize with whether a retry could plausibly succeed."""
        self.transient = transient
        super().__init__(message)


class ExtractionVerificationError(EmbedPyError):
    """Raised when an extracted archive does not contain a usable installation."""

    exit_code = exit_codes.INSTALLATION_FAILED

    def __init__(self, directory: Path, version: str | None = None) -> None:
        """Initialize with the directory that failed verification."""
        self.directory = directory
        self.version = version
        subject = f"Python {version}" if version else "Python installation"
        super().__init__(
            f"Extracted {subject} failed verification at {directory}. "
            "Required files or directories not found; the archive may be corrupted or incomplete."
        )


class MetadataCorruptError(EmbedPyError):
    """Raised when an instance metadata document cannot be parsed."""

    def __init__(self, path: Path, details: str) -> None:
        """Initialize with the document path and parse details."""
        self.path = path
        super().__init__(f"Invalid instance metadata '{path}': {details}")


class InstanceNotFoundError(EmbedPyError):
    """Raised when an operation needs an installed instance that is not in the catalog."""

    exit_code = exit_codes.INSTANCE_NOT_FOUND

    def __init__(self, version: str, build_date: date | None = None) -> None:
        """Initialize with the requested version and build date."""
        self.version = version
        self.build_date = build_date
        date_text = build_date.isoformat() if build_date else "latest"
        super().__init__(f"No installed instance for Python {version} (build date {date_text})")


class VirtualEnvironmentConflictError(EmbedPyError):
    """Raised when creating an environment whose name is taken by a different location."""

    exit_code = exit_codes.ENVIRONMENT_CONFLICT

    def __init__(self, name: str, existing_path: Path, requested_path: Path) -> None:
        """Initialize with both the registered and the requested locations."""
        self.name = name
        self.existing_path = existing_path
        self.requested_path = requested_path
        super().__init__(
            f"Virtual environment '{name}' already exists at {existing_path}; "
            f"refusing to create it at {requested_path}"
        )


class VirtualEnvironmentNotFoundError(EmbedPyError):
    """Raised when a named environment is not registered on an instance."""

    exit_code = exit_codes.ENVIRONMENT_NOT_FOUND

    def __init__(self, name: str, python_version: str | None = None) -> None:
        """Initialize with the environment name and owning instance version."""
        self.name = name
        self.python_version = python_version
        message = f"Virtual environment '{name}' not found"
        if python_version:
            message += f" for Python {python_version}"
        super().__init__(message)


class EnvironmentCreationError(EmbedPyError):
    """Raised when the interpreter fails to create a virtual environment."""

    exit_code = exit_codes.INSTALLATION_FAILED

    def __init__(self, path: Path, exit_code: int, stderr: str) -> None:
        """Initialize with the target path and the interpreter's output."""
        self.path = path
        self.process_exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            f"Failed to create virtual environment at '{path}'. "
            f"Exit code: {exit_code}. Error: {stderr.strip()}"
        )


def format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic ValidationError into clean, user-friendly message.

    Removes Pydantic-specific URLs and technical jargon, producing a message
    suitable for CLI output.

    Args:
        error: The Pydantic ValidationError to format.

    Returns:
        A clean, human-readable error message.
    """
    messages = []

    for err in error.errors():
        loc = ".".join(str(part) for part in err["loc"])
        error_type = err["type"]
        msg = err["msg"]

        if error_type == "missing":
            messages.append(f"'{loc}': field is required")
        elif error_type == "string_type":
            messages.append(f"'{loc}': expected string")
        elif error_type == "list_type":
            messages.append(f"'{loc}': expected list")
        elif error_type in ("int_type", "int_parsing"):
            messages.append(f"'{loc}': expected integer")
        elif error_type in ("float_type", "float_parsing"):
            messages.append(f"'{loc}': expected number")
        elif error_type in ("bool_type", "bool_parsing"):
            messages.append(f"'{loc}': expected boolean")
        elif error_type in ("date_from_datetime_parsing", "date_parsing", "date_type"):
            messages.append(f"'{loc}': expected date (YYYY-MM-DD)")
        else:
            clean_msg = msg.lower()
            messages.append(f"'{loc}': {clean_msg}" if loc else clean_msg)

    if len(messages) == 1:
        return messages[0]

    return "; ".join(messages)


def handle_cli_error(error: Exception) -> int:
    """Handle an unhandled exception at the CLI boundary.

    Formats the error into a clean user-friendly message and returns
    an appropriate exit code. This is the last line of defense: it
    prevents raw tracebacks from reaching the user.

    Args:
        error: The exception to handle.

    Returns:
        An exit code from exit_codes.
    """
    if isinstance(error, EmbedPyError):
        cli_logger.error(str(error))
        return error.exit_code

    if isinstance(error, ValidationError):
        cli_logger.error(f"Invalid configuration: {format_validation_errors(error)}")
        return exit_codes.GENERAL_ERROR

    if isinstance(error, httpx.HTTPError):
        cli_logger.error(f"Network error: {error}")
        return exit_codes.NETWORK_ERROR

    if isinstance(error, subprocess.CalledProcessError):
        cmd_str = " ".join(str(c) for c in error.cmd) if isinstance(error.cmd, list) else str(error.cmd)
        cli_logger.error(f"Command failed (exit code {error.returncode}): {cmd_str}")
        return exit_codes.GENERAL_ERROR

    if isinstance(error, OSError):
        if error.filename:
            cli_logger.error(f"{error.strerror}: {error.filename}")
        else:
            cli_logger.error(str(error))
        return exit_codes.GENERAL_ERROR

    if isinstance(error, yaml.YAMLError):
        cli_logger.error(f"Invalid YAML: {error}")
        return exit_codes.GENERAL_ERROR

    cli_logger.error(f"Unexpected error: {error}")
    return exit_codes.GENERAL_ERROR
