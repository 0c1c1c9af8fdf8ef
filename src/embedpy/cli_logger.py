"""CLI output utilities for consistent messaging."""

import logging

from rich.console import Console
from rich.logging import RichHandler

_console = Console()
_err_console = Console(stderr=True)


def success(message: str) -> None:
    """Print a success message with green checkmark."""
    _console.print(f"[green]✓[/green] {message}")


def error(message: str) -> None:
    """Print an error message with red X."""
    _console.print(f"[red]✗[/red] {message}")


def warning(message: str) -> None:
    """Print a warning message with yellow exclamation."""
    _console.print(f"[yellow]![/yellow] {message}")


def info(message: str) -> None:
    """Print an info message (no prefix)."""
    _console.print(message)


def dim(message: str) -> None:
    """Print a dimmed message (for secondary info)."""
    _console.print(f"[dim]{message}[/dim]")


def configure_logging(verbose: bool = False) -> None:
    """Route the embedpy library loggers to stderr through rich.

    Library modules only call ``logging.getLogger(__name__)``; this is the
    single place a handler gets attached. Safe to call more than once.
    """
    logger = logging.getLogger("embedpy")
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        logger.addHandler(
            RichHandler(console=_err_console, show_path=False, rich_tracebacks=False)
        )
    logger.propagate = False
