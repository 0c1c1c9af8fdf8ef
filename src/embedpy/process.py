"""Process execution for interpreter checks and environment creation."""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Outcome of a finished process."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""


class ProcessRunner(Protocol):
    """Protocol for running an external command."""

    async def run(self, args: list[str], timeout: float | None = None) -> ProcessResult:
        """Run ``args`` to completion; raise TimeoutError past ``timeout``."""
        ...


class AsyncProcessRunner:
    """ProcessRunner backed by asyncio subprocesses.

    The child is killed when the timeout expires or the awaiting task is
    cancelled, so no process outlives the call.
    """

    async def run(self, args: list[str], timeout: float | None = None) -> ProcessResult:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except (TimeoutError, asyncio.CancelledError):
            process.kill()
            await process.wait()
            raise

        return ProcessResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )


async def smoke_test(runner: ProcessRunner, executable: Path, timeout: float) -> bool:
    """Ask a freshly installed interpreter for its version.

    Advisory only: the environment used here may differ from the caller's
    (shared-library resolution, for one), so every failure is logged as a
    warning and reported as False instead of raised.
    """
    try:
        result = await runner.run([str(executable), "--version"], timeout=timeout)
    except TimeoutError:
        logger.warning(
            "Python executable test timed out after %.1fs. The installation may still be valid.",
            timeout,
        )
        return False
    except Exception as e:
        logger.warning(
            "Could not verify Python executable works: %s. The installation may still be valid.", e
        )
        return False

    if result.exit_code != 0:
        logger.warning(
            "Python executable test failed with exit code %d. "
            "The installation may still be valid but the executable could not be run.",
            result.exit_code,
        )
        return False

    logger.debug("Python executable test successful: %s", (result.stdout or result.stderr).strip())
    return True
