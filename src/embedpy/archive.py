"""Archive extraction and installation layout checks.

Handles the archive formats standalone builds ship in and locates the
installation root inside an extracted tree, which some archives nest one
or two levels deep (install-only archives unpack into ``python/``).
"""

import asyncio
import logging
import os
import shutil
import tarfile
import threading
import zipfile
from collections.abc import Callable, Iterator
from pathlib import Path

from embedpy.errors import ArchiveExtractionError

logger = logging.getLogger(__name__)

_TAR_MODES = {
    ".tar.gz": "r:gz",
    ".tgz": "r:gz",
    ".tar.bz2": "r:bz2",
    ".tar.xz": "r:xz",
    ".tar": "r:",
}


def _is_windows() -> bool:
    return os.name == "nt"


def _extract_tar(archive: Path, dest: Path, mode: str, stop: threading.Event) -> None:
    with tarfile.open(archive, mode) as tar:
        for member in tar:
            if stop.is_set():
                return
            tar.extract(member, dest, filter="data")


def _extract_zip(archive: Path, dest: Path, stop: threading.Event) -> None:
    with zipfile.ZipFile(archive) as zf:
        for member in zf.infolist():
            if stop.is_set():
                return
            zf.extract(member, dest)


async def _run_worker(worker: Callable[..., None], *args: object) -> None:
    """Run a blocking extraction worker in a thread.

    A thread cannot be cancelled, so on cancellation the worker is told to
    stop and awaited before CancelledError propagates. Nothing writes to
    the destination once this coroutine has returned or raised.
    """
    stop = threading.Event()
    future = asyncio.ensure_future(asyncio.to_thread(worker, *args, stop))
    try:
        await asyncio.shield(future)
    except asyncio.CancelledError:
        stop.set()
        while not future.done():
            try:
                await asyncio.wait([future])
            except asyncio.CancelledError:
                continue
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Extraction worker failed after cancellation: %s", future.exception())
        raise


async def _extract_tar_zst(archive: Path, dest: Path) -> None:
    """Extract .tar.zst with the system tar and zstd."""
    if shutil.which("tar") is None or shutil.which("zstd") is None:
        msg = (
            "Extraction of .tar.zst archives requires the tar and zstd system tools. "
            "Install them or use an install-only (.tar.gz) archive."
        )
        raise ArchiveExtractionError(msg, transient=False)

    process = await asyncio.create_subprocess_exec(
        "tar", "-xf", str(archive), "-C", str(dest), "--use-compress-program=zstd",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await process.communicate()
    except asyncio.CancelledError:
        process.kill()
        await process.wait()
        raise

    if process.returncode != 0:
        msg = (
            f"Archive extraction failed with exit code {process.returncode}: "
            f"{stderr.decode(errors='replace').strip()}"
        )
        raise ArchiveExtractionError(msg)


class ArchiveExtractor:
    """Archive collaborator: extract archives and check installation layouts."""

    async def extract(self, archive: Path, dest: Path) -> None:
        """Extract ``archive`` into ``dest``, creating it if needed.

        Cancellation is honoured between archive members; when it
        propagates, extraction has stopped writing to ``dest``.

        Raises:
            ArchiveExtractionError: If the format is unsupported or decoding
                fails. Only decoding and I/O failures are marked transient.
        """
        if not archive.is_file():
            msg = f"Archive file not found: {archive}"
            raise ArchiveExtractionError(msg, transient=False)

        name = archive.name.lower()
        tar_mode = next((mode for suffix, mode in _TAR_MODES.items() if name.endswith(suffix)), None)
        if not name.endswith((".tar.zst", ".zip")) and tar_mode is None:
            msg = f"Unsupported archive format: {archive.name}"
            raise ArchiveExtractionError(msg, transient=False)

        dest.mkdir(parents=True, exist_ok=True)
        try:
            if name.endswith(".tar.zst"):
                await _extract_tar_zst(archive, dest)
            elif name.endswith(".zip"):
                await _run_worker(_extract_zip, archive, dest)
            else:
                await _run_worker(_extract_tar, archive, dest, tar_mode)
        except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
            msg = f"Failed to extract archive {archive} to {dest}: {e}"
            raise ArchiveExtractionError(msg) from e

    def verify_layout(self, directory: Path) -> bool:
        return verify_layout(directory)


def verify_layout(directory: Path) -> bool:
    """Check that a directory holds a usable installation.

    Windows needs ``python.exe``; other platforms need ``bin/python3`` and
    the ``lib/`` standard library directory.
    """
    if not directory.is_dir():
        return False

    if _is_windows():
        return (directory / "python.exe").is_file()

    return (directory / "bin" / "python3").exists() and (directory / "lib").is_dir()


def _subdirectories(directory: Path) -> list[Path]:
    return sorted(p for p in directory.iterdir() if p.is_dir())


def candidate_roots(directory: Path) -> Iterator[Path]:
    """Yield the directory, then its children, then its grandchildren."""
    yield directory
    children = _subdirectories(directory)
    yield from children
    for child in children:
        yield from _subdirectories(child)


def find_installation_root(directory: Path) -> Path:
    """Locate the installation root within an extracted tree.

    Falls back to ``directory`` itself when no level verifies; callers
    verify the result and fail there.
    """
    for candidate in candidate_roots(directory):
        if verify_layout(candidate):
            return candidate

    logger.warning(
        "Could not find Python installation in extracted directory; using root: %s", directory
    )
    return directory


def python_executable(root: Path) -> Path | None:
    """Path to the interpreter inside an installation root, if present."""
    exe = root / "python.exe" if _is_windows() else root / "bin" / "python3"
    return exe if exe.exists() else None
