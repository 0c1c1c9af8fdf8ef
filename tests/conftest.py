"""Shared test fixtures for embedpy tests."""

import io
import logging
import shutil
import tarfile
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path

import pytest
from typer.testing import CliRunner

from embedpy.config import ManagerConfiguration
from embedpy.errors import PlatformUnsupportedError, ReleaseSourceError
from embedpy.instance_schema import (
    EnvironmentRecord,
    InstanceRecord,
    bind_record_location,
    save_instance_record,
)
from embedpy.platform_info import PlatformInfo
from embedpy.process import ProcessResult
from embedpy.releases import Asset, Release, ReleasePage

TEST_TRIPLE = "x86_64-unknown-linux-gnu"

TEST_PLATFORM = PlatformInfo(operating_system="Linux", architecture="x64", target_triple=TEST_TRIPLE)

# No sleeping between retries in tests
FAST_CONFIG = ManagerConfiguration(retry_attempts=3, retry_delay=0.0)


@pytest.fixture(autouse=True)
def reset_embedpy_logger() -> Iterator[None]:
    """Undo configure_logging() so caplog sees library records in every test."""
    yield
    logger = logging.getLogger("embedpy")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def embedpy_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Create an embedpy Home directory and point EMBEDPY_HOME at it."""
    home = tmp_path / "embedpy-home"
    home.mkdir()
    monkeypatch.setenv("EMBEDPY_HOME", str(home))
    return home


def _add_file(tar: tarfile.TarFile, name: str, content: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(content)
    info.mode = mode
    tar.addfile(info, io.BytesIO(content))


def build_install_archive(dest_dir: Path, name: str, version: str, prefix: str = "python") -> Path:
    """Write a .tar.gz shaped like an install-only standalone build.

    The payload is nested under ``prefix/`` and carries both the POSIX
    (``bin/python3`` + ``lib/``) and Windows (``python.exe``) layouts.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    archive = dest_dir / name
    major_minor = ".".join(version.split(".")[:2])
    with tarfile.open(archive, "w:gz") as tar:
        _add_file(tar, f"{prefix}/bin/python3", f"#!/bin/sh\necho Python {version}\n".encode(), 0o755)
        _add_file(tar, f"{prefix}/python.exe", b"MZ")
        _add_file(tar, f"{prefix}/lib/python{major_minor}/os.py", b"# os\n")
    return archive


def build_broken_archive(dest_dir: Path, name: str) -> Path:
    """Write a .tar.gz that extracts fine but holds no interpreter."""
    dest_dir.mkdir(parents=True, exist_ok=True)
    archive = dest_dir / name
    with tarfile.open(archive, "w:gz") as tar:
        _add_file(tar, "python/README", b"nothing here\n")
    return archive


def asset_name(version: str, tag: str, triple: str = TEST_TRIPLE, kind: str = "install_only") -> str:
    return f"cpython-{version}+{tag}-{triple}-{kind}.tar.gz"


def make_release(tag: str, names: list[str], published_at: datetime | None = None) -> Release:
    """Build a Release whose assets download from fake:// URLs."""
    return Release(
        tag=tag,
        published_at=published_at,
        assets=[Asset(name=n, download_url=f"fake://{tag}/{n}") for n in names],
    )


class FakeReleaseSource:
    """ReleaseSource serving in-memory pages and locally built archives.

    Args:
        pages: Releases per page, in the order list_releases returns them.
        archives: Asset name -> local archive file served by download_asset.
        download_failures: Transient download errors raised before succeeding.
    """

    def __init__(
        self,
        pages: list[list[Release]],
        archives: dict[str, Path] | None = None,
        download_failures: int = 0,
    ) -> None:
        self.pages = pages
        self.archives = archives or {}
        self.download_failures = download_failures
        self.list_calls: list[str | None] = []
        self.downloads: list[str] = []

    async def list_releases(self, page_token: str | None = None) -> ReleasePage:
        self.list_calls.append(page_token)
        index = int(page_token) if page_token else 0
        next_token = str(index + 1) if index + 1 < len(self.pages) else None
        releases = self.pages[index] if self.pages else []
        return ReleasePage(releases=releases, next_page_token=next_token)

    async def get_release_by_tag(self, tag: str) -> Release:
        for page in self.pages:
            for release in page:
                if release.tag == tag:
                    return release
        msg = f"Release '{tag}' not found (HTTP 404)"
        raise ReleaseSourceError(msg, transient=False)

    async def download_asset(self, asset: Asset, dest_dir: Path) -> Path:
        self.downloads.append(asset.name)
        if self.download_failures > 0:
            self.download_failures -= 1
            msg = f"Download of {asset.name} failed: connection reset"
            raise ReleaseSourceError(msg, transient=True)
        source = self.archives.get(asset.name)
        if source is None:
            msg = f"Download of {asset.name} not found (HTTP 404)"
            raise ReleaseSourceError(msg, transient=False)
        target = dest_dir / asset.name
        shutil.copyfile(source, target)
        return target


class FixedPlatformProbe:
    """PlatformProbe reporting a fixed platform, or failing on request."""

    def __init__(self, info: PlatformInfo = TEST_PLATFORM, error: str | None = None) -> None:
        self.info = info
        self.error = error

    def detect(self) -> PlatformInfo:
        if self.error:
            raise PlatformUnsupportedError(self.error, platform="Plan9 x64", supported=[TEST_TRIPLE])
        return self.info

    def validate_minimum_os_version(self) -> None:
        return None


@dataclass
class ScriptedProcessRunner:
    """ProcessRunner returning scripted results and recording every call.

    ``venv`` invocations create ``bin/python3`` and ``Scripts/python.exe``
    under the target directory when they succeed, like the real module.
    """

    results: list[ProcessResult | BaseException] = field(default_factory=list)
    calls: list[list[str]] = field(default_factory=list)

    async def run(self, args: list[str], timeout: float | None = None) -> ProcessResult:
        self.calls.append(list(args))
        outcome: ProcessResult | BaseException = (
            self.results.pop(0) if self.results else ProcessResult(exit_code=0, stdout="Python 3")
        )
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome.exit_code == 0 and "venv" in args:
            make_fake_venv(Path(args[-1]))
        return outcome


def make_fake_venv(path: Path) -> Path:
    """Create the interpreter files a venv check looks for."""
    (path / "bin").mkdir(parents=True, exist_ok=True)
    (path / "bin" / "python3").write_text("#!/bin/sh\n")
    (path / "Scripts").mkdir(parents=True, exist_ok=True)
    (path / "Scripts" / "python.exe").write_text("MZ")
    return path


InstanceFactory = Callable[..., InstanceRecord]


@pytest.fixture
def create_instance(embedpy_home: Path) -> InstanceFactory:
    """Factory fixture writing an installed instance under embedpy Home.

    The installation root is nested one level (``python/``) like an
    extracted install-only archive.
    """

    def _create(
        version: str,
        build_date: date,
        was_latest_build: bool = False,
        environments: list[EnvironmentRecord] | None = None,
        root: Path | None = None,
    ) -> InstanceRecord:
        instance_dir = (root or embedpy_home) / f"python-{version}-{build_date:%Y%m%d}"
        install_root = instance_dir / "python"
        (install_root / "bin").mkdir(parents=True)
        (install_root / "bin" / "python3").write_text("#!/bin/sh\n")
        (install_root / "python.exe").write_text("MZ")
        (install_root / "lib").mkdir()

        record = InstanceRecord(
            python_version=version,
            build_date=build_date,
            was_latest_build=was_latest_build,
            installed_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
            environments=environments or [],
        )
        bind_record_location(record, install_root, instance_dir)
        save_instance_record(record)
        return record

    return _create
