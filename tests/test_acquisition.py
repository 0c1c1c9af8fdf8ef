"""Tests for the acquisition pipeline."""

import asyncio
import json
import tempfile
import threading
from datetime import date
from pathlib import Path

import pytest

from embedpy import archive as archive_module
from embedpy.acquisition import AcquisitionPipeline, AcquisitionState, instance_directory_name
from embedpy.archive import ArchiveExtractor
from embedpy.catalog import DirectoryInstanceCatalog
from embedpy.errors import (
    AssetNotFoundError,
    ExtractionVerificationError,
    PlatformUnsupportedError,
    ReleaseSourceError,
)
from embedpy.instance_schema import METADATA_FILENAME
from embedpy.process import ProcessResult
from tests.conftest import (
    FAST_CONFIG,
    FakeReleaseSource,
    FixedPlatformProbe,
    ScriptedProcessRunner,
    asset_name,
    build_broken_archive,
    build_install_archive,
    make_release,
)

TAG = "20240814"


@pytest.fixture
def temp_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect tempfile so leftover download directories can be inspected."""
    temp = tmp_path / "tmp"
    temp.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(temp))
    return temp


@pytest.fixture
def home(tmp_path: Path) -> Path:
    root = tmp_path / "home"
    root.mkdir()
    return root


def _source_for(tmp_path: Path, versions: list[str], tag: str = TAG) -> FakeReleaseSource:
    """Serve one release carrying install-only archives for ``versions``."""
    names = [asset_name(v, tag) for v in versions]
    archives = {
        name: build_install_archive(tmp_path / "assets", name, version)
        for name, version in zip(names, versions)
    }
    other_platform = asset_name(versions[0], tag, triple="aarch64-apple-darwin")
    return FakeReleaseSource(pages=[[make_release(tag, [*names, other_platform])]], archives=archives)


def _pipeline(
    home: Path,
    source: FakeReleaseSource,
    runner: ScriptedProcessRunner | None = None,
    platform: FixedPlatformProbe | None = None,
    extractor: ArchiveExtractor | None = None,
) -> AcquisitionPipeline:
    return AcquisitionPipeline(
        home,
        DirectoryInstanceCatalog(home),
        source,
        platform=platform or FixedPlatformProbe(),
        extractor=extractor,
        runner=runner or ScriptedProcessRunner(),
        config=FAST_CONFIG,
    )


class TestAcquire:
    """Tests for the successful acquisition path."""

    def test_partial_spec_installs_highest_patch(
        self, tmp_path: Path, home: Path, temp_root: Path
    ) -> None:
        """Verify 3.10 against 3.10.12 and 3.10.19 installs 3.10.19 as latest."""
        # Given
        source = _source_for(tmp_path, ["3.10.12", "3.10.19"])
        runner = ScriptedProcessRunner()
        pipeline = _pipeline(home, source, runner)

        # When
        record = asyncio.run(pipeline.acquire("3.10"))

        # Then
        assert record.python_version == "3.10.19"
        assert record.was_latest_build is True
        assert record.build_date == date(2024, 8, 14)
        assert pipeline.state is AcquisitionState.REGISTERED

        instance_dir = home / "python-3.10.19-20240814"
        assert record.instance_directory == instance_dir
        assert record.directory == instance_dir / "python"

        document = json.loads((record.directory / METADATA_FILENAME).read_text())
        assert document["PythonVersion"] == "3.10.19"
        assert document["WasLatestBuild"] is True

        assert source.downloads == [asset_name("3.10.19", TAG)]
        assert runner.calls[0][1:] == ["--version"]
        assert list(temp_root.iterdir()) == []

    def test_record_is_registered_in_catalog(self, tmp_path: Path, home: Path, temp_root: Path) -> None:
        """Verify the new record is findable immediately and after a rescan."""
        # Given
        source = _source_for(tmp_path, ["3.12.5"])
        catalog = DirectoryInstanceCatalog(home)
        pipeline = AcquisitionPipeline(
            home, catalog, source, platform=FixedPlatformProbe(),
            runner=ScriptedProcessRunner(), config=FAST_CONFIG,
        )

        # When
        record = asyncio.run(pipeline.acquire("3.12"))

        # Then
        assert catalog.find("3.12") is record
        assert DirectoryInstanceCatalog(home).find("3.12").key == record.key

    def test_minimum_date_is_not_flagged_latest(self, tmp_path: Path, home: Path, temp_root: Path) -> None:
        """Verify a dated request records the chosen release and no latest flag."""
        # Given
        early = asset_name("3.12.1", "20240125")
        late = asset_name("3.12.2", "20240210")
        source = FakeReleaseSource(
            pages=[[make_release("20240210", [late]), make_release("20240125", [early])]],
            archives={
                early: build_install_archive(tmp_path / "assets", early, "3.12.1"),
                late: build_install_archive(tmp_path / "assets", late, "3.12.2"),
            },
        )

        # When
        record = asyncio.run(_pipeline(home, source).acquire("3.12", date(2024, 1, 20)))

        # Then
        assert record.python_version == "3.12.1"
        assert record.build_date == date(2024, 1, 25)
        assert record.was_latest_build is False

    def test_stale_directory_is_replaced(self, tmp_path: Path, home: Path, temp_root: Path) -> None:
        """Verify a leftover partial directory is deleted before installing."""
        # Given
        stale = home / "python-3.12.5-20240814"
        stale.mkdir()
        (stale / "partial.bin").write_bytes(b"half a download")
        source = _source_for(tmp_path, ["3.12.5"])

        # When
        record = asyncio.run(_pipeline(home, source).acquire("3.12.5"))

        # Then
        assert not (stale / "partial.bin").exists()
        assert (record.directory / METADATA_FILENAME).is_file()

    def test_already_installed_build_is_reused(self, tmp_path: Path, home: Path, temp_root: Path) -> None:
        """Verify an installed (version, build date) is returned without downloading."""
        # Given
        source = _source_for(tmp_path, ["3.12.5"])
        pipeline = _pipeline(home, source)
        first = asyncio.run(pipeline.acquire("3.12.5", date(2024, 8, 1)))

        # When
        second = asyncio.run(pipeline.acquire("3.12.5", date(2024, 8, 1)))

        # Then
        assert second.key == first.key
        assert len(source.downloads) == 1

    def test_transient_download_failures_are_retried(
        self, tmp_path: Path, home: Path, temp_root: Path
    ) -> None:
        """Verify the download is retried up to the configured attempts."""
        # Given
        source = _source_for(tmp_path, ["3.12.5"])
        source.download_failures = 2

        # When
        record = asyncio.run(_pipeline(home, source).acquire("3.12"))

        # Then
        assert record.python_version == "3.12.5"
        assert len(source.downloads) == 3

    @pytest.mark.parametrize(
        "outcome",
        [
            ProcessResult(exit_code=127, stderr="libpython missing"),
            TimeoutError(),
            OSError("exec format error"),
            RuntimeError("runner blew up"),
        ],
    )
    def test_smoke_test_failure_only_warns(
        self,
        tmp_path: Path,
        home: Path,
        temp_root: Path,
        caplog: pytest.LogCaptureFixture,
        outcome: ProcessResult | BaseException,
    ) -> None:
        """Verify a failing interpreter check does not fail acquisition."""
        # Given
        source = _source_for(tmp_path, ["3.12.5"])
        runner = ScriptedProcessRunner(results=[outcome])

        # When
        record = asyncio.run(_pipeline(home, source, runner).acquire("3.12"))

        # Then
        assert record.python_version == "3.12.5"
        assert "The installation may still be valid" in caplog.text


class TestAcquireFailures:
    """Tests for failure paths and cleanup."""

    def test_unsupported_platform_fails_before_network(self, tmp_path: Path, home: Path) -> None:
        """Verify platform validation happens before any release query."""
        # Given
        source = _source_for(tmp_path, ["3.12.5"])
        pipeline = _pipeline(home, source, platform=FixedPlatformProbe(error="Unsupported architecture: z80"))

        # When/Then
        with pytest.raises(PlatformUnsupportedError, match="Supported platforms"):
            asyncio.run(pipeline.acquire("3.12"))

        assert source.list_calls == []
        assert pipeline.state is AcquisitionState.IDLE

    def test_no_matching_asset(self, tmp_path: Path, home: Path, temp_root: Path) -> None:
        """Verify a missing version fails without touching the root."""
        # Given
        source = _source_for(tmp_path, ["3.12.5"])
        pipeline = _pipeline(home, source)

        # When/Then
        with pytest.raises(AssetNotFoundError, match="3.9"):
            asyncio.run(pipeline.acquire("3.9"))

        assert pipeline.state is AcquisitionState.PLATFORM_VALIDATED
        assert list(home.iterdir()) == []

    def test_verification_failure_cleans_up(self, tmp_path: Path, home: Path, temp_root: Path) -> None:
        """Verify a bad archive leaves no instance directory or temp files."""
        # Given
        name = asset_name("3.12.5", TAG)
        source = FakeReleaseSource(
            pages=[[make_release(TAG, [name])]],
            archives={name: build_broken_archive(tmp_path / "assets", name)},
        )
        pipeline = _pipeline(home, source)

        # When/Then
        with pytest.raises(ExtractionVerificationError) as exc_info:
            asyncio.run(pipeline.acquire("3.12"))

        assert exc_info.value.version == "3.12.5"
        assert pipeline.state is AcquisitionState.EXTRACTED
        assert not (home / "python-3.12.5-20240814").exists()
        assert list(temp_root.iterdir()) == []
        assert DirectoryInstanceCatalog(home).list_instances() == []

    def test_permanent_download_failure_cleans_up(self, tmp_path: Path, home: Path, temp_root: Path) -> None:
        """Verify a failed download leaves nothing behind."""
        # Given
        name = asset_name("3.12.5", TAG)
        source = FakeReleaseSource(pages=[[make_release(TAG, [name])]], archives={})

        # When/Then
        with pytest.raises(ReleaseSourceError):
            asyncio.run(_pipeline(home, source).acquire("3.12"))

        assert len(source.downloads) == 1
        assert list(home.iterdir()) == []
        assert list(temp_root.iterdir()) == []

    def test_cancellation_during_extraction_cleans_up(
        self, tmp_path: Path, home: Path, temp_root: Path
    ) -> None:
        """Verify cancellation mid-extraction still removes partial state."""

        # Given
        class CancelledExtractor(ArchiveExtractor):
            async def extract(self, archive: Path, dest: Path) -> None:
                dest.mkdir(parents=True, exist_ok=True)
                (dest / "partial").write_text("x")
                raise asyncio.CancelledError

        source = _source_for(tmp_path, ["3.12.5"])
        pipeline = _pipeline(home, source, extractor=CancelledExtractor())

        # When/Then
        with pytest.raises(asyncio.CancelledError):
            asyncio.run(pipeline.acquire("3.12"))

        assert not (home / "python-3.12.5-20240814").exists()
        assert list(temp_root.iterdir()) == []

    def test_cancellation_during_threaded_extraction_cleans_up(
        self, tmp_path: Path, home: Path, temp_root: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Verify a cancelled extraction thread cannot repopulate the removed directory."""
        # Given
        source = _source_for(tmp_path, ["3.12.5"])
        pipeline = _pipeline(home, source)
        started = threading.Event()
        release = threading.Event()
        real_extract_tar = archive_module._extract_tar

        def gated_extract_tar(archive: Path, dest: Path, mode: str, stop: threading.Event) -> None:
            started.set()
            release.wait(5)
            real_extract_tar(archive, dest, mode, stop)

        monkeypatch.setattr(archive_module, "_extract_tar", gated_extract_tar)

        async def run() -> None:
            task = asyncio.create_task(pipeline.acquire("3.12"))
            while not started.is_set():
                await asyncio.sleep(0.01)
            task.cancel()
            await asyncio.sleep(0.05)
            release.set()
            with pytest.raises(asyncio.CancelledError):
                await task

        # When
        asyncio.run(run())

        # Then
        assert not (home / "python-3.12.5-20240814").exists()
        assert list(temp_root.iterdir()) == []
        assert DirectoryInstanceCatalog(home).list_instances() == []


class TestInstanceDirectoryName:
    """Tests for instance_directory_name."""

    def test_format(self) -> None:
        """Verify the runtime-version-date naming scheme."""
        assert instance_directory_name("python", "3.12.5", date(2024, 8, 4)) == "python-3.12.5-20240804"
