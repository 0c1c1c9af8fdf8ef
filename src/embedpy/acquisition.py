"""Acquisition pipeline: turn a version request into a registered instance.

Flow:
    validate platform -> locate asset -> download -> extract -> verify
    -> smoke test -> persist record -> register in catalog

Downloads land in a private temporary directory. Whatever happens, that
directory is removed, and an instance directory created by a call that
does not reach registration is removed too.
"""

import logging
import shutil
import tempfile
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Protocol

from embedpy.archive import ArchiveExtractor, find_installation_root, python_executable
from embedpy.catalog import InstanceRepository
from embedpy.config import ManagerConfiguration
from embedpy.errors import ExtractionVerificationError
from embedpy.instance_schema import InstanceRecord, bind_record_location, save_instance_record
from embedpy.platform_info import PlatformInfo, PlatformProbe, SystemPlatformProbe
from embedpy.process import AsyncProcessRunner, ProcessRunner, smoke_test
from embedpy.releases import LocatedAsset, ReleaseLocator, ReleaseSource
from embedpy.retry import retry_async
from embedpy.version import VersionSpec, parse_version

logger = logging.getLogger(__name__)

TEMP_DIR_PREFIX = "embedpy-"


class AcquisitionState(str, Enum):
    """Last stage an acquisition reached."""

    IDLE = "idle"
    PLATFORM_VALIDATED = "platform_validated"
    ASSET_LOCATED = "asset_located"
    DOWNLOADED = "downloaded"
    EXTRACTED = "extracted"
    VERIFIED = "verified"
    REGISTERED = "registered"


class InstanceAcquirer(Protocol):
    """Anything that can produce a registered instance for a request."""

    async def acquire(
        self, version: VersionSpec | str, build_date: date | None = None
    ) -> InstanceRecord: ...


def instance_directory_name(runtime: str, version: str, build_date: date) -> str:
    """Deterministic directory name, e.g. ``python-3.12.5-20240814``."""
    return f"{runtime}-{version}-{build_date:%Y%m%d}"


class AcquisitionPipeline:
    """Download, install and register standalone interpreter builds."""

    def __init__(
        self,
        root: Path,
        catalog: InstanceRepository,
        source: ReleaseSource,
        platform: PlatformProbe | None = None,
        extractor: ArchiveExtractor | None = None,
        runner: ProcessRunner | None = None,
        config: ManagerConfiguration | None = None,
    ) -> None:
        self._root = root
        self._catalog = catalog
        self._source = source
        self._platform = platform or SystemPlatformProbe()
        self._extractor = extractor or ArchiveExtractor()
        self._runner = runner or AsyncProcessRunner()
        self._config = config or ManagerConfiguration()
        self._locator = ReleaseLocator(source, self._config)
        self.state = AcquisitionState.IDLE

    def validate_platform(self) -> PlatformInfo:
        """Detect the platform and check OS prerequisites.

        Raises:
            PlatformUnsupportedError: If builds cannot run here.
        """
        info = self._platform.detect()
        self._platform.validate_minimum_os_version()
        logger.debug("Platform: %s %s (%s)", info.operating_system, info.architecture, info.target_triple)
        return info

    async def acquire(
        self, version: VersionSpec | str, build_date: date | None = None
    ) -> InstanceRecord:
        """Acquire an instance for ``version``, built on or after ``build_date``.

        Without ``build_date`` the newest release is used and the record is
        flagged as the latest build.

        Raises:
            PlatformUnsupportedError: Before anything is downloaded.
            AssetNotFoundError: If no release asset satisfies the request.
            ReleaseSourceError: If listing or downloading fails after retries.
            ArchiveExtractionError: If extraction fails after retries.
            ExtractionVerificationError: If the archive has no usable installation.
        """
        self.state = AcquisitionState.IDLE
        spec = parse_version(version) if isinstance(version, str) else version

        platform = self.validate_platform()
        self.state = AcquisitionState.PLATFORM_VALIDATED

        located = await self._locator.locate(spec, platform, build_date)
        self.state = AcquisitionState.ASSET_LOCATED

        existing = self._catalog.find(located.version, located.build_date)
        if existing is not None:
            logger.info(
                "Python %s build %s is already installed at %s",
                existing.python_version, existing.build_date, existing.directory,
            )
            if build_date is None and not existing.was_latest_build:
                existing.was_latest_build = True
                save_instance_record(existing)
                self._catalog.add(existing)
            self.state = AcquisitionState.REGISTERED
            return existing

        instance_dir = self._root / instance_directory_name(
            self._config.runtime_name, located.version, located.build_date
        )
        temp_dir: Path | None = None
        created = False

        try:
            if instance_dir.exists():
                logger.warning("Removing incomplete instance directory %s", instance_dir)
                shutil.rmtree(instance_dir)

            temp_dir = Path(tempfile.mkdtemp(prefix=TEMP_DIR_PREFIX))
            archive = await self._download(located, temp_dir)
            self.state = AcquisitionState.DOWNLOADED

            created = True
            await retry_async(
                lambda: self._extract_fresh(archive, instance_dir),
                self._config,
                f"Extract {archive.name}",
            )
            self.state = AcquisitionState.EXTRACTED

            install_root = find_installation_root(instance_dir)
            if not self._extractor.verify_layout(install_root):
                raise ExtractionVerificationError(install_root, located.version)
            self.state = AcquisitionState.VERIFIED

            await self._smoke_test(install_root)

            record = InstanceRecord(
                python_version=located.version,
                build_date=located.build_date,
                was_latest_build=build_date is None,
                installed_at=datetime.now(timezone.utc),
            )
            bind_record_location(record, install_root, instance_dir)
            save_instance_record(record)
            self._catalog.add(record)
            self.state = AcquisitionState.REGISTERED

            logger.info("Installed Python %s (build %s) at %s", record.python_version, record.build_date, install_root)
            return record
        finally:
            if temp_dir is not None:
                shutil.rmtree(temp_dir, ignore_errors=True)
            if created and self.state is not AcquisitionState.REGISTERED and instance_dir.exists():
                logger.debug("Cleaning up failed installation at %s", instance_dir)
                shutil.rmtree(instance_dir, ignore_errors=True)

    async def _download(self, located: LocatedAsset, temp_dir: Path) -> Path:
        logger.info("Downloading %s", located.asset.name)
        return await retry_async(
            lambda: self._source.download_asset(located.asset, temp_dir),
            self._config,
            f"Download {located.asset.name}",
        )

    async def _extract_fresh(self, archive: Path, instance_dir: Path) -> None:
        # A retried extraction must not see files from the failed attempt
        if instance_dir.exists():
            shutil.rmtree(instance_dir)
        await self._extractor.extract(archive, instance_dir)

    async def _smoke_test(self, install_root: Path) -> None:
        executable = python_executable(install_root)
        if executable is None:
            logger.warning("No Python executable found in %s; skipping smoke test", install_root)
            return
        await smoke_test(self._runner, executable, self._config.smoke_test_timeout)
