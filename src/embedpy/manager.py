"""InstanceManager: the entry point tying catalog, acquisition and environments together."""

import logging
import shutil
from datetime import date
from pathlib import Path
from types import TracebackType
from typing import Any

import httpx

from embedpy import environments
from embedpy.acquisition import AcquisitionPipeline
from embedpy.archive import ArchiveExtractor
from embedpy.catalog import DirectoryInstanceCatalog
from embedpy.config import ManagerConfiguration, load_config
from embedpy.errors import InstanceNotFoundError, ReleaseSourceError
from embedpy.github import GitHubReleaseSource
from embedpy.home import ensure_embedpy_home, validate_embedpy_home
from embedpy.instance_schema import EnvironmentRecord, InstanceRecord
from embedpy.platform_info import PlatformProbe, SystemPlatformProbe, describe_system_requirements
from embedpy.process import AsyncProcessRunner, ProcessRunner
from embedpy.releases import ReleaseLocator, ReleaseSource, available_versions
from embedpy.retry import retry_async
from embedpy.version import VersionSpec, parse_version, version_matches

logger = logging.getLogger(__name__)

# Free space expected for one more install, and headroom per installed instance
DISK_SPACE_SAMPLE_BYTES = 100 * 1024 * 1024


class InstanceManager:
    """Find, acquire and manage interpreter instances under one root directory.

    Collaborators default to the real implementations (GitHub releases,
    the running platform, archive extraction, asyncio subprocesses); pass
    your own to redirect any of them.
    """

    def __init__(
        self,
        root: Path,
        config: ManagerConfiguration | None = None,
        release_source: ReleaseSource | None = None,
        platform: PlatformProbe | None = None,
        extractor: ArchiveExtractor | None = None,
        runner: ProcessRunner | None = None,
    ) -> None:
        self.root = ensure_embedpy_home(root)
        self.config = config or load_config(self.root)
        self._owned_source = release_source is None
        self._source: ReleaseSource = release_source or GitHubReleaseSource(self.config)
        self._runner = runner or AsyncProcessRunner()
        self._platform = platform or SystemPlatformProbe()
        self.catalog = DirectoryInstanceCatalog(self.root)
        self._locator = ReleaseLocator(self._source, self.config)
        self.pipeline = AcquisitionPipeline(
            self.root,
            self.catalog,
            self._source,
            platform=self._platform,
            extractor=extractor,
            runner=self._runner,
            config=self.config,
        )

    async def __aenter__(self) -> "InstanceManager":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the release source if this manager created it."""
        if self._owned_source and isinstance(self._source, GitHubReleaseSource):
            await self._source.aclose()

    # Instances

    async def get_or_create_instance(
        self, version: VersionSpec | str | None = None, build_date: date | None = None
    ) -> InstanceRecord:
        """Return an installed instance for the request, acquiring one on a miss.

        Args:
            version: Exact or partial version; the configured default when omitted.
            build_date: Minimum build date; None means the latest build.
        """
        version = version or self.config.default_python_version
        record = self.catalog.find(version, build_date)
        if record is not None:
            logger.debug("Using installed Python %s at %s", record.python_version, record.directory)
            return record

        logger.info("No installed instance matches Python %s; acquiring", version)
        return await self.pipeline.acquire(version, build_date)

    def get_instance(
        self, version: VersionSpec | str, build_date: date | None = None
    ) -> InstanceRecord | None:
        return self.catalog.find(version, build_date)

    def require_instance(
        self, version: VersionSpec | str, build_date: date | None = None
    ) -> InstanceRecord:
        """Like get_instance, but raise InstanceNotFoundError on a miss."""
        record = self.catalog.find(version, build_date)
        if record is None:
            raise InstanceNotFoundError(str(version), build_date)
        return record

    def list_instances(self) -> list[InstanceRecord]:
        return self.catalog.list_instances()

    def delete_instance(self, version: VersionSpec | str, build_date: date | None = None) -> bool:
        """Delete the instance a request resolves to.

        Returns:
            False if nothing matched or its directory was already gone.
        """
        return self.catalog.remove_version(version, build_date)

    # Remote queries

    async def list_available_versions(self, release_tag: str | None = None) -> list[str]:
        """Exact versions offered by a release (the latest by default), newest first."""
        if release_tag:
            release = await retry_async(
                lambda: self._source.get_release_by_tag(release_tag),
                self.config,
                f"Get release {release_tag}",
            )
        else:
            release = await self._locator.latest_release()
            if release is None:
                return []
        return available_versions(release)

    async def get_latest_python_version(self) -> str | None:
        """Newest exact version offered by the latest release."""
        versions = await self.list_available_versions()
        return versions[0] if versions else None

    async def find_best_matching_version(self, version: VersionSpec | str) -> str | None:
        """Highest version in the latest release that satisfies ``version``."""
        spec = parse_version(version) if isinstance(version, str) else version
        for candidate in await self.list_available_versions():
            if version_matches(candidate, spec):
                return candidate
        return None

    # Diagnostics

    def validate_instance_integrity(
        self, version: VersionSpec | str, build_date: date | None = None
    ) -> bool:
        return self.catalog.validate_integrity(self.require_instance(version, build_date))

    def instance_size(self, version: VersionSpec | str, build_date: date | None = None) -> int:
        return self.catalog.instance_size(self.require_instance(version, build_date))

    def total_disk_usage(self) -> int:
        return self.catalog.total_disk_usage()

    def check_disk_space(self, required_bytes: int) -> bool:
        """Return True if the root's filesystem has ``required_bytes`` free.

        When free space cannot be determined this reports True; the
        install itself then fails with a concrete error instead.
        """
        try:
            free = shutil.disk_usage(self.root).free
        except OSError as e:
            logger.warning("Failed to check disk space at %s: %s", self.root, e)
            return True
        return free >= required_bytes

    def get_system_requirements(self) -> dict[str, Any]:
        """Platform, OS-version check and free space for one more install."""
        results = describe_system_requirements(self._platform)
        results["disk_space_check"] = (
            "sufficient" if self.check_disk_space(DISK_SPACE_SAMPLE_BYTES) else "insufficient"
        )
        return results

    async def check_network_connectivity(self) -> bool:
        """Return True if the release source answers a single listing request."""
        try:
            await self._source.list_releases(None)
        except (ReleaseSourceError, httpx.HTTPError) as e:
            logger.warning("Network connectivity test failed: %s", e)
            return False
        return True

    async def diagnose_issues(self) -> list[str]:
        """Collect problems that would get in the way of acquiring or using instances.

        Checks embedpy Home, the platform and OS version, reachability of
        the release source, and for every installed instance its integrity
        and the free space to reinstall it.

        Returns:
            Human-readable issues; empty when everything checks out.
        """
        issues = [f"embedpy Home: {problem}" for problem in validate_embedpy_home(self.root)]

        requirements = self.get_system_requirements()
        if requirements.get("platform_check") == "failed":
            issues.append(f"Platform check failed: {requirements['platform_error']}")
        if requirements.get("os_version_check") == "failed":
            issues.append(f"OS version check failed: {requirements['os_version_error']}")

        if not await self.check_network_connectivity():
            issues.append("Network connectivity test failed: cannot reach the release source")

        for record in self.catalog.list_instances():
            required = self.catalog.instance_size(record) + DISK_SPACE_SAMPLE_BYTES
            if not self.check_disk_space(required):
                issues.append(
                    f"Insufficient disk space for Python {record.python_version} "
                    f"(required: {required // (1024 * 1024)} MB)"
                )
            if not self.catalog.validate_integrity(record):
                issues.append(
                    f"Python {record.python_version} (build {record.build_date}) failed integrity check"
                )

        return issues

    # Environments

    async def create_environment(
        self,
        version: VersionSpec | str,
        name: str,
        build_date: date | None = None,
        external_path: Path | str | None = None,
        recreate: bool = False,
    ) -> Path:
        record = self.require_instance(version, build_date)
        return await environments.create_environment(
            record, name, self._runner, external_path=external_path, recreate=recreate
        )

    def delete_environment(
        self,
        version: VersionSpec | str,
        name: str,
        build_date: date | None = None,
        remove_files: bool = True,
    ) -> bool:
        record = self.require_instance(version, build_date)
        return environments.delete_environment(record, name, remove_files=remove_files)

    def list_environments(
        self, version: VersionSpec | str, build_date: date | None = None
    ) -> list[EnvironmentRecord]:
        return environments.list_environments(self.require_instance(version, build_date))
