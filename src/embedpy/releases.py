"""Release catalog models and asset selection.

Standalone builds are published as releases tagged with their build date
(e.g. ``20240814``). Each release carries one asset per version, target
triple and archive kind, all encoded in the asset name:

    cpython-3.12.5+20240814-x86_64-unknown-linux-gnu-install_only.tar.gz

ReleaseLocator turns a version spec, an optional minimum build date and a
platform into exactly one asset to download.
"""

import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from embedpy.config import ManagerConfiguration
from embedpy.errors import AssetNotFoundError
from embedpy.platform_info import PlatformInfo
from embedpy.retry import retry_async
from embedpy.version import VersionSpec, parse_version, version_key, version_matches

logger = logging.getLogger(__name__)

_ASSET_VERSION_PATTERN = re.compile(r"(?:cpython|python)-(\d+\.\d+\.\d+)((?:a|b|rc)\d+)?")
_COMPACT_DATE_PATTERN = re.compile(r"(?<!\d)(\d{8})(?!\d)")
_ISO_DATE_PATTERN = re.compile(r"(?<!\d)(\d{4}-\d{2}-\d{2})(?!\d)")

ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar.zst", ".tar.bz2", ".tar.xz", ".tar", ".zip")


class ArchiveKind(str, Enum):
    """Layout of a release archive."""

    INSTALL_ONLY = "install_only"
    FULL = "full"


class Asset(BaseModel):
    """A downloadable artifact attached to a release."""

    name: str
    download_url: str
    size: int | None = None
    updated_at: datetime | None = None


class Release(BaseModel):
    """A published release and its assets."""

    tag: str
    name: str | None = None
    published_at: datetime | None = None
    assets: list[Asset] = Field(default_factory=list)


@dataclass
class ReleasePage:
    """One page of releases and the token for the next page, if any."""

    releases: list[Release]
    next_page_token: str | None = None


class ReleaseSource(Protocol):
    """Protocol for the remote release collaborator.

    A source may also offer ``async get_latest_release() -> Release``;
    ReleaseLocator uses it instead of scanning the first page when present.
    """

    async def list_releases(self, page_token: str | None = None) -> ReleasePage:
        """Return one page of releases, newest first."""
        ...

    async def get_release_by_tag(self, tag: str) -> Release:
        """Return a single release by tag."""
        ...

    async def download_asset(self, asset: Asset, dest_dir: Path) -> Path:
        """Download an asset into dest_dir and return the file path."""
        ...


@dataclass(frozen=True)
class AssetInfo:
    """What an asset name says about its contents."""

    version: str
    archive_kind: ArchiveKind
    prerelease: bool
    variant: bool


@dataclass
class LocatedAsset:
    """The asset chosen for download and the release it belongs to."""

    release: Release
    asset: Asset
    version: str
    build_date: date
    archive_kind: ArchiveKind


def parse_build_date(tag: str, fallback: date | None = None) -> date:
    """Derive a build date from a release tag.

    Tries an 8-digit ``YYYYMMDD`` run, then ``YYYY-MM-DD``. A tag with
    neither yields ``fallback``, or today's date (the acquisition time).
    """
    for pattern, fmt in ((_COMPACT_DATE_PATTERN, "%Y%m%d"), (_ISO_DATE_PATTERN, "%Y-%m-%d")):
        for match in pattern.finditer(tag):
            try:
                return datetime.strptime(match.group(1), fmt).date()
            except ValueError:
                continue
    return fallback or date.today()


def _archive_kind(name: str) -> ArchiveKind | None:
    if "install_only" in name:
        return ArchiveKind.INSTALL_ONLY
    if "full" in name:
        return ArchiveKind.FULL
    if name.endswith((".tar.zst", ".zip")):
        return ArchiveKind.FULL
    return None


def parse_asset_name(name: str) -> AssetInfo | None:
    """Extract version and archive kind from an asset name.

    Returns None for checksum files, non-archives, and names without a
    parseable ``major.minor.patch``; such assets are never candidates.
    """
    lowered = name.lower()
    if not lowered.endswith(ARCHIVE_SUFFIXES):
        return None

    match = _ASSET_VERSION_PATTERN.search(lowered)
    if match is None:
        return None

    kind = _archive_kind(lowered)
    if kind is None:
        return None

    return AssetInfo(
        version=match.group(1),
        archive_kind=kind,
        prerelease=match.group(2) is not None,
        variant=any(marker in lowered for marker in ("stripped", "freethreaded", "debug")),
    )


def matches_platform(name: str, target_triple: str) -> bool:
    return target_triple.lower() in name.lower()


def select_asset(
    release: Release,
    spec: VersionSpec,
    platform: PlatformInfo,
    build_date: date | None = None,
) -> tuple[Asset, AssetInfo]:
    """Pick the best asset in a release for a spec and platform.

    Ranking, highest first: numerically highest version, install-only over
    full, final over prerelease, plain build over variants (stripped,
    free-threaded, debug). Remaining ties go to the alphabetically first
    name.

    Raises:
        AssetNotFoundError: If no asset matches both version and platform.
    """
    candidates: list[tuple[Asset, AssetInfo]] = []
    for asset in sorted(release.assets, key=lambda a: a.name):
        info = parse_asset_name(asset.name)
        if info is None or not matches_platform(asset.name, platform.target_triple):
            continue
        if not version_matches(info.version, spec):
            continue
        candidates.append((asset, info))

    if not candidates:
        raise AssetNotFoundError(str(spec), build_date, platform.target_triple, release.tag)

    def rank(candidate: tuple[Asset, AssetInfo]) -> tuple:
        _, info = candidate
        return (
            version_key(info.version),
            info.archive_kind == ArchiveKind.INSTALL_ONLY,
            not info.prerelease,
            not info.variant,
        )

    return max(candidates, key=rank)


def available_versions(release: Release) -> list[str]:
    """Distinct exact versions offered by a release, newest first."""
    versions = {info.version for asset in release.assets if (info := parse_asset_name(asset.name))}
    return sorted(versions, key=version_key, reverse=True)


class ReleaseLocator:
    """Select the single best installable asset for a request."""

    def __init__(self, source: ReleaseSource, config: ManagerConfiguration | None = None) -> None:
        self._source = source
        self._config = config or ManagerConfiguration()

    async def iter_releases(self) -> AsyncIterator[Release]:
        """Yield every release, draining all pages."""
        token: str | None = None
        while True:
            page = await retry_async(
                lambda: self._source.list_releases(token),
                self._config,
                "List releases",
            )
            for release in page.releases:
                yield release
            if not page.next_page_token:
                return
            token = page.next_page_token

    async def latest_release(self) -> Release | None:
        """The most recently published release.

        Sources offering ``get_latest_release`` answer directly; otherwise
        the newest release on the first page is used.
        """
        get_latest = getattr(self._source, "get_latest_release", None)
        if get_latest is not None:
            return await retry_async(get_latest, self._config, "Get latest release")

        page = await retry_async(
            lambda: self._source.list_releases(None),
            self._config,
            "List releases",
        )
        if not page.releases:
            return None
        return max(
            page.releases,
            key=lambda r: (
                r.published_at.timestamp() if r.published_at else float("-inf"),
                parse_build_date(r.tag),
            ),
        )

    async def earliest_release_on_or_after(self, minimum: date) -> Release | None:
        """The chronologically first release built on or after ``minimum``."""
        releases = [release async for release in self.iter_releases()]
        ordered = sorted(releases, key=lambda r: (parse_build_date(r.tag), r.tag))
        for release in ordered:
            if parse_build_date(release.tag) >= minimum:
                return release
        return None

    async def locate(
        self,
        version: VersionSpec | str,
        platform: PlatformInfo,
        build_date: date | None = None,
    ) -> LocatedAsset:
        """Choose the release and asset for a request.

        With ``build_date``, the earliest release built on or after it is
        used (not the newest). Without it, the most recent release is used.

        Raises:
            AssetNotFoundError: If no release or asset satisfies the request.
        """
        spec = parse_version(version) if isinstance(version, str) else version

        if build_date is not None:
            release = await self.earliest_release_on_or_after(build_date)
        else:
            release = await self.latest_release()

        if release is None:
            raise AssetNotFoundError(str(spec), build_date, platform.target_triple)

        asset, info = select_asset(release, spec, platform, build_date)
        located = LocatedAsset(
            release=release,
            asset=asset,
            version=info.version,
            build_date=parse_build_date(release.tag),
            archive_kind=info.archive_kind,
        )
        logger.info(
            "Located %s for Python %s in release %s", asset.name, located.version, release.tag
        )
        return located
