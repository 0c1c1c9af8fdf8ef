"""GitHub Releases implementation of the release source.

Downloads are sourced from python-build-standalone
(https://github.com/astral-sh/python-build-standalone) by default.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType
from typing import Any

import httpx

from embedpy import __version__
from embedpy.config import ManagerConfiguration
from embedpy.errors import ReleaseSourceError
from embedpy.releases import Asset, Release, ReleasePage

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"

RELEASES_PER_PAGE = 100

DOWNLOAD_CHUNK_SIZE = 64 * 1024


def _parse_release(data: dict[str, Any]) -> Release:
    return Release(
        tag=data["tag_name"],
        name=data.get("name"),
        published_at=data.get("published_at"),
        assets=[
            Asset(
                name=asset["name"],
                download_url=asset["browser_download_url"],
                size=asset.get("size"),
                updated_at=asset.get("updated_at"),
            )
            for asset in data.get("assets", [])
        ],
    )


def _raise_for_status(response: httpx.Response, subject: str) -> None:
    """Translate an unsuccessful response into a ReleaseSourceError."""
    if response.is_success:
        return

    status = response.status_code
    if status == 404:
        msg = f"{subject} not found (HTTP 404)"
        raise ReleaseSourceError(msg, transient=False)

    if status in (403, 429) and response.headers.get("x-ratelimit-remaining") == "0":
        reset = response.headers.get("x-ratelimit-reset")
        reset_text = (
            datetime.fromtimestamp(int(reset), tz=timezone.utc).isoformat() if reset else "later"
        )
        msg = (
            f"GitHub API rate limit exceeded. Please wait until {reset_text} "
            "or configure a GitHub token."
        )
        raise ReleaseSourceError(msg, transient=False)

    msg = f"{subject} request failed (HTTP {status})"
    raise ReleaseSourceError(msg, transient=status >= 500)


class GitHubReleaseSource:
    """ReleaseSource over the GitHub REST API."""

    def __init__(
        self,
        config: ManagerConfiguration | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        base_url: str = GITHUB_API_URL,
    ) -> None:
        self._config = config or ManagerConfiguration()
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": f"embedpy/{__version__}",
        }
        token = self._config.resolve_github_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._repository = self._config.release_repository
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=self._config.request_timeout,
            transport=transport,
            follow_redirects=True,
        )

    async def __aenter__(self) -> "GitHubReleaseSource":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, url: str, subject: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.get(url, **kwargs)
        except httpx.TransportError as e:
            msg = f"{subject} request failed: {e}"
            raise ReleaseSourceError(msg, transient=True) from e
        _raise_for_status(response, subject)
        return response

    async def list_releases(self, page_token: str | None = None) -> ReleasePage:
        """Fetch one page of releases; the page token is the next-page URL."""
        if page_token:
            response = await self._get(page_token, "Release list")
        else:
            response = await self._get(
                f"/repos/{self._repository}/releases",
                "Release list",
                params={"per_page": RELEASES_PER_PAGE},
            )

        releases = [_parse_release(item) for item in response.json()]
        next_url = response.links.get("next", {}).get("url")
        logger.debug("Fetched %d releases (more pages: %s)", len(releases), bool(next_url))
        return ReleasePage(releases=releases, next_page_token=next_url)

    async def get_release_by_tag(self, tag: str) -> Release:
        response = await self._get(
            f"/repos/{self._repository}/releases/tags/{tag}", f"Release '{tag}'"
        )
        return _parse_release(response.json())

    async def get_latest_release(self) -> Release:
        response = await self._get(
            f"/repos/{self._repository}/releases/latest", "Latest release"
        )
        return _parse_release(response.json())

    async def download_asset(self, asset: Asset, dest_dir: Path) -> Path:
        """Stream an asset to ``dest_dir/asset.name``.

        Raises:
            ReleaseSourceError: On HTTP or transport failure.
        """
        dest_dir.mkdir(parents=True, exist_ok=True)
        file_path = dest_dir / Path(asset.name).name
        subject = f"Download of {asset.name}"

        try:
            async with self._client.stream(
                "GET", asset.download_url, timeout=self._config.download_timeout
            ) as response:
                _raise_for_status(response, subject)
                with file_path.open("wb") as fh:
                    async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                        fh.write(chunk)
        except httpx.TransportError as e:
            msg = f"{subject} failed: {e}"
            raise ReleaseSourceError(msg, transient=True) from e

        logger.info("Downloaded %s to %s", asset.name, file_path)
        return file_path
