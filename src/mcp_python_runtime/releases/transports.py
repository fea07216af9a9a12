"""Release index transports: PyGithub client first, raw REST over aiohttp second.

The catalog tries transports in order. Which failures may move on to the
next transport is decided by `classify_failure`:

    failure                                   decision
    ----------------------------------------  ---------
    HTTP 5xx from either transport            NEXT
    connection/timeout/library fault          NEXT
    HTTP 4xx (auth, rate limit, not found)    PROPAGATE
    anything else                             PROPAGATE
"""

import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol
from urllib.parse import quote

import aiohttp
import requests
from github import Github, GithubException
from github.Auth import Token

from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.releases.constants import (
    API_HEADERS,
    API_TIMEOUT,
    GITHUB_REPO_SLUG,
    RELEASES_PER_PAGE,
    RELEASES_URL,
)
from mcp_python_runtime.types import Release, ReleaseAsset

logger = get_logger(__name__)

FallbackDecision = Enum("FallbackDecision", ["NEXT", "PROPAGATE"])


class ReleaseTransport(Protocol):
    name: str

    async def list_releases(self) -> list[Release]: ...

    async def get_latest_release(self) -> Release: ...

    async def get_release_by_tag(self, tag: str) -> Release: ...


def failure_status(error: BaseException) -> Optional[int]:
    """HTTP status carried by a transport failure, if any."""
    if isinstance(error, GithubException):
        return error.status
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status
    if isinstance(error, requests.HTTPError) and error.response is not None:
        return error.response.status_code
    return None


def classify_failure(error: BaseException) -> FallbackDecision:
    status = failure_status(error)
    if status is not None:
        return FallbackDecision.NEXT if status >= 500 else FallbackDecision.PROPAGATE
    if isinstance(error, (requests.RequestException, aiohttp.ClientError, asyncio.TimeoutError, OSError)):
        return FallbackDecision.NEXT
    return FallbackDecision.PROPAGATE


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def release_from_json(data: dict[str, Any]) -> Release:
    return Release(
        tag_name=data["tag_name"],
        name=data.get("name"),
        published_at=parse_timestamp(data.get("published_at")),
        assets=tuple(
            ReleaseAsset(
                id=asset["id"],
                name=asset["name"],
                download_url=asset["browser_download_url"],
                updated_at=parse_timestamp(asset.get("updated_at")),
            )
            for asset in data.get("assets", [])
        ),
    )


def release_from_github(release) -> Release:
    return Release(
        tag_name=release.tag_name,
        name=release.title,
        published_at=release.published_at,
        assets=tuple(
            ReleaseAsset(
                id=asset.id,
                name=asset.name,
                download_url=asset.browser_download_url,
                updated_at=asset.updated_at,
            )
            for asset in release.get_assets()
        ),
    )


class GithubClientTransport:
    """Structured client; blocking PyGithub calls run in worker threads."""

    name = "pygithub"

    def __init__(self, token: Optional[str] = None, client: Optional[Github] = None):
        if client is None:
            client = Github(auth=Token(token) if token else None, timeout=API_TIMEOUT)
        self._client = client

    def _repo(self):
        return self._client.get_repo(GITHUB_REPO_SLUG)

    def _list_releases(self) -> list[Release]:
        return [release_from_github(r) for r in self._repo().get_releases()]

    def _latest_release(self) -> Release:
        return release_from_github(self._repo().get_latest_release())

    def _release_by_tag(self, tag: str) -> Release:
        return release_from_github(self._repo().get_release(tag))

    async def list_releases(self) -> list[Release]:
        return await asyncio.to_thread(self._list_releases)

    async def get_latest_release(self) -> Release:
        return await asyncio.to_thread(self._latest_release)

    async def get_release_by_tag(self, tag: str) -> Release:
        return await asyncio.to_thread(self._release_by_tag, tag)


class HttpTransport:
    """Raw REST fallback against the same endpoints."""

    name = "http"

    def __init__(self, token: Optional[str] = None, proxy: Optional[str] = None):
        self._headers = dict(API_HEADERS)
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        self._proxy = proxy

    async def _get_json(self, session: aiohttp.ClientSession, url: str) -> Any:
        async with session.get(url, headers=self._headers, proxy=self._proxy) as response:
            if response.status != 200:
                logger.debug({
                    "event": "release_request_failed",
                    "url": url,
                    "status": response.status,
                })
            response.raise_for_status()
            return await response.json()

    async def list_releases(self) -> list[Release]:
        releases: list[Release] = []
        page = 1
        timeout = aiohttp.ClientTimeout(total=API_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            while True:
                url = f"{RELEASES_URL}?per_page={RELEASES_PER_PAGE}&page={page}"
                try:
                    data = await self._get_json(session, url)
                except aiohttp.ClientResponseError as e:
                    if e.status == 404:
                        break
                    raise
                if not data:
                    break
                releases.extend(release_from_json(item) for item in data)
                if len(data) < RELEASES_PER_PAGE:
                    break
                page += 1
        return releases

    async def get_latest_release(self) -> Release:
        timeout = aiohttp.ClientTimeout(total=API_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            return release_from_json(await self._get_json(session, f"{RELEASES_URL}/latest"))

    async def get_release_by_tag(self, tag: str) -> Release:
        timeout = aiohttp.ClientTimeout(total=API_TIMEOUT)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            url = f"{RELEASES_URL}/tags/{quote(tag, safe='')}"
            return release_from_json(await self._get_json(session, url))
