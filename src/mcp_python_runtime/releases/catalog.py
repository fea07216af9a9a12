"""Release querying and asset selection for standalone Python builds."""

from datetime import datetime, timezone
from typing import Optional, Sequence

from mcp_python_runtime.archives import is_supported_archive
from mcp_python_runtime.errors import (
    InstanceNotFoundError,
    PythonInstallationError,
    PythonRuntimeError,
)
from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.platforms import get_platform_info
from mcp_python_runtime.releases.cache import NullCache, ReleaseCache
from mcp_python_runtime.releases.constants import RELEASES_CACHE_KEY, VERSIONS_CACHE_KEY
from mcp_python_runtime.releases.transports import (
    FallbackDecision,
    GithubClientTransport,
    HttpTransport,
    ReleaseTransport,
    classify_failure,
    failure_status,
)
from mcp_python_runtime.types import PlatformInfo, Release, ReleaseAsset
from mcp_python_runtime.versions import (
    UNKNOWN_BUILD_DATE,
    compact_build_date,
    extract_build_date,
    extract_version_from_asset,
    sort_versions,
    version_matches,
)

logger = get_logger(__name__)

EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_time(value: Optional[datetime]) -> datetime:
    if value is None:
        return EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_install_only(asset_name: str) -> bool:
    name = asset_name.lower()
    return "install" in name and "full" not in name


def is_full(asset_name: str) -> bool:
    name = asset_name.lower()
    if "full" in name:
        return True
    return "install" not in name and is_supported_archive(name)


def asset_matches(asset_name: str, version: str, target_triple: str) -> bool:
    """Name carries the version prefix and the host triple, and is an archive."""
    name = asset_name.lower()
    if f"cpython-{version}" not in name and f"python-{version}" not in name:
        return False
    if target_triple.lower() not in name:
        return False
    if not is_supported_archive(name):
        return False
    # "cpython-3.1" is a prefix of "cpython-3.12.0"; compare the parsed version too
    embedded = extract_version_from_asset(name)
    return embedded is None or version_matches(embedded, version)


def release_matches(
    release: Release,
    version: str,
    target_triple: str,
    build_date: Optional[str] = None,
) -> bool:
    tag = release.tag_name.lower()
    name = (release.name or "").lower()

    if build_date is not None:
        wanted = compact_build_date(build_date)
        if wanted not in tag.replace("-", "") and wanted not in name.replace("-", ""):
            return False

    if version.replace(".", "") in tag or version in name:
        return True
    # Upstream tags are dates; the version lives in asset names
    return any(asset_matches(a.name, version, target_triple) for a in release.assets)


def select_asset(
    releases: Sequence[Release],
    version: str,
    target_triple: str,
    build_date: Optional[str] = None,
) -> tuple[Release, ReleaseAsset]:
    """Pick one asset.

    The newest matching release with any install-only asset wins, taking its
    most recently updated install-only asset. Otherwise the most recently
    updated full asset across all matching releases is used.
    """
    matching = sorted(
        (r for r in releases if release_matches(r, version, target_triple, build_date)),
        key=lambda r: _sort_time(r.published_at),
        reverse=True,
    )

    full_candidates: list[tuple[Release, ReleaseAsset]] = []
    for release in matching:
        assets = [a for a in release.assets if asset_matches(a.name, version, target_triple)]
        install_only = [a for a in assets if is_install_only(a.name)]
        if install_only:
            return release, max(install_only, key=lambda a: _sort_time(a.updated_at))
        full_candidates.extend((release, a) for a in assets if is_full(a.name))

    if full_candidates:
        return max(full_candidates, key=lambda pair: _sort_time(pair[1].updated_at))

    raise InstanceNotFoundError(
        version,
        build_date,
        reason=f"no release asset for platform {target_triple}",
    )


def build_date_for_release(release: Release) -> str:
    """Date from the release tag, or "unknown"."""
    found = extract_build_date(release.tag_name)
    if found is None:
        logger.warning({
            "event": "build_date_unknown",
            "tag": release.tag_name,
        })
        return UNKNOWN_BUILD_DATE
    return found


class ReleaseCatalog:
    """Remote release index behind an ordered list of transports."""

    def __init__(
        self,
        transports: Optional[Sequence[ReleaseTransport]] = None,
        cache: Optional[ReleaseCache] = None,
        cache_ttl: float = 3600.0,
        token: Optional[str] = None,
        proxy: Optional[str] = None,
    ):
        if transports is None:
            transports = [GithubClientTransport(token=token), HttpTransport(token=token, proxy=proxy)]
        if not transports:
            raise ValueError("At least one release transport is required")
        self.transports = list(transports)
        self.cache = cache or NullCache()
        self.cache_ttl = cache_ttl

    async def _call(self, operation: str, *args):
        for index, transport in enumerate(self.transports):
            try:
                return await getattr(transport, operation)(*args)
            except PythonRuntimeError:
                raise
            except Exception as e:
                is_last = index == len(self.transports) - 1
                if classify_failure(e) == FallbackDecision.PROPAGATE or is_last:
                    raise self._translate(e, operation, args) from e
                logger.warning({
                    "event": "release_transport_fallback",
                    "transport": transport.name,
                    "next": self.transports[index + 1].name,
                    "operation": operation,
                    "error": str(e),
                })

    @staticmethod
    def _translate(error: Exception, operation: str, args: tuple) -> PythonRuntimeError:
        status = failure_status(error)
        if status == 404:
            target = args[0] if args else "latest"
            return InstanceNotFoundError(str(target), reason="release not found")
        if status in (403, 429):
            return PythonInstallationError(
                f"GitHub API rate limit or permission error during {operation}: {error}",
                details={"status": status, "operation": operation},
            )
        return PythonInstallationError(
            f"GitHub API request failed during {operation}: {error}",
            details={"status": status, "operation": operation},
        )

    async def list_releases(self) -> list[Release]:
        cached = self.cache.get(RELEASES_CACHE_KEY)
        if cached is not None:
            return cached
        releases = await self._call("list_releases")
        logger.info({"event": "releases_listed", "count": len(releases)})
        self.cache.set(RELEASES_CACHE_KEY, releases, self.cache_ttl)
        return releases

    async def get_latest_release(self) -> Release:
        return await self._call("get_latest_release")

    async def get_release_by_tag(self, tag: str) -> Release:
        return await self._call("get_release_by_tag", tag)

    async def resolve_asset(
        self,
        version: str,
        build_date: Optional[str] = None,
        platform: Optional[PlatformInfo] = None,
    ) -> tuple[ReleaseAsset, str]:
        """Return the asset to download and its build date."""
        platform = platform or get_platform_info()
        releases = await self.list_releases()
        release, asset = select_asset(releases, version, platform.target_triple, build_date)
        resolved_date = build_date if build_date is not None else build_date_for_release(release)

        logger.info({
            "event": "asset_selected",
            "version": version,
            "release": release.tag_name,
            "asset": asset.name,
            "build_date": resolved_date,
        })
        return asset, resolved_date

    async def list_available_versions(self, release_tag: Optional[str] = None) -> list[str]:
        """Versions offered by the latest (or tagged) release, newest first."""
        key = VERSIONS_CACHE_KEY.format(tag=release_tag or "all")
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        if release_tag:
            release = await self.get_release_by_tag(release_tag)
        else:
            release = await self.get_latest_release()

        versions = sort_versions(
            v for v in (extract_version_from_asset(a.name) for a in release.assets) if v
        )
        self.cache.set(key, versions, self.cache_ttl)
        return versions
