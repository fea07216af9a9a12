"""Manager facade tying the catalog, pipeline, store and environments together."""

import asyncio
import os
import shutil
from pathlib import Path
from typing import Any, Optional

import aiohttp
from fuuid import b58_fuuid

from mcp_python_runtime.archives import (
    directory_size,
    extract_zip,
    is_tool_available,
    make_zip,
    verify_installation,
)
from mcp_python_runtime.config import ManagerConfig, get_root_dir
from mcp_python_runtime.environments import EnvironmentManager
from mcp_python_runtime.errors import InstanceNotFoundError, PythonInstallationError
from mcp_python_runtime.instances.acquisition import AcquisitionPipeline
from mcp_python_runtime.instances.store import InstanceStore, instance_dir_name, load_record
from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.platforms import (
    MIN_GLIBC_VERSION,
    get_glibc_version,
    get_platform_info,
    python_executable,
)
from mcp_python_runtime.releases.cache import MemoryCache, ReleaseCache
from mcp_python_runtime.releases.catalog import ReleaseCatalog
from mcp_python_runtime.releases.constants import CONNECTIVITY_TIMEOUT, GITHUB_API_BASE, USER_AGENT
from mcp_python_runtime.releases.download import ProgressCallback
from mcp_python_runtime.runtimes.runtime import PythonRuntime, root_runtime
from mcp_python_runtime.types import InstanceRecord, PlatformInfo
from mcp_python_runtime.versions import select_best_match

logger = get_logger(__name__)

IMPORTS_DIR_NAME = ".imports"
MIN_FREE_SPACE = 500 * 1024 * 1024


class PythonManager:
    """Entry point for acquiring and managing standalone Python instances."""

    def __init__(
        self,
        root: Optional[Path] = None,
        config: Optional[ManagerConfig] = None,
        catalog: Optional[ReleaseCatalog] = None,
        cache: Optional[ReleaseCache] = None,
        platform: Optional[PlatformInfo] = None,
    ):
        self.config = config or ManagerConfig()
        self.root = get_root_dir(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.platform = platform or get_platform_info()
        self.catalog = catalog or ReleaseCatalog(
            cache=cache or MemoryCache(),
            cache_ttl=self.config.release_cache_ttl,
            token=self.config.github_token,
            proxy=self.config.proxy_url,
        )
        self.store = InstanceStore(self.root)
        self.store.refresh()
        self.pipeline = AcquisitionPipeline(self.store, self.catalog, self.config, self.platform)

    async def acquire(
        self,
        version: Optional[str] = None,
        build_date: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> InstanceRecord:
        return await self.pipeline.acquire(version, build_date, progress, cancel_event)

    async def get_or_create_runtime(
        self,
        version: Optional[str] = None,
        build_date: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> PythonRuntime:
        record = await self.acquire(version, build_date, progress)
        return root_runtime(record, self.config)

    def list_instances(self) -> list[InstanceRecord]:
        return self.store.refresh()

    def get_instance(self, version: str, build_date: Optional[str] = None) -> Optional[InstanceRecord]:
        return self.store.find(version, build_date, latest_only=False)

    def require_instance(self, version: str, build_date: Optional[str] = None) -> InstanceRecord:
        record = self.get_instance(version, build_date)
        if record is None:
            raise InstanceNotFoundError(version, build_date, reason="not installed")
        return record

    async def remove_instance(self, version: str, build_date: Optional[str] = None) -> bool:
        record = self.get_instance(version, build_date)
        if record is None:
            return False
        return await self.store.remove(record)

    def environments(self, record: InstanceRecord) -> EnvironmentManager:
        return EnvironmentManager(record, self.store, self.config, self.platform)

    async def list_available_versions(self, release_tag: Optional[str] = None) -> list[str]:
        return await self.catalog.list_available_versions(release_tag)

    async def find_best_matching_version(self, requested: str) -> Optional[str]:
        return select_best_match(await self.list_available_versions(), requested)

    async def get_latest_version(self) -> Optional[str]:
        versions = await self.list_available_versions()
        return versions[0] if versions else None

    def get_instance_size(self, version: str, build_date: Optional[str] = None) -> int:
        return directory_size(self.require_instance(version, build_date).directory)

    def get_total_disk_usage(self) -> int:
        return sum(directory_size(r.directory) for r in self.store.refresh())

    async def validate_instance_integrity(self, version: str, build_date: Optional[str] = None) -> bool:
        record = self.get_instance(version, build_date)
        if record is None or not record.directory.is_dir():
            return False
        if not verify_installation(record.python_home, self.platform):
            return False
        return await root_runtime(record, self.config).validate_installation()

    def check_disk_space(self, required_bytes: int = MIN_FREE_SPACE) -> bool:
        target = self.root
        while not target.exists():
            target = target.parent
        return shutil.disk_usage(target).free >= required_bytes

    async def test_network_connectivity(self) -> bool:
        timeout = aiohttp.ClientTimeout(total=CONNECTIVITY_TIMEOUT)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(
                    GITHUB_API_BASE,
                    headers={"User-Agent": USER_AGENT},
                    proxy=self.config.proxy_url,
                ) as response:
                    return response.status < 500
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning({"event": "connectivity_check_failed", "error": str(e)})
            return False

    async def get_system_requirements(self) -> dict[str, Any]:
        glibc = get_glibc_version()
        return {
            "os": self.platform.os_name,
            "arch": self.platform.arch,
            "target_triple": self.platform.target_triple,
            "libc": self.platform.libc,
            "glibc_version": ".".join(map(str, glibc)) if glibc else None,
            "glibc_supported": glibc is None or glibc >= MIN_GLIBC_VERSION,
            "tar_available": await is_tool_available("tar"),
            "zstd_available": await is_tool_available("zstd"),
            "root": str(self.root),
        }

    async def diagnose_issues(self) -> list[str]:
        issues = []
        requirements = await self.get_system_requirements()
        if not requirements["glibc_supported"]:
            issues.append(
                f"glibc {requirements['glibc_version']} is older than the required "
                f"{'.'.join(map(str, MIN_GLIBC_VERSION))}"
            )
        if not requirements["tar_available"]:
            issues.append("tar is not available; .tar.* archives cannot be extracted")
        if not requirements["zstd_available"]:
            issues.append("zstd is not available; .tar.zst archives cannot be extracted")
        if not os.access(self.root, os.W_OK):
            issues.append(f"Instance root {self.root} is not writable")
        if not self.check_disk_space():
            issues.append(f"Less than {MIN_FREE_SPACE // (1024 * 1024)} MB free under {self.root}")
        if not await self.test_network_connectivity():
            issues.append("GitHub API is not reachable")
        self.store.refresh()
        for path in self.store.corrupted:
            issues.append(f"Instance metadata in {path} is corrupted")
        for record in self.store.records:
            if not python_executable(record.python_home, self.platform).exists():
                issues.append(f"Python {record.version} in {record.directory} has no interpreter")
        return issues

    async def export_instance(
        self, version: str, build_date: Optional[str], archive: Path
    ) -> Path:
        record = self.require_instance(version, build_date)
        built = await asyncio.to_thread(make_zip, record.directory, Path(archive))
        logger.info({"event": "instance_exported", "version": record.version, "archive": str(built)})
        return built

    async def import_instance(self, archive: Path) -> InstanceRecord:
        staging = self.root / IMPORTS_DIR_NAME / b58_fuuid()
        try:
            await asyncio.to_thread(extract_zip, Path(archive), staging)
            staged = load_record(staging)
            if staged is None:
                raise PythonInstallationError(f"Archive {archive} does not contain instance metadata")

            target = self.root / instance_dir_name(staged.version, staged.build_date)
            if target.exists():
                raise PythonInstallationError(
                    f"Python {staged.version} (build {staged.build_date}) is already installed",
                    details={"directory": str(target)},
                )
            await asyncio.to_thread(shutil.move, str(staging), str(target))
        finally:
            if staging.exists():
                await asyncio.to_thread(shutil.rmtree, staging, ignore_errors=True)

        record = load_record(target)
        for sub in record.sub_environments:
            if not sub.is_external:
                sub.path = record.venvs_dir / sub.name
        await self.store.add(record)
        logger.info({"event": "instance_imported", "version": record.version, "directory": str(target)})
        return record
