"""Acquire a runtime instance: resolve, download, extract, verify, persist."""

import asyncio
import shutil
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fuuid import b58_fuuid

from mcp_python_runtime.archives import extract_archive, locate_install_root, verify_installation
from mcp_python_runtime.config import ManagerConfig
from mcp_python_runtime.errors import PythonExecutionError, PythonInstallationError
from mcp_python_runtime.execution import run_process
from mcp_python_runtime.instances.store import InstanceStore, instance_dir_name
from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.platforms import get_platform_info, python_executable
from mcp_python_runtime.releases.catalog import ReleaseCatalog
from mcp_python_runtime.releases.download import ProgressCallback, download_with_retry
from mcp_python_runtime.types import InstanceRecord, PlatformInfo, ReleaseAsset
from mcp_python_runtime.versions import (
    extract_version_from_asset,
    normalize_build_date,
    normalize_version,
    parse_version,
)

logger = get_logger(__name__)

DOWNLOADS_DIR_NAME = ".downloads"


def _remove_quietly(path: Path, event: str) -> None:
    """Best-effort removal; failures are logged."""
    try:
        if path.exists():
            shutil.rmtree(path)
    except OSError as e:
        logger.error({"event": event, "path": str(path), "error": str(e)})


class AcquisitionPipeline:
    """Installs instances under `store.root`, one writer per target directory."""

    def __init__(
        self,
        store: InstanceStore,
        catalog: ReleaseCatalog,
        config: Optional[ManagerConfig] = None,
        platform: Optional[PlatformInfo] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.config = config or ManagerConfig()
        self.platform = platform or get_platform_info()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def root(self) -> Path:
        return self.store.root

    async def acquire(
        self,
        version: Optional[str] = None,
        build_date: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> InstanceRecord:
        version = (version or self.config.default_version).strip()
        parse_version(version)
        wanted_date = normalize_build_date(build_date)

        existing = self.store.find(version, wanted_date)
        if existing is not None:
            logger.info({
                "event": "instance_reused",
                "version": existing.version,
                "build_date": existing.build_date,
                "directory": str(existing.directory),
            })
            return existing

        asset, resolved_date = await self.catalog.resolve_asset(version, wanted_date, self.platform)
        actual_version = extract_version_from_asset(asset.name) or normalize_version(version)
        dir_name = instance_dir_name(actual_version, resolved_date)

        async with self._locks[dir_name]:
            existing = self.store.find_exact(actual_version, resolved_date)
            if existing is not None and existing.directory.is_dir():
                return existing
            return await self._install(
                asset,
                actual_version,
                resolved_date,
                was_latest_build=wanted_date is None,
                instance_dir=self.root / dir_name,
                progress=progress,
                cancel_event=cancel_event,
            )

    async def _install(
        self,
        asset: ReleaseAsset,
        version: str,
        build_date: str,
        was_latest_build: bool,
        instance_dir: Path,
        progress: Optional[ProgressCallback],
        cancel_event: Optional[asyncio.Event],
    ) -> InstanceRecord:
        temp_dir = self.root / DOWNLOADS_DIR_NAME / b58_fuuid()
        persisted = False
        try:
            temp_dir.mkdir(parents=True)
            archive = await download_with_retry(
                asset,
                temp_dir,
                attempts=self.config.retry_attempts,
                delay_for=self.config.retry_delay_for,
                progress=progress,
                proxy=self.config.proxy_url,
                cancel_event=cancel_event,
            )

            if instance_dir.exists():
                logger.warning({"event": "stale_instance_removed", "directory": str(instance_dir)})
                await asyncio.to_thread(shutil.rmtree, instance_dir)

            await extract_archive(archive, instance_dir, cancel_event=cancel_event)
            install_root = locate_install_root(instance_dir, self.platform)
            if not verify_installation(install_root, self.platform):
                raise PythonInstallationError(
                    f"Python installation verification failed in {install_root}",
                    details={
                        "version": version,
                        "build_date": build_date,
                        "platform": self.platform.target_triple,
                        "path": str(install_root),
                    },
                )

            await self._smoke_test(install_root)

            record = InstanceRecord(
                version=version,
                build_date=build_date,
                was_latest_build=was_latest_build,
                install_date=datetime.now(timezone.utc),
                directory=instance_dir,
                install_root=install_root,
            )
            await self.store.add(record)
            persisted = True

            logger.info({
                "event": "instance_installed",
                "version": version,
                "build_date": build_date,
                "directory": str(instance_dir),
            })
            return record
        finally:
            if not persisted:
                _remove_quietly(instance_dir, "partial_instance_cleanup_failed")
            _remove_quietly(temp_dir, "temp_cleanup_failed")

    async def _smoke_test(self, install_root: Path) -> None:
        executable = python_executable(install_root, self.platform)
        try:
            result = await run_process(
                executable, ["--version"], timeout=self.config.smoke_test_timeout
            )
        except PythonExecutionError as e:
            logger.warning({"event": "smoke_test_failed", "executable": str(executable), "error": str(e)})
            return
        if result.exit_code != 0:
            logger.warning({
                "event": "smoke_test_failed",
                "executable": str(executable),
                "exit_code": result.exit_code,
                "stderr": result.stderr,
            })
        else:
            logger.info({"event": "smoke_test_passed", "output": result.stdout or result.stderr})
