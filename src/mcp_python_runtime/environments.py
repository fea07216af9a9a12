"""Virtual environment lifecycle for an installed instance."""

import asyncio
import shutil
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from mcp_python_runtime.archives import extract_zip, make_zip
from mcp_python_runtime.config import ManagerConfig
from mcp_python_runtime.errors import VirtualEnvironmentError, VirtualEnvironmentNotFoundError
from mcp_python_runtime.instances.store import InstanceStore
from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.platforms import get_platform_info, venv_python_executable
from mcp_python_runtime.runtimes.runtime import PythonRuntime, root_runtime, virtual_runtime
from mcp_python_runtime.types import InstanceRecord, PlatformInfo, SubEnvironmentRecord

logger = get_logger(__name__)

DELETE_ATTEMPTS = 5
DELETE_BACKOFF = 0.1


def validate_env_name(name: str) -> str:
    if not name or name in (".", "..") or any(sep in name for sep in ("/", "\\")):
        raise VirtualEnvironmentError(f"Invalid virtual environment name: {name!r}")
    return name


class EnvironmentManager:
    """Named virtual environments derived from one instance."""

    def __init__(
        self,
        record: InstanceRecord,
        store: InstanceStore,
        config: Optional[ManagerConfig] = None,
        platform: Optional[PlatformInfo] = None,
    ):
        self.record = record
        self.store = store
        self.config = config or ManagerConfig()
        self.platform = platform or get_platform_info()
        self.runtime = root_runtime(record, self.config)

    def path_for(self, name: str) -> Path:
        sub = self.record.get_sub_environment(name)
        if sub is not None:
            return sub.path
        return self.record.venvs_dir / name

    def is_valid(self, path: Path) -> bool:
        return path.is_dir() and venv_python_executable(path, self.platform).exists()

    async def _edit_sub_environments(self, name: str, added: Optional[SubEnvironmentRecord]) -> None:
        def change(record: InstanceRecord) -> None:
            record.sub_environments = [s for s in record.sub_environments if s.name != name]
            if added is not None:
                record.sub_environments.append(added)

        current = await self.store.mutate(self.record, change)
        self.record.sub_environments = list(current.sub_environments)

    async def _forget(self, name: str) -> None:
        await self._edit_sub_environments(name, None)

    async def _remember(self, name: str, path: Path, external_path: Optional[Path]) -> None:
        await self._edit_sub_environments(name, SubEnvironmentRecord(
            name=name,
            path=path,
            created_date=datetime.now(timezone.utc),
            external_path=external_path,
        ))

    async def get_or_create(
        self,
        name: str,
        recreate: bool = False,
        external_path: Optional[Path] = None,
    ) -> PythonRuntime:
        """Return a runtime for `name`, building the environment when needed."""
        validate_env_name(name)
        path = Path(external_path) if external_path else self.path_for(name)

        if recreate and path.exists():
            logger.info({"event": "venv_recreating", "name": name, "path": str(path)})
            await self._remove_tree(name, path)

        if not self.is_valid(path):
            if path.exists():
                await self._remove_tree(name, path)
            path.parent.mkdir(parents=True, exist_ok=True)

            result = await self.runtime.execute(["-m", "venv", str(path)])
            if result.exit_code != 0:
                raise VirtualEnvironmentError(
                    f"Failed to create virtual environment {name}: {result.stderr}",
                    details={"name": name, "path": str(path), "exit_code": result.exit_code},
                )
            await self._remember(name, path, Path(external_path) if external_path else None)
            logger.info({"event": "venv_created", "name": name, "path": str(path)})

        return virtual_runtime(path, self.config)

    def get(self, name: str) -> PythonRuntime:
        path = self.path_for(name)
        if not self.is_valid(path):
            raise VirtualEnvironmentNotFoundError(name)
        return virtual_runtime(path, self.config)

    async def _remove_tree(self, name: str, path: Path) -> None:
        """rmtree with retries for handles that are still being released."""
        for attempt in range(1, DELETE_ATTEMPTS + 1):
            try:
                await asyncio.to_thread(shutil.rmtree, path)
                return
            except FileNotFoundError:
                return
            except OSError as e:
                if attempt == DELETE_ATTEMPTS:
                    raise VirtualEnvironmentNotFoundError(
                        name,
                        reason=f"could not be deleted after {DELETE_ATTEMPTS} attempts: {e}",
                    ) from e
                logger.warning({
                    "event": "venv_delete_retry",
                    "name": name,
                    "attempt": attempt,
                    "error": str(e),
                })
                await asyncio.sleep(DELETE_BACKOFF * attempt)

    async def delete(self, name: str) -> bool:
        """False when the environment is absent or invalid."""
        path = self.path_for(name)
        if not self.is_valid(path):
            return False
        await self._remove_tree(name, path)
        await self._forget(name)
        logger.info({"event": "venv_deleted", "name": name, "path": str(path)})
        return True

    async def delete_many(self, names: Iterable[str], parallel: bool = False) -> dict[str, bool]:
        """Delete each environment; failures are recorded as False."""

        async def delete_one(name: str) -> bool:
            try:
                return await self.delete(name)
            except VirtualEnvironmentError as e:
                logger.warning({"event": "venv_delete_failed", "name": name, "error": str(e)})
                return False

        keys = list(dict.fromkeys(names))
        if parallel:
            return dict(zip(keys, await asyncio.gather(*(delete_one(n) for n in keys))))
        return {name: await delete_one(name) for name in keys}

    def list(self) -> list[str]:
        names = set()
        if self.record.venvs_dir.is_dir():
            names.update(
                child.name for child in self.record.venvs_dir.iterdir() if self.is_valid(child)
            )
        names.update(
            sub.name for sub in self.record.sub_environments
            if sub.is_external and self.is_valid(sub.path)
        )
        return sorted(names)

    async def clone(self, source: str, destination: str) -> PythonRuntime:
        validate_env_name(destination)
        src_path = self.path_for(source)
        dst_path = self.record.venvs_dir / destination
        if not self.is_valid(src_path):
            raise VirtualEnvironmentNotFoundError(source)
        if dst_path.exists():
            raise VirtualEnvironmentError(f"Virtual environment {destination} already exists")

        try:
            await asyncio.to_thread(shutil.copytree, src_path, dst_path, symlinks=True)
        except OSError:
            if dst_path.exists():
                await asyncio.to_thread(shutil.rmtree, dst_path, ignore_errors=True)
            raise

        await self._remember(destination, dst_path, None)
        logger.info({"event": "venv_cloned", "source": source, "destination": destination})
        return virtual_runtime(dst_path, self.config)

    async def export(self, name: str, archive: Path) -> Path:
        path = self.path_for(name)
        if not self.is_valid(path):
            raise VirtualEnvironmentNotFoundError(name)
        built = await asyncio.to_thread(make_zip, path, Path(archive))
        logger.info({"event": "venv_exported", "name": name, "archive": str(built)})
        return built

    async def import_(self, archive: Path, name: str) -> PythonRuntime:
        validate_env_name(name)
        dst_path = self.record.venvs_dir / name
        if dst_path.exists():
            raise VirtualEnvironmentError(f"Virtual environment {name} already exists")

        try:
            await asyncio.to_thread(extract_zip, Path(archive), dst_path)
            if not self.is_valid(dst_path):
                raise VirtualEnvironmentError(f"Archive {archive} does not contain a virtual environment")
        except (VirtualEnvironmentError, zipfile.BadZipFile, OSError):
            await asyncio.to_thread(shutil.rmtree, dst_path, ignore_errors=True)
            raise

        await self._remember(name, dst_path, None)
        logger.info({"event": "venv_imported", "name": name, "archive": str(archive)})
        return virtual_runtime(dst_path, self.config)
