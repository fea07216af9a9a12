"""On-disk instance metadata.

Each instance directory holds one `instance_metadata.json` record written in
camelCase with null fields omitted. The in-memory index is rebuilt by
scanning the root; all writes go through a single lock.
"""

import asyncio
import json
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional

from mcp_python_runtime.errors import MetadataCorruptedError
from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.types import InstanceRecord, SubEnvironmentRecord
from mcp_python_runtime.versions import (
    compact_build_date,
    is_valid_version,
    normalize_build_date,
    parse_version,
    version_matches,
)

logger = get_logger(__name__)

METADATA_FILE_NAME = "instance_metadata.json"


def instance_dir_name(version: str, build_date: str) -> str:
    return f"python-{version}-{compact_build_date(build_date)}"


def _drop_nulls(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


def _relative_root(record: InstanceRecord) -> Optional[str]:
    if record.install_root is None:
        return None
    return record.install_root.relative_to(record.directory).as_posix()


def record_to_dict(record: InstanceRecord) -> dict[str, Any]:
    return _drop_nulls({
        "version": record.version,
        "buildDate": record.build_date,
        "wasLatestBuild": record.was_latest_build,
        "installDate": record.install_date.isoformat(),
        "installRoot": _relative_root(record),
        "subEnvironments": [
            _drop_nulls({
                "name": sub.name,
                "path": str(sub.path),
                "isExternal": sub.is_external,
                "externalPath": str(sub.external_path) if sub.external_path else None,
                "createdDate": sub.created_date.isoformat(),
            })
            for sub in record.sub_environments
        ],
    })


def record_from_dict(data: dict[str, Any], directory: Path) -> InstanceRecord:
    subs = []
    for item in data.get("subEnvironments", []):
        external = item.get("externalPath")
        subs.append(SubEnvironmentRecord(
            name=item["name"],
            path=Path(item["path"]) if item.get("path") else directory / "venvs" / item["name"],
            created_date=datetime.fromisoformat(item["createdDate"]),
            external_path=Path(external) if external else None,
        ))
    return InstanceRecord(
        version=data["version"],
        build_date=normalize_build_date(data["buildDate"]),
        was_latest_build=bool(data.get("wasLatestBuild", False)),
        install_date=datetime.fromisoformat(data["installDate"]),
        directory=directory,
        sub_environments=subs,
        install_root=directory / data["installRoot"] if "installRoot" in data else None,
    )


def save_record(record: InstanceRecord) -> Path:
    """Write atomically into the record's directory."""
    path = record.directory / METADATA_FILE_NAME
    tmp_path = path.with_suffix(".json.tmp")
    tmp_path.write_text(json.dumps(record_to_dict(record), indent=2), encoding="utf-8")
    os.replace(tmp_path, path)
    return path


def load_record(directory: Path) -> Optional[InstanceRecord]:
    """None when there is no metadata file; raises when it cannot be parsed."""
    path = directory / METADATA_FILE_NAME
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        record = record_from_dict(data, directory)
    except (OSError, ValueError, KeyError, TypeError) as e:
        raise MetadataCorruptedError(str(path), str(e)) from e
    if not is_valid_version(record.version):
        raise MetadataCorruptedError(str(path), f"invalid version {record.version!r}")
    return record


class InstanceStore:
    """Instance records under one root directory."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._records: dict[Path, InstanceRecord] = {}
        self._lock = asyncio.Lock()
        self.corrupted: list[Path] = []

    def refresh(self) -> list[InstanceRecord]:
        """Rebuild the index from disk; corrupt records are logged and skipped."""
        records: dict[Path, InstanceRecord] = {}
        corrupted: list[Path] = []
        if self.root.is_dir():
            for child in sorted(self.root.iterdir()):
                if not child.is_dir():
                    continue
                try:
                    record = load_record(child)
                except MetadataCorruptedError as e:
                    logger.error({"event": "instance_metadata_corrupted", "path": e.path})
                    corrupted.append(child)
                    continue
                if record is not None:
                    records[child] = record
        self._records = records
        self.corrupted = corrupted
        return list(records.values())

    @property
    def records(self) -> list[InstanceRecord]:
        return list(self._records.values())

    def find(
        self,
        version: str,
        build_date: Optional[str] = None,
        latest_only: bool = True,
    ) -> Optional[InstanceRecord]:
        """Best instance for the request; partial versions pick the latest patch.

        Without a build date only instances installed as "latest" qualify,
        unless `latest_only` is False.
        """
        wanted_date = normalize_build_date(build_date)
        candidates = []
        for record in self._records.values():
            if not record.directory.is_dir():
                continue
            if not version_matches(record.version, version):
                continue
            if wanted_date is None:
                if latest_only and not record.was_latest_build:
                    continue
            elif record.build_date != wanted_date:
                continue
            candidates.append(record)

        if not candidates:
            return None
        return max(
            candidates,
            key=lambda r: (parse_version(r.version).key, r.build_date, r.install_date),
        )

    def find_exact(self, version: str, build_date: str) -> Optional[InstanceRecord]:
        wanted_date = normalize_build_date(build_date)
        return next(
            (
                r for r in self._records.values()
                if version_matches(r.version, version) and r.build_date == wanted_date
            ),
            None,
        )

    async def add(self, record: InstanceRecord) -> None:
        async with self._lock:
            await asyncio.to_thread(save_record, record)
            self._records[record.directory] = record
        logger.info({
            "event": "instance_saved",
            "version": record.version,
            "build_date": record.build_date,
            "directory": str(record.directory),
        })

    async def update(self, record: InstanceRecord) -> None:
        await self.add(record)

    async def mutate(
        self,
        record: InstanceRecord,
        change: Callable[[InstanceRecord], None],
    ) -> InstanceRecord:
        """Apply `change` to the persisted copy of `record` and save it.

        The reload and the write happen under the store lock, so edits made
        through stale record objects never overwrite each other.
        """
        async with self._lock:
            current = await asyncio.to_thread(load_record, record.directory)
            if current is None:
                current = self._records.get(record.directory, record)
            change(current)
            await asyncio.to_thread(save_record, current)
            self._records[record.directory] = current
        logger.debug({
            "event": "instance_updated",
            "version": current.version,
            "directory": str(current.directory),
        })
        return current

    async def remove(self, record: InstanceRecord) -> bool:
        """Delete the record and its directory."""
        async with self._lock:
            existed = record.directory.exists()
            if existed:
                await asyncio.to_thread(shutil.rmtree, record.directory)
            removed = self._records.pop(record.directory, None) is not None
        logger.info({
            "event": "instance_removed",
            "version": record.version,
            "build_date": record.build_date,
            "directory": str(record.directory),
        })
        return existed or removed
