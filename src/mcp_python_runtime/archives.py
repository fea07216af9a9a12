"""Archive type detection, extraction and install layout verification."""
import asyncio
import os
import shutil
import zipfile
from pathlib import Path
from typing import Optional

from mcp_python_runtime.errors import (
    ArchiveExtractionError,
    OperationCancelledError,
    ProcessCancelledError,
    PythonExecutionError,
    UnsupportedArchiveError,
)
from mcp_python_runtime.execution import run_process
from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.platforms import get_platform_info, python_executable
from mcp_python_runtime.types import ArchiveType, PlatformInfo

logger = get_logger(__name__)

# Compound suffixes first so ".tar.gz" never falls through to ".tar"
ARCHIVE_SUFFIXES = [
    (".tar.gz", ArchiveType.TAR_GZ),
    (".tgz", ArchiveType.TAR_GZ),
    (".tar.bz2", ArchiveType.TAR_BZ2),
    (".tar.bz", ArchiveType.TAR_BZ),
    (".tar.zst", ArchiveType.TAR_ZST),
    (".zip", ArchiveType.ZIP),
    (".zst", ArchiveType.TAR_ZST),
    (".tar", ArchiveType.TAR),
]

TAR_ARGUMENTS = {
    ArchiveType.TAR: ["-xf"],
    ArchiveType.TAR_GZ: ["-xzf"],
    ArchiveType.TAR_BZ: ["-xjf"],
    ArchiveType.TAR_BZ2: ["-xjf"],
    ArchiveType.TAR_ZST: ["--use-compress-program=zstd", "-xf"],
}

REQUIRED_TOOLS = {
    ArchiveType.TAR: ["tar"],
    ArchiveType.TAR_GZ: ["tar"],
    ArchiveType.TAR_BZ: ["tar"],
    ArchiveType.TAR_BZ2: ["tar"],
    ArchiveType.TAR_ZST: ["tar", "zstd"],
}

TOOL_PROBE_TIMEOUT = 10.0

_tool_availability: dict[str, bool] = {}


def detect_archive_type(filename: str) -> ArchiveType:
    name = filename.lower()
    for suffix, archive_type in ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return archive_type
    raise UnsupportedArchiveError(filename, "unsupported archive format")


def is_supported_archive(filename: str) -> bool:
    try:
        detect_archive_type(filename)
        return True
    except UnsupportedArchiveError:
        return False


async def is_tool_available(tool: str) -> bool:
    """Probe `<tool> --version` once per process."""
    if tool in _tool_availability:
        return _tool_availability[tool]

    try:
        result = await run_process(tool, ["--version"], timeout=TOOL_PROBE_TIMEOUT)
        available = result.exit_code == 0
    except PythonExecutionError:
        available = False

    _tool_availability[tool] = available
    logger.debug({"event": "tool_probed", "tool": tool, "available": available})
    return available


def reset_tool_cache() -> None:
    _tool_availability.clear()


async def _ensure_tools(archive: Path, archive_type: ArchiveType) -> None:
    tools = REQUIRED_TOOLS[archive_type]
    missing = [tool for tool in tools if not await is_tool_available(tool)]
    if missing:
        needed = " and ".join(tools)
        raise UnsupportedArchiveError(
            archive.name,
            f"extraction requires the {needed} system tools; install {', '.join(missing)} and retry",
        )


def extract_zip(archive: Path, dest: Path, cancel_event: Optional[asyncio.Event] = None) -> None:
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelledError("extraction", archive.name)
            extracted = Path(zf.extract(info, dest))
            mode = (info.external_attr >> 16) & 0o777
            if mode and os.name != "nt":
                extracted.chmod(mode)


async def extract_archive(
    archive: Path,
    dest: Path,
    cancel_event: Optional[asyncio.Event] = None,
) -> Path:
    """Extract `archive` into `dest` and return `dest`."""
    archive_type = detect_archive_type(archive.name)
    dest.mkdir(parents=True, exist_ok=True)

    logger.info({
        "event": "archive_extracting",
        "archive": str(archive),
        "type": archive_type.name,
        "destination": str(dest),
    })

    if archive_type == ArchiveType.ZIP:
        try:
            await asyncio.to_thread(extract_zip, archive, dest, cancel_event)
        except (zipfile.BadZipFile, OSError) as e:
            raise ArchiveExtractionError(archive.name, str(e)) from e
    else:
        await _ensure_tools(archive, archive_type)
        args = [*TAR_ARGUMENTS[archive_type], str(archive), "-C", str(dest)]
        try:
            result = await run_process("tar", args, cancel_event=cancel_event)
        except ProcessCancelledError as e:
            raise OperationCancelledError("extraction", archive.name) from e
        except PythonExecutionError as e:
            raise ArchiveExtractionError(archive.name, str(e)) from e
        if result.exit_code != 0:
            raise ArchiveExtractionError(
                archive.name,
                f"tar exited with code {result.exit_code}: {result.stderr}",
            )

    logger.info({"event": "archive_extracted", "archive": str(archive), "destination": str(dest)})
    return dest


def verify_installation(root: Path, info: Optional[PlatformInfo] = None) -> bool:
    """Windows: python.exe at root. POSIX: bin/python3 and a lib/ directory."""
    info = info or get_platform_info()
    if not python_executable(root, info).is_file():
        return False
    return info.is_windows or (root / "lib").is_dir()


def locate_install_root(extracted: Path, info: Optional[PlatformInfo] = None) -> Path:
    """Search the root, then one and two directory levels below it."""
    if verify_installation(extracted, info):
        return extracted

    children = sorted(p for p in extracted.iterdir() if p.is_dir())
    for child in children:
        if verify_installation(child, info):
            return child

    for child in children:
        for grandchild in sorted(p for p in child.iterdir() if p.is_dir()):
            if verify_installation(grandchild, info):
                return grandchild

    logger.warning({"event": "install_root_not_found", "path": str(extracted)})
    return extracted


def directory_size(path: Path) -> int:
    """Total bytes of regular files below `path`."""
    if not path.exists():
        return 0
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            file_path = Path(root) / name
            if not file_path.is_symlink():
                total += file_path.stat().st_size
    return total


def make_zip(source: Path, archive: Path) -> Path:
    """Zip the contents of `source` into `archive`."""
    archive.parent.mkdir(parents=True, exist_ok=True)
    base = archive.with_suffix("") if archive.suffix == ".zip" else archive
    built = shutil.make_archive(str(base), "zip", root_dir=source)
    return Path(built)
