"""Platform detection and target triple mapping."""
import platform
from functools import lru_cache
from pathlib import Path
from typing import Optional

from mcp_python_runtime.errors import PlatformNotSupportedError
from mcp_python_runtime.types import PlatformInfo

MIN_GLIBC_VERSION = (2, 17)

# Architecture aliases
ARCH_MAPPINGS = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "i386": "i686",
    "i686": "i686",
    "x86": "i686",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "armv7l": "armv7",
    "armv7": "armv7",
}

# (system, arch, libc) -> target triple
TARGET_TRIPLES = {
    ("Windows", "x86_64", None): "x86_64-pc-windows-msvc",
    ("Windows", "i686", None): "i686-pc-windows-msvc",
    ("Windows", "aarch64", None): "aarch64-pc-windows-msvc",
    ("Linux", "x86_64", "gnu"): "x86_64-unknown-linux-gnu",
    ("Linux", "x86_64", "musl"): "x86_64-unknown-linux-musl",
    ("Linux", "i686", "gnu"): "i686-unknown-linux-gnu",
    ("Linux", "aarch64", "gnu"): "aarch64-unknown-linux-gnu",
    ("Linux", "armv7", "gnu"): "armv7-unknown-linux-gnueabi",
    ("Darwin", "x86_64", None): "x86_64-apple-darwin",
    ("Darwin", "aarch64", None): "aarch64-apple-darwin",
}


def detect_libc(system: str) -> Optional[str]:
    """gnu or musl on Linux, None elsewhere."""
    if system != "Linux":
        return None
    lib, _ = platform.libc_ver()
    return "gnu" if lib == "glibc" else "musl"


def get_glibc_version() -> Optional[tuple[int, ...]]:
    lib, version = platform.libc_ver()
    if lib != "glibc" or not version:
        return None
    try:
        return tuple(int(part) for part in version.split("."))
    except ValueError:
        return None


def resolve_platform(system: str, machine: str, libc: Optional[str] = None) -> PlatformInfo:
    """Map raw host identifiers to a descriptor."""
    arch = ARCH_MAPPINGS.get(machine.lower())
    if arch is None:
        raise PlatformNotSupportedError(system, machine)

    triple = TARGET_TRIPLES.get((system, arch, libc))
    if triple is None:
        raise PlatformNotSupportedError(system, machine)

    return PlatformInfo(
        os_name=system.lower(),
        arch=arch,
        target_triple=triple,
        libc=libc,
    )


@lru_cache(maxsize=1)
def get_platform_info() -> PlatformInfo:
    """Get current platform information."""
    system = platform.system()
    return resolve_platform(system, platform.machine(), detect_libc(system))


def is_platform_supported() -> bool:
    """Check if current platform is supported."""
    try:
        get_platform_info()
        return True
    except PlatformNotSupportedError:
        return False


def python_executable(root: Path, info: Optional[PlatformInfo] = None) -> Path:
    """Interpreter inside an installed distribution root."""
    info = info or get_platform_info()
    if info.is_windows:
        return root / "python.exe"
    return root / "bin" / "python3"


def venv_python_executable(venv_dir: Path, info: Optional[PlatformInfo] = None) -> Path:
    """Interpreter inside a virtual environment."""
    info = info or get_platform_info()
    if info.is_windows:
        return venv_dir / "Scripts" / "python.exe"
    return venv_dir / "bin" / "python3"
