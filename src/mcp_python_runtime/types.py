"""Core type definitions"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

ArchiveType = Enum(
    "ArchiveType", ["ZIP", "TAR", "TAR_GZ", "TAR_BZ", "TAR_BZ2", "TAR_ZST"]
)


class ProcessPriority(Enum):
    """Scheduling priority for spawned processes"""

    IDLE = "idle"
    BELOW_NORMAL = "below_normal"
    NORMAL = "normal"
    ABOVE_NORMAL = "above_normal"
    HIGH = "high"


@dataclass(frozen=True)
class Version:
    """Parsed version; ordering uses the numeric triple only"""

    major: int
    minor: int
    patch: int = 0
    pre_tag: Optional[str] = None
    pre_num: Optional[int] = None
    partial: bool = False

    @property
    def key(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class PlatformInfo:
    """Host platform descriptor"""

    os_name: str
    arch: str
    target_triple: str
    libc: Optional[str] = None

    @property
    def is_windows(self) -> bool:
        return self.os_name == "windows"


@dataclass(frozen=True)
class ReleaseAsset:
    """One downloadable artifact within a release"""

    id: int
    name: str
    download_url: str
    updated_at: datetime


@dataclass(frozen=True)
class Release:
    """Remote release with its assets"""

    tag_name: str
    name: Optional[str]
    published_at: Optional[datetime]
    assets: tuple[ReleaseAsset, ...] = ()


@dataclass
class SubEnvironmentRecord:
    """Named sub-environment owned by an instance"""

    name: str
    path: Path
    created_date: datetime
    external_path: Optional[Path] = None

    @property
    def is_external(self) -> bool:
        return self.external_path is not None


@dataclass
class InstanceRecord:
    """Installed runtime instance, keyed by (version, build_date)"""

    version: str
    build_date: str
    was_latest_build: bool
    install_date: datetime
    directory: Path
    sub_environments: list[SubEnvironmentRecord] = field(default_factory=list)
    install_root: Optional[Path] = None

    @property
    def python_home(self) -> Path:
        return self.install_root or self.directory

    @property
    def venvs_dir(self) -> Path:
        return self.directory / "venvs"

    def get_sub_environment(self, name: str) -> Optional[SubEnvironmentRecord]:
        return next((s for s in self.sub_environments if s.name == name), None)


@dataclass(frozen=True)
class ExecutionResult:
    """Captured outcome of a finished process"""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0
