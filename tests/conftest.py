import sys
import zipfile
from datetime import datetime, timezone
from pathlib import Path

import aiohttp
import pytest
import pytest_asyncio
from unittest.mock import MagicMock

from mcp_python_runtime.config import ManagerConfig
from mcp_python_runtime.instances.store import InstanceStore
from mcp_python_runtime.releases.catalog import ReleaseCatalog
from mcp_python_runtime.types import PlatformInfo, Release, ReleaseAsset

LINUX_TRIPLE = "x86_64-unknown-linux-gnu"

FAKE_PYTHON_SCRIPT = "#!/bin/sh\necho \"Python 3.12.7\"\n"

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX install layout")


def utc(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def make_asset(name: str, updated: datetime, asset_id: int = 1) -> ReleaseAsset:
    return ReleaseAsset(
        id=asset_id,
        name=name,
        download_url=f"https://example.invalid/download/{name}",
        updated_at=updated,
    )


def make_release(tag: str, published: datetime, *assets: ReleaseAsset, name: str | None = None) -> Release:
    return Release(tag_name=tag, name=name or tag, published_at=published, assets=tuple(assets))


def make_python_tree(root: Path) -> Path:
    """Minimal POSIX install layout with a shell-script interpreter."""
    (root / "bin").mkdir(parents=True, exist_ok=True)
    (root / "lib").mkdir(exist_ok=True)
    python = root / "bin" / "python3"
    python.write_text(FAKE_PYTHON_SCRIPT)
    python.chmod(0o755)
    return root


def make_install_zip(path: Path, prefix: str = "python/") -> Path:
    """Zip laid out like an install-only distribution."""
    with zipfile.ZipFile(path, "w") as zf:
        info = zipfile.ZipInfo(f"{prefix}bin/python3")
        info.external_attr = 0o755 << 16
        zf.writestr(info, FAKE_PYTHON_SCRIPT)
        zf.writestr(f"{prefix}lib/python3.12/os.py", "# stdlib\n")
    return path


class FakeTransport:
    """In-memory release index that counts calls."""

    def __init__(self, releases=(), name="fake", error=None):
        self.releases = list(releases)
        self.name = name
        self.error = error
        self.calls: list[str] = []

    def _record(self, operation: str):
        self.calls.append(operation)
        if self.error is not None:
            raise self.error

    async def list_releases(self):
        self._record("list_releases")
        return list(self.releases)

    async def get_latest_release(self):
        self._record("get_latest_release")
        return max(self.releases, key=lambda r: r.published_at)

    async def get_release_by_tag(self, tag):
        self._record("get_release_by_tag")
        return next(r for r in self.releases if r.tag_name == tag)


class FakeResponse:
    def __init__(self, status=200, json_data=None, body=b"", headers=None):
        self.status = status
        self._json = json_data
        self._body = body
        self.headers = headers or {"content-length": str(len(body))}
        self.content = self

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientResponseError(MagicMock(), (), status=self.status)

    async def json(self):
        return self._json

    async def iter_chunked(self, size):
        for start in range(0, len(self._body), size):
            yield self._body[start:start + size]


class FakeSession:
    """Stand-in for aiohttp.ClientSession keyed by URL."""

    def __init__(self, responses):
        self.responses = responses
        self.requested: list[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def get(self, url, **kwargs):
        self.requested.append(url)
        response = self.responses.get(url)
        if response is None:
            return FakeResponse(status=404)
        return response


@pytest.fixture
def linux_platform() -> PlatformInfo:
    return PlatformInfo(
        os_name="linux",
        arch="x86_64",
        target_triple=LINUX_TRIPLE,
        libc="gnu",
    )


@pytest.fixture
def config() -> ManagerConfig:
    return ManagerConfig(retry_attempts=1, retry_delay=0, smoke_test_timeout=5.0)


@pytest.fixture
def store(tmp_path) -> InstanceStore:
    return InstanceStore(tmp_path / "instances")


@pytest.fixture
def sample_releases():
    return [
        make_release(
            "20241016",
            utc(2024, 10, 16),
            make_asset(f"cpython-3.12.7+20241016-{LINUX_TRIPLE}-install_only.zip", utc(2024, 10, 16, 1), 1),
            make_asset(f"cpython-3.12.7+20241016-{LINUX_TRIPLE}-pgo+lto-full.tar.zst", utc(2024, 10, 16, 2), 2),
            make_asset(f"cpython-3.13.0+20241016-{LINUX_TRIPLE}-install_only.zip", utc(2024, 10, 16, 1), 3),
            make_asset("cpython-3.12.7+20241016-x86_64-apple-darwin-install_only.tar.gz", utc(2024, 10, 16, 1), 4),
        ),
        make_release(
            "20240909",
            utc(2024, 9, 9),
            make_asset(f"cpython-3.12.6+20240909-{LINUX_TRIPLE}-install_only.zip", utc(2024, 9, 9, 1), 5),
        ),
    ]


@pytest.fixture
def fake_transport(sample_releases) -> FakeTransport:
    return FakeTransport(sample_releases)


@pytest_asyncio.fixture
async def catalog(fake_transport) -> ReleaseCatalog:
    return ReleaseCatalog(transports=[fake_transport])
