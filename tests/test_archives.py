"""Tests for archive handling and install layout checks."""
import asyncio
import os
import shutil
import tarfile
import zipfile
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_install_zip, make_python_tree, posix_only
from mcp_python_runtime import archives
from mcp_python_runtime.archives import (
    detect_archive_type,
    extract_archive,
    locate_install_root,
    verify_installation,
)
from mcp_python_runtime.errors import (
    ArchiveExtractionError,
    OperationCancelledError,
    UnsupportedArchiveError,
)
from mcp_python_runtime.platforms import resolve_platform
from mcp_python_runtime.types import ArchiveType


@pytest.mark.parametrize(
    "name,expected",
    [
        ("foo.tar.gz", ArchiveType.TAR_GZ),
        ("foo.tgz", ArchiveType.TAR_GZ),
        ("foo.tar.bz2", ArchiveType.TAR_BZ2),
        ("foo.tar.bz", ArchiveType.TAR_BZ),
        ("foo.tar.zst", ArchiveType.TAR_ZST),
        ("foo.zst", ArchiveType.TAR_ZST),
        ("foo.tar", ArchiveType.TAR),
        ("FOO.ZIP", ArchiveType.ZIP),
    ],
)
def test_detect_archive_type(name, expected):
    assert detect_archive_type(name) == expected


def test_detect_unsupported():
    with pytest.raises(UnsupportedArchiveError):
        detect_archive_type("foo.tar.gz.sha256")


@pytest.mark.asyncio
@posix_only
async def test_extract_zip_restores_modes(tmp_path):
    archive = make_install_zip(tmp_path / "python.zip")
    dest = await extract_archive(archive, tmp_path / "out")

    python = dest / "python" / "bin" / "python3"
    assert python.is_file()
    assert os.access(python, os.X_OK)
    assert (dest / "python" / "lib" / "python3.12" / "os.py").is_file()


@pytest.mark.asyncio
async def test_extract_zip_stops_when_cancelled(tmp_path):
    archive = make_install_zip(tmp_path / "python.zip")
    event = asyncio.Event()
    event.set()
    with pytest.raises(OperationCancelledError) as exc_info:
        await extract_archive(archive, tmp_path / "out", cancel_event=event)

    assert exc_info.value.operation == "extraction"
    assert not (tmp_path / "out" / "python").exists()


@pytest.mark.asyncio
async def test_extract_corrupt_zip(tmp_path):
    archive = tmp_path / "broken.zip"
    archive.write_bytes(b"not a zip")
    with pytest.raises(ArchiveExtractionError):
        await extract_archive(archive, tmp_path / "out")


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which("tar") is None, reason="tar not installed")
async def test_extract_tar_gz_with_system_tar(tmp_path):
    source = tmp_path / "source"
    (source / "python" / "lib").mkdir(parents=True)
    (source / "python" / "lib" / "marker.txt").write_text("hello")
    archive = tmp_path / "python.tar.gz"
    with tarfile.open(archive, "w:gz") as tf:
        tf.add(source / "python", arcname="python")

    dest = await extract_archive(archive, tmp_path / "out")
    assert (dest / "python" / "lib" / "marker.txt").read_text() == "hello"


@pytest.mark.asyncio
async def test_missing_tools_give_actionable_error(tmp_path):
    archive = tmp_path / "python.tar.zst"
    archive.write_bytes(b"")
    with patch.object(archives, "is_tool_available", AsyncMock(side_effect=lambda tool: tool == "tar")):
        with pytest.raises(UnsupportedArchiveError, match="install zstd"):
            await extract_archive(archive, tmp_path / "out")


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which("tar") is None, reason="tar not installed")
async def test_tar_failure_includes_stderr(tmp_path):
    archive = tmp_path / "broken.tar.gz"
    archive.write_bytes(b"definitely not gzip")
    with pytest.raises(ArchiveExtractionError, match="tar exited with code"):
        await extract_archive(archive, tmp_path / "out")


@pytest.mark.asyncio
async def test_tool_probe_is_cached():
    archives.reset_tool_cache()
    with patch.object(archives, "run_process", AsyncMock()) as run:
        run.return_value.exit_code = 0
        assert await archives.is_tool_available("tar")
        assert await archives.is_tool_available("tar")
    assert run.await_count == 1
    archives.reset_tool_cache()


def test_verify_installation_posix(tmp_path, linux_platform):
    assert not verify_installation(tmp_path, linux_platform)
    (tmp_path / "bin").mkdir()
    (tmp_path / "bin" / "python3").write_text("")
    assert not verify_installation(tmp_path, linux_platform)
    (tmp_path / "lib").mkdir()
    assert verify_installation(tmp_path, linux_platform)


def test_verify_installation_windows(tmp_path):
    windows = resolve_platform("Windows", "AMD64")
    assert not verify_installation(tmp_path, windows)
    (tmp_path / "python.exe").write_text("")
    assert verify_installation(tmp_path, windows)


def test_locate_install_root(tmp_path, linux_platform):
    assert locate_install_root(make_python_tree(tmp_path / "a"), linux_platform) == tmp_path / "a"

    one_deep = tmp_path / "b"
    make_python_tree(one_deep / "python")
    assert locate_install_root(one_deep, linux_platform) == one_deep / "python"

    two_deep = tmp_path / "c"
    make_python_tree(two_deep / "python" / "install")
    assert locate_install_root(two_deep, linux_platform) == two_deep / "python" / "install"

    empty = tmp_path / "d"
    (empty / "x" / "y" / "z").mkdir(parents=True)
    assert locate_install_root(empty, linux_platform) == empty


def test_make_zip_and_directory_size(tmp_path):
    source = tmp_path / "src"
    source.mkdir()
    (source / "a.txt").write_bytes(b"12345")
    (source / "nested").mkdir()
    (source / "nested" / "b.txt").write_bytes(b"123")

    assert archives.directory_size(source) == 8
    built = archives.make_zip(source, tmp_path / "out" / "bundle.zip")
    with zipfile.ZipFile(built) as zf:
        assert {"a.txt", "nested/b.txt"} <= set(zf.namelist())
