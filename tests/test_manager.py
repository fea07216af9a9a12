"""Tests for the manager facade."""
import zipfile
from unittest.mock import AsyncMock, patch

import pytest

from conftest import make_install_zip, posix_only
from mcp_python_runtime.errors import InstanceNotFoundError, PythonInstallationError
from mcp_python_runtime.instances import acquisition
from mcp_python_runtime.manager import PythonManager
from mcp_python_runtime.releases.catalog import ReleaseCatalog


async def fake_download(asset, dest_dir, attempts, delay_for, **kwargs):
    return make_install_zip(dest_dir / asset.name)


@pytest.fixture
def manager(tmp_path, fake_transport, config, linux_platform):
    return PythonManager(
        root=tmp_path / "root",
        config=config,
        catalog=ReleaseCatalog(transports=[fake_transport]),
        platform=linux_platform,
    )


@pytest.mark.asyncio
async def test_version_queries(manager):
    assert await manager.list_available_versions() == ["3.13.0", "3.12.7"]
    assert await manager.find_best_matching_version("3.12") == "3.12.7"
    assert await manager.find_best_matching_version("3.10") is None
    assert await manager.get_latest_version() == "3.13.0"


@pytest.mark.asyncio
@posix_only
async def test_instance_lifecycle(manager, tmp_path):
    with patch.object(acquisition, "download_with_retry", AsyncMock(side_effect=fake_download)):
        runtime = await manager.get_or_create_runtime("3.12")

    assert runtime.kind == "root"
    assert [r.version for r in manager.list_instances()] == ["3.12.7"]
    assert manager.get_instance("3.12.7", "20241016") is not None
    assert manager.get_instance_size("3.12") > 0
    assert manager.get_total_disk_usage() == manager.get_instance_size("3.12")
    assert await manager.validate_instance_integrity("3.12")

    assert await manager.remove_instance("3.12")
    assert manager.list_instances() == []
    assert not await manager.remove_instance("3.12")
    assert not await manager.validate_instance_integrity("3.12")
    with pytest.raises(InstanceNotFoundError):
        manager.get_instance_size("3.12")


@pytest.mark.asyncio
@posix_only
async def test_export_and_import_instance(manager, tmp_path):
    with patch.object(acquisition, "download_with_retry", AsyncMock(side_effect=fake_download)):
        record = await manager.acquire("3.12")

    archive = await manager.export_instance("3.12", None, tmp_path / "export.zip")
    with zipfile.ZipFile(archive) as zf:
        assert "instance_metadata.json" in zf.namelist()

    with pytest.raises(PythonInstallationError, match="already installed"):
        await manager.import_instance(archive)

    await manager.remove_instance("3.12")
    imported = await manager.import_instance(archive)
    assert imported.version == "3.12.7"
    assert imported.directory == record.directory
    assert imported.python_home == record.directory / "python"
    assert manager.get_instance("3.12") == imported


@pytest.mark.asyncio
async def test_import_rejects_archive_without_metadata(manager, tmp_path):
    archive = tmp_path / "plain.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("README", "hello")
    with pytest.raises(PythonInstallationError, match="metadata"):
        await manager.import_instance(archive)


def test_check_disk_space(manager):
    assert manager.check_disk_space(1)
    assert not manager.check_disk_space(10 ** 18)


@pytest.mark.asyncio
async def test_diagnose_issues(manager):
    with patch.object(manager, "test_network_connectivity", AsyncMock(return_value=False)), \
            patch("mcp_python_runtime.manager.is_tool_available", AsyncMock(return_value=True)):
        issues = await manager.diagnose_issues()
    assert "GitHub API is not reachable" in issues
    assert not any("tar is not available" in issue for issue in issues)


@pytest.mark.asyncio
async def test_system_requirements(manager):
    with patch("mcp_python_runtime.manager.is_tool_available", AsyncMock(return_value=False)):
        requirements = await manager.get_system_requirements()
    assert requirements["target_triple"] == "x86_64-unknown-linux-gnu"
    assert requirements["tar_available"] is False
