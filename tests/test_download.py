"""Tests for streaming asset downloads."""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeResponse, FakeSession, make_asset, utc
from mcp_python_runtime.errors import DownloadError, OperationCancelledError
from mcp_python_runtime.releases import download
from mcp_python_runtime.releases.download import download_asset, download_with_retry

ASSET = make_asset("cpython-3.12.7-x86_64-unknown-linux-gnu-install_only.tar.gz", utc(2024, 10, 16))


@pytest.mark.asyncio
async def test_download_streams_and_reports_progress(tmp_path):
    body = b"x" * 20000
    session = FakeSession({ASSET.download_url: FakeResponse(body=body)})
    progress = []
    with patch("aiohttp.ClientSession", return_value=session):
        path = await download_asset(ASSET, tmp_path, progress=progress.append)

    assert path == tmp_path / ASSET.name
    assert path.read_bytes() == body
    assert progress == [8192, 16384, 20000]


@pytest.mark.asyncio
async def test_download_http_error(tmp_path):
    with patch("aiohttp.ClientSession", return_value=FakeSession({})):
        with pytest.raises(DownloadError, match="404"):
            await download_asset(ASSET, tmp_path)


@pytest.mark.asyncio
async def test_download_cancel_event(tmp_path):
    event = asyncio.Event()
    event.set()
    session = FakeSession({ASSET.download_url: FakeResponse(body=b"x" * 100)})
    with patch("aiohttp.ClientSession", return_value=session):
        with pytest.raises(OperationCancelledError) as exc_info:
            await download_asset(ASSET, tmp_path, cancel_event=event)
    assert exc_info.value.target == ASSET.download_url


@pytest.mark.asyncio
async def test_download_with_retry(tmp_path):
    attempts = AsyncMock(side_effect=[DownloadError("u", "reset"), tmp_path / "ok"])
    with patch.object(download, "download_asset", attempts), \
            patch("asyncio.sleep", AsyncMock()) as sleep:
        result = await download_with_retry(ASSET, tmp_path, attempts=3, delay_for=lambda n: n * 0.5)

    assert result == tmp_path / "ok"
    assert attempts.await_count == 2
    sleep.assert_awaited_once_with(0.5)


@pytest.mark.asyncio
async def test_download_with_retry_gives_up(tmp_path):
    failing = AsyncMock(side_effect=DownloadError("u", "reset"))
    with patch.object(download, "download_asset", failing), patch("asyncio.sleep", AsyncMock()):
        with pytest.raises(DownloadError):
            await download_with_retry(ASSET, tmp_path, attempts=2, delay_for=lambda n: 0)
    assert failing.await_count == 2


@pytest.mark.asyncio
async def test_download_with_retry_does_not_retry_cancellation(tmp_path):
    cancelled = AsyncMock(side_effect=OperationCancelledError("download", ASSET.download_url))
    with patch.object(download, "download_asset", cancelled), patch("asyncio.sleep", AsyncMock()):
        with pytest.raises(OperationCancelledError):
            await download_with_retry(ASSET, tmp_path, attempts=3, delay_for=lambda n: 0)
    assert cancelled.await_count == 1
