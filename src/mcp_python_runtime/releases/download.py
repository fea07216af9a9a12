"""Streaming asset download with progress reporting."""
import asyncio
from pathlib import Path
from typing import Callable, Optional

import aiohttp

from mcp_python_runtime.errors import DownloadError, OperationCancelledError
from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.releases.constants import (
    DOWNLOAD_CHUNK_SIZE,
    DOWNLOAD_TIMEOUT,
    USER_AGENT,
)
from mcp_python_runtime.types import ReleaseAsset

logger = get_logger(__name__)

ProgressCallback = Callable[[int], None]


async def download_asset(
    asset: ReleaseAsset,
    dest_dir: Path,
    progress: Optional[ProgressCallback] = None,
    proxy: Optional[str] = None,
    cancel_event: Optional[asyncio.Event] = None,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> Path:
    """Stream `asset` into `dest_dir`, reporting cumulative bytes."""
    dest = dest_dir / asset.name
    timeout = aiohttp.ClientTimeout(total=DOWNLOAD_TIMEOUT)

    logger.info({
        "event": "download_started",
        "url": asset.download_url,
        "destination": str(dest),
    })

    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(
                asset.download_url,
                headers={"User-Agent": USER_AGENT},
                proxy=proxy,
            ) as response:
                response.raise_for_status()
                expected = int(response.headers.get("content-length", 0))
                downloaded = 0

                with open(dest, "wb") as f:
                    async for chunk in response.content.iter_chunked(chunk_size):
                        if cancel_event is not None and cancel_event.is_set():
                            raise OperationCancelledError("download", asset.download_url)
                        f.write(chunk)
                        downloaded += len(chunk)
                        if progress is not None:
                            progress(downloaded)

    except aiohttp.ClientError as e:
        logger.error({
            "event": "download_failed",
            "url": asset.download_url,
            "error": str(e),
            "status": getattr(e, "status", None),
        })
        raise DownloadError(asset.download_url, str(e)) from e
    except asyncio.TimeoutError as e:
        raise DownloadError(asset.download_url, "timed out") from e

    if downloaded == 0:
        raise DownloadError(asset.download_url, "empty response body")

    logger.info({
        "event": "download_complete",
        "url": asset.download_url,
        "size": downloaded,
        "expected_size": expected,
    })
    return dest


async def download_with_retry(
    asset: ReleaseAsset,
    dest_dir: Path,
    attempts: int,
    delay_for: Callable[[int], float],
    **kwargs,
) -> Path:
    """Retry `download_asset` on DownloadError up to `attempts` times."""
    for attempt in range(1, attempts + 1):
        try:
            return await download_asset(asset, dest_dir, **kwargs)
        except DownloadError as e:
            if attempt == attempts:
                raise
            delay = delay_for(attempt)
            logger.warning({
                "event": "download_retry",
                "url": asset.download_url,
                "attempt": attempt,
                "delay": delay,
                "error": str(e),
            })
            await asyncio.sleep(delay)
    raise DownloadError(asset.download_url, "no download attempts configured")
