"""Thin pip client and batch helpers."""
import asyncio
import json
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from mcp_python_runtime.errors import PackageInstallationError
from mcp_python_runtime.execution import run_process
from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.types import ExecutionResult

logger = get_logger(__name__)


def pip_args(command: str, *args: str, index_url: Optional[str] = None, proxy: Optional[str] = None) -> list[str]:
    base = ["-m", "pip", command, "--disable-pip-version-check"]
    if index_url and command == "install":
        base += ["--index-url", index_url]
    if proxy:
        base += ["--proxy", proxy]
    return [*base, *args]


async def install_package(
    python: Path,
    package: str,
    upgrade: bool = False,
    index_url: Optional[str] = None,
    proxy: Optional[str] = None,
    timeout: Optional[float] = None,
) -> ExecutionResult:
    args = ["--upgrade", package] if upgrade else [package]
    result = await run_process(
        python, pip_args("install", *args, index_url=index_url, proxy=proxy), timeout=timeout
    )
    logger.info({"event": "package_install", "package": package, "exit_code": result.exit_code})
    return result


async def uninstall_package(
    python: Path, package: str, timeout: Optional[float] = None
) -> ExecutionResult:
    result = await run_process(python, pip_args("uninstall", "-y", package), timeout=timeout)
    logger.info({"event": "package_uninstall", "package": package, "exit_code": result.exit_code})
    return result


async def list_packages(python: Path, timeout: Optional[float] = None) -> list[dict]:
    """Installed distributions as `[{"name": ..., "version": ...}]`."""
    result = await run_process(python, pip_args("list", "--format=json"), timeout=timeout)
    if result.exit_code != 0:
        raise PackageInstallationError("pip list", result.stderr)
    return json.loads(result.stdout or "[]")


async def run_batch(
    items: Iterable[str],
    operation: Callable[[str], Awaitable[ExecutionResult]],
    parallel: bool = False,
) -> dict[str, ExecutionResult]:
    """Run `operation` per item; one failure never stops the others."""

    async def run_one(item: str) -> ExecutionResult:
        try:
            return await operation(item)
        except Exception as e:
            logger.warning({"event": "batch_item_failed", "item": item, "error": str(e)})
            return ExecutionResult(exit_code=1, stdout="", stderr=str(e))

    keys = list(dict.fromkeys(items))
    if parallel:
        outcomes = await asyncio.gather(*(run_one(k) for k in keys))
        return dict(zip(keys, outcomes))

    results: dict[str, ExecutionResult] = {}
    for key in keys:
        results[key] = await run_one(key)
    return results
