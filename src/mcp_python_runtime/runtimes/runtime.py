"""Runtime handles over an installed interpreter or a virtual environment."""

from pathlib import Path
from typing import Iterable, Optional, Sequence

from mcp_python_runtime.config import ManagerConfig
from mcp_python_runtime.errors import PythonExecutionError
from mcp_python_runtime.execution import run_process
from mcp_python_runtime.logging import get_logger
from mcp_python_runtime.platforms import python_executable, venv_python_executable
from mcp_python_runtime.runtimes import packages
from mcp_python_runtime.types import ExecutionResult, InstanceRecord

logger = get_logger(__name__)

VERSION_INFO_CODE = "import sys; print(sys.version); print(sys.executable)"


class PythonRuntime:
    """Subprocess-backed handle bound to one interpreter path."""

    def __init__(
        self,
        python_path: Path,
        config: Optional[ManagerConfig] = None,
        working_dir: Optional[Path] = None,
        kind: str = "root",
    ):
        self.python_path = Path(python_path)
        self.config = config or ManagerConfig()
        self.working_dir = working_dir
        self.kind = kind

    def __repr__(self) -> str:
        return f"PythonRuntime({self.kind}, {self.python_path})"

    async def execute(self, args: Sequence[str], **kwargs) -> ExecutionResult:
        """Run the interpreter with `args`; accepts `run_process` keyword options."""
        kwargs.setdefault("timeout", self.config.default_timeout)
        kwargs.setdefault("cwd", self.working_dir)
        return await run_process(self.python_path, list(args), **kwargs)

    async def execute_command(self, code: str, **kwargs) -> ExecutionResult:
        return await self.execute(["-c", code], **kwargs)

    async def execute_script(
        self, script: Path, args: Sequence[str] = (), **kwargs
    ) -> ExecutionResult:
        script = Path(script)
        if not script.is_file():
            raise PythonExecutionError(f"Script not found: {script}")
        return await self.execute([str(script), *args], **kwargs)

    async def get_version_info(self) -> dict[str, str]:
        result = await self.execute_command(VERSION_INFO_CODE)
        if result.exit_code != 0:
            raise PythonExecutionError(
                "Failed to query interpreter version",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )
        lines = result.stdout.splitlines()
        return {
            "version": lines[0] if lines else "",
            "executable": lines[-1] if len(lines) > 1 else str(self.python_path),
        }

    async def validate_installation(self) -> bool:
        """True when the interpreter exists and answers `--version`."""
        if not self.python_path.is_file():
            return False
        try:
            result = await self.execute(["--version"], timeout=self.config.smoke_test_timeout)
        except PythonExecutionError as e:
            logger.warning({"event": "runtime_validation_failed", "python": str(self.python_path), "error": str(e)})
            return False
        return result.exit_code == 0

    async def install_package(self, package: str, upgrade: bool = False) -> ExecutionResult:
        return await packages.install_package(
            self.python_path,
            package,
            upgrade=upgrade,
            index_url=self.config.default_index_url,
            proxy=self.config.proxy_url,
            timeout=self.config.default_timeout,
        )

    async def uninstall_package(self, package: str) -> ExecutionResult:
        return await packages.uninstall_package(
            self.python_path, package, timeout=self.config.default_timeout
        )

    async def install_packages(
        self, packages_to_install: Iterable[str], parallel: bool = False
    ) -> dict[str, ExecutionResult]:
        return await packages.run_batch(packages_to_install, self.install_package, parallel)

    async def uninstall_packages(
        self, packages_to_remove: Iterable[str], parallel: bool = False
    ) -> dict[str, ExecutionResult]:
        return await packages.run_batch(packages_to_remove, self.uninstall_package, parallel)

    async def list_packages(self) -> list[dict]:
        return await packages.list_packages(self.python_path, timeout=self.config.default_timeout)


def root_runtime(record: InstanceRecord, config: Optional[ManagerConfig] = None) -> PythonRuntime:
    return PythonRuntime(python_executable(record.python_home), config=config, kind="root")


def virtual_runtime(venv_path: Path, config: Optional[ManagerConfig] = None) -> PythonRuntime:
    return PythonRuntime(venv_python_executable(venv_path), config=config, kind="virtual")
