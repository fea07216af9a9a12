"""Standalone Python runtime manager with an MCP tool surface."""

__version__ = "0.1.0"

from mcp_python_runtime.config import ManagerConfig
from mcp_python_runtime.errors import (
    PythonRuntimeError,
    PythonInstallationError,
    InstanceNotFoundError,
    PythonExecutionError,
    VirtualEnvironmentError,
)
from mcp_python_runtime.manager import PythonManager
from mcp_python_runtime.runtimes.runtime import PythonRuntime

__all__ = [
    "ManagerConfig",
    "PythonManager",
    "PythonRuntime",
    "PythonRuntimeError",
    "PythonInstallationError",
    "InstanceNotFoundError",
    "PythonExecutionError",
    "VirtualEnvironmentError",
]
