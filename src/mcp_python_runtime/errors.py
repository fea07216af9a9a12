"""Error handling for the Python runtime manager."""
import logging
from typing import Any, Dict, Optional
from mcp.types import (
    ErrorData,
    INVALID_REQUEST,
    INVALID_PARAMS,
    INTERNAL_ERROR
)


def log_error(
    error: Exception,
    context: Optional[Dict[str, Any]] = None,
    logger: Optional[Any] = None
) -> None:
    """Log an error with context."""
    logger = logger or logging.getLogger(__name__)

    error_info = {
        "error_type": error.__class__.__name__,
        "error_message": str(error)
    }
    if context:
        error_info["context"] = context
    if isinstance(error, PythonRuntimeError):
        error_info["code"] = error.code
        error_info["details"] = error.details

    logger.error("Runtime error occurred", extra={"data": error_info})


class PythonRuntimeError(Exception):
    """Base error class for the runtime manager."""
    def __init__(
        self,
        message: str,
        code: int = INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_error_data(self) -> ErrorData:
        """Convert to ErrorData format."""
        return ErrorData(
            code=self.code,
            message=str(self),
            data=self.details
        )


class InvalidVersionError(PythonRuntimeError):
    """Malformed version string."""
    def __init__(self, version: Optional[str]):
        super().__init__(
            f"Invalid version format: {version!r}",
            code=INVALID_PARAMS,
            details={"version": version}
        )


class PlatformNotSupportedError(PythonRuntimeError):
    """Host OS/architecture has no matching distribution."""
    def __init__(self, os_name: str, arch: str):
        super().__init__(
            f"Unsupported platform: {os_name}/{arch}",
            code=INVALID_REQUEST,
            details={"os": os_name, "arch": arch}
        )


class PythonInstallationError(PythonRuntimeError):
    """Acquisition of a runtime instance failed."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=INTERNAL_ERROR, details=details)


class InstanceNotFoundError(PythonInstallationError):
    """No instance or release matches the request."""
    def __init__(self, version: str, build_date: Optional[str] = None, reason: Optional[str] = None):
        message = f"Python {version}"
        if build_date:
            message += f" (build {build_date})"
        message += " not found"
        if reason:
            message += f": {reason}"
        super().__init__(message, details={"version": version, "build_date": build_date})
        self.code = INVALID_PARAMS
        self.version = version
        self.build_date = build_date


class DownloadError(PythonInstallationError):
    """Asset download failed."""
    def __init__(self, url: str, reason: str):
        super().__init__(
            f"Failed to download {url}: {reason}",
            details={"url": url, "reason": reason}
        )


class ArchiveExtractionError(PythonInstallationError):
    """Archive could not be extracted."""
    def __init__(self, archive: str, reason: str):
        super().__init__(
            f"Failed to extract {archive}: {reason}",
            details={"archive": archive, "reason": reason}
        )


class UnsupportedArchiveError(ArchiveExtractionError):
    """Archive format unknown or its extraction tools are missing."""


class MetadataCorruptedError(PythonInstallationError):
    """Persisted instance metadata is unreadable."""
    def __init__(self, path: str, reason: str):
        super().__init__(
            f"Instance metadata at {path} is corrupted: {reason}",
            details={"path": path, "reason": reason}
        )
        self.path = path


class PythonExecutionError(PythonRuntimeError):
    """Process could not be run, or a required run failed."""
    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        stderr: str = ""
    ):
        super().__init__(
            message,
            code=INTERNAL_ERROR,
            details={"exit_code": exit_code, "stderr": stderr}
        )
        self.exit_code = exit_code
        self.stderr = stderr


class ProcessCancelledError(PythonExecutionError):
    """Process was killed by cancellation or timeout."""
    def __init__(self, executable: str, timed_out: bool, stdout: str = "", stderr: str = ""):
        reason = "timed out" if timed_out else "was cancelled"
        super().__init__(f"Process {executable} {reason}", stderr=stderr)
        self.timed_out = timed_out
        self.stdout = stdout


class OperationCancelledError(PythonRuntimeError):
    """Download or extraction stopped because its cancel event was set."""
    def __init__(self, operation: str, target: str):
        super().__init__(
            f"{operation.capitalize()} of {target} was cancelled",
            code=INTERNAL_ERROR,
            details={"operation": operation, "target": target}
        )
        self.operation = operation
        self.target = target


class VirtualEnvironmentError(PythonRuntimeError):
    """Sub-environment operation failed."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=INTERNAL_ERROR, details=details)


class VirtualEnvironmentNotFoundError(VirtualEnvironmentError):
    """Sub-environment is missing or could not be removed."""
    def __init__(self, name: str, reason: Optional[str] = None):
        message = f"Virtual environment {name} not found"
        if reason:
            message = f"Virtual environment {name}: {reason}"
        super().__init__(message, details={"name": name})
        self.code = INVALID_PARAMS
        self.name = name


class PackageInstallationError(PythonRuntimeError):
    """Package tool reported a failure."""
    def __init__(self, package: str, stderr: str):
        super().__init__(
            f"Failed to install {package}",
            code=INTERNAL_ERROR,
            details={"package": package, "stderr": stderr}
        )
