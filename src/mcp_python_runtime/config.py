"""Manager configuration and default locations."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

import appdirs

from mcp_python_runtime.errors import PythonRuntimeError
from mcp_python_runtime.versions import parse_version

APP_NAME = "mcp-python-runtime"
ENV_PREFIX = "MCP_PYTHON_RUNTIME_"
DEFAULT_ROOT = Path(appdirs.user_data_dir(APP_NAME)) / "instances"


@dataclass(frozen=True)
class ManagerConfig:
    """Immutable manager settings, validated on construction"""

    default_version: str = "3.12"
    default_index_url: str = "https://pypi.org/simple"
    proxy_url: Optional[str] = None
    default_timeout: Optional[float] = None
    retry_attempts: int = 3
    retry_delay: float = 1.0
    use_exponential_backoff: bool = True
    github_token: Optional[str] = None
    smoke_test_timeout: float = 5.0
    release_cache_ttl: float = 3600.0

    def __post_init__(self):
        parse_version(self.default_version)
        if self.retry_attempts < 1:
            raise PythonRuntimeError("retry_attempts must be at least 1")
        if self.retry_delay < 0:
            raise PythonRuntimeError("retry_delay must not be negative")
        if self.default_timeout is not None and self.default_timeout <= 0:
            raise PythonRuntimeError("default_timeout must be positive")
        if self.smoke_test_timeout <= 0:
            raise PythonRuntimeError("smoke_test_timeout must be positive")
        if self.release_cache_ttl < 0:
            raise PythonRuntimeError("release_cache_ttl must not be negative")

    def retry_delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        if self.use_exponential_backoff:
            return self.retry_delay * (2 ** (attempt - 1))
        return self.retry_delay

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ManagerConfig":
        env = os.environ if environ is None else environ

        def get(key: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + key)
            return value if value not in (None, "") else None

        kwargs = {}
        if value := get("DEFAULT_VERSION"):
            kwargs["default_version"] = value
        if value := get("INDEX_URL"):
            kwargs["default_index_url"] = value
        if value := get("PROXY_URL"):
            kwargs["proxy_url"] = value
        if value := get("TIMEOUT"):
            kwargs["default_timeout"] = float(value)
        if value := get("RETRY_ATTEMPTS"):
            kwargs["retry_attempts"] = int(value)
        if value := get("RETRY_DELAY"):
            kwargs["retry_delay"] = float(value)
        if value := get("EXPONENTIAL_BACKOFF"):
            kwargs["use_exponential_backoff"] = value.lower() in ("1", "true", "yes", "on")
        if value := get("CACHE_TTL"):
            kwargs["release_cache_ttl"] = float(value)
        token = get("GITHUB_TOKEN") or env.get("GITHUB_TOKEN")
        if token:
            kwargs["github_token"] = token
        return cls(**kwargs)


def get_root_dir(root: Optional[Path] = None) -> Path:
    """Resolve the instances root, honoring the environment override."""
    if root is not None:
        return Path(root)
    if override := os.environ.get(ENV_PREFIX + "ROOT"):
        return Path(override)
    return DEFAULT_ROOT
