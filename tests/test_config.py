"""Tests for manager configuration."""
import pytest

from mcp_python_runtime.config import ManagerConfig, get_root_dir
from mcp_python_runtime.errors import InvalidVersionError, PythonRuntimeError


def test_defaults():
    config = ManagerConfig()
    assert config.default_version == "3.12"
    assert config.retry_attempts == 3
    assert config.retry_delay == 1.0
    assert config.use_exponential_backoff
    assert config.default_timeout is None


def test_validation():
    with pytest.raises(InvalidVersionError):
        ManagerConfig(default_version="three")
    with pytest.raises(PythonRuntimeError):
        ManagerConfig(retry_attempts=0)
    with pytest.raises(PythonRuntimeError):
        ManagerConfig(default_timeout=-1)


def test_retry_delay_for():
    assert [ManagerConfig(retry_delay=0.5).retry_delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]
    linear = ManagerConfig(retry_delay=0.5, use_exponential_backoff=False)
    assert linear.retry_delay_for(3) == 0.5


def test_from_env():
    config = ManagerConfig.from_env({
        "MCP_PYTHON_RUNTIME_DEFAULT_VERSION": "3.11",
        "MCP_PYTHON_RUNTIME_RETRY_ATTEMPTS": "5",
        "MCP_PYTHON_RUNTIME_EXPONENTIAL_BACKOFF": "false",
        "MCP_PYTHON_RUNTIME_TIMEOUT": "30",
        "GITHUB_TOKEN": "secret",
    })
    assert config.default_version == "3.11"
    assert config.retry_attempts == 5
    assert not config.use_exponential_backoff
    assert config.default_timeout == 30.0
    assert config.github_token == "secret"


def test_root_dir_override(tmp_path, monkeypatch):
    assert get_root_dir(tmp_path) == tmp_path
    monkeypatch.setenv("MCP_PYTHON_RUNTIME_ROOT", str(tmp_path / "alt"))
    assert get_root_dir() == tmp_path / "alt"
