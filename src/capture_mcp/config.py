"""Capture pipeline configuration.

Provides the CaptureConfig model and environment-variable overrides.
"""

from __future__ import annotations

import os
import shlex
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

# Environment variable prefix for all configuration overrides
ENV_PREFIX = "CAPTURE_MCP_"

# Sentinel cursor value meaning "from the beginning"
CURSOR_START = "0"

DEFAULT_PORT = 8899
DEFAULT_HOST = "127.0.0.1"


def _get_default_data_dir() -> Path:
    """Get the default data directory.

    Returns:
        Path to data directory. Priority:
        1. CAPTURE_MCP_DATA_DIR environment variable
        2. ~/.capture-mcp (local)
    """
    env_dir = os.environ.get(f"{ENV_PREFIX}DATA_DIR")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".capture-mcp"


def _env_bool(value: str) -> bool:
    return value.strip().lower() not in ("0", "false", "no", "off", "")


class CaptureConfig(BaseModel):
    """Settings for one capture pipeline instance.

    Attributes:
        port: Capture engine listen port
        host: Capture engine bind address
        storage_dir: Engine storage directory
        export_dir: Default directory for export files
        capture_mode: Start the engine with HTTPS capture enabled
        poll_interval: Seconds between polling ticks
        request_timeout: Seconds before a poll request is abandoned
        startup_timeout: Absolute bound on engine startup, in seconds
        ready_check_interval: Seconds between readiness checks
        ready_check_attempts: Maximum number of readiness checks
        stop_grace_period: Seconds to wait for a clean engine exit
        command_timeout: Bound on each OS shell command, in seconds
        engine_command: Capture engine executable (e.g. "w2")
        launcher: Full command used to launch the engine host; built from
            the other settings when empty
        set_system_proxy: Point the OS proxy at the engine while running
        exclude_local_hosts: Drop loopback and private-network sessions
        max_body_chars: Ceiling for decoded body text
        refetch_batch_size: Maximum ids per targeted re-fetch
        max_refetch_attempts: Re-fetch attempts per incomplete record
    """

    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    host: str = DEFAULT_HOST
    storage_dir: Path = Field(default_factory=lambda: _get_default_data_dir() / "engine")
    export_dir: Path = Field(default_factory=lambda: _get_default_data_dir() / "exports")
    capture_mode: bool = True
    poll_interval: float = Field(default=2.0, gt=0)
    request_timeout: float = Field(default=5.0, gt=0)
    startup_timeout: float = Field(default=30.0, gt=0)
    ready_check_interval: float = Field(default=1.0, gt=0)
    ready_check_attempts: int = Field(default=30, ge=1)
    stop_grace_period: float = Field(default=5.0, ge=0)
    command_timeout: float = Field(default=10.0, gt=0)
    engine_command: str = "w2"
    launcher: list[str] = Field(default_factory=list)
    set_system_proxy: bool = False
    exclude_local_hosts: bool = False
    max_body_chars: int = Field(default=200_000, ge=1)
    refetch_batch_size: int = Field(default=50, ge=1)
    max_refetch_attempts: int = Field(default=3, ge=0)

    @property
    def base_url(self) -> str:
        """Base URL of the engine's JSON query API."""
        return f"http://{self.host}:{self.port}"

    @classmethod
    def from_env(cls, **overrides: Any) -> CaptureConfig:
        """Build a config from CAPTURE_MCP_* environment variables.

        Explicit keyword overrides win over environment values.

        Args:
            **overrides: Field values to set directly

        Returns:
            Validated CaptureConfig
        """
        values: dict[str, Any] = {}
        env = os.environ

        if port := env.get(f"{ENV_PREFIX}PORT"):
            values["port"] = int(port)
        if host := env.get(f"{ENV_PREFIX}HOST"):
            values["host"] = host
        if data_dir := env.get(f"{ENV_PREFIX}DATA_DIR"):
            values["storage_dir"] = Path(data_dir) / "engine"
            values["export_dir"] = Path(data_dir) / "exports"
        if mode := env.get(f"{ENV_PREFIX}CAPTURE_MODE"):
            values["capture_mode"] = _env_bool(mode)
        if interval := env.get(f"{ENV_PREFIX}POLL_INTERVAL"):
            values["poll_interval"] = float(interval)
        if timeout := env.get(f"{ENV_PREFIX}REQUEST_TIMEOUT"):
            values["request_timeout"] = float(timeout)
        if startup := env.get(f"{ENV_PREFIX}STARTUP_TIMEOUT"):
            values["startup_timeout"] = float(startup)
        if engine := env.get(f"{ENV_PREFIX}ENGINE_COMMAND"):
            values["engine_command"] = engine
        if launcher := env.get(f"{ENV_PREFIX}LAUNCHER"):
            values["launcher"] = shlex.split(launcher)
        if system_proxy := env.get(f"{ENV_PREFIX}SET_SYSTEM_PROXY"):
            values["set_system_proxy"] = _env_bool(system_proxy)
        if exclude := env.get(f"{ENV_PREFIX}EXCLUDE_LOCAL"):
            values["exclude_local_hosts"] = _env_bool(exclude)

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
