"""Capture engine process management and query client."""

from capture_mcp.engine.client import EngineClient
from capture_mcp.engine.supervisor import ProcessSupervisor

__all__ = ["EngineClient", "ProcessSupervisor"]
