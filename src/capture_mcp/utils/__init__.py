"""Utility modules for capture-mcp."""

from capture_mcp.utils.logging import get_logger, setup_logging

__all__ = ["setup_logging", "get_logger"]
