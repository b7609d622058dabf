"""Pytest configuration and shared fixtures for capture-mcp tests.

This module provides common fixtures used across the unit tests. Payload
factories live in tests/factories.py.
"""

from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest

from capture_mcp.capture import CaptureManager
from capture_mcp.config import CaptureConfig
from capture_mcp.pipeline.events import EventPublisher
from capture_mcp.pipeline.store import Reconciler

# ============================================================================
# Pipeline Fixtures
# ============================================================================


@pytest.fixture
def publisher() -> EventPublisher:
    """Create an event publisher."""
    return EventPublisher()


@pytest.fixture
def reconciler(publisher: EventPublisher) -> Reconciler:
    """Create a reconciler publishing to the publisher fixture."""
    return Reconciler(publisher)


@pytest.fixture
def config(tmp_path: Path) -> CaptureConfig:
    """Create a config with fast timings and temporary directories."""
    return CaptureConfig(
        port=18899,
        storage_dir=tmp_path / "engine",
        export_dir=tmp_path / "exports",
        poll_interval=0.01,
        request_timeout=0.5,
        startup_timeout=2.0,
        ready_check_interval=0.01,
        ready_check_attempts=5,
        stop_grace_period=0.5,
    )


# ============================================================================
# Manager Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def reset_capture_manager() -> Generator[None, None, None]:
    """Forget any pipeline registered by a previous test."""
    CaptureManager.reset()
    yield
    CaptureManager.reset()
