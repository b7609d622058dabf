"""Unit tests for the capture CLI."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from capture_mcp.cli import app, run_capture
from capture_mcp.config import CaptureConfig
from capture_mcp.models import CommandResult, CommandSummary, StartupTimeoutError
from tests.factories import create_pipeline, create_raw_session

runner = CliRunner()


class TestRunCapture:
    """Tests for run_capture."""

    @pytest.mark.asyncio
    async def test_captures_for_duration_then_exports(self, config: CaptureConfig, tmp_path: Path) -> None:
        """Records polled during the run are exported when it ends."""
        pipeline = create_pipeline(config, [create_raw_session("a")])
        target = tmp_path / "out.json"

        written = await run_capture(pipeline, target, "json", duration=0.2)

        assert written == target.resolve()
        assert [r["id"] for r in json.loads(target.read_text(encoding="utf-8"))] == ["a"]
        pipeline.supervisor.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_failure_propagates(self, config: CaptureConfig, tmp_path: Path) -> None:
        """A failed start raises and writes nothing."""
        pipeline = create_pipeline(config)
        pipeline.supervisor.start = AsyncMock(side_effect=StartupTimeoutError("too slow"))

        with pytest.raises(StartupTimeoutError):
            await run_capture(pipeline, tmp_path / "out.json", "json", duration=0.1)

        assert not (tmp_path / "out.json").exists()


class TestCaptureCommand:
    """Tests for the capture command."""

    def test_capture_writes_export(self, config: CaptureConfig, tmp_path: Path) -> None:
        """The command prints progress and the export path."""
        target = tmp_path / "traffic.csv"

        with patch("capture_mcp.cli.CapturePipeline", return_value=create_pipeline(config)):
            result = runner.invoke(app, ["capture", "-o", str(target), "-f", "csv", "-d", "0.05"])

        assert result.exit_code == 0, result.output
        assert "Capture saved to" in result.output
        assert target.exists()

    def test_capture_error_exit_code(self, config: CaptureConfig) -> None:
        """Capture errors are reported with exit code 1."""
        pipeline = create_pipeline(config)
        pipeline.supervisor.start = AsyncMock(side_effect=StartupTimeoutError("too slow"))

        with patch("capture_mcp.cli.CapturePipeline", return_value=pipeline):
            result = runner.invoke(app, ["capture", "-d", "0.05"])

        assert result.exit_code == 1


class TestProxyCommand:
    """Tests for the proxy command."""

    def test_invalid_state(self) -> None:
        """Only on and off are accepted."""
        result = runner.invoke(app, ["proxy", "maybe"])

        assert result.exit_code == 2

    def test_proxy_on(self) -> None:
        """proxy on enables the system proxy at the given port."""
        summary = CommandSummary(action="enable_proxy", results=[CommandResult(target="gnome", ok=True)])

        with patch("capture_mcp.cli.SystemProxyController") as controller_class:
            controller_class.return_value.enable = AsyncMock(return_value=summary)
            result = runner.invoke(app, ["proxy", "on", "--port", "9999"])

        assert result.exit_code == 0
        controller_class.return_value.enable.assert_awaited_once_with("127.0.0.1", 9999)

    def test_proxy_off_failure(self) -> None:
        """A failed disable exits with code 1."""
        summary = CommandSummary(action="disable_proxy", results=[CommandResult(target="gnome", ok=False)])

        with patch("capture_mcp.cli.SystemProxyController") as controller_class:
            controller_class.return_value.disable = AsyncMock(return_value=summary)
            result = runner.invoke(app, ["proxy", "off"])

        assert result.exit_code == 1

    def test_proxy_status(self) -> None:
        """proxy status prints each target's settings."""
        summary = CommandSummary(
            action="proxy_status",
            results=[CommandResult(target="gnome", ok=True, detail="http off, https off")],
        )

        with patch("capture_mcp.cli.SystemProxyController") as controller_class:
            controller_class.return_value.current = AsyncMock(return_value=summary)
            result = runner.invoke(app, ["proxy", "status"])

        assert result.exit_code == 0
        assert "gnome: http off, https off" in result.output
