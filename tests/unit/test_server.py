"""Unit tests for the MCP tool handlers."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from capture_mcp.capture import CaptureManager
from capture_mcp.config import CaptureConfig
from capture_mcp.decorators import NO_PIPELINE_MESSAGE
from capture_mcp.models import (
    CommandResult,
    CommandSummary,
    EngineInfo,
    StartupTimeoutError,
)
from tests.factories import BASE_TIME, create_pipeline, create_raw_session


@pytest.fixture
def pipeline(config: CaptureConfig):
    """Register a stopped pipeline holding three records."""
    pipeline = create_pipeline(config)
    pipeline.reconciler.ingest(
        [
            create_raw_session("a", url="http://a.com/x", start_time=BASE_TIME),
            create_raw_session("b", url="https://b.com/login", method="POST", status_code=401, start_time=BASE_TIME + 1),
            create_raw_session("c", url="http://a.com/y", status_code=None, response_body=None, start_time=BASE_TIME + 2),
        ]
    )
    CaptureManager._instance = pipeline
    return pipeline


class TestCaptureStart:
    """Tests for capture_start and capture_stop."""

    @pytest.mark.asyncio
    async def test_start_reports_certificate(self, config: CaptureConfig) -> None:
        """The root certificate path is included when known."""
        from capture_mcp.server import capture_start

        pipeline = create_pipeline(config)
        with patch("capture_mcp.capture.CapturePipeline", return_value=pipeline):
            result = await capture_start.fn(port=18899)

        assert "Capture started on 127.0.0.1:18899" in result
        assert "Root certificate: /tmp/root.crt" in result
        await CaptureManager.stop()

    @pytest.mark.asyncio
    async def test_start_failure_is_formatted(self) -> None:
        """A startup timeout becomes an error message."""
        from capture_mcp.server import capture_start

        with patch.object(CaptureManager, "start", AsyncMock(side_effect=StartupTimeoutError("not ready in 30s"))):
            result = await capture_start.fn()

        assert result == "Error [startup_timeout]: not ready in 30s"

    @pytest.mark.asyncio
    async def test_stop_when_idle(self) -> None:
        """Stopping without a running capture is reported."""
        from capture_mcp.server import capture_stop

        assert await capture_stop.fn() == "Capture is not running."

    @pytest.mark.asyncio
    async def test_status_inactive(self) -> None:
        """Status is JSON."""
        from capture_mcp.server import capture_status

        assert json.loads(await capture_status.fn()) == {"active": False}


class TestCaptureList:
    """Tests for capture_list."""

    @pytest.mark.asyncio
    async def test_without_pipeline(self) -> None:
        """Tools needing records explain that no capture was started."""
        from capture_mcp.server import capture_list

        assert await capture_list.fn() == NO_PIPELINE_MESSAGE

    @pytest.mark.asyncio
    async def test_lists_newest_first(self, pipeline) -> None:
        """Records are listed newest first with pending status shown as '-'."""
        from capture_mcp.server import capture_list

        result = await capture_list.fn()

        lines = result.splitlines()
        assert lines[0] == "3 request(s):"
        assert lines[1] == "[c] GET - http://a.com/y (12ms)"
        assert lines[3] == "[a] GET 200 http://a.com/x (12ms)"

    @pytest.mark.asyncio
    async def test_filters_and_limit(self, pipeline) -> None:
        """Filters narrow the list and the limit truncates it."""
        from capture_mcp.server import capture_list

        assert "[b] POST 401" in await capture_list.fn(status="4xx")
        limited = await capture_list.fn(search="a.com", limit=1)
        assert limited.splitlines() == ["2 request(s):", "[c] GET - http://a.com/y (12ms)", "... 1 more"]

    @pytest.mark.asyncio
    async def test_no_matches(self, pipeline) -> None:
        """An empty result is reported."""
        from capture_mcp.server import capture_list

        assert await capture_list.fn(method="DELETE") == "No captured requests."

    def test_pipeline_parameter_not_exposed(self) -> None:
        """The injected pipeline is not part of the tool schema."""
        from capture_mcp.server import capture_list

        assert "pipeline" not in capture_list.parameters.get("properties", {})
        assert "limit" in capture_list.parameters["properties"]


class TestCaptureGet:
    """Tests for capture_get."""

    @pytest.mark.asyncio
    async def test_returns_record_json(self, pipeline) -> None:
        """A record is returned with camelCase fields."""
        from capture_mcp.server import capture_get

        data = json.loads(await capture_get.fn("b"))

        assert data["id"] == "b"
        assert data["statusCode"] == 401
        assert data["responseBody"] == "ok"

    @pytest.mark.asyncio
    async def test_unknown_id(self, pipeline) -> None:
        """An unknown id is an invalid-input error."""
        from capture_mcp.server import capture_get

        assert await capture_get.fn("zzz") == "Error [invalid_input]: No captured request with id zzz"

    @pytest.mark.asyncio
    async def test_long_body_truncated(self, config: CaptureConfig) -> None:
        """Bodies beyond the preview size are cut with a marker."""
        from capture_mcp.server import BODY_PREVIEW_CHARS, capture_get

        pipeline = create_pipeline(config)
        pipeline.reconciler.ingest([create_raw_session("big", response_body="x" * (BODY_PREVIEW_CHARS + 5))])
        CaptureManager._instance = pipeline

        data = json.loads(await capture_get.fn("big"))

        assert data["responseBody"].endswith("...[5 more characters]")


class TestCaptureClearExport:
    """Tests for capture_clear and capture_export."""

    @pytest.mark.asyncio
    async def test_clear(self, pipeline) -> None:
        """Clearing empties the record set."""
        from capture_mcp.server import capture_clear

        assert await capture_clear.fn() == "Captured data cleared."
        assert pipeline.records() == []

    @pytest.mark.asyncio
    async def test_export(self, pipeline, tmp_path: Path) -> None:
        """Export writes the file and reports its location."""
        from capture_mcp.server import capture_export

        target = tmp_path / "out.csv"
        result = await capture_export.fn(path=str(target), fmt="csv")

        assert result == f"Exported 3 requests to {target.resolve()}"
        assert target.exists()

    @pytest.mark.asyncio
    async def test_export_bad_format(self, pipeline, tmp_path: Path) -> None:
        """Unsupported formats are reported as errors."""
        from capture_mcp.server import capture_export

        result = await capture_export.fn(path=str(tmp_path / "out.xml"), fmt="xml")

        assert result.startswith("Error [invalid_input]: Unsupported export format")


class TestCaptureSetMode:
    """Tests for capture_set_mode."""

    @pytest.mark.asyncio
    async def test_switches_mode(self, pipeline) -> None:
        """The mode change is forwarded to the engine."""
        from capture_mcp.server import capture_set_mode

        assert await capture_set_mode.fn(enabled=False) == "HTTPS capture disabled."
        pipeline.supervisor.set_capture_mode.assert_awaited_once_with(False)
        assert pipeline.config.capture_mode is False

    @pytest.mark.asyncio
    async def test_engine_not_running(self, pipeline) -> None:
        """Without a running engine the change is rejected."""
        from capture_mcp.server import capture_set_mode

        pipeline.supervisor.is_running = MagicMock(return_value=False)

        assert await capture_set_mode.fn(enabled=True) == "Error [not_running]: Capture engine is not running"

    @pytest.mark.asyncio
    async def test_command_not_delivered(self, pipeline) -> None:
        """A mode change the engine host did not receive is an error."""
        from capture_mcp.server import capture_set_mode

        pipeline.supervisor.set_capture_mode = AsyncMock(return_value=False)

        result = await capture_set_mode.fn(enabled=True)

        assert result.startswith("Error [engine_failed]")
        assert pipeline.config.capture_mode is True


class TestProxyAndCertificate:
    """Tests for the proxy and certificate tools."""

    @pytest.mark.asyncio
    async def test_proxy_enable(self) -> None:
        """The proxy summary is returned as text."""
        from capture_mcp.server import proxy_enable

        summary = CommandSummary(action="enable_proxy", results=[CommandResult(target="gnome", ok=True, detail="set")])
        with patch.object(CaptureManager, "set_proxy", AsyncMock(return_value=summary)) as mock_set:
            result = await proxy_enable.fn(port=9999)

        mock_set.assert_awaited_once_with(True, None, 9999)
        assert "1/1 targets succeeded" in result

    @pytest.mark.asyncio
    async def test_certificate_install_needs_known_certificate(self) -> None:
        """Without a path and without an engine there is nothing to install."""
        from capture_mcp.server import certificate_install

        result = await certificate_install.fn()

        assert result.startswith("Error [invalid_input]")

    @pytest.mark.asyncio
    async def test_certificate_install_uses_engine_certificate(self, pipeline) -> None:
        """The engine's root certificate is the default."""
        from capture_mcp.server import certificate_install

        pipeline.engine_info = EngineInfo(port=18899, host="127.0.0.1", root_ca_file="/tmp/root.crt")
        summary = CommandSummary(action="install_certificate")
        with patch("capture_mcp.server.CertificateInstaller") as installer_class:
            installer_class.return_value.install = AsyncMock(return_value=summary)
            result = await certificate_install.fn()

        installer_class.return_value.install.assert_awaited_once_with("/tmp/root.crt")
        assert result == "install_certificate: no targets"

    @pytest.mark.asyncio
    async def test_certificate_uninstall(self) -> None:
        """Uninstall passes the common name through."""
        from capture_mcp.server import certificate_uninstall

        installer = MagicMock()
        installer.uninstall = AsyncMock(return_value=CommandSummary(action="uninstall_certificate"))
        with patch("capture_mcp.server.CertificateInstaller", return_value=installer):
            await certificate_uninstall.fn("whistle")

        installer.uninstall.assert_awaited_once_with("whistle")

    @pytest.mark.asyncio
    async def test_proxy_status(self) -> None:
        """Each target's proxy state is listed."""
        from capture_mcp.server import proxy_status

        summary = CommandSummary(
            action="proxy_status",
            results=[CommandResult(target="Wi-Fi", ok=True, detail="http on 127.0.0.1:8899, https off")],
        )
        with patch.object(CaptureManager, "proxy_status", AsyncMock(return_value=summary)):
            result = await proxy_status.fn()

        assert result == "Wi-Fi: http on 127.0.0.1:8899, https off"

    @pytest.mark.asyncio
    async def test_certificate_status(self, pipeline) -> None:
        """The trust state and the engine's certificate file are reported."""
        from capture_mcp.server import certificate_status

        pipeline.engine_info = EngineInfo(port=18899, host="127.0.0.1", root_ca_file="/tmp/root.crt")
        summary = CommandSummary(
            action="certificate_status",
            results=[CommandResult(target="System.keychain", ok=True, detail="installed")],
        )
        with patch("capture_mcp.server.CertificateInstaller") as installer_class:
            installer_class.return_value.status = AsyncMock(return_value=summary)
            result = await certificate_status.fn()

        installer_class.return_value.status.assert_awaited_once_with("whistle")
        assert result.splitlines() == [
            "Root certificate installed",
            "  System.keychain: installed",
            "Certificate file: /tmp/root.crt",
        ]
