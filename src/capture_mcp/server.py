"""FastMCP server for HTTP traffic capture.

Provides MCP tools for starting and stopping the capture engine, browsing
and exporting captured transactions, and toggling the system proxy and
root certificate.
"""

from __future__ import annotations

import json
import logging
from typing import Annotated

from fastmcp import FastMCP

from capture_mcp.capture import CaptureManager, CapturePipeline
from capture_mcp.config import CaptureConfig
from capture_mcp.decorators import handle_capture_error, require_pipeline
from capture_mcp.models import CaptureError, ErrorCode
from capture_mcp.system.certificate import DEFAULT_CA_NAME, CertificateInstaller

logger = logging.getLogger(__name__)

# Create MCP server instance
mcp = FastMCP("capture-mcp")

# Longest body excerpt returned by capture_get
BODY_PREVIEW_CHARS = 10_000


@mcp.tool()
@handle_capture_error
async def capture_start(
    port: Annotated[int | None, "Capture engine port (default: CAPTURE_MCP_PORT or 8899)"] = None,
    host: Annotated[str | None, "Capture engine bind address"] = None,
    set_system_proxy: Annotated[bool | None, "Point the system proxy at the engine while capturing"] = None,
) -> str:
    """Start the capture engine and begin collecting HTTP transactions.

    Any records from a previous capture are discarded.
    """
    config = None
    if port is not None or host is not None or set_system_proxy is not None:
        config = CaptureConfig.from_env(port=port, host=host, set_system_proxy=set_system_proxy)
    pipeline = await CaptureManager.start(config)
    info = pipeline.engine_info
    lines = [f"Capture started on {pipeline.config.host}:{pipeline.config.port}"]
    if info and info.root_ca_file:
        lines.append(f"Root certificate: {info.root_ca_file}")
    return "\n".join(lines)


@mcp.tool()
@handle_capture_error
async def capture_stop() -> str:
    """Stop the capture engine. Captured records remain available."""
    if not await CaptureManager.stop():
        return "Capture is not running."
    return "Capture stopped."


@mcp.tool()
async def capture_status() -> str:
    """Get the current capture status as JSON."""
    return json.dumps(CaptureManager.get_status(), ensure_ascii=False, indent=2)


@mcp.tool()
@handle_capture_error
@require_pipeline
async def capture_list(
    pipeline: CapturePipeline,
    search: Annotated[str, "Case-insensitive text matched against URL, host and method"] = "",
    method: Annotated[str, "HTTP method filter (e.g. GET)"] = "",
    protocol: Annotated[str, "Protocol filter (http or https)"] = "",
    status: Annotated[str, "Status filter: 2xx, 3xx, 4xx, 5xx or an exact code"] = "",
    limit: Annotated[int, "Maximum number of records to return"] = 50,
) -> str:
    """List captured transactions, newest first."""
    records = pipeline.records(search=search, method=method, protocol=protocol, status=status)
    if not (search or method or protocol or status):
        records = list(reversed(records))
    if not records:
        return "No captured requests."

    lines = [f"{len(records)} request(s):"]
    for record in records[: max(limit, 0)]:
        status_text = record.status_code or "-"
        lines.append(f"[{record.id}] {record.method} {status_text} {record.url} ({record.duration}ms)")
    if len(records) > limit:
        lines.append(f"... {len(records) - limit} more")
    return "\n".join(lines)


@mcp.tool()
@handle_capture_error
@require_pipeline
async def capture_get(
    pipeline: CapturePipeline,
    record_id: Annotated[str, "Record id from capture_list"],
) -> str:
    """Get one captured transaction with headers and bodies as JSON."""
    record = pipeline.get(record_id)
    if record is None:
        raise CaptureError(f"No captured request with id {record_id}", code=ErrorCode.INVALID_INPUT)
    data = record.to_export()
    for key in ("requestBody", "responseBody"):
        body = data[key]
        if len(body) > BODY_PREVIEW_CHARS:
            data[key] = body[:BODY_PREVIEW_CHARS] + f"\n...[{len(body) - BODY_PREVIEW_CHARS} more characters]"
    return json.dumps(data, ensure_ascii=False, indent=2)


@mcp.tool()
@handle_capture_error
@require_pipeline
async def capture_clear(pipeline: CapturePipeline) -> str:
    """Discard all captured transactions."""
    pipeline.clear()
    return "Captured data cleared."


@mcp.tool()
@handle_capture_error
@require_pipeline
async def capture_export(
    pipeline: CapturePipeline,
    path: Annotated[str | None, "Destination file (default: timestamped file in the export directory)"] = None,
    fmt: Annotated[str, "Export format: json or csv"] = "json",
) -> str:
    """Export captured transactions to a JSON or CSV file."""
    target = pipeline.export(path, fmt)
    return f"Exported {len(pipeline.records())} requests to {target}"


@mcp.tool()
@handle_capture_error
@require_pipeline
async def capture_set_mode(
    pipeline: CapturePipeline,
    enabled: Annotated[bool, "True to decrypt HTTPS traffic, False to only tunnel it"],
) -> str:
    """Turn HTTPS capture on or off in the running capture engine."""
    if not await pipeline.set_capture_mode(enabled):
        raise CaptureError("Capture engine did not accept the mode change", code=ErrorCode.ENGINE_FAILED)
    return f"HTTPS capture {'enabled' if enabled else 'disabled'}."


@mcp.tool()
@handle_capture_error
async def proxy_enable(
    host: Annotated[str | None, "Proxy host (default: capture engine host)"] = None,
    port: Annotated[int | None, "Proxy port (default: capture engine port)"] = None,
) -> str:
    """Point the system HTTP/HTTPS proxy at the capture engine."""
    summary = await CaptureManager.set_proxy(True, host, port)
    return summary.message


@mcp.tool()
@handle_capture_error
async def proxy_disable() -> str:
    """Turn the system HTTP/HTTPS proxy off."""
    summary = await CaptureManager.set_proxy(False)
    return summary.message


@mcp.tool()
@handle_capture_error
async def proxy_status() -> str:
    """Show the current system HTTP/HTTPS proxy settings."""
    summary = await CaptureManager.proxy_status()
    return "\n".join(f"{r.target}: {r.detail}" for r in summary.results) or "No proxy settings found."


@mcp.tool()
@handle_capture_error
async def certificate_install(
    path: Annotated[str | None, "Root certificate file (default: the engine's root certificate)"] = None,
) -> str:
    """Trust the capture engine's root certificate so HTTPS can be decrypted."""
    if path is None:
        pipeline = CaptureManager.get_pipeline()
        info = pipeline.engine_info if pipeline else None
        if info is None or not info.root_ca_file:
            raise CaptureError(
                "No root certificate known. Start capture first or pass a path.",
                code=ErrorCode.INVALID_INPUT,
            )
        path = info.root_ca_file
    summary = await CertificateInstaller().install(path)
    return summary.message


@mcp.tool()
@handle_capture_error
async def certificate_status(
    common_name: Annotated[str, "Common name of the root certificate"] = DEFAULT_CA_NAME,
) -> str:
    """Check whether the capture engine's root certificate is trusted."""
    summary = await CertificateInstaller().status(common_name)
    lines = [f"Root certificate {'installed' if summary.ok else 'not installed'}"]
    lines.extend(f"  {r.target}: {r.detail}" for r in summary.results)
    pipeline = CaptureManager.get_pipeline()
    if pipeline and pipeline.engine_info and pipeline.engine_info.root_ca_file:
        lines.append(f"Certificate file: {pipeline.engine_info.root_ca_file}")
    return "\n".join(lines)


@mcp.tool()
@handle_capture_error
async def certificate_uninstall(
    common_name: Annotated[str, "Common name of the certificate to remove"],
) -> str:
    """Remove a previously trusted root certificate."""
    summary = await CertificateInstaller().uninstall(common_name)
    return summary.message
