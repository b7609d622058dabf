"""CLI interface for HTTP traffic capture.

Provides commands for running a capture session in the foreground and
toggling the system proxy.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from pathlib import Path
from typing import Annotated

import typer

from capture_mcp.capture import CapturePipeline
from capture_mcp.config import CaptureConfig
from capture_mcp.models import CaptureError
from capture_mcp.pipeline.events import DataClear, DataUpdate, Subscription
from capture_mcp.system.proxy import SystemProxyController

app = typer.Typer(
    name="capture-mcp",
    help="HTTP traffic capture tool - run the capture engine and export transactions",
)


async def _print_updates(subscription: Subscription) -> None:
    seen: set[str] = set()
    async for event in subscription:
        if isinstance(event, DataClear):
            seen.clear()
            typer.echo("🧹 Records cleared")
        elif isinstance(event, DataUpdate):
            for record in event.records:
                if record.id in seen or not record.status_code:
                    continue
                seen.add(record.id)
                typer.echo(f"   {record.method:7} {record.status_code} {record.url} ({record.duration}ms)")


async def run_capture(pipeline: CapturePipeline, output: Path | None, fmt: str, duration: float | None) -> Path:
    """Capture until interrupted (or for ``duration`` seconds), then export."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    subscription = pipeline.subscribe()
    printer = asyncio.create_task(_print_updates(subscription))
    try:
        await pipeline.start()
        try:
            typer.echo("📡 Capturing... press Ctrl+C to stop")
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=duration)
        finally:
            await pipeline.stop()
    finally:
        subscription.close()
        await printer
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(sig)
    return pipeline.export(output, fmt)


@app.command()
def capture(
    output: Annotated[
        Path | None,
        typer.Option(
            "--output",
            "-o",
            help="Export file written when capture stops (default: timestamped file)",
        ),
    ] = None,
    fmt: Annotated[
        str,
        typer.Option(
            "--format",
            "-f",
            help="Export format: json or csv",
        ),
    ] = "json",
    port: Annotated[
        int | None,
        typer.Option(
            "--port",
            "-p",
            help="Capture engine port",
        ),
    ] = None,
    host: Annotated[
        str | None,
        typer.Option(
            "--host",
            "-H",
            help="Capture engine bind address",
        ),
    ] = None,
    system_proxy: Annotated[
        bool,
        typer.Option(
            "--system-proxy",
            help="Point the system proxy at the engine while capturing",
        ),
    ] = False,
    exclude_local: Annotated[
        bool,
        typer.Option(
            "--exclude-local",
            help="Ignore requests to localhost and private networks",
        ),
    ] = False,
    duration: Annotated[
        float | None,
        typer.Option(
            "--duration",
            "-d",
            help="Stop automatically after this many seconds",
        ),
    ] = None,
) -> None:
    """Run a capture session in the foreground.

    Starts the capture engine, prints each completed request and exports
    everything when stopped.

    Example:
        capture-mcp-cli capture --format csv -o traffic.csv
    """
    config = CaptureConfig.from_env(
        port=port,
        host=host,
        set_system_proxy=system_proxy or None,
        exclude_local_hosts=exclude_local or None,
    )
    typer.echo("🔍 Starting traffic capture...")
    typer.echo(f"   Engine: {config.host}:{config.port}")
    typer.echo(f"   System proxy: {'enabled' if config.set_system_proxy else 'disabled'}")
    typer.echo()

    try:
        target = asyncio.run(run_capture(CapturePipeline(config), output, fmt, duration))
    except CaptureError as e:
        typer.echo(f"❌ Error [{e.code.value}]: {e.message}", err=True)
        raise typer.Exit(1) from e

    typer.echo(f"✅ Capture saved to: {target}")


@app.command()
def proxy(
    state: Annotated[
        str,
        typer.Argument(
            help="on, off or status",
        ),
    ],
    port: Annotated[
        int | None,
        typer.Option(
            "--port",
            "-p",
            help="Proxy port (default: capture engine port)",
        ),
    ] = None,
    host: Annotated[
        str | None,
        typer.Option(
            "--host",
            "-H",
            help="Proxy host (default: capture engine host)",
        ),
    ] = None,
) -> None:
    """Turn the system HTTP/HTTPS proxy on or off, or show its settings."""
    state = state.lower()
    if state not in ("on", "off", "status"):
        typer.echo("❌ State must be 'on', 'off' or 'status'", err=True)
        raise typer.Exit(2)

    config = CaptureConfig.from_env(port=port, host=host)
    controller = SystemProxyController(timeout=config.command_timeout)
    if state == "status":
        summary = asyncio.run(controller.current())
        for result in summary.results:
            typer.echo(f"{result.target}: {result.detail}")
        if not summary.ok:
            raise typer.Exit(1)
        return
    if state == "on":
        summary = asyncio.run(controller.enable(config.host, config.port))
    else:
        summary = asyncio.run(controller.disable())

    typer.echo(summary.message)
    if not summary.ok:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
