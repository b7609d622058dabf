"""Capture pipeline orchestration.

Wires the process supervisor, engine client, polling scheduler, reconciler
and event publisher into one start/stop unit, and provides a process-wide
manager shared by the MCP tools.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, ClassVar

from capture_mcp.config import CaptureConfig
from capture_mcp.engine.client import EngineClient
from capture_mcp.engine.supervisor import ProcessSupervisor
from capture_mcp.export import export_records, generate_filename
from capture_mcp.filters import filter_records
from capture_mcp.models import (
    CaptureError,
    CaptureStatus,
    CommandSummary,
    EngineInfo,
    ErrorCode,
    TransactionRecord,
)
from capture_mcp.pipeline.events import EventPublisher, Subscription
from capture_mcp.pipeline.scheduler import PollingScheduler
from capture_mcp.pipeline.store import Reconciler
from capture_mcp.system.proxy import SystemProxyController

logger = logging.getLogger(__name__)


class CapturePipeline:
    """One capture engine plus the ingestion pipeline feeding on it.

    Records survive ``stop()`` so they can still be listed and exported;
    ``start()`` begins a fresh capture with an empty record set.

    Attributes:
        config: Pipeline configuration
        publisher: Change notification channel
        reconciler: Owner of the canonical record set
        supervisor: Engine process supervisor
        client: Engine query client
        scheduler: Polling loop
        proxy: System proxy controller used when set_system_proxy is on
    """

    def __init__(
        self,
        config: CaptureConfig,
        supervisor: ProcessSupervisor | None = None,
        client: EngineClient | None = None,
        proxy: SystemProxyController | None = None,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.config = config
        self.publisher = publisher or EventPublisher()
        self.reconciler = Reconciler(
            self.publisher,
            max_body_chars=config.max_body_chars,
            exclude_local_hosts=config.exclude_local_hosts,
            max_refetch_attempts=config.max_refetch_attempts,
        )
        self.supervisor = supervisor or ProcessSupervisor()
        self.client = client or EngineClient(config.base_url, timeout=config.request_timeout)
        self.scheduler = PollingScheduler(
            self.client,
            self.reconciler,
            interval=config.poll_interval,
            refetch_batch_size=config.refetch_batch_size,
        )
        self.proxy = proxy or SystemProxyController(timeout=config.command_timeout)
        self.engine_info: EngineInfo | None = None
        self._proxy_enabled = False

    @property
    def running(self) -> bool:
        return self.scheduler.is_running

    async def start(self) -> EngineInfo:
        """Start the engine and begin polling.

        Returns:
            Engine metadata announced on readiness

        Raises:
            CaptureError: If the pipeline is already running
            EngineStartError: If the engine fails to start
            StartupTimeoutError: If the engine is not ready in time
        """
        if self.running:
            raise CaptureError("Capture is already running", code=ErrorCode.ALREADY_RUNNING)

        # A new engine starts from an empty record set with no epoch filter
        self.reconciler.clear(epoch=0)
        self.scheduler.reset_cursor()

        self.engine_info = await self.supervisor.start(self.config)
        try:
            await self.client.open()
        except Exception:
            await self.supervisor.stop()
            raise
        self.scheduler.start()

        if self.config.set_system_proxy:
            summary = await self.proxy.enable(self.config.host, self.config.port)
            self._proxy_enabled = summary.ok or summary.partial

        logger.info(f"Capture started on {self.config.host}:{self.config.port}")
        return self.engine_info

    async def stop(self) -> None:
        """Stop polling and shut the engine down.

        Resets the cursor and clear epoch; captured records are kept.
        """
        await self.scheduler.stop()
        try:
            if self._proxy_enabled:
                await self.proxy.disable()
                self._proxy_enabled = False
        finally:
            try:
                await self.supervisor.stop()
            finally:
                await self.client.close()
                self.scheduler.reset_cursor()
                self.reconciler.reset_epoch()
        logger.info("Capture stopped")

    def clear(self) -> None:
        """Discard all records; sessions started before now are ignored from here on."""
        self.reconciler.clear()

    def records(
        self,
        search: str = "",
        method: str = "",
        protocol: str = "",
        status: str = "",
    ) -> list[TransactionRecord]:
        """Snapshot of the record set, filtered and newest first when criteria are given."""
        snapshot = self.reconciler.snapshot()
        if not (search or method or protocol or status):
            return snapshot
        return filter_records(snapshot, search=search, method=method, protocol=protocol, status=status)

    def get(self, record_id: str) -> TransactionRecord | None:
        return self.reconciler.store.get(record_id)

    def subscribe(self) -> Subscription:
        return self.publisher.subscribe()

    async def set_capture_mode(self, enabled: bool) -> bool:
        """Switch HTTPS capture on or off in the running engine.

        The mode is kept for later starts of this pipeline.

        Returns:
            True if the engine host accepted the command
        """
        if not self.supervisor.is_running():
            raise CaptureError("Capture engine is not running", code=ErrorCode.NOT_RUNNING)
        sent = await self.supervisor.set_capture_mode(enabled)
        if sent:
            self.config.capture_mode = enabled
            logger.info(f"HTTPS capture {'enabled' if enabled else 'disabled'}")
        return sent

    def export(self, path: str | Path | None = None, fmt: str = "json") -> Path:
        """Export the current record set.

        Args:
            path: Destination file; a timestamped file in the export
                directory when omitted
            fmt: "json" or "csv"

        Returns:
            Path of the written file

        Raises:
            CaptureError: If the format is not supported
            ExportIOError: If the file cannot be written
        """
        target = Path(path) if path else self.config.export_dir / generate_filename(fmt.lower())
        return export_records(self.reconciler.snapshot(), target, fmt)

    def status(self) -> CaptureStatus:
        info = self.engine_info
        return CaptureStatus(
            running=self.running,
            state=self.supervisor.state,
            port=self.config.port,
            host=self.config.host,
            record_count=len(self.reconciler.store),
            cursor=self.scheduler.cursor,
            clear_epoch=self.reconciler.clear_epoch,
            root_ca_file=info.root_ca_file if info else None,
        )


class CaptureManager:
    """Process-wide manager sharing one CapturePipeline across MCP tools.

    Only one pipeline is active at a time. A stopped pipeline is kept so its
    records remain available until the next start.
    """

    _instance: ClassVar[CapturePipeline | None] = None
    _lock: ClassVar[asyncio.Lock] = asyncio.Lock()

    @classmethod
    async def start(cls, config: CaptureConfig | None = None) -> CapturePipeline:
        """Start capturing, creating a pipeline when needed.

        Args:
            config: Configuration for a new pipeline; the previous
                pipeline's configuration (or the environment) is used when
                omitted

        Returns:
            The running pipeline

        Raises:
            CaptureError: If capture is already running
        """
        async with cls._lock:
            if cls._instance is not None and cls._instance.running:
                raise CaptureError("Capture is already running", code=ErrorCode.ALREADY_RUNNING)
            if cls._instance is None or config is not None:
                cls._instance = CapturePipeline(config or CaptureConfig.from_env())
            await cls._instance.start()
            return cls._instance

    @classmethod
    async def stop(cls) -> bool:
        """Stop the active pipeline.

        Returns:
            True if a running pipeline was stopped
        """
        async with cls._lock:
            if cls._instance is None or not cls._instance.running:
                return False
            await cls._instance.stop()
            return True

    @classmethod
    def get_pipeline(cls) -> CapturePipeline | None:
        return cls._instance

    @classmethod
    def get_status(cls) -> dict[str, Any]:
        """Get current capture status.

        Returns:
            Status dict with an active flag and, when a pipeline exists,
            its CaptureStatus fields
        """
        if cls._instance is None:
            return {"active": False}
        return {"active": cls._instance.running, **cls._instance.status().model_dump(mode="json")}

    @classmethod
    def _config(cls) -> CaptureConfig:
        return cls._instance.config if cls._instance else CaptureConfig.from_env()

    @classmethod
    async def set_proxy(cls, enabled: bool, host: str | None = None, port: int | None = None) -> CommandSummary:
        """Toggle the system proxy, pointing it at the active engine by default."""
        config = cls._config()
        controller = SystemProxyController(timeout=config.command_timeout)
        if enabled:
            return await controller.enable(host or config.host, port or config.port)
        return await controller.disable()

    @classmethod
    async def proxy_status(cls) -> CommandSummary:
        """Read the current system proxy settings."""
        config = cls._config()
        return await SystemProxyController(timeout=config.command_timeout).current()

    @classmethod
    def reset(cls) -> None:
        """Forget the managed pipeline without stopping it."""
        cls._instance = None
