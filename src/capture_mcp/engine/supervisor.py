"""Capture engine process lifecycle management.

The supervisor frees the engine port, launches the engine host process,
waits until the engine is ready and shuts it down again. Its state moves
``stopped -> starting -> ready | failed``; ``stopped`` is reachable from
every state.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import TYPE_CHECKING

from capture_mcp.engine import protocol
from capture_mcp.engine.client import EngineClient
from capture_mcp.engine.ports import free_port
from capture_mcp.models import (
    CaptureError,
    EngineInfo,
    EngineStartError,
    ErrorCode,
    StartupTimeoutError,
    SupervisorState,
)

if TYPE_CHECKING:
    from capture_mcp.config import CaptureConfig

logger = logging.getLogger(__name__)


def build_launch_command(config: CaptureConfig) -> list[str]:
    """Command line that starts the engine host for a config.

    Uses ``config.launcher`` verbatim when set, otherwise runs
    ``capture_mcp.engine.child`` with the current interpreter.
    """
    if config.launcher:
        return list(config.launcher)
    options = {
        "port": config.port,
        "host": config.host,
        "storage": str(config.storage_dir),
        "mode": "capture" if config.capture_mode else "",
        "engine": config.engine_command,
    }
    return [sys.executable, "-m", "capture_mcp.engine.child", protocol.encode_options(options)]


class ProcessSupervisor:
    """Manages the capture engine host process.

    Attributes:
        state: Current lifecycle state
        engine_info: Metadata announced by the engine once ready
        process: Running engine host process
    """

    def __init__(self) -> None:
        self.state = SupervisorState.STOPPED
        self.engine_info: EngineInfo | None = None
        self.process: asyncio.subprocess.Process | None = None
        self._config: CaptureConfig | None = None
        self._reader: asyncio.Task[None] | None = None
        self._ready = asyncio.Event()
        self._failure: str | None = None

    def is_running(self) -> bool:
        """Check if the engine host is alive and ready."""
        return (
            self.state == SupervisorState.READY
            and self.process is not None
            and self.process.returncode is None
        )

    async def start(self, config: CaptureConfig) -> EngineInfo:
        """Start the capture engine and wait until it is ready.

        Args:
            config: Capture configuration (port, host, storage, mode, timeouts)

        Returns:
            Engine metadata (port, host, storage, root certificate path)

        Raises:
            CaptureError: If the engine is already starting or running
            EngineStartError: If the engine reports an error or exits early
            StartupTimeoutError: If the engine is not ready in time
        """
        if self.state in (SupervisorState.STARTING, SupervisorState.READY):
            raise CaptureError("Capture engine is already running", code=ErrorCode.ALREADY_RUNNING)

        self._config = config
        self.state = SupervisorState.STARTING
        self.engine_info = None
        self._ready = asyncio.Event()
        self._failure = None

        try:
            await free_port(config.port, config.host, config.command_timeout)
            config.storage_dir.mkdir(parents=True, exist_ok=True)

            command = build_launch_command(config)
            logger.info(f"Starting capture engine on {config.host}:{config.port}")
            self.process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            self._reader = asyncio.create_task(self._read_output(), name="engine-output")

            await asyncio.wait_for(self._wait_ready(config), timeout=config.startup_timeout)
        except TimeoutError as e:
            await self._abort()
            raise StartupTimeoutError(
                f"Capture engine did not become ready within {config.startup_timeout}s",
                details={"port": config.port},
            ) from e
        except OSError as e:
            await self._abort()
            raise EngineStartError(f"Failed to launch capture engine: {e}", details={"port": config.port}) from e
        except BaseException:
            await self._abort()
            raise

        self.state = SupervisorState.READY
        if self.engine_info is None:
            self.engine_info = EngineInfo(port=config.port, host=config.host, storage=str(config.storage_dir))
        logger.info(f"Capture engine ready on {config.host}:{config.port}")
        return self.engine_info

    async def _wait_ready(self, config: CaptureConfig) -> None:
        """Wait for a ready message or a JSON answer from the query API, whichever first."""
        announced = asyncio.create_task(self._ready.wait())
        checking = asyncio.create_task(self._check_until_ready(config))
        try:
            done, _ = await asyncio.wait({announced, checking}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (announced, checking):
                task.cancel()
        for task in done:
            task.result()
        if self._failure is not None:
            raise EngineStartError(self._failure, details={"port": config.port})

    async def _check_until_ready(self, config: CaptureConfig) -> None:
        for attempt in range(1, config.ready_check_attempts + 1):
            if self._failure is not None or (self.process is not None and self.process.returncode is not None):
                self._failure = self._failure or f"Capture engine exited with code {self.process.returncode}"
                return
            if await self.ping(config.base_url, config.request_timeout):
                logger.debug(f"Engine query API answered after {attempt} attempt(s)")
                return
            logger.debug(f"Waiting for capture engine... ({attempt}/{config.ready_check_attempts})")
            await asyncio.sleep(config.ready_check_interval)
        raise TimeoutError(f"Engine not reachable after {config.ready_check_attempts} attempts")

    @staticmethod
    async def ping(base_url: str, timeout: float = 1.0) -> bool:
        """Check that the engine's query API answers with JSON.

        A bare TCP connect is not enough: another process may still hold
        the port.
        """
        async with EngineClient(base_url, timeout=timeout) as client:
            return await client.ping()

    async def _read_output(self) -> None:
        """Consume engine host output, reacting to protocol messages."""
        assert self.process is not None and self.process.stdout is not None
        stream = self.process.stdout
        while line := await stream.readline():
            message = protocol.decode_engine_message(line)
            if isinstance(message, protocol.ReadyMessage):
                self._on_ready(message)
            elif isinstance(message, protocol.ErrorMessage):
                logger.error(f"Capture engine error: {message.message}")
                self._failure = message.message or "Capture engine reported an error"
                self._ready.set()
            elif isinstance(message, protocol.LogMessage):
                logger.debug(f"engine: {message.message}")
            else:
                text = line.decode(errors="replace").rstrip()
                logger.debug(f"engine: {text}")
                if protocol.READY_PATTERN.search(text):
                    self._on_ready(protocol.ReadyMessage())

        returncode = await self.process.wait()
        if self.state == SupervisorState.STARTING and self._failure is None:
            self._failure = f"Capture engine exited with code {returncode} before becoming ready"
            self._ready.set()
        elif self.state == SupervisorState.READY:
            logger.warning(f"Capture engine exited unexpectedly with code {returncode}")
            self.state = SupervisorState.FAILED

    def _on_ready(self, message: protocol.ReadyMessage) -> None:
        config = self._config
        assert config is not None
        options = message.options
        self.engine_info = EngineInfo(
            port=int(options.get("port") or config.port),
            host=str(options.get("host") or config.host),
            storage=str(options.get("baseDir") or options.get("storage") or config.storage_dir),
            root_ca_file=options.get("rootCAFile") or None,
        )
        self._ready.set()

    async def send(self, message: protocol.ControlMessage) -> bool:
        """Send a control message to the engine host.

        Returns:
            True if the message was written
        """
        if self.process is None or self.process.stdin is None or self.process.returncode is not None:
            return False
        try:
            self.process.stdin.write(protocol.encode(message))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Could not send {message.type} to engine: {e}")
            return False
        return True

    async def set_capture_mode(self, enabled: bool) -> bool:
        return await self.send(protocol.CaptureModeCommand(enabled=enabled))

    async def stop(self) -> None:
        """Shut the engine down, force-terminating it after the grace period."""
        grace = self._config.stop_grace_period if self._config else 5.0
        process = self.process
        if process is not None and process.returncode is None:
            await self.send(protocol.ExitCommand())
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except TimeoutError:
                logger.warning("Capture engine did not exit in time, terminating")
                await self._terminate(process)
            logger.info("Capture engine stopped")
        await self._cleanup()

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        with contextlib.suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def _abort(self) -> None:
        if self.process is not None and self.process.returncode is None:
            await self._terminate(self.process)
        await self._cleanup()
        self.state = SupervisorState.FAILED

    async def _cleanup(self) -> None:
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
        self.process = None
        self.state = SupervisorState.STOPPED
