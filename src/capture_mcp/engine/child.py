"""Engine host process.

Started by the supervisor as ``python -m capture_mcp.engine.child OPTIONS``
where OPTIONS is the URL-quoted JSON produced by ``protocol.encode_options``.
The host runs the capture engine CLI, relays its output, announces
``ready`` or ``error`` on stdout and obeys control messages on stdin.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shlex
import sys
from pathlib import Path
from typing import Any

from capture_mcp.config import DEFAULT_HOST, DEFAULT_PORT
from capture_mcp.engine import protocol

logger = logging.getLogger(__name__)

# Where the engine keeps its root certificate, relative to its storage dir
ROOT_CA_CANDIDATES = ("certs/root.crt", "certs/root.pem", "root.crt")


def parse_options(argv: list[str]) -> dict[str, Any]:
    """Read host options from argv, falling back to defaults when absent or invalid."""
    options: dict[str, Any] = {}
    if len(argv) > 1:
        try:
            options = protocol.decode_options(argv[1])
        except ValueError:
            logger.warning("Ignoring malformed engine options")
    return {
        "port": int(options.get("port") or DEFAULT_PORT),
        "host": options.get("host") or DEFAULT_HOST,
        "storage": options.get("storage") or "",
        "mode": options.get("mode", "capture"),
        "engine": options.get("engine") or "w2",
    }


def engine_arguments(options: dict[str, Any], capture: bool) -> list[str]:
    """Build the engine CLI invocation for the given options."""
    args = [*shlex.split(options["engine"]), "run", "-p", str(options["port"]), "-H", options["host"]]
    if options["storage"]:
        args += ["-S", options["storage"]]
    if capture:
        args += ["-M", "capture"]
    args.append("--no-global-plugins")
    return args


def find_root_ca(storage: str) -> str | None:
    if not storage:
        return None
    for candidate in ROOT_CA_CANDIDATES:
        path = Path(storage) / candidate
        if path.is_file():
            return str(path)
    return None


def emit(message: protocol.EngineMessage) -> None:
    sys.stdout.buffer.write(protocol.encode(message))
    sys.stdout.flush()


class EngineHost:
    """Runs the engine CLI and relays its lifecycle to the supervisor."""

    def __init__(self, options: dict[str, Any]) -> None:
        self.options = options
        self.capture = options["mode"] == "capture"
        self.process: asyncio.subprocess.Process | None = None
        self.ready = False
        self._relay: asyncio.Task[None] | None = None

    async def launch(self) -> None:
        """Start the engine CLI.

        Raises:
            OSError: If the engine executable cannot be started
        """
        storage = self.options["storage"]
        if storage:
            Path(storage).mkdir(parents=True, exist_ok=True)
        self.ready = False
        self.process = await asyncio.create_subprocess_exec(
            *engine_arguments(self.options, self.capture),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        self._relay = asyncio.create_task(self._relay_output(self.process))

    async def _relay_output(self, process: asyncio.subprocess.Process) -> None:
        assert process.stdout is not None
        while line := await process.stdout.readline():
            text = line.decode(errors="replace").rstrip()
            if not text:
                continue
            emit(protocol.LogMessage(message=text))
            if not self.ready and protocol.READY_PATTERN.search(text):
                self.ready = True
                emit(protocol.ReadyMessage(options=self.ready_options()))

        returncode = await process.wait()
        if process is self.process and not self.ready:
            emit(protocol.ErrorMessage(message=f"Engine exited with code {returncode} before starting"))

    def ready_options(self) -> dict[str, Any]:
        return {
            "port": self.options["port"],
            "host": self.options["host"],
            "baseDir": self.options["storage"],
            "rootCAFile": find_root_ca(self.options["storage"]),
        }

    async def shutdown(self) -> None:
        process, self.process = self.process, None
        if process is not None and process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()
        if self._relay is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._relay
            self._relay = None

    async def set_capture_mode(self, enabled: bool) -> None:
        """Restart the engine with HTTPS capture switched on or off."""
        if enabled == self.capture:
            return
        self.capture = enabled
        await self.shutdown()
        await self.launch()

    async def serve(self) -> int:
        """Launch the engine and process control messages until told to exit."""
        try:
            await self.launch()
        except OSError as e:
            emit(protocol.ErrorMessage(message=f"Cannot start engine: {e}"))
            return 1

        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                # Supervisor went away
                break
            command = protocol.decode_control_message(line)
            if isinstance(command, protocol.ExitCommand):
                break
            if isinstance(command, protocol.CaptureModeCommand):
                try:
                    await self.set_capture_mode(command.enabled)
                except OSError as e:
                    emit(protocol.ErrorMessage(message=f"Cannot restart engine: {e}"))
                    return 1

        await self.shutdown()
        return 0


def main(argv: list[str] | None = None) -> int:
    options = parse_options(sys.argv if argv is None else argv)
    return asyncio.run(EngineHost(options).serve())


if __name__ == "__main__":
    sys.exit(main())
