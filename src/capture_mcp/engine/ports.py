"""Listening-port inspection and cleanup.

Finds processes bound to the engine port (lsof on macOS/Linux, netstat on
Windows) and terminates them before a new engine is started.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import socket

from capture_mcp.models import OSCommandFailure, PortUnavailableError
from capture_mcp.system.commands import DEFAULT_COMMAND_TIMEOUT, current_platform, run_command

logger = logging.getLogger(__name__)

NETSTAT_PID = re.compile(r"\s(\d+)\s*$")


def is_port_free(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether the port can be bound on the host."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        if current_platform() != "windows":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def parse_lsof_pids(output: str) -> list[int]:
    return [int(line) for line in output.split() if line.strip().isdigit()]


def parse_netstat_pids(output: str, port: int) -> list[int]:
    """Extract owning PIDs of LISTENING sockets on the port from netstat -ano."""
    pids: list[int] = []
    for line in output.splitlines():
        columns = line.split()
        if len(columns) < 4 or not columns[1].endswith(f":{port}"):
            continue
        if "LISTENING" not in line.upper():
            continue
        match = NETSTAT_PID.search(line)
        if match:
            pids.append(int(match.group(1)))
    return pids


async def find_listener_pids(port: int, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> list[int]:
    """Find processes listening on the port.

    Raises:
        OSCommandFailure: If the inspection command cannot run
    """
    if current_platform() == "windows":
        output = await run_command(["netstat", "-ano", "-p", "TCP"], timeout=timeout)
        pids = parse_netstat_pids(output, port)
    else:
        # lsof exits 1 when nothing matches
        output = await run_command(["lsof", "-ti", f"tcp:{port}", "-sTCP:LISTEN"], timeout=timeout, check=False)
        pids = parse_lsof_pids(output)
    own = os.getpid()
    return sorted({pid for pid in pids if pid not in (own, 0)})


async def kill_pid(pid: int, timeout: float = DEFAULT_COMMAND_TIMEOUT) -> None:
    if current_platform() == "windows":
        await run_command(["taskkill", "/F", "/PID", str(pid)], timeout=timeout)
        return
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except PermissionError as e:
        raise OSCommandFailure(f"Not permitted to kill process {pid}", details={"pid": pid}) from e


async def free_port(port: int, host: str = "127.0.0.1", timeout: float = DEFAULT_COMMAND_TIMEOUT) -> bool:
    """Make sure nothing is listening on the port.

    Failure is logged, never raised: the engine may still fail to bind,
    which then surfaces as a startup timeout.

    Args:
        port: Port to free
        host: Address to test binding on
        timeout: Bound for each inspection/kill command

    Returns:
        True if the port is free afterwards
    """
    if is_port_free(port, host):
        logger.debug(f"Port {port} is free")
        return True

    logger.info(f"Port {port} is in use, terminating listeners...")
    try:
        pids = await find_listener_pids(port, timeout)
        for pid in pids:
            logger.info(f"Killing process {pid} listening on port {port}")
            await kill_pid(pid, timeout)
        if pids:
            await asyncio.sleep(0.5)
    except OSCommandFailure as e:
        logger.warning(f"Port cleanup failed: {e.message}")

    if is_port_free(port, host):
        return True

    error = PortUnavailableError(
        f"Port {port} is still in use; close the process holding it manually",
        details={"port": port},
    )
    logger.warning(error.message)
    return False
