"""Time-bounded OS command execution.

Every OS-level operation (port inspection, proxy and certificate changes)
goes through ``run_command`` so each invocation is bounded by a timeout and
failures surface as OSCommandFailure.
"""

from __future__ import annotations

import asyncio
import logging
import platform
from collections.abc import Sequence

from capture_mcp.models import OSCommandFailure

logger = logging.getLogger(__name__)

# Default bound for a single command (seconds)
DEFAULT_COMMAND_TIMEOUT = 10.0


def current_platform() -> str:
    """Normalized platform name: "darwin", "windows", "linux" or other."""
    return platform.system().lower()


async def run_command(
    args: Sequence[str],
    timeout: float = DEFAULT_COMMAND_TIMEOUT,
    check: bool = True,
) -> str:
    """Run a command and return its standard output.

    Args:
        args: Program and arguments (no shell interpretation)
        timeout: Seconds before the command is killed
        check: Raise on a non-zero exit status

    Returns:
        Decoded standard output

    Raises:
        OSCommandFailure: If the program is missing, times out, or exits
            non-zero while ``check`` is set
    """
    command = " ".join(args)
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise OSCommandFailure(f"Cannot run {args[0]}: {e}", details={"command": command}) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError as e:
        process.kill()
        await process.wait()
        raise OSCommandFailure(
            f"Command timed out after {timeout}s: {command}",
            details={"command": command, "timeout": timeout},
        ) from e

    output = stdout.decode(errors="replace")
    if check and process.returncode != 0:
        error = stderr.decode(errors="replace").strip() or output.strip()
        raise OSCommandFailure(
            f"Command failed with exit code {process.returncode}: {error or command}",
            details={"command": command, "returncode": process.returncode},
        )
    logger.debug(f"Command succeeded: {command}")
    return output
