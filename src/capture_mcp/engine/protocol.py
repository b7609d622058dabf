"""Control protocol between the supervisor and the engine host process.

Messages are single-line JSON objects with a ``type`` field. The host
writes ``ready``/``error``/``log`` messages to stdout; the supervisor writes
``exit``/``setCaptureMode`` messages to the host's stdin.
"""

from __future__ import annotations

import json
import re
from typing import Any, Literal
from urllib.parse import quote, unquote

from pydantic import BaseModel, Field, ValidationError

# Engine output lines that announce a successful start
READY_PATTERN = re.compile(
    r"whistle started|proxy server started|server started|started on port",
    re.IGNORECASE,
)


class ReadyMessage(BaseModel):
    """Engine host is ready; carries engine metadata."""

    type: Literal["ready"] = "ready"
    options: dict[str, Any] = Field(default_factory=dict)


class ErrorMessage(BaseModel):
    """Engine host failed to start the engine."""

    type: Literal["error"] = "error"
    message: str = ""


class LogMessage(BaseModel):
    """Engine output relayed for logging."""

    type: Literal["log"] = "log"
    message: str = ""


class ExitCommand(BaseModel):
    """Request a clean shutdown of the engine and its host."""

    type: Literal["exit"] = "exit"


class CaptureModeCommand(BaseModel):
    """Request HTTPS capture mode on or off."""

    type: Literal["setCaptureMode"] = "setCaptureMode"
    enabled: bool = True


EngineMessage = ReadyMessage | ErrorMessage | LogMessage
ControlMessage = ExitCommand | CaptureModeCommand

ENGINE_MESSAGES: dict[str, type[BaseModel]] = {
    "ready": ReadyMessage,
    "error": ErrorMessage,
    "log": LogMessage,
}
CONTROL_MESSAGES: dict[str, type[BaseModel]] = {
    "exit": ExitCommand,
    "setCaptureMode": CaptureModeCommand,
}


def encode(message: BaseModel) -> bytes:
    """Serialize a message as one JSON line."""
    return (message.model_dump_json() + "\n").encode("utf-8")


def _decode(line: str | bytes, registry: dict[str, type[BaseModel]]) -> BaseModel | None:
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line.startswith("{"):
        return None
    try:
        data = json.loads(line)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    model = registry.get(str(data.get("type")))
    if model is None:
        return None
    try:
        return model.model_validate(data)
    except ValidationError:
        return None


def decode_engine_message(line: str | bytes) -> EngineMessage | None:
    """Parse one stdout line from the engine host; None if it is not a message."""
    return _decode(line, ENGINE_MESSAGES)  # type: ignore[return-value]


def decode_control_message(line: str | bytes) -> ControlMessage | None:
    """Parse one stdin line sent by the supervisor; None if it is not a command."""
    return _decode(line, CONTROL_MESSAGES)  # type: ignore[return-value]


def encode_options(options: dict[str, Any]) -> str:
    """Encode host options as a single command-line argument."""
    return quote(json.dumps(options, separators=(",", ":")))


def decode_options(raw: str) -> dict[str, Any]:
    """Decode a command-line argument produced by ``encode_options``."""
    data = json.loads(unquote(raw))
    if not isinstance(data, dict):
        raise ValueError("Options must be a JSON object")
    return data
