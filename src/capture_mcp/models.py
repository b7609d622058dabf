"""Pydantic data models for capture-mcp.

This module defines the data models used throughout the capture pipeline,
including transaction records, engine metadata, OS command results and
error types.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Fields that may be filled in by later observations of the same transaction.
MERGEABLE_FIELDS = (
    "method",
    "url",
    "host",
    "protocol",
    "status_code",
    "request_headers",
    "response_headers",
    "request_body",
    "response_body",
    "duration",
)


def is_weak(value: Any) -> bool:
    """Check whether a field value is missing or still at its default.

    Args:
        value: Field value to check

    Returns:
        True for None, empty strings, zero and empty containers
    """
    if value is None:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return value == 0
    if isinstance(value, (str, dict, list, tuple)):
        return len(value) == 0
    return False


class TransactionRecord(BaseModel):
    """Canonical record of one HTTP transaction.

    Serialized with camelCase aliases (``statusCode``, ``requestHeaders``...)
    so exports and published payloads keep the wire field names.

    Attributes:
        id: Stable identifier, never changes once assigned
        timestamp: Transaction start time (ISO 8601)
        start_time: Transaction start time (epoch milliseconds, 0 if unknown)
        method: Upper-case HTTP method
        url: Full request URL
        host: Host name parsed from the URL
        protocol: Lower-case URL scheme
        status_code: Response status code, 0 until a response is observed
        request_headers: Request headers with lower-cased keys
        response_headers: Response headers with lower-cased keys
        request_body: Decoded request body text or raw base64
        response_body: Decoded response body text or raw base64
        duration: Elapsed milliseconds, 0 until known
        start_time_estimated: start_time is the receipt time, not the
            engine's (never exported)
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    timestamp: str
    start_time: int = 0
    method: str = ""
    url: str = ""
    host: str = ""
    protocol: str = ""
    status_code: int = 0
    request_headers: dict[str, str] = Field(default_factory=dict)
    response_headers: dict[str, str] = Field(default_factory=dict)
    request_body: str = ""
    response_body: str = ""
    duration: int = 0
    start_time_estimated: bool = Field(default=False, exclude=True)

    def merge(self, other: TransactionRecord) -> bool:
        """Fill weak fields from a later observation of the same transaction.

        A field already holding a real value is never overwritten; an
        estimated start time is replaced by the engine's once known.

        Args:
            other: Record built from a later raw session with the same id

        Returns:
            True if at least one field changed
        """
        changed = False
        for name in MERGEABLE_FIELDS:
            current = getattr(self, name)
            candidate = getattr(other, name)
            if is_weak(current) and not is_weak(candidate):
                setattr(self, name, candidate)
                changed = True
        # A receipt-time placeholder gives way to the first real start time
        replaceable = self.start_time == 0 or self.start_time_estimated
        if replaceable and other.start_time > 0 and not other.start_time_estimated:
            self.start_time = other.start_time
            self.timestamp = other.timestamp
            self.start_time_estimated = False
            changed = True
        return changed

    def to_export(self) -> dict[str, Any]:
        """Serialize with camelCase field names for export and publication."""
        return self.model_dump(by_alias=True)


class SupervisorState(str, Enum):
    """Capture engine process lifecycle state."""

    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"


class EngineInfo(BaseModel):
    """Metadata announced by the capture engine when it becomes ready.

    Attributes:
        port: Port the engine listens on
        host: Address the engine is bound to
        storage: Engine storage directory
        root_ca_file: Path of the engine's root certificate, if known
    """

    port: int
    host: str
    storage: str = ""
    root_ca_file: str | None = None


class CommandResult(BaseModel):
    """Outcome of one OS command target (e.g. one network service).

    Attributes:
        target: Name of the target the command applied to
        ok: Whether every command for the target succeeded
        detail: Human-readable detail or error output
    """

    target: str
    ok: bool
    detail: str = ""


class CommandSummary(BaseModel):
    """Aggregated result of a best-effort OS operation across targets.

    Attributes:
        action: Operation name (e.g. "enable_proxy")
        results: Per-target results
    """

    action: str
    results: list[CommandResult] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True if there was at least one target and all succeeded."""
        return bool(self.results) and all(r.ok for r in self.results)

    @property
    def partial(self) -> bool:
        """True if some, but not all, targets succeeded."""
        return any(r.ok for r in self.results) and not self.ok

    @property
    def message(self) -> str:
        """One-line summary suitable for logs and tool output."""
        if not self.results:
            return f"{self.action}: no targets"
        succeeded = sum(1 for r in self.results if r.ok)
        lines = [f"{self.action}: {succeeded}/{len(self.results)} targets succeeded"]
        for result in self.results:
            mark = "ok" if result.ok else "failed"
            lines.append(f"  [{mark}] {result.target}: {result.detail}")
        return "\n".join(lines)


class CaptureStatus(BaseModel):
    """Snapshot of the capture pipeline state.

    Attributes:
        running: Whether polling is active
        state: Engine process state
        port: Engine port
        host: Engine bind address
        record_count: Number of records in the active set
        cursor: Current incremental-fetch cursor
        clear_epoch: Epoch milliseconds of the most recent clear (0 if none)
        root_ca_file: Engine root certificate path, if reported
    """

    running: bool
    state: SupervisorState
    port: int
    host: str
    record_count: int = 0
    cursor: str = "0"
    clear_epoch: int = 0
    root_ca_file: str | None = None


class ErrorCode(str, Enum):
    """Error codes for capture-mcp errors."""

    STARTUP_TIMEOUT = "startup_timeout"
    ENGINE_FAILED = "engine_failed"
    PORT_UNAVAILABLE = "port_unavailable"
    UPSTREAM_PARSE = "upstream_parse"
    BODY_DECODE = "body_decode"
    EXPORT_IO = "export_io"
    OS_COMMAND = "os_command"
    ALREADY_RUNNING = "already_running"
    NOT_RUNNING = "not_running"
    INVALID_INPUT = "invalid_input"


class CaptureError(Exception):
    """Base exception for capture-mcp errors.

    Attributes:
        code: Error code
        message: Human-readable error message
        details: Additional error details
    """

    default_code = ErrorCode.INVALID_INPUT

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            message: Human-readable error message
            code: Error code, defaults to the class's default code
            details: Additional context (e.g. port, command, exit code)
        """
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class EngineStartError(CaptureError):
    """Capture engine reported an error or exited before becoming ready."""

    default_code = ErrorCode.ENGINE_FAILED


class StartupTimeoutError(EngineStartError):
    """Capture engine did not become ready within the startup bound."""

    default_code = ErrorCode.STARTUP_TIMEOUT


class PortUnavailableError(CaptureError):
    """The listening port could not be freed."""

    default_code = ErrorCode.PORT_UNAVAILABLE


class UpstreamParseError(CaptureError):
    """A poll response could not be interpreted."""

    default_code = ErrorCode.UPSTREAM_PARSE


class BodyDecodeError(CaptureError):
    """A body could not be decompressed or decoded."""

    default_code = ErrorCode.BODY_DECODE


class ExportIOError(CaptureError):
    """Writing an export file failed."""

    default_code = ErrorCode.EXPORT_IO


class OSCommandFailure(CaptureError):
    """An OS shell command failed or timed out."""

    default_code = ErrorCode.OS_COMMAND
