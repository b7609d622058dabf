"""Decorators for MCP tool handlers.

Provides common functionality for MCP tool handlers:
- Pipeline lookup
- Capture error handling

Decorator Order:
    When combining decorators, apply in this order (outermost first):

        @handle_capture_error   # Catches CaptureError from the inner function
        @require_pipeline       # Looks up the pipeline before calling handler
        async def handler(pipeline: CapturePipeline, ...) -> str:
            ...

    This ensures the pipeline lookup happens first, then capture errors
    are caught and formatted.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import TYPE_CHECKING, Concatenate, ParamSpec

from capture_mcp.capture import CaptureManager
from capture_mcp.models import CaptureError

if TYPE_CHECKING:
    from capture_mcp.capture import CapturePipeline

P = ParamSpec("P")

logger = logging.getLogger(__name__)

NO_PIPELINE_MESSAGE = "No capture has been started. Run capture_start first."


def require_pipeline(
    func: Callable[Concatenate[CapturePipeline, P], Awaitable[str]],
) -> Callable[P, Awaitable[str]]:
    """Decorator to inject the managed pipeline into a handler.

    The pipeline may be stopped; its records stay readable until the next
    start. If no pipeline was ever started, returns an error message.

    Usage:
        @require_pipeline
        async def my_handler(pipeline: CapturePipeline, arg1: str) -> str:
            return str(len(pipeline.records()))

    Args:
        func: The async function to wrap. Must accept CapturePipeline as first argument.

    Returns:
        Wrapped function that looks up the pipeline before calling the original.
    """

    @wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> str:
        pipeline = CaptureManager.get_pipeline()
        if pipeline is None:
            return NO_PIPELINE_MESSAGE
        return await func(pipeline, *args, **kwargs)

    # Hide the injected parameter from signature-based tool schemas
    signature = inspect.signature(func)
    injected, *params = signature.parameters.values()
    wrapper.__signature__ = signature.replace(parameters=params)  # type: ignore[attr-defined]
    wrapper.__annotations__ = {k: v for k, v in func.__annotations__.items() if k != injected.name}

    return wrapper


def handle_capture_error(
    func: Callable[P, Awaitable[str]],
) -> Callable[P, Awaitable[str]]:
    """Decorator to catch and format CaptureError exceptions.

    Wraps the function in a try-except block. If CaptureError is raised,
    returns a formatted error message. Other exceptions are propagated.

    Args:
        func: The async function to wrap.

    Returns:
        Wrapped function that catches CaptureError exceptions.
    """

    @wraps(func)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> str:
        try:
            return await func(*args, **kwargs)
        except CaptureError as e:
            logger.error(
                "CaptureError in %s: code=%s, message=%s",
                func.__name__,
                e.code.value,
                e.message,
                exc_info=True,
            )
            return f"Error [{e.code.value}]: {e.message}"

    return wrapper
