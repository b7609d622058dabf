"""Entry point for capture-mcp MCP server.

Run with: uv run python -m capture_mcp
Or via fastmcp: uv run fastmcp run capture_mcp.server:mcp

HTTP transport (for remote access):
    uv run python -m capture_mcp --http --port 9000
"""

from __future__ import annotations

import argparse
import logging

from capture_mcp.utils.logging import setup_logging


def main() -> None:
    """Run the MCP server."""
    parser = argparse.ArgumentParser(description="capture-mcp MCP server")
    parser.add_argument(
        "--http",
        action="store_true",
        help="Use HTTP transport instead of stdio (for remote access)",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind HTTP server (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=9000,
        help="Port for HTTP transport (default: 9000)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    setup_logging(logging.DEBUG if args.debug else logging.INFO)

    from capture_mcp.server import mcp

    if args.http:
        mcp.run(transport="http", host=args.host, port=args.port)
    else:
        mcp.run()


if __name__ == "__main__":
    main()
