"""capture-mcp: HTTP traffic capture pipeline exposed as MCP tools.

Runs a local capture engine, polls its query API and turns the raw
sessions it reports into deduplicated transaction records.
"""

__version__ = "0.1.0"
