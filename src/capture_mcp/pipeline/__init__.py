"""Ingestion pipeline for capture engine sessions.

Extracts raw sessions from engine responses, decodes their bodies,
reconciles them into transaction records and publishes changes.
"""

from capture_mcp.pipeline.events import DataClear, DataUpdate, EventPublisher, Subscription
from capture_mcp.pipeline.extractor import extract, parse_response
from capture_mcp.pipeline.scheduler import PollingScheduler
from capture_mcp.pipeline.store import Reconciler, RecordStore

__all__ = [
    "DataClear",
    "DataUpdate",
    "EventPublisher",
    "PollingScheduler",
    "Reconciler",
    "RecordStore",
    "Subscription",
    "extract",
    "parse_response",
]
