"""Filtering of transaction records for listing."""

from __future__ import annotations

from collections.abc import Iterable

from capture_mcp.models import TransactionRecord

STATUS_CLASSES = {
    "2xx": (200, 300),
    "3xx": (300, 400),
    "4xx": (400, 500),
    "5xx": (500, 1000),
}


def matches_status(status_code: int, status: str) -> bool:
    """Check a status code against a class such as "4xx" or an exact code."""
    if not status_code:
        return False
    bounds = STATUS_CLASSES.get(status.lower())
    if bounds is not None:
        low, high = bounds
        return low <= status_code < high
    return status.isdigit() and int(status) == status_code


def filter_records(
    records: Iterable[TransactionRecord],
    search: str = "",
    method: str = "",
    protocol: str = "",
    status: str = "",
) -> list[TransactionRecord]:
    """Select records matching every given criterion, newest first.

    Args:
        records: Records to filter
        search: Case-insensitive substring of url, host or method
        method: Exact HTTP method (case-insensitive)
        protocol: Exact URL scheme (case-insensitive)
        status: Status class ("2xx".."5xx") or exact status code

    Returns:
        Matching records ordered by start time, newest first
    """
    needle = search.lower()
    selected = []
    for record in records:
        if needle and needle not in f"{record.url} {record.host} {record.method}".lower():
            continue
        if method and record.method != method.upper():
            continue
        if protocol and record.protocol != protocol.lower():
            continue
        if status and not matches_status(record.status_code, status):
            continue
        selected.append(record)
    selected.sort(key=lambda r: (r.start_time, r.timestamp), reverse=True)
    return selected
