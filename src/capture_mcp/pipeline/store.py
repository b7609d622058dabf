"""Canonical transaction record set and reconciliation of raw sessions.

RecordStore owns the active record set and exposes only insert/merge and
read-only snapshots. Reconciler turns raw sessions into records, applies
the clear epoch, tracks incomplete records for targeted re-fetch and
publishes changes.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

from capture_mcp.models import TransactionRecord
from capture_mcp.pipeline.codec import MAX_TEXT_LENGTH, decode_body

if TYPE_CHECKING:
    from capture_mcp.pipeline.events import EventPublisher
    from capture_mcp.pipeline.extractor import RawSession

logger = logging.getLogger(__name__)

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "[::1]"})
PRIVATE_PREFIXES = ("10.", "192.168.")


def now_ms() -> int:
    return int(time.time() * 1000)


def to_iso(timestamp_ms: int) -> str:
    """Format epoch milliseconds as an ISO 8601 UTC timestamp."""
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return 0
    return 0


def normalize_headers(headers: Any) -> dict[str, str]:
    """Lower-case header names and coerce values to strings.

    Accepts a mapping or a JSON-encoded mapping; list values are joined.
    """
    if isinstance(headers, str):
        try:
            headers = json.loads(headers)
        except ValueError:
            return {}
    if not isinstance(headers, dict):
        return {}
    result: dict[str, str] = {}
    for key, value in headers.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        result[str(key).lower()] = str(value)
    return result


def start_time_of(session: RawSession) -> int:
    """Start time of a raw session in epoch milliseconds (0 if unknown)."""
    return _as_int(session.get("startTime"))


def session_id(session: RawSession) -> str:
    """Compute the stable id of a raw session.

    Uses the upstream id when present, otherwise a digest of
    (startTime, method, host, path).
    """
    upstream = session.get("id")
    if upstream is not None and str(upstream):
        return str(upstream)
    req = session.get("req") if isinstance(session.get("req"), dict) else {}
    method = str(req.get("method") or "GET").upper()
    parts = urlsplit(str(session.get("url", "")))
    key = f"{start_time_of(session)}|{method}|{parts.hostname or ''}|{parts.path}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()[:16]


def _has_response_body(res: dict[str, Any]) -> bool:
    body = res.get("body")
    has_body = body is not None and body is not False
    return has_body or bool(res.get("base64"))


def is_complete(session: RawSession) -> bool:
    """Heuristic completeness check used to trigger targeted re-fetch.

    A session is complete when its response carries a body (``body`` or
    ``base64``) and a numeric status code. Legitimately bodyless responses
    (e.g. 204) never satisfy it, so re-fetches are bounded by attempts.
    """
    res = session.get("res")
    if not isinstance(res, dict):
        return False
    status = res.get("statusCode")
    numeric = isinstance(status, int) and not isinstance(status, bool)
    if isinstance(status, str):
        numeric = status.strip().isdigit()
    return numeric and _has_response_body(res)


def is_local_host(host: str) -> bool:
    return host in LOCAL_HOSTS or host.startswith(PRIVATE_PREFIXES)


def build_record(session: RawSession, max_body_chars: int = MAX_TEXT_LENGTH) -> TransactionRecord:
    """Build a TransactionRecord from one raw session.

    Args:
        session: Raw session with an absolute ``url``
        max_body_chars: Ceiling for decoded body text

    Returns:
        Record holding whatever the session carries; missing fields stay weak
    """
    req = session.get("req") if isinstance(session.get("req"), dict) else {}
    res = session.get("res") if isinstance(session.get("res"), dict) else {}
    url = str(session.get("url", ""))
    parts = urlsplit(url)

    start = start_time_of(session)
    end = _as_int(session.get("endTime"))
    if start and end:
        duration = max(end - start, 0)
    else:
        # Engine-reported timings when the session has not finished
        duration = max(_as_int(session.get("duration")) or _as_int(session.get("ttfb")), 0)

    request_headers = normalize_headers(req.get("headers"))
    response_headers = normalize_headers(res.get("headers"))
    status = _as_int(res.get("statusCode") or session.get("statusCode"))

    return TransactionRecord(
        id=session_id(session),
        timestamp=to_iso(start) if start else "",
        start_time=start,
        method=str(req.get("method") or session.get("method") or "").upper(),
        url=url,
        host=(parts.hostname or "").lower(),
        protocol=parts.scheme.lower(),
        status_code=max(status, 0),
        request_headers=request_headers,
        response_headers=response_headers,
        request_body=decode_body(req, request_headers, max_body_chars),
        response_body=decode_body(res, response_headers, max_body_chars),
        duration=duration,
    )


class RecordStore:
    """Active set of transaction records keyed by id.

    Exactly one record exists per id. Callers receive copies, never the
    stored instances.
    """

    def __init__(self) -> None:
        self._records: dict[str, TransactionRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        return record_id in self._records

    def insert_or_merge(self, record: TransactionRecord) -> bool:
        """Insert a new record or merge into the existing one with its id.

        Args:
            record: Candidate record

        Returns:
            True if the store changed
        """
        existing = self._records.get(record.id)
        if existing is None:
            self._records[record.id] = record.model_copy(deep=True)
            return True
        return existing.merge(record)

    def get(self, record_id: str) -> TransactionRecord | None:
        record = self._records.get(record_id)
        return record.model_copy(deep=True) if record is not None else None

    def snapshot(self) -> list[TransactionRecord]:
        """Copy of all records ordered by start time, then insertion."""
        records = [r.model_copy(deep=True) for r in self._records.values()]
        return sorted(records, key=lambda r: r.start_time)

    def clear(self) -> None:
        self._records.clear()


class Reconciler:
    """Merges raw sessions into the record store and publishes changes.

    Attributes:
        store: Canonical record set
        clear_epoch: Epoch milliseconds of the most recent clear (0 if none)
    """

    def __init__(
        self,
        publisher: EventPublisher,
        store: RecordStore | None = None,
        max_body_chars: int = MAX_TEXT_LENGTH,
        exclude_local_hosts: bool = False,
        max_refetch_attempts: int = 3,
    ) -> None:
        self.store = store if store is not None else RecordStore()
        self.publisher = publisher
        self.clear_epoch = 0
        self.max_body_chars = max_body_chars
        self.exclude_local_hosts = exclude_local_hosts
        self.max_refetch_attempts = max_refetch_attempts
        # id -> re-fetch attempts made so far
        self._incomplete: dict[str, int] = {}
        self._complete: set[str] = set()

    def ingest(self, sessions: Iterable[RawSession]) -> int:
        """Reconcile raw sessions into the record set.

        Publishes one update when at least one record changed. Idempotent:
        ingesting the same sessions again changes nothing.

        Args:
            sessions: Raw sessions from the extractor

        Returns:
            Number of records inserted or changed
        """
        changed = 0
        for session in sessions:
            try:
                if self._ingest_one(session):
                    changed += 1
            except Exception as e:
                logger.warning("Skipping malformed session %s: %s", session.get("id", "?"), e)

        if changed:
            logger.debug("Reconciled %d changed record(s), %d total", changed, len(self.store))
            self.publisher.publish_update(self.store.snapshot())
        return changed

    def _ingest_one(self, session: RawSession) -> bool:
        start = start_time_of(session)
        if self.clear_epoch and start < self.clear_epoch:
            return False

        record = build_record(session, self.max_body_chars)
        if not record.start_time:
            # Keep the record orderable when the engine omits startTime
            received = now_ms()
            record.start_time = received
            record.timestamp = to_iso(received)
            record.start_time_estimated = True
        if self.exclude_local_hosts and is_local_host(record.host):
            return False

        self._track_completeness(record.id, session)
        return self.store.insert_or_merge(record)

    def _track_completeness(self, record_id: str, session: RawSession) -> None:
        if is_complete(session):
            self._incomplete.pop(record_id, None)
            self._complete.add(record_id)
        elif record_id not in self._complete:
            self._incomplete.setdefault(record_id, 0)

    def incomplete_ids(self) -> list[str]:
        """Ids of records still missing a response body or status code."""
        return [i for i, attempts in self._incomplete.items() if attempts < self.max_refetch_attempts]

    def mark_pending(self, ids: Iterable[str]) -> int:
        """Track ids the engine announced but has not delivered yet.

        Pending ids are re-fetched like incomplete records and share the
        same attempt limit.

        Returns:
            Number of ids newly tracked
        """
        added = 0
        for record_id in ids:
            if record_id in self._complete or record_id in self._incomplete or record_id in self.store:
                continue
            self._incomplete[record_id] = 0
            added += 1
        if added:
            logger.debug("Tracking %d announced id(s) without sessions", added)
        return added

    def take_refetch_ids(self, limit: int) -> list[str]:
        """Claim up to ``limit`` incomplete ids for a targeted re-fetch.

        Each claim counts as one attempt; ids reaching the attempt limit
        are no longer offered.
        """
        ids = self.incomplete_ids()[:limit]
        for record_id in ids:
            self._incomplete[record_id] += 1
        return ids

    def clear(self, epoch: int | None = None) -> None:
        """Reset the record set and advance the clear epoch.

        Publishes a clear notification followed by an empty update.

        Args:
            epoch: Clear time in epoch milliseconds (defaults to now)
        """
        self.clear_epoch = epoch if epoch is not None else now_ms()
        self.store.clear()
        self._incomplete.clear()
        self._complete.clear()
        logger.info("Cleared capture records (epoch %d)", self.clear_epoch)
        self.publisher.publish_clear()

    def reset_epoch(self) -> None:
        self.clear_epoch = 0

    def snapshot(self) -> list[TransactionRecord]:
        return self.store.snapshot()
