"""Normalization of capture-engine query responses.

The engine's ``get-data`` endpoint answers in several shapes depending on
version and query. Each recognized shape is a tagged variant resolved by
``classify``; ``parse_response`` flattens any of them into raw sessions.

Recognized shapes:
    ArrayShape:      ``[{session}, ...]``
    SessionsShape:   ``{"sessions": [{session}, ...]}``
    NestedDataShape: ``{"data": {"data": {id: {session}, ...}, "newIds": [...]}}``
    FlatMixedShape:  ``{"data": {id: {session}, "ids": [...], "newIds": [...]}}``
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

RawSession = dict[str, Any]

# Keys mixed into session maps that describe the response, not sessions
METADATA_KEYS = frozenset({"id", "ids", "newIds", "tunnelIps", "lastId", "endId"})

NON_NETWORK_SCHEMES = frozenset(
    {
        "data",
        "blob",
        "about",
        "javascript",
        "file",
        "chrome",
        "chrome-extension",
        "moz-extension",
        "safari-extension",
        "safari-web-extension",
        "ms-browser-extension",
        "edge",
        "devtools",
    }
)


@dataclass(frozen=True)
class ArrayShape:
    """Bare array of sessions."""

    items: list[Any]


@dataclass(frozen=True)
class SessionsShape:
    """Object with a ``sessions`` array."""

    items: list[Any]
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NestedDataShape:
    """``data`` object holding a nested ``data`` map of sessions keyed by id."""

    entries: dict[str, Any]
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FlatMixedShape:
    """``data`` object mixing sessions keyed by id with metadata keys."""

    entries: dict[str, Any]
    meta: dict[str, Any] = field(default_factory=dict)


Shape = ArrayShape | SessionsShape | NestedDataShape | FlatMixedShape


@dataclass
class Extraction:
    """Result of normalizing one response.

    Attributes:
        shape: Recognized shape, None if the response was not recognized
        sessions: Raw sessions that passed URL filtering
        new_ids: Ids the engine reports as new
        cursor: Next cursor value, None to keep the current one
    """

    shape: Shape | None
    sessions: list[RawSession] = field(default_factory=list)
    new_ids: list[str] = field(default_factory=list)
    cursor: str | None = None

    @property
    def recognized(self) -> bool:
        return self.shape is not None


def _metadata(container: dict[str, Any], *others: dict[str, Any]) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    for source in (*others, container):
        for key in METADATA_KEYS:
            if key in source and not isinstance(source[key], dict):
                meta[key] = source[key]
    return meta


def classify(raw: Any) -> Shape | None:
    """Resolve a response into one of the recognized shapes.

    Args:
        raw: Decoded JSON response (or a JSON string)

    Returns:
        Matching shape variant, or None if the response is not recognized
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None

    if isinstance(raw, list):
        return ArrayShape(raw)
    if not isinstance(raw, dict):
        return None

    if isinstance(raw.get("sessions"), list):
        return SessionsShape(raw["sessions"], _metadata(raw))

    data = raw.get("data")
    if isinstance(data, list):
        return ArrayShape(data)
    if not isinstance(data, dict):
        return None

    if isinstance(data.get("data"), dict):
        return NestedDataShape(data["data"], _metadata(data, raw))
    if isinstance(data.get("sessions"), list):
        return SessionsShape(data["sessions"], _metadata(data, raw))
    return FlatMixedShape(data, _metadata(data, raw))


def _items(shape: Shape) -> list[tuple[str | None, Any]]:
    match shape:
        case ArrayShape(items=items) | SessionsShape(items=items):
            return [(None, item) for item in items]
        case NestedDataShape(entries=entries):
            return list(entries.items())
        case FlatMixedShape(entries=entries):
            return [(key, value) for key, value in entries.items() if key not in METADATA_KEYS]
    return []


def compute_url(session: dict[str, Any]) -> str:
    """Build the absolute URL of a session.

    Uses ``url`` (or ``req.url``), adding a scheme from ``isHttps`` when
    the engine reports a scheme-less URL.
    """
    url = session.get("url")
    if not isinstance(url, str) or not url:
        req = session.get("req")
        url = req.get("url") if isinstance(req, dict) else None
    if not isinstance(url, str) or not url:
        return ""
    if "://" in url or url.split(":", 1)[0].lower() in NON_NETWORK_SCHEMES:
        return url
    scheme = "https" if session.get("isHttps") else "http"
    return f"{scheme}://{url.removeprefix('//')}"


def is_network_url(url: str) -> bool:
    """Check that a URL uses a network scheme and has a host."""
    if not url:
        return False
    scheme = url.split(":", 1)[0].lower()
    if scheme in NON_NETWORK_SCHEMES:
        return False
    try:
        return bool(urlsplit(url).hostname)
    except ValueError:
        return False


def _normalize(key: str | None, item: Any) -> RawSession | None:
    if not isinstance(item, dict):
        return None
    url = compute_url(item)
    if not is_network_url(url):
        if url:
            logger.debug("Skipping non-network session url: %.80s", url)
        return None
    session = dict(item)
    session["url"] = url
    if key is not None and not session.get("id"):
        session["id"] = key
    return session


def _new_ids(meta: dict[str, Any]) -> list[str]:
    new_ids = meta.get("newIds")
    if not isinstance(new_ids, list):
        return []
    return [str(i) for i in new_ids if i is not None and str(i)]


def parse_response(raw: Any) -> Extraction:
    """Normalize a query response into raw sessions and cursor hints.

    Total: unexpected input yields an unrecognized, empty Extraction.

    Args:
        raw: Decoded JSON response

    Returns:
        Extraction with sessions, reported new ids and the next cursor
    """
    shape = classify(raw)
    if shape is None:
        return Extraction(shape=None)

    sessions: list[RawSession] = []
    for key, item in _items(shape):
        session = _normalize(key, item)
        if session is not None:
            sessions.append(session)

    meta = shape.meta if isinstance(shape, (SessionsShape, NestedDataShape, FlatMixedShape)) else {}
    new_ids = _new_ids(meta)
    cursor = new_ids[-1] if new_ids else None
    if cursor is None and meta.get("lastId"):
        cursor = str(meta["lastId"])

    return Extraction(shape=shape, sessions=sessions, new_ids=new_ids, cursor=cursor)


def extract(raw: Any) -> list[RawSession]:
    """Flatten any recognized response shape into raw sessions."""
    return parse_response(raw).sessions
