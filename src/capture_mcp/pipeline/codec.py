"""Body decoding for captured request/response payloads.

Reverses base64 transport encoding and HTTP content-encoding, decodes
textual content and unwraps JSONP callbacks. Never raises: when a step
fails the best available representation is returned instead.
"""

from __future__ import annotations

import base64
import binascii
import codecs
import gzip
import json
import logging
import re
import zlib
from collections.abc import Callable, Mapping
from typing import Any

import brotli

from capture_mcp.models import BodyDecodeError

logger = logging.getLogger(__name__)

# Ceiling for decoded body text (characters)
MAX_TEXT_LENGTH = 200_000
TRUNCATION_MARKER = "\n...[truncated {omitted} characters]"

TEXT_CONTENT_TYPES = (
    "json",
    "javascript",
    "ecmascript",
    "xml",
    "html",
    "csv",
    "x-www-form-urlencoded",
    "graphql",
    "yaml",
)

# identifier(...) with an optional trailing semicolon, e.g. "cb123({...});"
JSONP_PATTERN = re.compile(r"^\s*(?:/\*\*/\s*)?([A-Za-z_$][\w$.]*)\s*\(([\s\S]*)\)\s*;?\s*$")


def decode_gzip(content: bytes) -> bytes:
    return gzip.decompress(content)


def decode_deflate(content: bytes) -> bytes:
    """Decompress DEFLATE data, with or without the zlib header."""
    try:
        return zlib.decompress(content)
    except zlib.error:
        return zlib.decompress(content, -zlib.MAX_WBITS)


def decode_brotli(content: bytes) -> bytes:
    return brotli.decompress(content)


DECODERS: dict[str, Callable[[bytes], bytes]] = {
    "gzip": decode_gzip,
    "x-gzip": decode_gzip,
    "deflate": decode_deflate,
    "br": decode_brotli,
}


def _header(headers: Mapping[str, Any] | None, name: str) -> str:
    if not headers:
        return ""
    for key, value in headers.items():
        if str(key).lower() == name:
            return str(value)
    return ""


def decompress(content: bytes, content_encoding: str) -> bytes:
    """Reverse HTTP content-encoding.

    Multiple codings are undone in reverse order of application. If any
    step fails the undecompressed bytes are returned unchanged.

    Args:
        content: Encoded body bytes
        content_encoding: Value of the Content-Encoding header

    Returns:
        Decompressed bytes, or the input when decompression fails
    """
    codings = [c.strip().lower() for c in content_encoding.split(",") if c.strip()]
    result = content
    try:
        for coding in reversed(codings):
            decoder = DECODERS.get(coding)
            if decoder is not None:
                result = decoder(result)
    except (OSError, EOFError, zlib.error, brotli.error) as e:
        error = BodyDecodeError(
            f"Failed to decompress {content_encoding} body",
            details={"encoding": content_encoding, "error": str(e)},
        )
        logger.debug("%s: %s", error.message, e)
        return content
    return result


def is_textual(content_type: str) -> bool:
    """Check whether a content type should be rendered as text."""
    mime = content_type.split(";", 1)[0].strip().lower()
    if not mime:
        return False
    if mime.startswith("text/"):
        return True
    return any(marker in mime for marker in TEXT_CONTENT_TYPES)


def _charset(content_type: str) -> str:
    for param in content_type.split(";")[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "charset":
            charset = value.strip().strip("\"'")
            try:
                codecs.lookup(charset)
            except LookupError:
                return "utf-8"
            return charset
    return "utf-8"


def unwrap_jsonp(text: str) -> str:
    """Strip one level of JSONP callback wrapping.

    Only applies when the whole text is a single call whose argument is a
    JSON value. A valid JSON argument is re-serialized in compact form. An
    argument that looks like an object or array but does not parse is
    returned as-is; any other non-JSON call is left untouched.

    Args:
        text: Decoded body text

    Returns:
        Unwrapped text, or the input unchanged when it is not JSONP
    """
    match = JSONP_PATTERN.match(text)
    if not match:
        return text
    inner = match.group(2).strip()
    try:
        value = json.loads(inner)
    except ValueError:
        return inner if inner.startswith(("{", "[")) else text
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def truncate(text: str, limit: int = MAX_TEXT_LENGTH) -> str:
    """Cut text to the ceiling, appending an explicit truncation marker."""
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER.format(omitted=len(text) - limit)


def decode_body(
    part: Mapping[str, Any] | None,
    headers: Mapping[str, Any] | None = None,
    max_length: int = MAX_TEXT_LENGTH,
) -> str:
    """Decode the body of one request or response part.

    Args:
        part: Upstream ``req`` or ``res`` object (may carry ``body`` or ``base64``)
        headers: Headers of the same part
        max_length: Ceiling for decoded text

    Returns:
        Plain body text, decoded text, or the original base64 string for
        non-textual content. Empty string when there is no body.
    """
    if not part:
        return ""

    body = part.get("body")
    if isinstance(body, str) and body:
        return body
    if isinstance(body, (dict, list)):
        return json.dumps(body, ensure_ascii=False)

    payload = part.get("base64")
    if not isinstance(payload, str) or not payload:
        return ""

    try:
        raw = base64.b64decode(payload, validate=False)
    except (binascii.Error, ValueError) as e:
        logger.debug("Invalid base64 body, keeping raw payload: %s", e)
        return payload

    encoding = _header(headers, "content-encoding")
    if encoding:
        raw = decompress(raw, encoding)

    content_type = _header(headers, "content-type")
    if content_type and not is_textual(content_type):
        return payload

    try:
        text = raw.decode(_charset(content_type), errors="strict")
    except UnicodeDecodeError as e:
        error = BodyDecodeError("Body is not valid text", details={"content_type": content_type})
        logger.debug("%s: %s", error.message, e)
        return payload

    return truncate(unwrap_jsonp(text), max_length)
