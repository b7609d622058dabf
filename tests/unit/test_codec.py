"""Unit tests for body decoding."""

from __future__ import annotations

import base64
import gzip
import zlib

import brotli
import pytest

from capture_mcp.pipeline.codec import (
    decode_body,
    decompress,
    is_textual,
    truncate,
    unwrap_jsonp,
)


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class TestDecompress:
    """Tests for content-encoding reversal."""

    @pytest.mark.parametrize(
        ("encoding", "compress"),
        [
            ("gzip", gzip.compress),
            ("deflate", zlib.compress),
            ("br", brotli.compress),
        ],
    )
    def test_round_trip(self, encoding: str, compress) -> None:
        """Compressed textual bodies decode back to the original text."""
        text = '{"message": "hello world", "items": [1, 2, 3]}' * 10
        part = {"base64": b64(compress(text.encode("utf-8")))}
        headers = {"Content-Encoding": encoding, "Content-Type": "text/plain"}

        assert decode_body(part, headers) == text

    def test_raw_deflate_without_zlib_header(self) -> None:
        """Deflate streams without a zlib header are also accepted."""
        compressor = zlib.compressobj(wbits=-zlib.MAX_WBITS)
        data = compressor.compress(b"raw deflate") + compressor.flush()

        assert decompress(data, "deflate") == b"raw deflate"

    def test_failure_returns_input(self) -> None:
        """Corrupt compressed data falls back to the undecompressed bytes."""
        assert decompress(b"not gzip at all", "gzip") == b"not gzip at all"

    def test_unknown_encoding_is_ignored(self) -> None:
        """Unknown codings leave the bytes untouched."""
        assert decompress(b"data", "identity") == b"data"

    def test_stacked_encodings(self) -> None:
        """Multiple codings are undone in reverse order."""
        data = brotli.compress(gzip.compress(b"layered"))

        assert decompress(data, "gzip, br") == b"layered"


class TestIsTextual:
    """Tests for textual content-type detection."""

    @pytest.mark.parametrize(
        "content_type",
        [
            "text/html; charset=utf-8",
            "application/json",
            "application/javascript",
            "application/xml",
            "text/csv",
            "application/x-www-form-urlencoded",
            "application/vnd.api+json",
        ],
    )
    def test_textual_types(self, content_type: str) -> None:
        """Text, JSON, script, XML, CSV and form types are textual."""
        assert is_textual(content_type) is True

    @pytest.mark.parametrize("content_type", ["image/png", "application/octet-stream", "font/woff2", ""])
    def test_binary_types(self, content_type: str) -> None:
        """Binary types are not textual."""
        assert is_textual(content_type) is False


class TestUnwrapJsonp:
    """Tests for JSONP callback stripping."""

    def test_unwraps_object(self) -> None:
        """A call-wrapped object is unwrapped and stringified canonically."""
        assert unwrap_jsonp('foo({"a":1})') == '{"a":1}'

    def test_unwraps_with_semicolon_and_spaces(self) -> None:
        """Whitespace and a trailing semicolon are tolerated."""
        assert unwrap_jsonp('  jQuery123_456( {"a": [1, 2]} );\n') == '{"a":[1,2]}'

    def test_invalid_json_returns_inner_text(self) -> None:
        """An unparseable argument is returned without the wrapper."""
        assert unwrap_jsonp("cb({not json})") == "{not json}"

    def test_plain_json_unchanged(self) -> None:
        """Bodies that are not call-wrapped are returned unchanged."""
        assert unwrap_jsonp('{"a": 1}') == '{"a": 1}'

    def test_non_json_call_unchanged(self) -> None:
        """Calls with non-JSON arguments are not treated as JSONP."""
        assert unwrap_jsonp("alert('hi')") == "alert('hi')"

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ('cb("x")', '"x"'),
            ("cb(42)", "42"),
            ("cb( true );", "true"),
            ("cb(null)", "null"),
        ],
    )
    def test_unwraps_scalars(self, text: str, expected: str) -> None:
        """Scalar JSON arguments are unwrapped too."""
        assert unwrap_jsonp(text) == expected

    def test_multiple_arguments_unchanged(self) -> None:
        """A call with several arguments is not a JSON value."""
        assert unwrap_jsonp("cb(1, 2)") == "cb(1, 2)"


class TestTruncate:
    """Tests for the body length ceiling."""

    def test_short_text_unchanged(self) -> None:
        """Text under the ceiling is returned as-is."""
        assert truncate("abc", limit=10) == "abc"

    def test_long_text_gets_marker(self) -> None:
        """Text over the ceiling is cut and marked."""
        result = truncate("x" * 25, limit=10)

        assert result.startswith("x" * 10)
        assert "truncated 15 characters" in result


class TestDecodeBody:
    """Tests for decode_body."""

    def test_plain_string_body_verbatim(self) -> None:
        """A plain string body is returned verbatim."""
        assert decode_body({"body": "foo({\"a\":1})"}, {"content-type": "application/json"}) == 'foo({"a":1})'

    def test_no_body(self) -> None:
        """Missing parts and bodies decode to an empty string."""
        assert decode_body(None) == ""
        assert decode_body({"statusCode": 204}) == ""

    def test_jsonp_base64_body(self) -> None:
        """Base64 JSONP bodies are decoded and unwrapped."""
        part = {"base64": b64(b'foo({"a":1})')}

        assert decode_body(part, {"content-type": "application/javascript"}) == '{"a":1}'

    def test_binary_content_returns_base64(self) -> None:
        """Non-textual content is left as the original base64 string."""
        payload = b64(b"\x89PNG\r\n\x1a\n")

        assert decode_body({"base64": payload}, {"content-type": "image/png"}) == payload

    def test_undecodable_text_returns_base64(self) -> None:
        """Bytes that are not valid text fall back to the base64 string."""
        payload = b64(b"\xff\xfe\xfa")

        assert decode_body({"base64": payload}, {"content-type": "text/plain"}) == payload

    def test_charset_is_honored(self) -> None:
        """The declared charset is used for decoding."""
        payload = b64("café".encode("latin-1"))

        assert decode_body({"base64": payload}, {"content-type": "text/plain; charset=iso-8859-1"}) == "café"

    def test_missing_content_type_decodes_utf8(self) -> None:
        """Without a content type, valid UTF-8 is decoded as text."""
        assert decode_body({"base64": b64("hello ✓".encode())}, {}) == "hello ✓"

    def test_long_body_truncated(self) -> None:
        """Decoded text over the ceiling is truncated with a marker."""
        part = {"base64": b64(b"a" * 50)}

        result = decode_body(part, {"content-type": "text/plain"}, max_length=20)

        assert result.startswith("a" * 20)
        assert "truncated 30 characters" in result

    def test_corrupt_gzip_falls_back(self) -> None:
        """A body that fails decompression is decoded from the raw bytes."""
        part = {"base64": b64(b"plain text")}

        assert decode_body(part, {"content-encoding": "gzip", "content-type": "text/plain"}) == "plain text"
