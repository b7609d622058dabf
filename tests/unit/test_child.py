"""Unit tests for the engine host process helpers."""

from __future__ import annotations

from pathlib import Path

from capture_mcp.engine import protocol
from capture_mcp.engine.child import EngineHost, engine_arguments, find_root_ca, parse_options


class TestParseOptions:
    """Tests for parse_options."""

    def test_defaults_without_argument(self) -> None:
        """Missing options fall back to defaults."""
        assert parse_options(["child"]) == {
            "port": 8899,
            "host": "127.0.0.1",
            "storage": "",
            "mode": "capture",
            "engine": "w2",
        }

    def test_malformed_argument_uses_defaults(self) -> None:
        """Garbage options are ignored."""
        assert parse_options(["child", "%7Bbroken"])["port"] == 8899

    def test_encoded_options(self) -> None:
        """Options produced by the supervisor are honored."""
        encoded = protocol.encode_options({"port": 9001, "storage": "/s", "mode": "", "engine": "npx w2"})

        options = parse_options(["child", encoded])

        assert options["port"] == 9001
        assert options["storage"] == "/s"
        assert options["mode"] == ""
        assert options["engine"] == "npx w2"


class TestEngineArguments:
    """Tests for engine_arguments."""

    def test_capture_mode(self) -> None:
        """Capture mode and storage are passed to the engine."""
        options = parse_options(["child", protocol.encode_options({"port": 9001, "storage": "/s"})])

        assert engine_arguments(options, capture=True) == [
            "w2", "run", "-p", "9001", "-H", "127.0.0.1", "-S", "/s", "-M", "capture", "--no-global-plugins",
        ]

    def test_without_capture_or_storage(self) -> None:
        """A multi-word engine command is split."""
        options = parse_options(["child", protocol.encode_options({"engine": "npx w2"})])

        assert engine_arguments(options, capture=False) == [
            "npx", "w2", "run", "-p", "8899", "-H", "127.0.0.1", "--no-global-plugins",
        ]


class TestFindRootCa:
    """Tests for find_root_ca."""

    def test_found(self, tmp_path: Path) -> None:
        """The first existing candidate is returned."""
        cert = tmp_path / "certs" / "root.crt"
        cert.parent.mkdir()
        cert.write_text("cert")

        assert find_root_ca(str(tmp_path)) == str(cert)

    def test_missing(self, tmp_path: Path) -> None:
        """No certificate yields None."""
        assert find_root_ca(str(tmp_path)) is None
        assert find_root_ca("") is None


def test_ready_options(tmp_path: Path) -> None:
    """Ready options carry the announced engine metadata."""
    host = EngineHost(parse_options(["child", protocol.encode_options({"storage": str(tmp_path)})]))

    assert host.capture is True
    assert host.ready_options() == {
        "port": 8899,
        "host": "127.0.0.1",
        "baseDir": str(tmp_path),
        "rootCAFile": None,
    }
