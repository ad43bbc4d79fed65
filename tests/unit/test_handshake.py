"""Unit tests for the Bridge/Gateway port handshake."""

import asyncio
import os
import threading
import time
from pathlib import Path

import pytest

from shepherd.errors import BridgeUnavailableError
from shepherd.handshake import (
    DEFAULT_PORT_TIMEOUT,
    PORT_TIMEOUT_ENV,
    port_timeout,
    read_port_file,
    remove_port_file,
    wait_for_port,
    write_port_file,
)


@pytest.fixture
def port_path(tmp_path):
    return tmp_path / ".shepherd" / ".port"


class TestPortFile:
    """Test cases for publishing and reading the port."""

    def test_write_and_read(self, port_path):
        write_port_file(port_path, 51234)
        assert read_port_file(port_path) == 51234

    def test_overwrites_stale_port(self, port_path):
        write_port_file(port_path, 1111)
        write_port_file(port_path, 2222)
        assert read_port_file(port_path) == 2222

    def test_write_goes_through_rename(self, port_path, monkeypatch):
        """The port file is only ever replaced whole; no temp file is left behind."""
        write_port_file(port_path, 1111)
        replaced = []
        real_replace = os.replace

        def replace(src, dst):
            # The published file still holds the old port until the rename
            assert read_port_file(port_path) == 1111
            replaced.append((Path(src).name, Path(dst)))
            real_replace(src, dst)

        monkeypatch.setattr(os, "replace", replace)

        write_port_file(port_path, 2222)

        assert replaced == [(".port.tmp", port_path)]
        assert read_port_file(port_path) == 2222
        assert [p.name for p in port_path.parent.iterdir()] == [".port"]

    @pytest.mark.parametrize("content", ["", "abc", "0", "70000", "-5"])
    def test_garbled_file_reads_as_none(self, port_path, content):
        port_path.parent.mkdir(parents=True)
        port_path.write_text(content, encoding="utf-8")
        assert read_port_file(port_path) is None

    def test_missing_file(self, port_path):
        assert read_port_file(port_path) is None

    def test_remove_only_own_port(self, port_path):
        write_port_file(port_path, 2222)

        remove_port_file(port_path, 1111)
        assert read_port_file(port_path) == 2222

        remove_port_file(port_path, 2222)
        assert not port_path.exists()


class TestWaitForPort:
    """Test cases for polling the port file."""

    def test_returns_published_port(self, port_path):
        write_port_file(port_path, 4321)
        assert asyncio.run(wait_for_port(port_path, timeout=1.0)) == 4321

    def test_waits_for_late_publication(self, port_path):
        def publish_later():
            time.sleep(0.3)
            write_port_file(port_path, 4322)

        writer = threading.Thread(target=publish_later)
        writer.start()
        try:
            assert asyncio.run(wait_for_port(port_path, timeout=5.0, interval=0.05)) == 4322
        finally:
            writer.join()

    def test_times_out(self, port_path):
        started = time.monotonic()
        with pytest.raises(BridgeUnavailableError, match="Bridge unavailable"):
            asyncio.run(wait_for_port(port_path, timeout=0.2, interval=0.05))
        assert time.monotonic() - started < 2.0


class TestPortTimeout:
    """Test cases for the configurable wait ceiling."""

    def test_default(self, monkeypatch):
        monkeypatch.delenv(PORT_TIMEOUT_ENV, raising=False)
        assert port_timeout() == DEFAULT_PORT_TIMEOUT

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv(PORT_TIMEOUT_ENV, "2.5")
        assert port_timeout() == 2.5

    @pytest.mark.parametrize("value", ["soon", "0", "-1"])
    def test_invalid_env_falls_back(self, monkeypatch, value):
        monkeypatch.setenv(PORT_TIMEOUT_ENV, value)
        assert port_timeout() == DEFAULT_PORT_TIMEOUT
