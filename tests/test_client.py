"""
Tests for client.py — persistent chunk connections and listing.
"""

import socket
import threading
import time

import pytest

from swarmcast.client import ChunkClient, expected_chunk_length, fetch_file_list, format_size
from swarmcast.config import CHUNK_SIZE
from swarmcast import server as server_module
from swarmcast.server import ChunkServer


@pytest.fixture
def server(catalog):
    srv = ChunkServer(catalog, port=0, host="127.0.0.1")
    srv.start()
    yield srv
    srv.stop()


def closed_port() -> int:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


class TestFormatSize:
    def test_bytes(self):
        assert format_size(0) == "0.0 B"
        assert format_size(512) == "512.0 B"

    def test_kilobytes(self):
        assert format_size(1024) == "1.0 KB"
        assert format_size(1536) == "1.5 KB"

    def test_megabytes(self):
        assert format_size(1024 * 1024) == "1.0 MB"

    def test_gigabytes(self):
        assert format_size(1024 ** 3) == "1.0 GB"

    def test_terabytes(self):
        assert format_size(1024 ** 4) == "1.0 TB"


class TestExpectedChunkLength:
    def test_full_and_tail(self):
        size = 700 * 1024
        assert expected_chunk_length(size, 0) == CHUNK_SIZE
        assert expected_chunk_length(size, 1) == CHUNK_SIZE
        assert expected_chunk_length(size, 2) == 192512

    def test_past_end(self):
        assert expected_chunk_length(100, 1) == 0


class TestChunkClient:
    def test_fetches_chunks_over_one_connection(self, server, sample_entry, sample_bytes):
        with ChunkClient("127.0.0.1", server.port) as client:
            first = client.fetch_chunk(sample_entry.file_hash, 0)
            sock = client._sock
            last = client.fetch_chunk(sample_entry.file_hash, 2)
            assert client._sock is sock
        assert first == sample_bytes[:CHUNK_SIZE]
        assert last == sample_bytes[2 * CHUNK_SIZE:]
        assert client._sock is None

    def test_error_status_is_none(self, server):
        with ChunkClient("127.0.0.1", server.port) as client:
            assert client.fetch_chunk("missing", 0) is None

    def test_unreachable_peer(self):
        client = ChunkClient("127.0.0.1", closed_port(), timeout=2)
        with pytest.raises(OSError):
            client.fetch_chunk("abc", 0)
        assert client._sock is None

    def test_reconnects_after_server_restart(self, catalog, sample_entry):
        srv = ChunkServer(catalog, port=0, host="127.0.0.1")
        port = srv.start()
        client = ChunkClient("127.0.0.1", port, timeout=2)
        try:
            assert client.fetch_chunk(sample_entry.file_hash, 0)
            client.close()
            assert client.fetch_chunk(sample_entry.file_hash, 1)
        finally:
            client.close()
            srv.stop()

    def test_reconnects_after_idle_drop(self, catalog, sample_entry, sample_bytes, monkeypatch):
        monkeypatch.setattr(server_module, "IDLE_TIMEOUT", 0.2)
        srv = ChunkServer(catalog, port=0, host="127.0.0.1")
        port = srv.start()
        client = ChunkClient("127.0.0.1", port, timeout=2)
        try:
            assert client.fetch_chunk(sample_entry.file_hash, 0) == sample_bytes[:CHUNK_SIZE]
            stale = client._sock
            # Long enough for the server to hang up on the idle connection
            time.sleep(0.8)
            chunk = client.fetch_chunk(sample_entry.file_hash, 1)
            assert chunk == sample_bytes[CHUNK_SIZE:2 * CHUNK_SIZE]
            assert client._sock is not None and client._sock is not stale
        finally:
            client.close()
            srv.stop()


class TestFetchFileList:
    def test_lists_remote_files(self, server, sample_entry):
        files = fetch_file_list("127.0.0.1", server.port)
        assert [f.file_hash for f in files] == [sample_entry.file_hash]
        assert files[0].name == "Big_Buck_Bunny.mp4"

    def test_unreachable_peer(self):
        with pytest.raises(OSError):
            fetch_file_list("127.0.0.1", closed_port())

    def test_peer_hanging_up(self):
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        def hang_up():
            conn, _ = listener.accept()
            conn.recv(4)
            conn.close()

        t = threading.Thread(target=hang_up)
        t.start()
        try:
            with pytest.raises(RuntimeError):
                fetch_file_list("127.0.0.1", listener.getsockname()[1])
        finally:
            t.join()
            listener.close()
