"""
Tests for server.py — serving LIST and CHUNK requests over TCP.
"""

import socket
import struct

import pytest

from swarmcast.config import CHUNK_SIZE
from swarmcast.protocol import (
    recv_chunk_response,
    recv_listing,
    send_chunk_request,
    send_list_request,
)
from swarmcast.server import ChunkServer, ServerError, read_chunk


@pytest.fixture
def server(catalog):
    srv = ChunkServer(catalog, port=0, host="127.0.0.1")
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture
def conn(server):
    sock = socket.create_connection(("127.0.0.1", server.port), timeout=5)
    yield sock
    sock.close()


def drain(sock) -> bytes:
    data = bytearray()
    while True:
        packet = sock.recv(4096)
        if not packet:
            return bytes(data)
        data.extend(packet)


class TestReadChunk:
    def test_slices(self, catalog, sample_entry, sample_bytes):
        h = sample_entry.file_hash
        assert read_chunk(catalog, h, 0) == sample_bytes[:CHUNK_SIZE]
        assert read_chunk(catalog, h, 1) == sample_bytes[CHUNK_SIZE:2 * CHUNK_SIZE]
        last = read_chunk(catalog, h, 2)
        assert len(last) == 192512
        assert last == sample_bytes[2 * CHUNK_SIZE:]

    @pytest.mark.parametrize("index", [-1, 3, 1000])
    def test_out_of_range(self, catalog, sample_entry, index):
        assert read_chunk(catalog, sample_entry.file_hash, index) is None

    def test_unknown_hash(self, catalog):
        assert read_chunk(catalog, "0" * 64, 0) is None

    def test_file_shrunk_since_indexing(self, catalog, sample_entry):
        with open(sample_entry.path, "r+b") as f:
            f.truncate(100)
        assert read_chunk(catalog, sample_entry.file_hash, 1) is None


class TestRequests:
    def test_list(self, conn, sample_entry):
        send_list_request(conn)
        files = recv_listing(conn)
        assert [(f.name, f.size, f.file_hash) for f in files] == [
            (sample_entry.name, sample_entry.size, sample_entry.file_hash)
        ]

    def test_chunk(self, conn, sample_entry, sample_bytes):
        send_chunk_request(conn, sample_entry.file_hash, 2)
        assert recv_chunk_response(conn) == sample_bytes[2 * CHUNK_SIZE:]

    def test_unknown_hash_is_single_error_byte(self, conn):
        send_chunk_request(conn, "f" * 64, 0)
        conn.shutdown(socket.SHUT_WR)
        assert drain(conn) == b"\x00"

    def test_out_of_range_is_error(self, conn, sample_entry):
        send_chunk_request(conn, sample_entry.file_hash, 3)
        assert recv_chunk_response(conn) is None
        send_chunk_request(conn, sample_entry.file_hash, -1)
        assert recv_chunk_response(conn) is None

    def test_many_requests_on_one_connection(self, conn, sample_entry, sample_bytes):
        h = sample_entry.file_hash
        for index in (0, 2, 1):
            send_chunk_request(conn, h, index)
            start = index * CHUNK_SIZE
            assert recv_chunk_response(conn) == sample_bytes[start:start + CHUNK_SIZE]
        send_list_request(conn)
        assert len(recv_listing(conn)) == 1

    def test_error_does_not_end_connection(self, conn, sample_entry):
        send_chunk_request(conn, "nope", 0)
        assert recv_chunk_response(conn) is None
        send_chunk_request(conn, sample_entry.file_hash, 0)
        assert len(recv_chunk_response(conn)) == CHUNK_SIZE

    def test_unknown_kind_closes_connection(self, conn):
        conn.sendall(struct.pack("!i", 9))
        assert drain(conn) == b""

    def test_concurrent_clients(self, server, sample_entry, sample_bytes):
        socks = [
            socket.create_connection(("127.0.0.1", server.port), timeout=5) for _ in range(3)
        ]
        try:
            for index, sock in enumerate(socks):
                send_chunk_request(sock, sample_entry.file_hash, index)
            for index, sock in enumerate(socks):
                start = index * CHUNK_SIZE
                assert recv_chunk_response(sock) == sample_bytes[start:start + CHUNK_SIZE]
        finally:
            for sock in socks:
                sock.close()


class TestLifecycle:
    def test_fixed_port_in_use(self, catalog):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        try:
            srv = ChunkServer(catalog, port=blocker.getsockname()[1], host="127.0.0.1")
            with pytest.raises(ServerError):
                srv.start()
        finally:
            blocker.close()

    def test_range_skips_busy_port(self, catalog):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        busy = blocker.getsockname()[1]
        srv = ChunkServer(catalog, port=None, base_port=busy, port_range=20, host="127.0.0.1")
        try:
            port = srv.start()
            assert busy < port < busy + 20
        except ServerError:
            pytest.skip("no free port next to the busy one")
        finally:
            srv.stop()
            blocker.close()

    def test_fixed_port_rebinds_after_stop(self, catalog):
        srv = ChunkServer(catalog, port=0, host="127.0.0.1")
        port = srv.start()
        assert srv._sock.getsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR)
        sock = socket.create_connection(("127.0.0.1", port), timeout=5)
        # A bad request makes the server close first, leaving TIME_WAIT on its side
        sock.sendall(struct.pack("!i", 9))
        assert drain(sock) == b""
        sock.close()
        srv.stop()

        again = ChunkServer(catalog, port=port, host="127.0.0.1")
        try:
            assert again.start() == port
        finally:
            again.stop()

    def test_start_is_idempotent(self, server):
        assert server.start() == server.port

    def test_refuses_after_stop(self, catalog):
        srv = ChunkServer(catalog, port=0, host="127.0.0.1")
        port = srv.start()
        srv.stop()
        with pytest.raises(OSError):
            socket.create_connection(("127.0.0.1", port), timeout=1)
