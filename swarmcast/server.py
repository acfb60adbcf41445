"""
TCP chunk server — answers LIST and CHUNK requests from other peers.

Each client connection is handled in its own thread. A connection may
carry several requests back to back (transfer workers keep theirs open
for a whole download); the handler serves them until the client hangs
up. A semaphore limits the number of concurrent handler threads to
MAX_CONNECTIONS to prevent resource exhaustion from a flood of incoming
connections.
"""

import logging
import socket
import threading

from .catalog import Catalog
from .config import BASE_PORT, CHUNK_SIZE, FILE_SERVER_PORT, MAX_CONNECTIONS, PORT_RANGE
from .protocol import (
    ChunkRequest,
    ListRequest,
    ProtocolError,
    recv_request,
    send_chunk_response,
    send_listing,
)

logger = logging.getLogger(__name__)

# Seconds an idle persistent connection is kept open.
IDLE_TIMEOUT = 60


class ServerError(RuntimeError):
    """Raised when the server cannot bind any port in its range."""


def read_chunk(catalog: Catalog, file_hash: str, index: int) -> bytes | None:
    """Bytes of chunk *index* of a catalogued file, or None if there is no such chunk."""
    entry = catalog.get(file_hash)
    if entry is None:
        logger.warning("Chunk %d requested for unknown hash %s", index, file_hash)
        return None

    offset = index * CHUNK_SIZE
    if index < 0 or offset >= entry.size:
        logger.warning("Chunk %d out of range for %s (%d bytes)", index, entry.name, entry.size)
        return None

    length = min(CHUNK_SIZE, entry.size - offset)
    with open(entry.path, "rb") as f:
        f.seek(offset)
        data = f.read(length)
    if len(data) != length:
        # File shrank on disk since it was indexed
        logger.warning("Short read of chunk %d of %s", index, entry.name)
        return None
    return data


class ChunkServer:
    """Multithreaded TCP server for chunk and listing requests."""

    def __init__(
        self,
        catalog: Catalog,
        port: int | None = FILE_SERVER_PORT,
        base_port: int = BASE_PORT,
        port_range: int = PORT_RANGE,
        host: str = "0.0.0.0",
    ):
        self.catalog = catalog
        self.host = host
        # A fixed port is tried alone; otherwise the first free one in range wins
        if port is not None:
            self._candidates = [port]
        else:
            self._candidates = list(range(base_port, base_port + port_range))
        self.port: int | None = None
        self._running = False
        self._sock: socket.socket | None = None
        self._thread: threading.Thread | None = None
        self._semaphore = threading.Semaphore(MAX_CONNECTIONS)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> int:
        """Bind, start the accept loop in a daemon thread and return the port.

        Raises ServerError if none of the candidate ports can be bound.
        """
        if self._running:
            return self.port
        self._sock = self._bind()
        self._running = True
        self._thread = threading.Thread(target=self._accept_loop, name="chunk-server", daemon=True)
        self._thread.start()
        logger.info("Chunk server listening on TCP %d", self.port)
        return self.port

    def stop(self) -> None:
        self._running = False
        sock, self._sock = self._sock, None
        if sock is not None:
            sock.close()
        if self._thread is not None:
            self._thread.join(timeout=3)
            self._thread = None

    def _bind(self) -> socket.socket:
        for port in self._candidates:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((self.host, port))
                sock.listen(16)
            except OSError:
                sock.close()
                logger.debug("Port %d is in use, trying next", port)
                continue
            sock.settimeout(2)  # so we can check self._running periodically
            self.port = sock.getsockname()[1]
            return sock
        raise ServerError(
            f"No free TCP port in {self._candidates[0]}..{self._candidates[-1]}"
        )

    # ------------------------------------------------------------------
    # Accept loop
    # ------------------------------------------------------------------

    def _accept_loop(self) -> None:
        while self._running:
            sock = self._sock
            if sock is None:
                break
            try:
                conn, addr = sock.accept()
            except socket.timeout:
                continue
            except OSError as e:
                if self._running:
                    logger.warning("Accept failed: %s", e)
                break

            if not self._semaphore.acquire(blocking=False):
                # Too many concurrent connections, reject
                logger.warning("Rejecting %s: connection limit reached", addr[0])
                conn.close()
                continue

            handler = threading.Thread(
                target=self._handle_client, args=(conn, addr), daemon=True
            )
            handler.start()

    # ------------------------------------------------------------------
    # Client handler: one thread per connection, many requests
    # ------------------------------------------------------------------

    def _handle_client(self, conn: socket.socket, addr: tuple) -> None:
        conn.settimeout(IDLE_TIMEOUT)
        try:
            while self._running:
                request = recv_request(conn)
                if request is None:
                    break
                if isinstance(request, ListRequest):
                    self._handle_list(conn)
                elif isinstance(request, ChunkRequest):
                    self._handle_chunk(conn, request)
        except ProtocolError as e:
            logger.warning("Bad request from %s: %s", addr[0], e)
        except OSError as e:
            logger.debug("Connection from %s ended: %s", addr[0], e)
        finally:
            conn.close()
            self._semaphore.release()

    def _handle_list(self, conn: socket.socket) -> None:
        entries = self.catalog.entries()
        send_listing(conn, entries)
        logger.debug("Sent listing of %d files", len(entries))

    def _handle_chunk(self, conn: socket.socket, request: ChunkRequest) -> None:
        try:
            data = read_chunk(self.catalog, request.file_hash, request.index)
        except OSError as e:
            logger.warning("Cannot read chunk %d of %s: %s", request.index, request.file_hash, e)
            data = None
        send_chunk_response(conn, data)
        if data is not None:
            logger.debug("Sent chunk %d of %s (%d bytes)", request.index, request.file_hash, len(data))
