"""
TCP client side of the chunk protocol.

``ChunkClient`` keeps one connection to a peer open across requests and
reconnects lazily after a failure, so a worker pulling hundreds of chunks
from the same peer pays for the handshake once.  ``fetch_file_list`` is a
one-shot LIST used by the front ends.
"""

import logging
import socket

from .config import CHUNK_REQUEST_TIMEOUT, CHUNK_SIZE
from .protocol import (
    ProtocolError,
    RemoteFile,
    recv_chunk_response,
    recv_listing,
    send_chunk_request,
    send_list_request,
)

logger = logging.getLogger(__name__)


def _connect(host: str, port: int, timeout: float = 10) -> socket.socket:
    """Open a TCP connection to a remote peer."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(timeout)
    try:
        sock.connect((host, port))
    except Exception:
        sock.close()
        raise
    return sock


def format_size(size_bytes: int | float) -> str:
    """Human-readable file size."""
    for unit in ("B", "KB", "MB", "GB"):
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def expected_chunk_length(size: int, index: int) -> int:
    """Length chunk *index* must have in a file of *size* bytes."""
    return max(0, min(CHUNK_SIZE, size - index * CHUNK_SIZE))


class ChunkClient:
    """Persistent chunk-protocol connection to one peer."""

    def __init__(self, host: str, port: int, timeout: float = CHUNK_REQUEST_TIMEOUT):
        self.host = host
        self.port = port
        self.timeout = timeout
        self._sock: socket.socket | None = None

    def __enter__(self) -> "ChunkClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def fetch_chunk(self, file_hash: str, index: int) -> bytes | None:
        """Request one chunk. Returns its bytes, or None if the peer answered ERROR.

        A reused connection the peer has since closed (it drops idle ones)
        is re-opened and the request sent once more before giving up.

        Raises OSError (including ConnectionError and socket.timeout) or
        ProtocolError on failure; the connection is dropped in either case
        and re-opened by the next call.
        """
        reused = self._sock is not None
        try:
            return self._exchange(file_hash, index)
        except ConnectionError as e:
            if not reused:
                raise
            logger.debug(
                "Connection to %s:%d went stale (%s); reconnecting", self.host, self.port, e
            )
        return self._exchange(file_hash, index)

    def close(self) -> None:
        sock, self._sock = self._sock, None
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass

    def _exchange(self, file_hash: str, index: int) -> bytes | None:
        sock = self._ensure_connected()
        try:
            send_chunk_request(sock, file_hash, index)
            return recv_chunk_response(sock)
        except (OSError, ProtocolError):
            self.close()
            raise

    def _ensure_connected(self) -> socket.socket:
        if self._sock is None:
            self._sock = _connect(self.host, self.port, self.timeout)
        return self._sock


def fetch_file_list(host: str, port: int) -> list[RemoteFile]:
    """
    Fetch the file listing from a remote peer.

    Raises RuntimeError on protocol errors and OSError if the peer
    cannot be reached.
    """
    sock = _connect(host, port)
    try:
        send_list_request(sock)
        try:
            return recv_listing(sock)
        except (ProtocolError, ConnectionError) as e:
            raise RuntimeError(f"Bad listing from {host}:{port}: {e}") from e
    finally:
        sock.close()
