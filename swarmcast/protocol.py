"""
Wire formats for discovery datagrams and the TCP chunk protocol.

Discovery packet (UDP):

    [ 1 byte: ttl ][ 1 byte: type ][ N bytes: UTF-8 payload ]

    HELLO     ID:<peer_id>:PORT:<serving_port>
    QUERY     ID:<peer_id>:<search text>
    RESPONSE  ID:<peer_id>:QUERY_HIT:<name>:<size>:<hash>[:PORT:<serving_port>]

Chunk protocol (TCP, big-endian). A connection carries any number of
requests; the client closes it when done.

    request   int32 kind (0=CHUNK, 1=LIST)
      CHUNK   int32 hash_len, hash_len bytes, int32 chunk_index
    response
      CHUNK   byte status (1=OK, 0=ERROR) [, int32 data_len, data_len bytes]
      LIST    int32 count, { int32 name_len, name, int64 size, int32 hash_len, hash }*
"""

import struct
from dataclasses import dataclass
from enum import IntEnum

from typing_extensions import Iterable

from .config import CHUNK_SIZE, PACKET_SIZE

HEADER_SIZE = 2

# Upper bounds on length prefixes read from the network, so a bogus prefix
# cannot make us allocate an arbitrary amount of memory.
MAX_HASH_LEN = 1024
MAX_NAME_LEN = 64 * 1024
MAX_LIST_ENTRIES = 100_000

REQUEST_CHUNK = 0
REQUEST_LIST = 1
STATUS_ERROR = 0
STATUS_OK = 1

_INT32 = struct.Struct("!i")
_INT64 = struct.Struct("!q")


class ProtocolError(ValueError):
    """Raised when bytes on the wire do not match the expected format."""


class MessageType(IntEnum):
    HELLO = 1
    QUERY = 2
    RESPONSE = 3


# ---------------------------------------------------------------------------
# Discovery packets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Packet:
    ttl: int
    type: int
    payload: str

    @property
    def dedup_key(self) -> tuple[int, str]:
        """Identity of a flooded message. TTL changes per hop, so it is left out."""
        return (self.type, self.payload)

    def relayed(self) -> "Packet":
        return Packet(self.ttl - 1, self.type, self.payload)

    def encode(self) -> bytes:
        return encode_packet(self.ttl, self.type, self.payload)


def encode_packet(ttl: int, msg_type: int, payload: str) -> bytes:
    """Build a discovery datagram."""
    if not 0 <= ttl <= 255:
        raise ValueError(f"TTL out of range: {ttl}")
    data = bytes([ttl, int(msg_type)]) + payload.encode("utf-8")
    if len(data) > PACKET_SIZE:
        raise ValueError(f"Packet too large: {len(data)} bytes (max {PACKET_SIZE})")
    return data


def decode_packet(raw: bytes) -> Packet:
    """Split a datagram into header fields and payload.

    Raises ProtocolError for datagrams shorter than the header or with a
    payload that is not valid UTF-8.
    """
    if len(raw) < HEADER_SIZE:
        raise ProtocolError(f"Datagram too short: {len(raw)} bytes")
    try:
        payload = raw[HEADER_SIZE:].decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError(f"Payload is not UTF-8: {e}") from e
    return Packet(raw[0], raw[1], payload)


# ---------------------------------------------------------------------------
# Typed discovery messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Hello:
    peer_id: str
    port: int | None = None

    type = MessageType.HELLO

    def to_payload(self) -> str:
        if self.port is None:
            return f"ID:{self.peer_id}"
        return f"ID:{self.peer_id}:PORT:{self.port}"


@dataclass(frozen=True)
class Query:
    peer_id: str
    text: str

    type = MessageType.QUERY

    def to_payload(self) -> str:
        return f"ID:{self.peer_id}:{self.text}"


@dataclass(frozen=True)
class QueryHit:
    peer_id: str
    name: str
    size: int
    file_hash: str
    port: int | None = None

    type = MessageType.RESPONSE

    def to_payload(self) -> str:
        payload = f"ID:{self.peer_id}:QUERY_HIT:{self.name}:{self.size}:{self.file_hash}"
        if self.port is not None:
            payload += f":PORT:{self.port}"
        return payload


Message = Hello | Query | QueryHit


def sender_id(payload: str) -> str | None:
    """Return the peer ID a payload claims to come from, if it has one."""
    parts = payload.split(":", 2)
    if len(parts) < 2 or parts[0] != "ID" or not parts[1]:
        return None
    return parts[1]


def parse_message(msg_type: int, payload: str) -> Message:
    """Parse a discovery payload into its typed message.

    Raises ProtocolError for unknown types and for payloads with missing
    or malformed fields.
    """
    peer_id = sender_id(payload)
    if peer_id is None:
        raise ProtocolError(f"Payload has no ID field: {payload!r}")
    rest = payload.split(":", 2)[2] if payload.count(":") >= 2 else ""

    if msg_type == MessageType.HELLO:
        return _parse_hello(peer_id, rest)
    if msg_type == MessageType.QUERY:
        if not rest:
            raise ProtocolError("QUERY without search text")
        return Query(peer_id, rest)
    if msg_type == MessageType.RESPONSE:
        return _parse_hit(peer_id, rest)
    raise ProtocolError(f"Unknown message type: {msg_type}")


def _parse_hello(peer_id: str, rest: str) -> Hello:
    if not rest:
        return Hello(peer_id)
    parts = rest.split(":")
    if len(parts) != 2 or parts[0] != "PORT":
        raise ProtocolError(f"Malformed HELLO fields: {rest!r}")
    return Hello(peer_id, _parse_port(parts[1]))


def _parse_hit(peer_id: str, rest: str) -> QueryHit:
    if not rest.startswith("QUERY_HIT:"):
        raise ProtocolError(f"RESPONSE is not a QUERY_HIT: {rest!r}")
    body = rest[len("QUERY_HIT:"):]

    port = None
    head, sep, tail = body.rpartition(":PORT:")
    if sep and tail.isdigit():
        body = head
        port = _parse_port(tail)

    # File names may themselves contain colons; size and hash never do.
    fields = body.rsplit(":", 2)
    if len(fields) != 3 or not fields[0] or not fields[2]:
        raise ProtocolError(f"Malformed QUERY_HIT fields: {body!r}")
    name, size_str, file_hash = fields
    try:
        size = int(size_str)
    except ValueError:
        raise ProtocolError(f"Invalid size in QUERY_HIT: {size_str!r}") from None
    if size < 0:
        raise ProtocolError(f"Negative size in QUERY_HIT: {size}")
    return QueryHit(peer_id, name, size, file_hash, port)


def _parse_port(text: str) -> int:
    try:
        port = int(text)
    except ValueError:
        raise ProtocolError(f"Invalid port: {text!r}") from None
    if not 0 < port < 65536:
        raise ProtocolError(f"Port out of range: {port}")
    return port


# ---------------------------------------------------------------------------
# Chunk protocol: requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChunkRequest:
    file_hash: str
    index: int


@dataclass(frozen=True)
class ListRequest:
    pass


@dataclass(frozen=True)
class RemoteFile:
    """One entry of a remote peer's LIST response."""

    name: str
    size: int
    file_hash: str


def send_chunk_request(sock, file_hash: str, index: int) -> None:
    hash_bytes = file_hash.encode("utf-8")
    sock.sendall(
        _INT32.pack(REQUEST_CHUNK)
        + _INT32.pack(len(hash_bytes))
        + hash_bytes
        + _INT32.pack(index)
    )


def send_list_request(sock) -> None:
    sock.sendall(_INT32.pack(REQUEST_LIST))


def recv_request(sock) -> ChunkRequest | ListRequest | None:
    """Read one request from a client. Returns None on a clean disconnect.

    Raises ProtocolError on an unknown request kind or a bad length prefix.
    """
    raw_kind = _recv_exactly(sock, 4)
    if raw_kind is None:
        return None
    kind = _INT32.unpack(raw_kind)[0]

    if kind == REQUEST_LIST:
        return ListRequest()
    if kind != REQUEST_CHUNK:
        raise ProtocolError(f"Unknown request kind: {kind}")

    file_hash = _recv_str(sock, MAX_HASH_LEN)
    index = _recv_int32(sock)
    return ChunkRequest(file_hash, index)


# ---------------------------------------------------------------------------
# Chunk protocol: responses
# ---------------------------------------------------------------------------


def send_chunk_response(sock, data: bytes | None) -> None:
    """Send chunk bytes with status OK, or a bare ERROR status for None."""
    if data is None:
        sock.sendall(bytes([STATUS_ERROR]))
        return
    sock.sendall(bytes([STATUS_OK]) + _INT32.pack(len(data)) + data)


def recv_chunk_response(sock) -> bytes | None:
    """Read a chunk response. Returns the data, or None for status ERROR.

    Raises ConnectionError if the peer hangs up mid-response and
    ProtocolError on an unknown status or oversized payload.
    """
    status = _require(sock, 1)[0]
    if status == STATUS_ERROR:
        return None
    if status != STATUS_OK:
        raise ProtocolError(f"Unknown chunk status: {status}")
    length = _recv_int32(sock)
    if not 0 <= length <= CHUNK_SIZE:
        raise ProtocolError(f"Chunk length out of range: {length}")
    return _require(sock, length)


def send_listing(sock, files: Iterable) -> None:
    """Send a LIST response for objects with name, size and file_hash."""
    files = list(files)
    out = bytearray(_INT32.pack(len(files)))
    for f in files:
        name = f.name.encode("utf-8")
        file_hash = f.file_hash.encode("utf-8")
        out += _INT32.pack(len(name)) + name
        out += _INT64.pack(f.size)
        out += _INT32.pack(len(file_hash)) + file_hash
    sock.sendall(bytes(out))


def recv_listing(sock) -> list[RemoteFile]:
    count = _recv_int32(sock)
    if not 0 <= count <= MAX_LIST_ENTRIES:
        raise ProtocolError(f"File count out of range: {count}")
    files = []
    for _ in range(count):
        name = _recv_str(sock, MAX_NAME_LEN)
        size = _INT64.unpack(_require(sock, 8))[0]
        file_hash = _recv_str(sock, MAX_HASH_LEN)
        files.append(RemoteFile(name, size, file_hash))
    return files


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _recv_exactly(sock, num_bytes: int) -> bytes | None:
    """Read exactly *num_bytes* from the socket. Returns None on disconnect."""
    data = bytearray()
    while len(data) < num_bytes:
        packet = sock.recv(min(CHUNK_SIZE, num_bytes - len(data)))
        if not packet:
            return None
        data.extend(packet)
    return bytes(data)


def _require(sock, num_bytes: int) -> bytes:
    data = _recv_exactly(sock, num_bytes)
    if data is None:
        raise ConnectionError("Peer closed the connection mid-message")
    return data


def _recv_int32(sock) -> int:
    return _INT32.unpack(_require(sock, 4))[0]


def _recv_str(sock, limit: int) -> str:
    length = _recv_int32(sock)
    if not 0 <= length <= limit:
        raise ProtocolError(f"Length prefix out of range: {length}")
    try:
        return _require(sock, length).decode("utf-8")
    except UnicodeDecodeError as e:
        raise ProtocolError(f"Field is not UTF-8: {e}") from e
