"""
Peer discovery and query flooding over UDP broadcast.

Every peer binds the same UDP port. A HELLO announce goes out every few
seconds; queries and query hits travel the same way. Packets are relayed
with a decremented TTL so they reach peers a few broadcast domains away,
and a short-lived cache of (type, payload) pairs stops a relayed packet
from being handled twice.
"""

import logging
import socket
import threading
import time

import psutil
from typing_extensions import Callable

from .config import (
    ANNOUNCE_INTERVAL,
    BROADCAST_ADDRESS,
    DEDUP_RETENTION,
    DEFAULT_TTL,
    DISCOVERY_PORT,
    PACKET_SIZE,
    PEER_ID,
    SWEEP_INTERVAL,
)
from .protocol import (
    Hello,
    Message,
    MessageType,
    Packet,
    ProtocolError,
    decode_packet,
    encode_packet,
    parse_message,
    sender_id,
)

logger = logging.getLogger(__name__)

PeerFoundCallback = Callable[[str, str, int | None], None]
MessageCallback = Callable[[Message, str, int], None]


def get_broadcast_addresses() -> list[str]:
    """Get all broadcast addresses for local interfaces."""
    broadcasts = []

    for iface, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            if addr.address.startswith("127."):
                continue
            ip_parts = addr.address.split(".")
            mask_parts = addr.netmask.split(".")
            broadcast = ".".join(
                str(int(ip_parts[i]) | (255 - int(mask_parts[i])))
                for i in range(4)
            )
            if broadcast not in broadcasts:
                broadcasts.append(broadcast)

    return broadcasts if broadcasts else ["255.255.255.255"]


class DiscoveryEngine:
    """Owns the discovery socket and its broadcast, receive and sweep loops."""

    def __init__(
        self,
        peer_id: str = PEER_ID,
        serving_port: int | None = None,
        on_peer_found: PeerFoundCallback | None = None,
        on_message_received: MessageCallback | None = None,
        port: int = DISCOVERY_PORT,
        broadcast_address: str | None = BROADCAST_ADDRESS,
    ):
        self.peer_id = peer_id
        self.serving_port = serving_port
        self.port = port
        self.on_peer_found = on_peer_found
        self.on_message_received = on_message_received
        self._broadcast_address = broadcast_address
        self._targets: list[str] = []

        # (type, payload) -> monotonic time first seen
        self._seen: dict[tuple[int, str], float] = {}
        self._seen_lock = threading.Lock()

        self._sock: socket.socket | None = None
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return self._sock is not None and not self._stop_event.is_set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Bind the discovery socket and start the daemon loops.

        Raises OSError if the port cannot be bound.
        """
        if self.running:
            return

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except OSError:
                pass
        try:
            sock.bind(("", self.port))
        except OSError:
            sock.close()
            logger.error("Cannot bind discovery port %d", self.port)
            raise
        sock.settimeout(2)  # so the receive loop can notice stop()
        self.port = sock.getsockname()[1]

        if self._broadcast_address:
            self._targets = [self._broadcast_address]
            logger.info("Using custom broadcast address: %s", self._broadcast_address)
        else:
            self._targets = get_broadcast_addresses()

        self._sock = sock
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._receive_loop, name="discovery-recv", daemon=True),
            threading.Thread(target=self._announce_loop, name="discovery-announce", daemon=True),
            threading.Thread(target=self._sweep_loop, name="discovery-sweep", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "Discovery started on UDP %d as peer %s (targets: %s)",
            self.port,
            self.peer_id,
            ", ".join(self._targets),
        )

    def stop(self) -> None:
        self._stop_event.set()
        sock, self._sock = self._sock, None
        if sock is not None:
            sock.close()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join(timeout=3)
        self._threads = []
        with self._seen_lock:
            self._seen.clear()

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def announce_self(self) -> None:
        hello = Hello(self.peer_id, self.serving_port)
        self.broadcast(MessageType.HELLO, hello.to_payload(), DEFAULT_TTL)

    def send(self, message: Message, ttl: int = DEFAULT_TTL) -> None:
        self.broadcast(message.type, message.to_payload(), ttl)

    def broadcast(self, msg_type: int, payload: str, ttl: int = DEFAULT_TTL) -> None:
        """Broadcast a packet to every target address."""
        try:
            data = encode_packet(ttl, msg_type, payload)
        except ValueError as e:
            logger.warning("Not broadcasting type %d: %s", msg_type, e)
            return
        self._send_raw(data)
        logger.debug("Broadcast type=%d ttl=%d payload=%s", msg_type, ttl, payload)

    def _send_raw(self, data: bytes) -> None:
        sock = self._sock
        if sock is None:
            logger.debug("Discovery socket closed; dropping outgoing packet")
            return
        for addr in self._targets:
            try:
                sock.sendto(data, (addr, self.port))
            except OSError as e:
                logger.warning("Failed to broadcast to %s: %s", addr, e)

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def handle_packet(self, raw: bytes, address: tuple[str, int], now: float | None = None) -> bool:
        """Process one inbound datagram. Returns True if it was dispatched."""
        if now is None:
            now = time.monotonic()

        try:
            packet = decode_packet(raw)
        except ProtocolError as e:
            logger.debug("Dropping datagram from %s: %s", address[0], e)
            return False

        if not self._first_sighting(packet, now):
            return False

        if sender_id(packet.payload) == self.peer_id:
            return False

        try:
            message = parse_message(packet.type, packet.payload)
        except ProtocolError as e:
            logger.warning("Dropping malformed packet from %s: %s", address[0], e)
            return False

        self._dispatch(message, address)

        if packet.ttl > 1 and packet.type != MessageType.RESPONSE:
            self._send_raw(packet.relayed().encode())
            logger.debug("Relayed type=%d with ttl=%d", packet.type, packet.ttl - 1)
        return True

    def _first_sighting(self, packet: Packet, now: float) -> bool:
        key = packet.dedup_key
        with self._seen_lock:
            seen_at = self._seen.get(key)
            if seen_at is not None and now - seen_at < DEDUP_RETENTION:
                return False
            self._seen[key] = now
            return True

    def _dispatch(self, message: Message, address: tuple[str, int]) -> None:
        host, port = address
        try:
            if isinstance(message, Hello):
                if self.on_peer_found:
                    self.on_peer_found(message.peer_id, host, message.port)
            elif self.on_message_received:
                self.on_message_received(message, host, port)
        except Exception:
            logger.exception("Discovery handler failed for %r", message)

    def purge_seen(self, now: float | None = None) -> int:
        """Drop dedup entries older than the retention window."""
        if now is None:
            now = time.monotonic()
        with self._seen_lock:
            stale = [k for k, t in self._seen.items() if now - t > DEDUP_RETENTION]
            for key in stale:
                del self._seen[key]
        return len(stale)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    def _receive_loop(self) -> None:
        while not self._stop_event.is_set():
            sock = self._sock
            if sock is None:
                break
            try:
                raw, address = sock.recvfrom(PACKET_SIZE)
            except socket.timeout:
                continue
            except OSError as e:
                if self._stop_event.is_set():
                    break
                logger.warning("Error receiving discovery packet: %s", e)
                continue
            self.handle_packet(raw, address)

    def _announce_loop(self) -> None:
        while not self._stop_event.is_set():
            self.announce_self()
            self._stop_event.wait(ANNOUNCE_INTERVAL)

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(SWEEP_INTERVAL):
            removed = self.purge_seen()
            if removed:
                logger.debug("Purged %d dedup entries", removed)
