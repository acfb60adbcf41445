"""
Registry of known peers, query answering and search-hit collection.

The directory is fed by the discovery engine: HELLO packets arrive as
``on_peer_found`` calls, queries and query hits as ``on_message_received``.
Any message counts as a sighting of its sender, so a peer that is only
ever heard through its queries still shows up.
"""

import logging
import threading
import time
from dataclasses import dataclass, field

from typing_extensions import Callable

from .catalog import Catalog
from .config import BASE_PORT, PEER_TIMEOUT, RESPONSE_TTL, SWEEP_INTERVAL
from .protocol import Message, Query, QueryHit

logger = logging.getLogger(__name__)


@dataclass
class PeerRecord:
    peer_id: str
    address: str
    port: int
    last_seen: float = field(default_factory=time.monotonic)


@dataclass
class SearchResult:
    """One distinct file seen in query hits, and the peers that hold it."""

    file_hash: str
    name: str
    size: int
    peer_ids: list[str] = field(default_factory=list)

    def add_peer(self, peer_id: str) -> bool:
        if peer_id in self.peer_ids:
            return False
        self.peer_ids.append(peer_id)
        return True


class SearchResults:
    """Collects query hits into one SearchResult per content hash."""

    def __init__(self):
        self._results: dict[str, SearchResult] = {}
        self._lock = threading.Lock()

    def add(self, hit: QueryHit) -> SearchResult:
        with self._lock:
            result = self._results.get(hit.file_hash)
            if result is None:
                result = SearchResult(hit.file_hash, hit.name, hit.size)
                self._results[hit.file_hash] = result
            result.add_peer(hit.peer_id)
            return SearchResult(result.file_hash, result.name, result.size, list(result.peer_ids))

    def get(self, file_hash: str) -> SearchResult | None:
        with self._lock:
            result = self._results.get(file_hash)
            if result is None:
                return None
            return SearchResult(result.file_hash, result.name, result.size, list(result.peer_ids))

    def all(self) -> list[SearchResult]:
        with self._lock:
            return [
                SearchResult(r.file_hash, r.name, r.size, list(r.peer_ids))
                for r in self._results.values()
            ]

    def clear(self) -> None:
        with self._lock:
            self._results.clear()


class PeerDirectory:
    """Thread-safe map of peer ID -> PeerRecord.

    *send* broadcasts a typed message with a TTL (normally
    ``DiscoveryEngine.send``); *serving_port* returns the port our chunk
    server is bound to, which goes into every query hit we send.
    """

    def __init__(
        self,
        peer_id: str,
        catalog: Catalog | None = None,
        send: Callable[[Message, int], None] | None = None,
        serving_port: Callable[[], int | None] | None = None,
        on_new_peer: Callable[[PeerRecord], None] | None = None,
        on_peer_lost: Callable[[PeerRecord], None] | None = None,
        on_search_hit: Callable[[QueryHit], None] | None = None,
        peer_timeout: float = PEER_TIMEOUT,
    ):
        self.peer_id = peer_id
        self.catalog = catalog
        self.send = send
        self.serving_port = serving_port
        self.on_new_peer = on_new_peer
        self.on_peer_lost = on_peer_lost
        self.on_search_hit = on_search_hit
        self.peer_timeout = peer_timeout

        self._peers: dict[str, PeerRecord] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the stale-peer sweep."""
        if self._sweeper is not None:
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._sweep_loop, name="peer-sweep", daemon=True)
        self._sweeper.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=3)
            self._sweeper = None
        self.clear()

    def clear(self) -> None:
        with self._lock:
            self._peers.clear()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, peer_id: str) -> PeerRecord | None:
        with self._lock:
            record = self._peers.get(peer_id)
            return None if record is None else _copy(record)

    def peers(self) -> list[PeerRecord]:
        with self._lock:
            return [_copy(r) for r in self._peers.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._peers)

    # ------------------------------------------------------------------
    # Discovery events
    # ------------------------------------------------------------------

    def on_peer_found(self, peer_id: str, address: str, port: int | None = None) -> PeerRecord:
        """Insert or refresh a peer. The last sighting wins for address/port.

        A sighting without a port keeps the port already on record.
        """
        now = time.monotonic()
        with self._lock:
            record = self._peers.get(peer_id)
            is_new = record is None
            if is_new:
                record = PeerRecord(peer_id, address, port or BASE_PORT, now)
                self._peers[peer_id] = record
            else:
                record.address = address
                if port is not None:
                    record.port = port
                record.last_seen = now
            snapshot = _copy(record)

        if is_new:
            logger.info("New peer discovered: %s@%s:%d", peer_id, address, snapshot.port)
            if self.on_new_peer:
                self.on_new_peer(snapshot)
        return snapshot

    def on_message_received(self, message: Message, address: str, port: int) -> None:
        """Handle a QUERY or RESPONSE. *port* is the datagram's source port.

        The UDP source port says nothing about where the sender serves
        chunks, so only a port carried in the message itself is recorded.
        """
        if isinstance(message, QueryHit):
            self.on_peer_found(message.peer_id, address, message.port)
            self._handle_hit(message)
        elif isinstance(message, Query):
            self.on_peer_found(message.peer_id, address)
            self._handle_query(message, address)
        else:
            logger.debug("Ignoring %s from %s:%d", type(message).__name__, address, port)

    def _handle_query(self, query: Query, address: str) -> None:
        if self.catalog is None or self.send is None:
            return
        entry = self.catalog.search(query.text)
        if entry is None:
            return
        hit = QueryHit(
            peer_id=self.peer_id,
            name=entry.name,
            size=entry.size,
            file_hash=entry.file_hash,
            port=self.serving_port() if self.serving_port else None,
        )
        logger.info("Query %r from %s matched %s; answering", query.text, address, entry.name)
        self.send(hit, RESPONSE_TTL)

    def _handle_hit(self, hit: QueryHit) -> None:
        logger.info("Search hit: %s (%d bytes) from %s", hit.name, hit.size, hit.peer_id)
        if self.on_search_hit:
            self.on_search_hit(hit)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def evict_stale(self, now: float | None = None) -> list[PeerRecord]:
        """Remove peers not seen within the timeout and return them."""
        if now is None:
            now = time.monotonic()
        with self._lock:
            stale = [r for r in self._peers.values() if now - r.last_seen > self.peer_timeout]
            for record in stale:
                del self._peers[record.peer_id]

        for record in stale:
            logger.info("Peer %s timed out", record.peer_id)
            if self.on_peer_lost:
                self.on_peer_lost(record)
        return stale

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(SWEEP_INTERVAL):
            self.evict_stale()


def _copy(record: PeerRecord) -> PeerRecord:
    return PeerRecord(record.peer_id, record.address, record.port, record.last_seen)
