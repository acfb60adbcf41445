"""
A running peer: catalog, chunk server, discovery, directory and downloads.

``Node`` owns every registry for its lifetime. ``start`` brings the chunk
server up first so discovery can advertise the port it actually bound;
``stop`` tears everything down and clears the registries.
"""

import logging
import os

from typing_extensions import Callable

from .catalog import Catalog
from .config import (
    BROADCAST_ADDRESS,
    BUFFER_DIR,
    DEFAULT_TTL,
    DISCOVERY_PORT,
    FILE_SERVER_PORT,
    PEER_ID,
    SHARED_DIR,
)
from .directory import PeerDirectory, PeerRecord, SearchResult, SearchResults
from .discovery import DiscoveryEngine
from .protocol import Query, QueryHit
from .server import ChunkServer
from .transfer import TransferCallbacks, TransferCoordinator, TransferError, TransferState

logger = logging.getLogger(__name__)


class Node:
    def __init__(
        self,
        peer_id: str = PEER_ID,
        shared_dir: str = SHARED_DIR,
        buffer_dir: str = BUFFER_DIR,
        serving_port: int | None = FILE_SERVER_PORT,
        discovery_port: int = DISCOVERY_PORT,
        broadcast_address: str | None = BROADCAST_ADDRESS,
        catalog: Catalog | None = None,
    ):
        self.peer_id = peer_id
        self.shared_dir = shared_dir
        self.buffer_dir = buffer_dir

        # Front ends hook these; each is called from a background thread.
        self.on_new_peer: Callable[[PeerRecord], None] | None = None
        self.on_peer_lost: Callable[[PeerRecord], None] | None = None
        self.on_search_result: Callable[[SearchResult], None] | None = None
        self.on_chunk_received: Callable[[str, int, int, str], None] | None = None
        self.on_transfer_complete: Callable[[str, str], None] | None = None

        self.catalog = catalog if catalog is not None else Catalog()
        self.results = SearchResults()
        self.server = ChunkServer(self.catalog, port=serving_port)

        self.discovery = DiscoveryEngine(
            peer_id=peer_id, port=discovery_port, broadcast_address=broadcast_address
        )

        self.directory = PeerDirectory(
            peer_id,
            catalog=self.catalog,
            send=self.discovery.send,
            serving_port=lambda: self.server.port,
            on_new_peer=self._peer_added,
            on_peer_lost=self._peer_lost,
            on_search_hit=self._search_hit,
        )
        self.discovery.on_peer_found = self.directory.on_peer_found
        self.discovery.on_message_received = self.directory.on_message_received

        self.transfers = TransferCoordinator(
            output_dir=buffer_dir,
            callbacks=TransferCallbacks(
                on_chunk_received=self._chunk_received,
                on_transfer_complete=self._transfer_complete,
            ),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Index the shared directory and start serving and discovery.

        Raises ServerError or OSError if a socket cannot be bound; nothing
        is left running in that case.
        """
        os.makedirs(self.buffer_dir, exist_ok=True)
        count = self.catalog.scan(self.shared_dir)
        logger.info("Sharing %d files from %s", count, self.shared_dir)

        port = self.server.start()
        self.discovery.serving_port = port
        try:
            self.discovery.start()
        except OSError:
            self.server.stop()
            raise
        self.directory.start()
        logger.info("Peer %s up (chunk server on %d)", self.peer_id, port)

    def stop(self) -> None:
        self.transfers.stop()
        self.discovery.stop()
        self.directory.stop()
        self.server.stop()
        self.results.clear()
        logger.info("Peer %s stopped", self.peer_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def peers(self) -> list[PeerRecord]:
        return self.directory.peers()

    def search(self, text: str) -> None:
        """Flood a query; hits arrive through ``on_search_result``."""
        text = text.strip()
        if not text:
            return
        self.discovery.send(Query(self.peer_id, text), DEFAULT_TTL)
        logger.info("Searching for %r", text)

    def search_results(self) -> list[SearchResult]:
        return self.results.all()

    def download(self, file_hash: str) -> TransferState:
        """Start (or return the running) transfer for a search result.

        Raises TransferError if the hash was never seen in a search hit or
        none of its peers is currently known.
        """
        result = self.results.get(file_hash)
        if result is None:
            raise TransferError(f"No search result for {file_hash}")
        peers = [p for p in map(self.directory.get, result.peer_ids) if p is not None]
        return self.transfers.start_transfer(result.name, result.file_hash, result.size, peers)

    # ------------------------------------------------------------------
    # Event plumbing
    # ------------------------------------------------------------------

    def _peer_added(self, record: PeerRecord) -> None:
        if self.on_new_peer:
            self.on_new_peer(record)

    def _peer_lost(self, record: PeerRecord) -> None:
        if self.on_peer_lost:
            self.on_peer_lost(record)

    def _search_hit(self, hit: QueryHit) -> None:
        result = self.results.add(hit)
        if self.on_search_result:
            self.on_search_result(result)

    def _chunk_received(self, name: str, index: int, total: int, source: str) -> None:
        if self.on_chunk_received:
            self.on_chunk_received(name, index, total, source)

    def _transfer_complete(self, name: str, file_hash: str) -> None:
        state = self.transfers.get(file_hash)
        if state is not None:
            # Completed downloads are shared like any other local file
            try:
                self.catalog.add_file(state.output_path, file_hash)
            except OSError as e:
                logger.warning("Could not share %s: %s", state.output_path, e)
        if self.on_transfer_complete:
            self.on_transfer_complete(name, file_hash)
