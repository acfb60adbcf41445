"""
swarmcast - LAN peer-to-peer chunked file sharing

Peers find each other with TTL-bounded UDP flooding, answer file queries
from their local catalog, and download a file in fixed-size chunks pulled
in parallel from every peer that holds it.
"""

__version__ = "0.1.0"

from .catalog import Catalog, CatalogEntry, compute_sha256
from .client import ChunkClient, fetch_file_list, format_size
from .config import (
    CHUNK_SIZE,
    DEFAULT_TTL,
    DISCOVERY_PORT,
    PEER_ID,
)
from .directory import PeerDirectory, PeerRecord, SearchResult, SearchResults
from .discovery import DiscoveryEngine
from .node import Node
from .protocol import (
    Hello,
    MessageType,
    ProtocolError,
    Query,
    QueryHit,
    RemoteFile,
)
from .server import ChunkServer, ServerError
from .transfer import (
    TransferCallbacks,
    TransferCoordinator,
    TransferError,
    TransferState,
)

__all__ = [
    "CHUNK_SIZE",
    "DEFAULT_TTL",
    "DISCOVERY_PORT",
    "PEER_ID",
    "Catalog",
    "CatalogEntry",
    "compute_sha256",
    "ChunkClient",
    "fetch_file_list",
    "format_size",
    "PeerDirectory",
    "PeerRecord",
    "SearchResult",
    "SearchResults",
    "DiscoveryEngine",
    "Node",
    "Hello",
    "MessageType",
    "ProtocolError",
    "Query",
    "QueryHit",
    "RemoteFile",
    "ChunkServer",
    "ServerError",
    "TransferCallbacks",
    "TransferCoordinator",
    "TransferError",
    "TransferState",
]
