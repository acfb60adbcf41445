"""
Configuration constants for the swarmcast peer.

Environment overrides are read once at import time:

    PEER_ID             stable peer identity (default: random 8 hex chars)
    BROADCAST_ADDRESS   single broadcast target (default: every interface)
    FILE_SERVER_PORT    fixed chunk-serving port (default: first free in range)
    VIDEO_DIR           directory whose files are shared
    BUFFER_DIR          directory downloads are written to
    LOG_LEVEL           logging level name
"""

import logging
import os
import uuid

logger = logging.getLogger(__name__)

# --- Discovery (UDP) ---
DISCOVERY_PORT = 50000       # UDP port every peer binds and broadcasts to
PACKET_SIZE = 1024           # Largest discovery datagram we read
DEFAULT_TTL = 3              # Hop limit for announces and queries
RESPONSE_TTL = 1             # Query hits are not meant to flood
ANNOUNCE_INTERVAL = 5        # Seconds between HELLO announcements
DEDUP_RETENTION = 10         # Seconds a (type, payload) pair stays "seen"
SWEEP_INTERVAL = 60          # Seconds between dedup-cache / peer sweeps
PEER_TIMEOUT = 30            # Seconds without a sighting before a peer is dropped

# --- Chunk serving (TCP) ---
BASE_PORT = 50001            # First port tried by the chunk server
PORT_RANGE = 100             # Number of ports tried from BASE_PORT
MAX_CONNECTIONS = 50         # Concurrent handler threads on the server
CHUNK_SIZE = 256 * 1024      # Unit of transfer scheduling
CHUNK_REQUEST_TIMEOUT = 30   # Socket timeout for a single chunk exchange

# --- Transfer workers ---
WORKER_POLL_TIMEOUT = 2      # Seconds a worker blocks on its queue
WORKER_RETRY_DELAY = 1       # Backoff after a failed fetch
WORKER_MAX_FAILURES = 3      # Consecutive failures before a worker is unhealthy

# --- File storage ---
SHARED_EXTENSIONS = (".mp4", ".mkv", ".webm", ".avi")
SHARED_DIR = os.path.abspath(os.environ.get("VIDEO_DIR") or "videos")
BUFFER_DIR = os.path.abspath(os.environ.get("BUFFER_DIR") or "buffer")

# --- Logging ---
LOG_LEVEL = (os.environ.get("LOG_LEVEL") or "INFO").upper()


def _env_str(name: str) -> str | None:
    value = os.environ.get(name, "").strip()
    return value or None


def _env_port(name: str) -> int | None:
    value = _env_str(name)
    if value is None:
        return None
    try:
        port = int(value)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, value)
        return None
    if not 0 < port < 65536:
        logger.warning("Ignoring out-of-range %s=%d", name, port)
        return None
    return port


# --- Identity ---
# Each peer gets a unique ID at startup so it can ignore its own broadcasts
PEER_ID = _env_str("PEER_ID") or uuid.uuid4().hex[:8]

BROADCAST_ADDRESS = _env_str("BROADCAST_ADDRESS")
FILE_SERVER_PORT = _env_port("FILE_SERVER_PORT")
