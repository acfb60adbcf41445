"""
Multi-source chunked downloads.

A transfer splits a file into CHUNK_SIZE pieces and spreads them
round-robin over one worker thread per source peer (chunk ``i`` goes to
worker ``i % n``). Workers write what they fetch through
``TransferCoordinator.receive_chunk``, which is the only place completed
state changes. Chunks land out of order, so progressive consumers should
look at ``longest_contiguous_prefix`` rather than the completed count.

When a worker fails to fetch a chunk it hands the chunk to the healthiest
other worker of the same transfer, so one peer dropping out does not
orphan its share of the file.
"""

import logging
import os
import queue
import re
import threading
import time
from dataclasses import dataclass, field

from typing_extensions import Callable, Iterable

from .client import ChunkClient, expected_chunk_length
from .config import (
    BUFFER_DIR,
    CHUNK_SIZE,
    WORKER_MAX_FAILURES,
    WORKER_POLL_TIMEOUT,
    WORKER_RETRY_DELAY,
)
from .directory import PeerRecord
from .protocol import ProtocolError

logger = logging.getLogger(__name__)

# Windows reserved device names that must never be used as filenames.
_WINDOWS_RESERVED = re.compile(
    r"^(CON|PRN|AUX|NUL|COM[1-9]|LPT[1-9])(\.|$)", re.IGNORECASE
)


class TransferError(RuntimeError):
    """A transfer could not be started."""


def safe_filename(filename: str, fallback: str = "download") -> str:
    """Sanitize a file name that came from the network.

    - Strips directory components (prevents path traversal).
    - Removes null bytes.
    - Rejects Windows reserved device names (CON, NUL, COM1 … LPT9).
    - Falls back to *fallback* if the result is empty or a bare dot/dotdot.
    """
    name = os.path.basename(filename.replace("\\", "/"))
    name = name.replace("\x00", "")
    if name in ("", ".", ".."):
        return fallback
    if _WINDOWS_RESERVED.match(name):
        return fallback
    return name


def output_filename(name: str, file_hash: str) -> str:
    """Local file name for a download: the sanitized name tagged with the hash.

    Two files may share a name but not a hash, so the tag keeps their
    downloads apart.
    """
    stem, ext = os.path.splitext(safe_filename(name))
    tag = re.sub(r"[^0-9A-Za-z]", "", file_hash)[:12]
    return f"{stem}-{tag}{ext}" if tag else stem + ext


def chunk_count(size: int) -> int:
    return -(-size // CHUNK_SIZE)


class ChunkBitmap:
    """Fixed-length bit set, one bit per chunk."""

    def __init__(self, num_bits: int):
        self.num_bits = num_bits
        self.bits = bytearray(-(-num_bits // 8))
        self._count = 0

    def __len__(self) -> int:
        return self.num_bits

    def _locate(self, index: int) -> tuple[int, int]:
        if not self.num_bits > index >= 0:
            raise IndexError(f"chunk index {index} out of range 0..{self.num_bits - 1}")
        return index // 8, 1 << (7 - index % 8)

    def set(self, index: int) -> None:
        byte, mask = self._locate(index)
        if not self.bits[byte] & mask:
            self.bits[byte] |= mask
            self._count += 1

    def clear(self, index: int) -> None:
        byte, mask = self._locate(index)
        if self.bits[byte] & mask:
            self.bits[byte] &= ~mask
            self._count -= 1

    def is_set(self, index: int) -> bool:
        byte, mask = self._locate(index)
        return bool(self.bits[byte] & mask)

    def count(self) -> int:
        return self._count

    def is_full(self) -> bool:
        return self._count == self.num_bits

    def first_clear(self) -> int:
        """Index of the lowest clear bit, or num_bits if every bit is set."""
        for byte_index, byte in enumerate(self.bits):
            if byte != 0xFF:
                for bit in range(8):
                    index = byte_index * 8 + bit
                    if index >= self.num_bits:
                        return self.num_bits
                    if not byte & (1 << (7 - bit)):
                        return index
        return self.num_bits

    def to_str(self) -> str:
        return "".join("1" if self.is_set(i) else "0" for i in range(self.num_bits))


@dataclass
class TransferCallbacks:
    on_chunk_received: Callable[[str, int, int, str], None] = field(default=lambda *_: None)
    on_transfer_complete: Callable[[str, str], None] = field(default=lambda *_: None)


class TransferState:
    """Progress of one file download. Guarded by ``lock``."""

    def __init__(self, name: str, file_hash: str, size: int, output_path: str):
        self.name = name
        self.file_hash = file_hash
        self.size = size
        self.output_path = output_path
        self.total_chunks = chunk_count(size)
        self.completed = ChunkBitmap(self.total_chunks)
        self.in_flight = ChunkBitmap(self.total_chunks)
        self.sources: set[str] = set()
        self.workers: dict[str, "TransferWorker"] = {}
        self.started_at = time.time()
        self.finished_at: float | None = None
        self.cancelled = threading.Event()
        self.lock = threading.RLock()
        self.completion_sent = False

    def is_complete(self) -> bool:
        with self.lock:
            return self.completed.is_full()

    def is_chunk_complete(self, index: int) -> bool:
        with self.lock:
            return self.completed.is_set(index)

    def completed_count(self) -> int:
        with self.lock:
            return self.completed.count()

    def progress(self) -> float:
        """Percentage of chunks completed."""
        with self.lock:
            if self.total_chunks == 0:
                return 100.0
            return self.completed.count() / self.total_chunks * 100

    def longest_contiguous_prefix(self) -> int:
        """Largest k such that chunks 0..k are all complete, or -1."""
        with self.lock:
            return self.completed.first_clear() - 1

    def playable_bytes(self) -> int:
        """Bytes from the start of the file that are safe to read."""
        return min(self.size, (self.longest_contiguous_prefix() + 1) * CHUNK_SIZE)


class TransferCoordinator:
    """Registry of active transfers and owner of their workers."""

    def __init__(
        self,
        output_dir: str = BUFFER_DIR,
        callbacks: TransferCallbacks | None = None,
        client_factory: Callable[[str, int], ChunkClient] = ChunkClient,
        poll_timeout: float = WORKER_POLL_TIMEOUT,
        retry_delay: float = WORKER_RETRY_DELAY,
        max_failures: int = WORKER_MAX_FAILURES,
    ):
        self.output_dir = output_dir
        self.callbacks = callbacks or TransferCallbacks()
        self.client_factory = client_factory
        self.poll_timeout = poll_timeout
        self.retry_delay = retry_delay
        self.max_failures = max_failures
        self._transfers: dict[str, TransferState] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get(self, file_hash: str) -> TransferState | None:
        with self._lock:
            return self._transfers.get(file_hash)

    def transfers(self) -> list[TransferState]:
        with self._lock:
            return list(self._transfers.values())

    def longest_contiguous_prefix(self, file_hash: str) -> int:
        state = self.get(file_hash)
        return -1 if state is None else state.longest_contiguous_prefix()

    # ------------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------------

    def start_transfer(
        self, name: str, file_hash: str, size: int, peers: Iterable[PeerRecord]
    ) -> TransferState:
        """Start downloading *file_hash* from *peers*.

        Returns the existing state unchanged if the hash is already being
        transferred. Raises TransferError if no peer is usable or the
        output file cannot be preallocated; nothing is kept in that case.
        """
        if size < 0:
            raise TransferError(f"Invalid size for {name}: {size}")

        usable: dict[str, PeerRecord] = {}
        for peer in peers:
            if peer.address and peer.port and peer.peer_id not in usable:
                usable[peer.peer_id] = peer

        with self._lock:
            existing = self._transfers.get(file_hash)
            if existing is not None and not existing.cancelled.is_set():
                logger.info("Transfer for %s already active", file_hash)
                return existing

            if not usable and size > 0:
                raise TransferError(f"No usable peers for {name}")

            output_path = os.path.join(self.output_dir, output_filename(name, file_hash))
            state = TransferState(name, file_hash, size, output_path)
            # Reserved before the file exists; the file I/O happens unlocked
            self._transfers[file_hash] = state

        try:
            self._preallocate(output_path, size)
        except TransferError:
            with self._lock:
                if self._transfers.get(file_hash) is state:
                    del self._transfers[file_hash]
            raise

        if state.total_chunks == 0:
            self._finish(state)
            return state

        for peer in usable.values():
            client = self.client_factory(peer.address, peer.port)
            worker = TransferWorker(self, state, peer, client)
            state.workers[peer.peer_id] = worker
            state.sources.add(f"{peer.address}:{peer.port}")

        # Static round-robin partition: chunk i -> worker i mod n
        order = list(state.workers.values())
        with state.lock:
            for index in range(state.total_chunks):
                state.in_flight.set(index)
                order[index % len(order)].queue_task(index)

        for worker in order:
            worker.start()

        logger.info(
            "Started transfer of %s (%d bytes, %d chunks) from %d peers",
            name,
            size,
            state.total_chunks,
            len(order),
        )
        return state

    def _preallocate(self, path: str, size: int) -> None:
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            with open(path, "wb") as f:
                f.truncate(size)
        except OSError as e:
            try:
                os.remove(path)
            except OSError:
                pass
            raise TransferError(f"Cannot preallocate {path}: {e}") from e

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def receive_chunk(self, file_hash: str, index: int, data: bytes, source: str) -> bool:
        """Write one chunk into its transfer's output file.

        Returns False (and writes nothing) if the hash is unknown or the
        chunk is already complete. Raises ValueError if *data* has the
        wrong length for *index* and OSError if the write fails.
        """
        state = self.get(file_hash)
        if state is None:
            return False

        with state.lock:
            if state.completed.is_set(index):
                return False

            expected = expected_chunk_length(state.size, index)
            if len(data) != expected:
                raise ValueError(
                    f"chunk {index} of {state.name} is {len(data)} bytes, expected {expected}"
                )

            with open(state.output_path, "r+b") as f:
                f.seek(index * CHUNK_SIZE)
                f.write(data)

            state.completed.set(index)
            state.in_flight.clear(index)
            done = state.completed.is_full()

        # Listeners may block on other threads that need state.lock
        logger.debug(
            "Chunk %d/%d of %s received from %s",
            index + 1,
            state.total_chunks,
            state.name,
            source,
        )
        self._notify(self.callbacks.on_chunk_received, state.name, index, state.total_chunks, source)
        if done:
            self._finish(state)
        return True

    def _finish(self, state: TransferState) -> None:
        """Emit transfer-complete once. Must be called without state.lock held."""
        with state.lock:
            if state.completion_sent:
                return
            state.completion_sent = True
            state.finished_at = time.time()
        logger.info(
            "Transfer of %s complete in %.1fs", state.name, state.finished_at - state.started_at
        )
        self._notify(self.callbacks.on_transfer_complete, state.name, state.file_hash)

    def _notify(self, callback, *args) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Transfer listener failed")

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    def reassign(self, state: TransferState, index: int, failed: "TransferWorker") -> None:
        """Queue a chunk that *failed* could not fetch on the healthiest other worker."""
        with state.lock:
            if state.cancelled.is_set() or state.completed.is_set(index):
                return
            candidates = [
                w for w in state.workers.values() if w is not failed and w.healthy
            ]
            if candidates:
                target = min(candidates, key=lambda w: (w.consecutive_failures, w.pending()))
            else:
                target = failed
            target.queue_task(index)
        if target is not failed:
            logger.debug("Chunk %d of %s moved to %s", index, state.name, target.peer.peer_id)

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------

    def cancel_transfer(self, file_hash: str) -> bool:
        """Stop the workers of a transfer. The state stays until retired."""
        state = self.get(file_hash)
        if state is None:
            return False
        self._halt(state)
        logger.info("Cancelled transfer of %s", state.name)
        return True

    def retire(self, file_hash: str) -> bool:
        """Stop a transfer's workers and forget it."""
        with self._lock:
            state = self._transfers.pop(file_hash, None)
        if state is None:
            return False
        self._halt(state)
        return True

    def stop(self) -> None:
        with self._lock:
            states = list(self._transfers.values())
            self._transfers.clear()
        for state in states:
            self._halt(state)

    def _halt(self, state: TransferState) -> None:
        state.cancelled.set()
        for worker in state.workers.values():
            worker.stop()
        for worker in state.workers.values():
            if worker.is_alive() and worker is not threading.current_thread():
                worker.join(timeout=self.poll_timeout + 1)


class TransferWorker(threading.Thread):
    """Pulls the chunks queued for it from a single peer."""

    def __init__(
        self,
        coordinator: TransferCoordinator,
        state: TransferState,
        peer: PeerRecord,
        client: ChunkClient,
    ):
        super().__init__(name=f"transfer-{peer.peer_id}", daemon=True)
        self.coordinator = coordinator
        self.state = state
        self.peer = peer
        self.client = client
        # Every index ever queued here, in order (initial assignment + reassignments)
        self.assigned: list[int] = []
        self.consecutive_failures = 0
        self.chunks_fetched = 0
        self._queue: queue.Queue[int] = queue.Queue()
        self._stop_event = threading.Event()

    @property
    def healthy(self) -> bool:
        return self.consecutive_failures < self.coordinator.max_failures

    def queue_task(self, index: int) -> None:
        self.assigned.append(index)
        self._queue.put(index)

    def pending(self) -> int:
        return self._queue.qsize()

    def stop(self) -> None:
        self._stop_event.set()
        self.client.close()

    def _should_run(self) -> bool:
        return not (
            self._stop_event.is_set()
            or self.state.cancelled.is_set()
            or self.state.is_complete()
        )

    def run(self) -> None:
        try:
            while self._should_run():
                try:
                    index = self._queue.get(timeout=self.coordinator.poll_timeout)
                except queue.Empty:
                    continue
                if self.state.is_chunk_complete(index):
                    continue
                self._fetch(index)
        finally:
            self.client.close()

    def _fetch(self, index: int) -> None:
        state = self.state
        try:
            data = self.client.fetch_chunk(state.file_hash, index)
            if data is None:
                raise ProtocolError("peer answered ERROR")
            self.coordinator.receive_chunk(state.file_hash, index, data, self.peer.peer_id)
        except (OSError, ValueError) as e:
            self._failed(index, e)
            return
        self.consecutive_failures = 0
        self.chunks_fetched += 1

    def _failed(self, index: int, error: Exception) -> None:
        if self._stop_event.is_set() or self.state.cancelled.is_set():
            return
        self.consecutive_failures += 1
        logger.warning(
            "Chunk %d of %s from %s@%s:%d failed (%d in a row): %s",
            index,
            self.state.name,
            self.peer.peer_id,
            self.peer.address,
            self.peer.port,
            self.consecutive_failures,
            error,
        )
        self.coordinator.reassign(self.state, index, self)
        if not self.healthy:
            self._hand_off_queue()
        self._stop_event.wait(self.coordinator.retry_delay)

    def _hand_off_queue(self) -> None:
        pending = []
        while True:
            try:
                pending.append(self._queue.get_nowait())
            except queue.Empty:
                break
        for index in pending:
            self.coordinator.reassign(self.state, index, self)
