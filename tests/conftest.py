import time

import pytest

from swarmcast.catalog import Catalog

# 700 KB: two full 256 KiB chunks and a short third one
SAMPLE_SIZE = 700 * 1024


def wait_for(predicate, timeout: float = 5.0) -> bool:
    """Poll *predicate* until it is true or *timeout* elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return bool(predicate())


@pytest.fixture
def sample_bytes() -> bytes:
    return bytes(i % 251 for i in range(SAMPLE_SIZE))


@pytest.fixture
def shared_dir(tmp_path, sample_bytes):
    directory = tmp_path / "shared"
    directory.mkdir()
    (directory / "Big_Buck_Bunny.mp4").write_bytes(sample_bytes)
    (directory / "notes.txt").write_text("not shared")
    return directory


@pytest.fixture
def catalog(shared_dir) -> Catalog:
    cat = Catalog()
    cat.scan(str(shared_dir))
    return cat


@pytest.fixture
def sample_entry(catalog):
    return catalog.search("bunny")
