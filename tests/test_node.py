"""
Integration tests for node.py — two peers searching and downloading.

The discovery engines are linked back to back instead of over a real
broadcast domain, so every packet one peer sends is handled by the other.
"""

import threading

import pytest

from conftest import wait_for
from swarmcast.node import Node
from swarmcast.transfer import TransferError


def make_node(peer_id, tmp_path, shared_dir=None) -> Node:
    return Node(
        peer_id=peer_id,
        shared_dir=str(shared_dir or tmp_path / f"{peer_id}-shared"),
        buffer_dir=str(tmp_path / f"{peer_id}-buffer"),
        serving_port=0,
        discovery_port=0,
        broadcast_address="127.0.0.1",
    )


def link(sender: Node, receiver: Node) -> None:
    def deliver(data):
        receiver.discovery.handle_packet(data, ("127.0.0.1", sender.discovery.port))

    sender.discovery._send_raw = deliver


@pytest.fixture
def nodes(tmp_path, shared_dir):
    seeder = make_node("seeder", tmp_path, shared_dir)
    leecher = make_node("leecher", tmp_path)
    link(seeder, leecher)
    link(leecher, seeder)
    seeder.start()
    leecher.start()
    yield seeder, leecher
    leecher.stop()
    seeder.stop()


class TestNode:
    def test_start_indexes_shared_dir(self, nodes, sample_entry):
        seeder, leecher = nodes
        assert seeder.catalog.get(sample_entry.file_hash) is not None
        assert len(leecher.catalog) == 0
        assert seeder.server.port and leecher.server.port

    def test_peers_discover_each_other(self, nodes):
        seeder, leecher = nodes
        assert wait_for(lambda: [p.peer_id for p in leecher.peers()] == ["seeder"])
        record = leecher.directory.get("seeder")
        assert (record.address, record.port) == ("127.0.0.1", seeder.server.port)

    def test_search_collects_hit(self, nodes, sample_entry):
        seeder, leecher = nodes
        found = []
        leecher.on_search_result = found.append

        leecher.search("  Buck_Bunny ")

        assert wait_for(lambda: found)
        result = leecher.search_results()[0]
        assert result.file_hash == sample_entry.file_hash
        assert result.peer_ids == ["seeder"]

    def test_blank_search_sends_nothing(self, nodes):
        seeder, leecher = nodes
        sent = []
        leecher.discovery._send_raw = sent.append
        leecher.search("   ")
        assert sent == []

    def test_download_and_reshare(self, nodes, sample_entry, sample_bytes):
        seeder, leecher = nodes
        done = threading.Event()
        leecher.on_transfer_complete = lambda name, file_hash: done.set()

        leecher.search("bunny")
        assert wait_for(lambda: leecher.search_results())
        state = leecher.download(sample_entry.file_hash)

        assert done.wait(10)
        with open(state.output_path, "rb") as f:
            assert f.read() == sample_bytes
        shared = leecher.catalog.get(sample_entry.file_hash)
        assert shared is not None
        assert shared.path == state.output_path

    def test_download_unknown_hash(self, nodes):
        _, leecher = nodes
        with pytest.raises(TransferError):
            leecher.download("0" * 64)

    def test_stop_clears_registries(self, nodes):
        seeder, leecher = nodes
        leecher.search("bunny")
        assert wait_for(lambda: leecher.search_results())
        seeder.discovery._send_raw = lambda data: None
        leecher.stop()
        assert leecher.peers() == []
        assert leecher.search_results() == []
        assert not leecher.discovery.running
