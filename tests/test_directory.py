"""
Tests for directory.py — the peer registry, query answering and hit collection.
"""

import pytest

from swarmcast.config import BASE_PORT, RESPONSE_TTL
from swarmcast.directory import PeerDirectory, SearchResults
from swarmcast.protocol import Query, QueryHit


@pytest.fixture
def events():
    return {"new": [], "lost": [], "hits": [], "sent": []}


@pytest.fixture
def directory(catalog, events):
    return PeerDirectory(
        "me",
        catalog=catalog,
        send=lambda message, ttl: events["sent"].append((message, ttl)),
        serving_port=lambda: 50042,
        on_new_peer=events["new"].append,
        on_peer_lost=events["lost"].append,
        on_search_hit=events["hits"].append,
        peer_timeout=30,
    )


class TestRegistry:
    def test_new_peer_inserted_and_notified_once(self, directory, events):
        directory.on_peer_found("p1", "10.0.0.1", 50010)
        directory.on_peer_found("p1", "10.0.0.1", 50010)
        assert len(directory) == 1
        assert [r.peer_id for r in events["new"]] == ["p1"]

    def test_last_sighting_wins(self, directory):
        directory.on_peer_found("p1", "10.0.0.1", 50010)
        directory.on_peer_found("p1", "10.0.0.7", 50011)
        record = directory.get("p1")
        assert (record.address, record.port) == ("10.0.0.7", 50011)

    def test_sighting_without_port_keeps_port(self, directory):
        directory.on_peer_found("p1", "10.0.0.1", 50010)
        directory.on_peer_found("p1", "10.0.0.2")
        record = directory.get("p1")
        assert (record.address, record.port) == ("10.0.0.2", 50010)

    def test_unknown_port_defaults_to_base_port(self, directory):
        assert directory.on_peer_found("p1", "10.0.0.1").port == BASE_PORT

    def test_refresh_updates_last_seen(self, directory):
        first = directory.on_peer_found("p1", "10.0.0.1", 50010).last_seen
        second = directory.on_peer_found("p1", "10.0.0.1", 50010).last_seen
        assert second >= first

    def test_returned_records_are_copies(self, directory):
        directory.on_peer_found("p1", "10.0.0.1", 50010)
        directory.get("p1").port = 1
        directory.peers()[0].address = "nowhere"
        record = directory.get("p1")
        assert (record.address, record.port) == ("10.0.0.1", 50010)

    def test_unknown_peer(self, directory):
        assert directory.get("ghost") is None

    def test_stop_clears(self, directory):
        directory.start()
        directory.on_peer_found("p1", "10.0.0.1", 50010)
        directory.stop()
        assert len(directory) == 0
        assert directory.peers() == []


class TestEviction:
    def test_stale_peers_removed_and_reported(self, directory, events):
        old = directory.on_peer_found("old", "10.0.0.1", 50010)
        fresh = directory.on_peer_found("fresh", "10.0.0.2", 50011)
        now = max(old.last_seen, fresh.last_seen)
        directory._peers["old"].last_seen = now - 31

        removed = directory.evict_stale(now=now)

        assert [r.peer_id for r in removed] == ["old"]
        assert [r.peer_id for r in events["lost"]] == ["old"]
        assert directory.get("old") is None
        assert directory.get("fresh") is not None

    def test_nothing_stale(self, directory, events):
        record = directory.on_peer_found("p1", "10.0.0.1", 50010)
        assert directory.evict_stale(now=record.last_seen + 5) == []
        assert events["lost"] == []

    def test_evicted_peer_is_new_again(self, directory, events):
        record = directory.on_peer_found("p1", "10.0.0.1", 50010)
        directory.evict_stale(now=record.last_seen + 60)
        directory.on_peer_found("p1", "10.0.0.1", 50010)
        assert len(events["new"]) == 2


class TestQueries:
    def test_matching_query_answered(self, directory, events, sample_entry):
        directory.on_message_received(Query("p1", "BUNNY"), "10.0.0.1", 50000)

        assert len(events["sent"]) == 1
        hit, ttl = events["sent"][0]
        assert ttl == RESPONSE_TTL
        assert hit == QueryHit(
            "me", sample_entry.name, sample_entry.size, sample_entry.file_hash, 50042
        )

    def test_query_sender_recorded_without_port(self, directory):
        directory.on_peer_found("p1", "10.0.0.1", 50010)
        directory.on_message_received(Query("p1", "bunny"), "10.0.0.3", 41234)
        record = directory.get("p1")
        assert (record.address, record.port) == ("10.0.0.3", 50010)

    def test_unmatched_query_ignored(self, directory, events):
        directory.on_message_received(Query("p1", "nothing like it"), "10.0.0.1", 50000)
        assert events["sent"] == []

    def test_non_shared_extension_not_matched(self, directory, events):
        directory.on_message_received(Query("p1", "notes"), "10.0.0.1", 50000)
        assert events["sent"] == []

    def test_without_catalog_never_answers(self, events):
        directory = PeerDirectory("me", send=lambda m, t: events["sent"].append(m))
        directory.on_message_received(Query("p1", "bunny"), "10.0.0.1", 50000)
        assert events["sent"] == []


class TestHits:
    def test_hit_reported_and_sender_recorded(self, directory, events):
        hit = QueryHit("p2", "a.mp4", 10, "ff", 50003)
        directory.on_message_received(hit, "10.0.0.2", 50000)
        assert events["hits"] == [hit]
        record = directory.get("p2")
        assert (record.address, record.port) == ("10.0.0.2", 50003)

    def test_hit_port_overrides_earlier_guess(self, directory):
        directory.on_message_received(Query("p2", "x"), "10.0.0.2", 50000)
        assert directory.get("p2").port == BASE_PORT
        directory.on_message_received(QueryHit("p2", "a.mp4", 10, "ff", 50077), "10.0.0.2", 50000)
        assert directory.get("p2").port == 50077


class TestSearchResults:
    def test_grouped_by_hash_without_duplicates(self):
        results = SearchResults()
        results.add(QueryHit("p1", "a.mp4", 10, "ff"))
        results.add(QueryHit("p2", "a.mp4", 10, "ff"))
        merged = results.add(QueryHit("p1", "a.mp4", 10, "ff"))
        assert merged.peer_ids == ["p1", "p2"]
        assert [r.file_hash for r in results.all()] == ["ff"]

    def test_distinct_hashes_kept_apart(self):
        results = SearchResults()
        results.add(QueryHit("p1", "a.mp4", 10, "aa"))
        results.add(QueryHit("p1", "a.mp4", 10, "bb"))
        assert len(results.all()) == 2

    def test_get_and_clear(self):
        results = SearchResults()
        results.add(QueryHit("p1", "a.mp4", 10, "ff"))
        results.get("ff").peer_ids.append("mutated")
        assert results.get("ff").peer_ids == ["p1"]
        results.clear()
        assert results.get("ff") is None
