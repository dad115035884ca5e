"""Tests for snapshot serialisation and the in-memory session tier."""

from __future__ import annotations

import json

import pytest

from canopy.graph.models import ROOT_ID, Attachment, Edge, GraphState, Message, Node, NodeData, root_node
from canopy.persistence.session import (
    SESSION_STORAGE_KEY,
    SESSION_VERSION,
    QuotaExceededError,
    SessionStorage,
    build_session_data,
    clear_session_data,
    load_session_data,
    save_session_data,
)
from canopy.persistence.snapshot import (
    STORAGE_VERSION,
    TRUNCATION_MARKER,
    InvalidSnapshotError,
    build_snapshot,
    compact_snapshot,
    restore_state,
    serialize_snapshot,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def state() -> GraphState:
    doc = Attachment(name="a.txt", type="text/plain", data="YQ==")
    a = Node(
        id="A",
        data=NodeData(
            label="A",
            chat_history=[
                Message(role="user", content="q", attachments=[doc]),
                Message(role="model", content="r", model_id="m"),
            ],
        ),
    )
    return GraphState(
        nodes=[root_node(), a],
        edges=[Edge(id="e-root-A", source=ROOT_ID, target="A")],
        active_node_id="A",
    )


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

class TestBuildSnapshot:
    def test_metadata(self, state):
        snap = build_snapshot(state, name="Work", created_at=123)
        assert snap["name"] == "Work"
        assert snap["version"] == STORAGE_VERSION
        assert snap["activeNodeId"] == "A"
        meta = snap["metadata"]
        assert meta["totalMessages"] == 2
        assert meta["totalAttachments"] == 1
        assert meta["createdAt"] == 123
        assert meta["lastModified"] >= 123
        assert meta["dataSize"] > 0

    def test_is_json_serialisable(self, state):
        snap = build_snapshot(state)
        assert json.loads(serialize_snapshot(snap))["nodes"][1]["data"]["chatHistory"][1]["modelId"] == "m"


class TestRestoreState:
    def test_round_trip(self, state):
        restored = restore_state(build_snapshot(state))
        assert [n.id for n in restored.nodes] == [ROOT_ID, "A"]
        assert restored.edges == state.edges
        assert restored.active_node_id == "A"
        assert restored.active_path.node_ids == [ROOT_ID, "A"]
        assert restored.get_node("A").data.chat_history == state.get_node("A").data.chat_history

    def test_missing_root_synthesised_first(self):
        data = {"nodes": [{"id": "A", "data": {"label": "A"}}], "edges": [], "version": STORAGE_VERSION}
        restored = restore_state(data)
        assert [n.id for n in restored.nodes] == [ROOT_ID, "A"]

    def test_version_mismatch_still_loads(self, state, caplog):
        snap = build_snapshot(state)
        snap["version"] = "0.9.0"
        restored = restore_state(snap)
        assert len(restored.nodes) == 2
        assert "version mismatch" in caplog.text

    def test_unknown_active_node_cleared(self, state):
        snap = build_snapshot(state)
        snap["activeNodeId"] = "ghost"
        restored = restore_state(snap)
        assert restored.active_node_id is None
        assert restored.active_path.node_ids == []

    @pytest.mark.parametrize(
        "data",
        [None, [], {"nodes": []}, {"nodes": {}, "edges": []}, {"nodes": [{"data": {}}], "edges": []}],
    )
    def test_invalid_data_raises(self, data):
        with pytest.raises(InvalidSnapshotError):
            restore_state(data)


class TestCompactSnapshot:
    def test_truncates_long_content_and_drops_large_attachments(self):
        big = Attachment(name="big.pdf", type="application/pdf", data="x" * 100_000)
        small = Attachment(name="s.txt", type="text/plain", data="eA==")
        node = root_node().with_history(
            [Message(role="user", content="c" * 10_050, attachments=[big, small])]
        )
        compacted = compact_snapshot(build_snapshot(GraphState(nodes=[node])))
        msg = compacted["nodes"][0]["data"]["chatHistory"][0]
        assert msg["content"] == "c" * 10_000 + TRUNCATION_MARKER
        assert [a["name"] for a in msg["attachments"]] == ["s.txt"]

    def test_short_content_untouched(self, state):
        compacted = compact_snapshot(build_snapshot(state))
        history = compacted["nodes"][1]["data"]["chatHistory"]
        assert [m["content"] for m in history] == ["q", "r"]
        assert [a["name"] for a in history[0]["attachments"]] == ["a.txt"]


# ---------------------------------------------------------------------------
# Session tier
# ---------------------------------------------------------------------------

class TestSessionStorage:
    def test_capacity_enforced(self):
        store = SessionStorage(capacity=10)
        store.set_item("k", "12345")
        with pytest.raises(QuotaExceededError):
            store.set_item("other", "123456")
        # The old value still occupies space while it is being replaced.
        with pytest.raises(QuotaExceededError):
            store.set_item("k", "123456")
        store.remove_item("k")
        store.set_item("k", "1234567890")
        assert store.used_bytes() == 10


class TestSessionData:
    def test_save_and_load(self, state):
        store = SessionStorage(capacity=1_000_000)
        assert save_session_data(store, build_session_data(state))
        data = load_session_data(store)
        assert data["version"] == SESSION_VERSION
        assert data["activeNodeId"] == "A"
        assert restore_state(data, current_version=SESSION_VERSION).active_path.node_ids == [ROOT_ID, "A"]

    def test_oversized_saved_compacted(self):
        node = root_node().with_history([Message(role="user", content="z" * 20_000)])
        data = build_session_data(GraphState(nodes=[node]))
        store = SessionStorage(capacity=1_000_000)
        assert save_session_data(store, data, max_bytes=15_000)
        stored = json.loads(store.get_item(SESSION_STORAGE_KEY))
        assert stored["nodes"][0]["data"]["chatHistory"][0]["content"].endswith(TRUNCATION_MARKER)

    def test_still_oversized_fails_without_partial_write(self):
        store = SessionStorage(capacity=1_000_000)
        store.set_item(SESSION_STORAGE_KEY, "previous")
        nodes = [
            Node(id=f"n{i}", data=NodeData(label="x", chat_history=[Message(role="user", content="y" * 9_000)]))
            for i in range(5)
        ]
        data = build_session_data(GraphState(nodes=[root_node(), *nodes]))
        assert save_session_data(store, data, max_bytes=10_000) is False
        assert store.get_item(SESSION_STORAGE_KEY) == "previous"

    def test_quota_retry_after_clearing_previous_entry(self, state):
        data = build_session_data(state)
        size = len(serialize_snapshot(data))
        store = SessionStorage(capacity=size + 5)
        store.set_item(SESSION_STORAGE_KEY, "p" * 10)
        assert save_session_data(store, data) is True
        assert json.loads(store.get_item(SESSION_STORAGE_KEY))["activeNodeId"] == "A"

    def test_quota_failure_after_retry(self, state):
        data = build_session_data(state)
        store = SessionStorage(capacity=len(serialize_snapshot(data)) + 5)
        store.set_item("unrelated", "u" * 10)
        assert save_session_data(store, data) is False
        assert store.get_item(SESSION_STORAGE_KEY) is None

    def test_load_missing_or_invalid(self):
        store = SessionStorage()
        assert load_session_data(store) is None
        store.set_item(SESSION_STORAGE_KEY, "{not json")
        assert load_session_data(store) is None
        store.set_item(SESSION_STORAGE_KEY, json.dumps({"nodes": "bad", "edges": []}))
        assert load_session_data(store) is None

    def test_clear(self, state):
        store = SessionStorage()
        save_session_data(store, build_session_data(state))
        clear_session_data(store)
        assert load_session_data(store) is None
