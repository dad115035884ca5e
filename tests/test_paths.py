"""Tests for path resolution over the conversation graph.

Covers the root-to-node walk, edge-id lookup, message concatenation, and the
behaviour under malformed graphs (several incoming edges, cycles, orphans).
"""

from __future__ import annotations

import pytest

from canopy.graph.models import ROOT_ID, Attachment, Edge, GraphState, Message, Node, NodeData, root_node
from canopy.graph.paths import GraphIndex, path_edge_ids, path_messages, path_node_ids, resolve_path


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _node(node_id: str, *messages: Message) -> Node:
    return Node(id=node_id, data=NodeData(label=node_id, chat_history=list(messages)))


def _edge(source: str, target: str, edge_id: str | None = None) -> Edge:
    return Edge(id=edge_id or f"e-{source}-{target}", source=source, target=target)


@pytest.fixture()
def chain() -> GraphState:
    """root → A → B with messages [m1], [m2, m3], [m4]."""
    root = root_node().with_history([Message(role="user", content="m1")])
    a = _node(
        "A",
        Message(role="model", content="m2", model_id="gpt"),
        Message(
            role="user",
            content="m3",
            attachments=[Attachment(name="notes.txt", type="text/plain", data="aGk=")],
        ),
    )
    b = _node("B", Message(role="model", content="m4"))
    return GraphState(nodes=[root, a, b], edges=[_edge(ROOT_ID, "A"), _edge("A", "B")])


# ---------------------------------------------------------------------------
# Node and edge paths
# ---------------------------------------------------------------------------

class TestPathNodeIds:
    def test_chain_is_root_first(self, chain):
        assert path_node_ids(chain, "B") == [ROOT_ID, "A", "B"]

    def test_root_path_is_singleton(self, chain):
        assert path_node_ids(chain, ROOT_ID) == [ROOT_ID]

    def test_unknown_node_is_singleton(self, chain):
        assert path_node_ids(chain, "missing") == ["missing"]

    def test_empty_id_gives_empty_path(self, chain):
        assert path_node_ids(chain, "") == []

    def test_orphan_path_stops_at_orphan(self, chain):
        state = GraphState(nodes=[*chain.nodes, _node("X"), _node("Y")], edges=[*chain.edges, _edge("X", "Y")])
        assert path_node_ids(state, "Y") == ["X", "Y"]


class TestPathEdgeIds:
    def test_chain_edges_in_order(self, chain):
        assert path_edge_ids(chain, "B") == [f"e-{ROOT_ID}-A", "e-A-B"]

    def test_root_has_no_edges(self, chain):
        assert path_edge_ids(chain, ROOT_ID) == []

    def test_resolve_path_returns_both(self, chain):
        node_ids, edge_ids = resolve_path(chain, "B")
        assert node_ids == [ROOT_ID, "A", "B"]
        assert len(edge_ids) == 2


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class TestPathMessages:
    def test_concatenates_in_ancestor_order(self, chain):
        contents = [m.content for m in path_messages(chain, "B")]
        assert contents == ["m1", "m2", "m3", "m4"]

    def test_attachments_are_kept(self, chain):
        messages = path_messages(chain, "B")
        assert [a.name for a in messages[2].attachments] == ["notes.txt"]

    def test_model_id_is_dropped(self, chain):
        assert all(m.model_id is None for m in path_messages(chain, "B"))

    def test_unknown_node_has_no_messages(self, chain):
        assert path_messages(chain, "missing") == []


# ---------------------------------------------------------------------------
# Index behaviour under malformed graphs
# ---------------------------------------------------------------------------

class TestGraphIndex:
    def test_last_incoming_edge_wins_for_parent(self):
        index = GraphIndex([_edge(ROOT_ID, "A"), _edge(ROOT_ID, "B"), _edge("A", "C"), _edge("B", "C")])
        assert index.parent["C"] == "B"
        assert index.duplicate_parents == {"C"}
        assert index.ancestors("C") == [ROOT_ID, "B", "C"]

    def test_first_edge_wins_for_same_pair(self):
        index = GraphIndex([_edge(ROOT_ID, "A", "first"), _edge(ROOT_ID, "A", "second")])
        assert index.edge_ids[(ROOT_ID, "A")] == "first"

    def test_cycle_terminates(self):
        index = GraphIndex([_edge("A", "B"), _edge("B", "A")])
        assert index.ancestors("B") == ["A", "B"]

    def test_descendants_breadth_first(self):
        index = GraphIndex(
            [_edge(ROOT_ID, "A"), _edge(ROOT_ID, "B"), _edge("A", "A1"), _edge("B", "B1"), _edge("A1", "A2")]
        )
        assert index.descendants(ROOT_ID) == ["A", "B", "A1", "B1", "A2"]
        assert index.descendants("B") == ["B1"]
        assert index.descendants("leaf") == []

    def test_descendants_survive_cycles(self):
        index = GraphIndex([_edge("A", "B"), _edge("B", "A")])
        assert index.descendants("A") == ["B"]
