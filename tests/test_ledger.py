"""Tests for the per-node message ledger and the active-path tracker."""

from __future__ import annotations

import pytest

from canopy.graph.active import set_active_node
from canopy.graph.effects import Persist, RegenerateTitle
from canopy.graph.ledger import (
    ERROR_MODEL_ID,
    append_message,
    complete_last_message,
    drop_last_message,
    fail_last_message,
    fallback_title,
    replace_last_message,
    set_node_label,
)
from canopy.graph.models import ROOT_ID, Attachment, Edge, GraphState, Message, Node, NodeData, root_node


@pytest.fixture()
def state() -> GraphState:
    """root → A, A holds one user message."""
    a = Node(id="A", data=NodeData(label="A", chat_history=[Message(role="user", content="hi")]))
    return GraphState(nodes=[root_node(), a], edges=[Edge(id="e-root-A", source=ROOT_ID, target="A")])


def _history(state: GraphState, node_id: str = "A") -> list[Message]:
    return state.get_node(node_id).data.chat_history


# ---------------------------------------------------------------------------
# append_message
# ---------------------------------------------------------------------------

class TestAppendMessage:
    def test_partial_same_role_replaces_in_place(self, state):
        state, _ = append_message(state, "A", Message(role="model", content="He"), is_partial=True)
        assert len(_history(state)) == 2
        state, effects = append_message(state, "A", Message(role="model", content="Hello"), is_partial=True)
        assert len(_history(state)) == 2
        assert _history(state)[-1].content == "Hello"
        assert effects == []

    def test_partial_replace_keeps_original_attachments(self):
        att = Attachment(name="a.txt", type="text/plain", data="YQ==")
        node = Node(id="A", data=NodeData(label="A", chat_history=[Message(role="user", content="x", attachments=[att])]))
        state = GraphState(nodes=[root_node(), node])
        state, _ = append_message(state, "A", Message(role="user", content="xy"), is_partial=True)
        assert _history(state)[-1].content == "xy"
        assert _history(state)[-1].attachments == [att]

    def test_partial_different_role_appends(self, state):
        state, effects = append_message(state, "A", Message(role="model", content="..."), is_partial=True)
        assert len(_history(state)) == 2
        assert effects == []

    def test_non_partial_always_appends(self, state):
        state, effects = append_message(state, "A", Message(role="user", content="again"))
        assert len(_history(state)) == 2
        assert effects == [Persist()]

    def test_completed_model_message_requests_title(self, state):
        reply = "A rather long answer that goes beyond thirty characters"
        state, effects = append_message(state, "A", Message(role="model", content=reply))
        titles = [e for e in effects if isinstance(e, RegenerateTitle)]
        assert len(titles) == 1
        assert titles[0].node_id == "A"
        assert [m.content for m in titles[0].recent_messages] == ["hi", reply]
        assert titles[0].fallback == reply[:30] + "..."
        assert Persist() in effects

    def test_title_context_is_last_four_messages(self, state):
        for i in range(4):
            state, effects = append_message(state, "A", Message(role="model" if i % 2 else "user", content=str(i)))
        title = next(e for e in effects if isinstance(e, RegenerateTitle))
        assert [m.content for m in title.recent_messages] == ["0", "1", "2", "3"]

    def test_unknown_node_is_noop(self, state):
        new_state, effects = append_message(state, "missing", Message(role="user", content="x"))
        assert new_state is state
        assert effects == []


# ---------------------------------------------------------------------------
# replace / complete / drop
# ---------------------------------------------------------------------------

class TestReplaceLastMessage:
    def test_replaces_model_message(self, state):
        state, _ = append_message(state, "A", Message(role="model", content="", model_id="s1"), is_partial=True)
        state, effects = replace_last_message(state, "A", "streamed", "s1")
        assert _history(state)[-1].content == "streamed"
        assert effects == []

    def test_ignores_user_message(self, state):
        new_state, _ = replace_last_message(state, "A", "overwrite")
        assert new_state is state
        assert _history(state)[-1].content == "hi"

    def test_stale_model_id_is_ignored(self, state):
        state, _ = append_message(state, "A", Message(role="model", content="new", model_id="s2"))
        new_state, _ = replace_last_message(state, "A", "stale", "s1")
        assert _history(new_state)[-1].content == "new"

    def test_no_filter_matches_any_model(self, state):
        state, _ = append_message(state, "A", Message(role="model", content="x", model_id="s2"))
        state, _ = replace_last_message(state, "A", "y")
        assert _history(state)[-1].content == "y"


class TestCompleteLastMessage:
    def test_emits_title_and_persist(self, state):
        state, _ = append_message(state, "A", Message(role="model", content="done", model_id="s1"), is_partial=True)
        new_state, effects = complete_last_message(state, "A", "s1")
        assert new_state is state
        assert isinstance(effects[0], RegenerateTitle)
        assert effects[0].fallback == "done"
        assert effects[1] == Persist()

    def test_guarded_by_model_id(self, state):
        state, _ = append_message(state, "A", Message(role="model", content="x", model_id="s2"))
        _, effects = complete_last_message(state, "A", "s1")
        assert effects == []


class TestFailLastMessage:
    def test_partial_becomes_error_and_persists(self, state):
        state, _ = append_message(state, "A", Message(role="model", content="half", model_id="s1"), is_partial=True)
        new_state, effects = fail_last_message(state, "A", "Error: dropped", "s1")
        last = _history(new_state)[-1]
        assert (last.role, last.content, last.model_id) == ("model", "Error: dropped", ERROR_MODEL_ID)
        assert len(_history(new_state)) == 2
        assert effects == [Persist()]

    def test_guarded_by_model_id(self, state):
        state, _ = append_message(state, "A", Message(role="model", content="newer", model_id="s2"))
        new_state, effects = fail_last_message(state, "A", "Error: dropped", "s1")
        assert new_state is state
        assert effects == []

    def test_ignores_user_message(self, state):
        new_state, effects = fail_last_message(state, "A", "Error: dropped")
        assert new_state is state
        assert effects == []


class TestDropLastMessage:
    def test_removes_last_and_persists(self, state):
        state, effects = drop_last_message(state, "A")
        assert _history(state) == []
        assert effects == [Persist()]

    def test_unknown_node(self, state):
        new_state, effects = drop_last_message(state, "missing")
        assert new_state is state
        assert effects == []


class TestLabels:
    def test_set_node_label(self, state):
        state, effects = set_node_label(state, "A", "Renamed")
        assert state.get_node("A").data.label == "Renamed"
        assert effects == [Persist()]

    @pytest.mark.parametrize(
        "content, expected",
        [("short", "short"), ("x" * 30, "x" * 30), ("y" * 31, "y" * 30 + "...")],
    )
    def test_fallback_title(self, content, expected):
        assert fallback_title(content) == expected


# ---------------------------------------------------------------------------
# Active path
# ---------------------------------------------------------------------------

class TestSetActiveNode:
    def test_sets_node_and_path(self, state):
        new_state, effects = set_active_node(state, "A")
        assert new_state.active_node_id == "A"
        assert new_state.active_path.node_ids == [ROOT_ID, "A"]
        assert new_state.active_path.edge_ids == ["e-root-A"]
        assert effects == [Persist()]

    def test_none_clears(self, state):
        new_state, effects = set_active_node(state, None)
        assert new_state.active_node_id is None
        assert new_state.active_path.node_ids == []
        assert new_state.active_path.edge_ids == []
        assert effects == [Persist()]

    def test_unknown_node_is_noop(self, state):
        focused, _ = set_active_node(state, "A")
        new_state, effects = set_active_node(focused, "missing")
        assert new_state is focused
        assert effects == []
