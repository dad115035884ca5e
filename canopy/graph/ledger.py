"""Per-node message history.

Streaming model output arrives as a series of partial messages that overwrite
the node's last entry; only completed messages are persisted and trigger a
new node title.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Optional

from canopy.graph.effects import Effect, Persist, RegenerateTitle
from canopy.graph.models import GraphState, Message, Node

logger = logging.getLogger(__name__)

# Messages handed to the summariser when a node is retitled
TITLE_CONTEXT_MESSAGES = 4
FALLBACK_TITLE_LENGTH = 30
# Model id recorded on a reply that failed
ERROR_MODEL_ID = "error"


def fallback_title(content: str) -> str:
    """First 30 characters of *content*, ellipsised when cut."""
    if len(content) > FALLBACK_TITLE_LENGTH:
        return content[:FALLBACK_TITLE_LENGTH] + "..."
    return content


def append_message(
    state: GraphState,
    node_id: str,
    message: Message,
    is_partial: bool = False,
) -> tuple[GraphState, list[Effect]]:
    """Add *message* to the node's history.

    A partial message with the same role as the current last entry replaces
    that entry's content in place (its attachments are kept).  Anything else
    is appended.
    """
    node = state.get_node(node_id)
    if node is None:
        logger.warning("Message for unknown node %s dropped", node_id)
        return state, []

    history = node.data.chat_history
    last = history[-1] if history else None
    if is_partial and last is not None and last.role == message.role:
        updated = [*history[:-1], replace(last, content=message.content)]
    else:
        updated = [*history, message]

    logger.debug(
        "Node %s history %d -> %d (role=%s, partial=%s, %d chars)",
        node_id, len(history), len(updated), message.role, is_partial, len(message.content),
    )

    effects: list[Effect] = []
    if message.role == "model" and not is_partial:
        effects.append(
            RegenerateTitle(
                node_id=node_id,
                recent_messages=updated[-TITLE_CONTEXT_MESSAGES:],
                fallback=fallback_title(message.content),
            )
        )
    if not is_partial:
        effects.append(Persist())

    return _with_node(state, node_id, lambda n: n.with_history(updated)), effects


def replace_last_message(
    state: GraphState,
    node_id: str,
    content: str,
    model_id: Optional[str] = None,
) -> tuple[GraphState, list[Effect]]:
    """Overwrite the content of the node's last model message.

    Nothing changes unless the last message is a model message and, when
    *model_id* is given, was produced by that model.  Live-streaming only, so
    no save is scheduled.
    """
    node = state.get_node(node_id)
    if node is None or not node.data.chat_history:
        return state, []

    last = node.data.chat_history[-1]
    if last.role != "model" or (model_id is not None and last.model_id != model_id):
        logger.debug(
            "Stale update for node %s ignored (last role=%s, model=%s, expected=%s)",
            node_id, last.role, last.model_id, model_id,
        )
        return state, []

    updated = [*node.data.chat_history[:-1], replace(last, content=content)]
    return _with_node(state, node_id, lambda n: n.with_history(updated)), []


def complete_last_message(
    state: GraphState,
    node_id: str,
    model_id: Optional[str] = None,
) -> tuple[GraphState, list[Effect]]:
    """Mark the end of a stream: retitle the node and persist the final text."""
    node = state.get_node(node_id)
    if node is None or not node.data.chat_history:
        return state, []

    history = node.data.chat_history
    last = history[-1]
    if last.role != "model" or (model_id is not None and last.model_id != model_id):
        return state, []

    return state, [
        RegenerateTitle(
            node_id=node_id,
            recent_messages=history[-TITLE_CONTEXT_MESSAGES:],
            fallback=fallback_title(last.content),
        ),
        Persist(),
    ]


def fail_last_message(
    state: GraphState,
    node_id: str,
    error_text: str,
    model_id: Optional[str] = None,
) -> tuple[GraphState, list[Effect]]:
    """End a stream that broke: its partial reply becomes *error_text*.

    The message is re-tagged with :data:`ERROR_MODEL_ID` and saved; the node
    keeps its title.
    """
    node = state.get_node(node_id)
    if node is None or not node.data.chat_history:
        return state, []

    history = node.data.chat_history
    last = history[-1]
    if last.role != "model" or (model_id is not None and last.model_id != model_id):
        logger.debug("Failure for node %s ignored, its stream message is gone", node_id)
        return state, []

    failed = Message(role="model", content=error_text, model_id=ERROR_MODEL_ID)
    updated = [*history[:-1], failed]
    return _with_node(state, node_id, lambda n: n.with_history(updated)), [Persist()]


def drop_last_message(state: GraphState, node_id: str) -> tuple[GraphState, list[Effect]]:
    """Remove the node's most recent message (rollback of a failed send)."""
    node = state.get_node(node_id)
    if node is None:
        return state, []

    history = node.data.chat_history
    logger.info("Removing last message from node %s (%d messages)", node_id, len(history))
    return _with_node(state, node_id, lambda n: n.with_history(history[:-1])), [Persist()]


def set_node_label(state: GraphState, node_id: str, label: str) -> tuple[GraphState, list[Effect]]:
    """Rename a node."""
    if not state.has_node(node_id):
        logger.debug("Label for unknown node %s dropped", node_id)
        return state, []
    return _with_node(state, node_id, lambda n: n.with_label(label)), [Persist()]


def _with_node(state: GraphState, node_id: str, update: Callable[[Node], Node]) -> GraphState:
    return replace(
        state,
        nodes=[update(n) if n.id == node_id else n for n in state.nodes],
    )
