"""Structural edits on the conversation tree.

Every function takes the current :class:`~canopy.graph.models.GraphState` and
returns ``(new_state, effects)``; nothing here performs I/O.  All operations
keep the tree shape: the root is never removed, a removed node takes its whole
subtree (and every incident edge) with it, and new nodes hang off exactly one
parent.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Literal, Optional

from canopy.graph.active import refresh_active_path
from canopy.graph.documents import inherit_documents
from canopy.graph.effects import CreateBranchThread, Effect, Persist, ReleaseThread
from canopy.graph.models import (
    RESET_LABEL,
    ROOT_ID,
    Edge,
    GraphState,
    Node,
    NodeData,
    Position,
    edge_id_for,
    root_node,
)
from canopy.graph.paths import GraphIndex, path_messages

logger = logging.getLogger(__name__)

NodeKind = Literal["response", "branch"]

# Layout offsets for new children, relative to the source node
_BRANCH_DX = 350.0
_CHILD_DY = 250.0

_STRUCTURAL = {"add", "replace", "remove"}


# ---------------------------------------------------------------------------
# Change batches (as produced by the canvas)
# ---------------------------------------------------------------------------

@dataclass
class NodeChange:
    type: str
    id: Optional[str] = None
    item: Optional[Node] = None
    position: Optional[Position] = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> NodeChange:
        item = raw.get("item")
        position = raw.get("position")
        return cls(
            type=raw["type"],
            id=raw.get("id") or (item or {}).get("id"),
            item=Node.from_dict(item) if item else None,
            position=Position.from_dict(position) if position else None,
        )


@dataclass
class EdgeChange:
    type: str
    id: Optional[str] = None
    item: Optional[Edge] = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> EdgeChange:
        item = raw.get("item")
        return cls(
            type=raw["type"],
            id=raw.get("id") or (item or {}).get("id"),
            item=Edge.from_dict(item) if item else None,
        )


def apply_node_changes(
    state: GraphState, changes: list[NodeChange]
) -> tuple[GraphState, list[Effect]]:
    """Apply a batch of node deltas.

    Removal of ``root`` is dropped; any other removal cascades to the node's
    descendants and releases their threads.  Position / select / dimension
    deltas are layout only and do not schedule a save.
    """
    requested: list[str] = []
    others: list[NodeChange] = []
    for change in changes:
        if change.type == "remove":
            if change.id == ROOT_ID:
                logger.warning("Attempted to remove root node - blocked")
                continue
            if change.id:
                requested.append(change.id)
        else:
            others.append(change)

    index = GraphIndex(state.edges)
    removed = _with_descendants(index, requested)
    effects: list[Effect] = [ReleaseThread(node_id) for node_id in removed]
    if removed:
        logger.info(
            "Removing %d nodes (%d requested, rest descendants)", len(removed), len(requested)
        )

    new_state = _remove_nodes(state, index, set(removed))
    nodes = list(new_state.nodes)

    for change in others:
        if change.type == "add" and change.item is not None:
            if any(n.id == change.item.id for n in nodes):
                nodes = [change.item if n.id == change.item.id else n for n in nodes]
            else:
                nodes.append(change.item)
        elif change.type == "replace" and change.item is not None:
            nodes = [change.item if n.id == change.id else n for n in nodes]
        elif change.type == "position" and change.position is not None:
            nodes = [replace(n, position=change.position) if n.id == change.id else n for n in nodes]

    if not any(n.id == ROOT_ID for n in nodes):
        nodes.append(root_node())
        logger.debug("Root node restored after change batch")

    new_state = refresh_active_path(replace(new_state, nodes=nodes))
    if any(c.type in _STRUCTURAL for c in changes):
        effects.append(Persist())

    logger.info(
        "Node changes applied: nodes %d -> %d, edges %d -> %d",
        len(state.nodes), len(new_state.nodes), len(state.edges), len(new_state.edges),
    )
    return new_state, effects


def apply_edge_changes(
    state: GraphState, changes: list[EdgeChange]
) -> tuple[GraphState, list[Effect]]:
    """Apply a batch of edge deltas and refresh the active path."""
    edges = list(state.edges)
    for change in changes:
        if change.type == "remove":
            edges = [e for e in edges if e.id != change.id]
        elif change.type == "add" and change.item is not None:
            item = change.item
            if any(e.id == item.id or (e.source, e.target) == (item.source, item.target) for e in edges):
                logger.debug("Edge %s already present, skipped", item.id)
                continue
            edges.append(item)
        elif change.type == "replace" and change.item is not None:
            edges = [change.item if e.id == change.id else e for e in edges]

    new_state = refresh_active_path(replace(state, edges=edges))
    effects: list[Effect] = []
    if any(c.type in _STRUCTURAL for c in changes):
        effects.append(Persist())
    logger.debug("Edge changes applied: edges %d -> %d", len(state.edges), len(edges))
    return new_state, effects


# ---------------------------------------------------------------------------
# Tree operations
# ---------------------------------------------------------------------------

def create_node_and_edge(
    state: GraphState,
    source_id: str,
    label: str,
    kind: NodeKind,
    new_id: Optional[str] = None,
) -> tuple[GraphState, list[Effect], str]:
    """Hang a new, empty node under *source_id*.

    Returns:
        ``(new_state, effects, new_id)``.  ``new_id`` is ``""`` and the state
        is returned untouched when *source_id* does not exist.
    """
    source = state.get_node(source_id)
    if source is None:
        logger.error("Source node not found: %s", source_id)
        return state, [], ""

    nid = new_id or str(uuid.uuid4())
    position = Position(
        x=source.position.x + (_BRANCH_DX if kind == "branch" else 0.0),
        y=source.position.y + _CHILD_DY,
    )
    node = Node(id=nid, data=NodeData(label=label, chat_history=[]), position=position)
    edge = Edge(id=edge_id_for(source_id, nid), source=source_id, target=nid)

    effects: list[Effect] = []
    if kind == "branch":
        path = path_messages(state, source_id)
        documents = inherit_documents(path)
        logger.info(
            "Branch %s from %s inherits %d documents", nid, source_id, len(documents)
        )
        effects.append(CreateBranchThread(source_id, nid, path, documents))
    effects.append(Persist())

    new_state = refresh_active_path(
        replace(state, nodes=[*state.nodes, node], edges=[*state.edges, edge])
    )
    logger.info("Created %s node %s under %s", kind, nid, source_id)
    return new_state, effects, nid


def reset_node(state: GraphState, node_id: str) -> tuple[GraphState, list[Effect]]:
    """Drop every descendant of *node_id* and clear its own history and label."""
    if not state.has_node(node_id):
        logger.warning("Reset requested for unknown node %s", node_id)
        return state, []

    index = GraphIndex(state.edges)
    descendants = index.descendants(node_id)
    new_state = _remove_nodes(state, index, set(descendants))
    nodes = [
        n.with_history([]).with_label(RESET_LABEL) if n.id == node_id else n
        for n in new_state.nodes
    ]
    new_state = refresh_active_path(replace(new_state, nodes=nodes))

    # The node's own thread holds the cleared history as well.
    effects: list[Effect] = [ReleaseThread(i) for i in [node_id, *descendants]]
    effects.append(Persist())
    logger.info(
        "Reset node %s: removed %d descendants, %d nodes remain",
        node_id, len(descendants), len(new_state.nodes),
    )
    return new_state, effects


def delete_node_and_descendants(
    state: GraphState, node_id: str
) -> tuple[GraphState, list[Effect]]:
    """Remove *node_id* and its whole subtree.  No-op for the root."""
    if node_id == ROOT_ID:
        logger.warning("Cannot delete root node")
        return state, []
    if not state.has_node(node_id):
        logger.warning("Delete requested for unknown node %s", node_id)
        return state, []

    index = GraphIndex(state.edges)
    removed = [node_id, *index.descendants(node_id)]
    new_state = refresh_active_path(_remove_nodes(state, index, set(removed)))

    effects: list[Effect] = [ReleaseThread(i) for i in removed]
    effects.append(Persist())
    logger.info(
        "Deleted node %s with %d nodes in total, %d remain",
        node_id, len(removed), len(new_state.nodes),
    )
    return new_state, effects


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _with_descendants(index: GraphIndex, node_ids: list[str]) -> list[str]:
    ordered: list[str] = []
    seen: set[str] = set()
    for node_id in node_ids:
        for candidate in [node_id, *index.descendants(node_id)]:
            if candidate == ROOT_ID or candidate in seen:
                continue
            seen.add(candidate)
            ordered.append(candidate)
    return ordered


def _remove_nodes(state: GraphState, index: GraphIndex, removed: set[str]) -> GraphState:
    """Filter out *removed* nodes and incident edges; keep the focus valid."""
    if not removed:
        return state

    active = state.active_node_id
    if active in removed:
        # Move focus to the nearest ancestor that survives (root at worst).
        survivors = [a for a in index.ancestors(active) if a not in removed]
        active = survivors[-1] if survivors else ROOT_ID

    return replace(
        state,
        nodes=[n for n in state.nodes if n.id not in removed],
        edges=[e for e in state.edges if e.source not in removed and e.target not in removed],
        active_node_id=active,
    )
