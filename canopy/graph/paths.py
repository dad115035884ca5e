"""Ancestry paths over the edge list.

The graph is kept as a flat edge list (the shape the canvas works with);
:class:`GraphIndex` turns it into parent / children lookups once per query so
path walks and cascades do not rescan the edges on every hop.

Multiple incoming edges on one node break the tree invariant.  When it
happens the parent map keeps the *last* such edge, the ``(source, target)``
edge-id lookup keeps the *first*, and the offending targets are listed in
:attr:`GraphIndex.duplicate_parents`.
"""

from __future__ import annotations

import logging
from collections import deque

from canopy.graph.models import Edge, GraphState, Message

logger = logging.getLogger(__name__)


class GraphIndex:
    """Parent / children / edge-id lookups built from an edge list."""

    def __init__(self, edges: list[Edge]) -> None:
        self.parent: dict[str, str] = {}
        self.children: dict[str, list[str]] = {}
        self.edge_ids: dict[tuple[str, str], str] = {}
        self.duplicate_parents: set[str] = set()

        for edge in edges:
            if edge.target in self.parent:
                self.duplicate_parents.add(edge.target)
            self.parent[edge.target] = edge.source
            self.children.setdefault(edge.source, []).append(edge.target)
            self.edge_ids.setdefault((edge.source, edge.target), edge.id)

        if self.duplicate_parents:
            logger.warning(
                "Graph has nodes with several incoming edges: %s",
                sorted(self.duplicate_parents),
            )

    def ancestors(self, node_id: str) -> list[str]:
        """Return the root-first chain ending at *node_id* (inclusive)."""
        if not node_id:
            return []
        path = [node_id]
        seen = {node_id}
        current = self.parent.get(node_id)
        while current is not None:
            if current in seen:
                logger.warning("Cycle detected while resolving path to %s at %s", node_id, current)
                break
            path.append(current)
            seen.add(current)
            current = self.parent.get(current)
        path.reverse()
        return path

    def descendants(self, node_id: str) -> list[str]:
        """Breadth-first list of the strict descendants of *node_id*."""
        found: list[str] = []
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for child in self.children.get(current, []):
                if child not in seen:
                    seen.add(child)
                    found.append(child)
                    queue.append(child)
        return found


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def path_node_ids(state: GraphState, target_id: str) -> list[str]:
    """Return the node ids from the root down to *target_id*."""
    return GraphIndex(state.edges).ancestors(target_id)


def path_edge_ids(state: GraphState, target_id: str) -> list[str]:
    """Return the ids of the edges joining consecutive nodes of the path."""
    return _edge_ids_for(GraphIndex(state.edges), target_id)


def resolve_path(state: GraphState, target_id: str) -> tuple[list[str], list[str]]:
    """Return ``(node_ids, edge_ids)`` for *target_id* from a single index build."""
    index = GraphIndex(state.edges)
    return index.ancestors(target_id), _edge_ids_for(index, target_id)


def path_messages(state: GraphState, target_id: str) -> list[Message]:
    """Concatenate every message of every node on the path, root first.

    Attachments are carried over; the producing ``model_id`` is not part of
    the conversational context and is left out.
    """
    messages: list[Message] = []
    for node_id in path_node_ids(state, target_id):
        node = state.get_node(node_id)
        if node is None:
            continue
        for msg in node.data.chat_history:
            messages.append(
                Message(role=msg.role, content=msg.content, attachments=list(msg.attachments))
            )
    logger.debug(
        "Path to %s assembled: %d messages", target_id, len(messages)
    )
    return messages


def _edge_ids_for(index: GraphIndex, target_id: str) -> list[str]:
    node_ids = index.ancestors(target_id)
    edge_ids: list[str] = []
    for source, target in zip(node_ids, node_ids[1:]):
        edge_id = index.edge_ids.get((source, target))
        if edge_id is not None:
            edge_ids.append(edge_id)
    return edge_ids
