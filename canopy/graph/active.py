"""Active node tracking."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Optional

from canopy.graph.effects import Effect, Persist
from canopy.graph.models import ActivePath, GraphState
from canopy.graph.paths import resolve_path

logger = logging.getLogger(__name__)


def set_active_node(
    state: GraphState, node_id: Optional[str]
) -> tuple[GraphState, list[Effect]]:
    """Focus *node_id* (``None`` clears the focus) and recompute the active path.

    The active node is durable UI state, so every change is persisted.  An
    id that is not in the graph changes nothing.
    """
    if not node_id:
        logger.debug("Clearing active node (was %s)", state.active_node_id)
        return replace(state, active_node_id=None, active_path=ActivePath()), [Persist()]
    if not state.has_node(node_id):
        logger.warning("Cannot focus unknown node %s", node_id)
        return state, []

    node_ids, edge_ids = resolve_path(state, node_id)
    logger.debug(
        "Active node %s -> %s: %d nodes, %d edges on path",
        state.active_node_id, node_id, len(node_ids), len(edge_ids),
    )
    new_state = replace(
        state, active_node_id=node_id, active_path=ActivePath(node_ids, edge_ids)
    )
    return new_state, [Persist()]


def refresh_active_path(state: GraphState) -> GraphState:
    """Recompute the derived path for the current active node (no effects)."""
    if not state.active_node_id:
        return replace(state, active_path=ActivePath())
    node_ids, edge_ids = resolve_path(state, state.active_node_id)
    return replace(state, active_path=ActivePath(node_ids, edge_ids))
