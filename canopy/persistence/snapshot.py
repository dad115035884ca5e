"""Graph snapshots: the unit both storage tiers persist.

Snapshot shape::

    {
        "name": "My workspace",
        "nodes": [...], "edges": [...], "activeNodeId": "root" | null,
        "timestamp": 1700000000000,          # epoch milliseconds
        "version": "2.0.0",
        "metadata": {
            "totalMessages": 12, "totalAttachments": 1,
            "createdAt": 1700000000000, "lastModified": 1700000000000,
            "dataSize": 5321                 # serialised length
        }
    }
"""

from __future__ import annotations

import json
import logging
from time import time
from typing import Any, Optional

from canopy.graph.active import refresh_active_path
from canopy.graph.models import ROOT_ID, Edge, GraphState, Node, root_node

logger = logging.getLogger(__name__)

STORAGE_VERSION = "2.0.0"

# Compaction limits for oversized snapshots
MAX_CONTENT_CHARS = 10_000
MAX_ATTACHMENT_CHARS = 100_000
TRUNCATION_MARKER = "...[truncated]"


class InvalidSnapshotError(ValueError):
    """Raised when stored data does not have the snapshot structure."""


def now_ms() -> int:
    return int(time() * 1000)


def serialize_snapshot(snapshot: dict[str, Any]) -> str:
    return json.dumps(snapshot, separators=(",", ":"), ensure_ascii=False)


def build_snapshot(
    state: GraphState,
    name: str = "Current Workspace",
    created_at: Optional[int] = None,
    version: str = STORAGE_VERSION,
) -> dict[str, Any]:
    """Serialise *state* with derived metadata (message / attachment counts)."""
    stamp = now_ms()
    total_messages = sum(len(n.data.chat_history) for n in state.nodes)
    total_attachments = sum(
        len(m.attachments) for n in state.nodes for m in n.data.chat_history
    )
    snapshot: dict[str, Any] = {
        "name": name,
        "nodes": [n.to_dict() for n in state.nodes],
        "edges": [e.to_dict() for e in state.edges],
        "activeNodeId": state.active_node_id,
        "timestamp": stamp,
        "version": version,
        "metadata": {
            "totalMessages": total_messages,
            "totalAttachments": total_attachments,
            "createdAt": created_at or stamp,
            "lastModified": stamp,
            "dataSize": 0,
        },
    }
    snapshot["metadata"]["dataSize"] = len(serialize_snapshot(snapshot))
    return snapshot


def compact_snapshot(
    snapshot: dict[str, Any],
    content_limit: int = MAX_CONTENT_CHARS,
    attachment_limit: int = MAX_ATTACHMENT_CHARS,
) -> dict[str, Any]:
    """Return a copy with long message bodies cut and large attachments dropped."""
    nodes = []
    for node in snapshot.get("nodes", []):
        data = node.get("data") or {}
        history = []
        for msg in data.get("chatHistory") or []:
            content = msg.get("content", "")
            if len(content) > content_limit:
                content = content[:content_limit] + TRUNCATION_MARKER
            attachments = [
                a for a in msg.get("attachments") or [] if len(a.get("data", "")) < attachment_limit
            ]
            history.append({**msg, "content": content, "attachments": attachments})
        nodes.append({**node, "data": {**data, "chatHistory": history}})
    return {**snapshot, "nodes": nodes}


def restore_state(data: Any, current_version: str = STORAGE_VERSION) -> GraphState:
    """Rebuild a :class:`GraphState` from stored snapshot *data*.

    A missing root is synthesised at the front of the node list, a version
    mismatch is logged but loaded anyway, and an ``activeNodeId`` that names
    no node is dropped.

    Raises:
        InvalidSnapshotError: If ``nodes`` / ``edges`` are not lists or a
            record cannot be parsed.
    """
    if not isinstance(data, dict):
        raise InvalidSnapshotError("Snapshot must be a JSON object")
    raw_nodes = data.get("nodes")
    raw_edges = data.get("edges")
    if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
        raise InvalidSnapshotError("Snapshot 'nodes' and 'edges' must be arrays")

    version = data.get("version")
    if version != current_version:
        logger.warning(
            "Snapshot version mismatch: stored=%s current=%s (loading anyway)",
            version, current_version,
        )

    try:
        nodes = [Node.from_dict(n) for n in raw_nodes]
        edges = [Edge.from_dict(e) for e in raw_edges]
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise InvalidSnapshotError(f"Malformed snapshot record: {exc}") from exc

    if not any(n.id == ROOT_ID for n in nodes):
        nodes.insert(0, root_node())
        logger.debug("Added missing root node to restored snapshot")

    active = data.get("activeNodeId")
    if active is not None and not any(n.id == active for n in nodes):
        logger.warning("Stored active node %s not found, clearing focus", active)
        active = None

    return refresh_active_path(GraphState(nodes=nodes, edges=edges, active_node_id=active))
