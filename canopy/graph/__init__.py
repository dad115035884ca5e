"""Conversation graph package: models and pure state operations.

Public re-exports so callers can write::

    from canopy.graph import GraphState, create_node_and_edge, path_node_ids
"""

from canopy.graph.active import refresh_active_path, set_active_node
from canopy.graph.documents import inherit_documents, is_document
from canopy.graph.effects import CreateBranchThread, Effect, Persist, RegenerateTitle, ReleaseThread
from canopy.graph.ledger import (
    append_message,
    complete_last_message,
    drop_last_message,
    fail_last_message,
    fallback_title,
    replace_last_message,
    set_node_label,
)
from canopy.graph.models import (
    ROOT_ID,
    ActivePath,
    Attachment,
    Edge,
    GraphState,
    Message,
    Node,
    NodeData,
    Position,
    root_node,
)
from canopy.graph.mutations import (
    EdgeChange,
    NodeChange,
    apply_edge_changes,
    apply_node_changes,
    create_node_and_edge,
    delete_node_and_descendants,
    reset_node,
)
from canopy.graph.paths import GraphIndex, path_edge_ids, path_messages, path_node_ids, resolve_path

__all__ = [
    "ROOT_ID",
    "ActivePath",
    "Attachment",
    "CreateBranchThread",
    "Edge",
    "EdgeChange",
    "Effect",
    "GraphIndex",
    "GraphState",
    "Message",
    "Node",
    "NodeChange",
    "NodeData",
    "Persist",
    "Position",
    "RegenerateTitle",
    "ReleaseThread",
    "append_message",
    "apply_edge_changes",
    "apply_node_changes",
    "complete_last_message",
    "create_node_and_edge",
    "delete_node_and_descendants",
    "drop_last_message",
    "fail_last_message",
    "fallback_title",
    "inherit_documents",
    "is_document",
    "path_edge_ids",
    "path_messages",
    "path_node_ids",
    "refresh_active_path",
    "replace_last_message",
    "reset_node",
    "resolve_path",
    "root_node",
    "set_active_node",
    "set_node_label",
]
