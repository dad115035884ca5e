"""Utilities for rendering conversation graphs in the CLI."""

from __future__ import annotations

from canopy.graph.models import ROOT_ID, GraphState, Message
from canopy.graph.paths import GraphIndex


def render_tree(state: GraphState, root_id: str = ROOT_ID) -> str:
    """Render the conversation graph as an ASCII tree.

    Nodes on the active path are prefixed with ``*``; the active node itself
    is marked with ``◀``.  Each line shows the label, a short id and the
    message count.

    Args:
        state: The graph to render.
        root_id: Node to start from.

    Returns:
        String representation of the tree.
    """
    index = GraphIndex(state.edges)
    node_map = {n.id: n for n in state.nodes}
    on_path = set(state.active_path.node_ids)
    lines: list[str] = []
    visited: set[str] = set()

    def _line(node_id: str) -> str:
        node = node_map[node_id]
        marker = "*" if node_id in on_path else " "
        active = " ◀" if node_id == state.active_node_id else ""
        count = len(node.data.chat_history)
        return f"{marker} {node.data.label} [{node_id[:8]}] ({count} msgs){active}"

    def _render_node(node_id: str, prefix: str, is_last: bool, is_root: bool) -> None:
        # Several incoming edges or a cycle: show each node once.
        if node_id in visited or node_id not in node_map:
            return
        visited.add(node_id)

        if is_root:
            lines.append(_line(node_id))
            child_prefix = ""
        else:
            connector = "└── " if is_last else "├── "
            lines.append(f"{prefix}{connector}{_line(node_id)}")
            child_prefix = prefix + ("    " if is_last else "│   ")

        children = [c for c in index.children.get(node_id, []) if c in node_map]
        count = len(children)
        for i, child_id in enumerate(children):
            _render_node(child_id, child_prefix, i == count - 1, False)

    if root_id in node_map:
        _render_node(root_id, "", True, True)
    else:
        lines.append("Root node not found.")

    orphans = [n.id for n in state.nodes if n.id not in visited]
    if orphans:
        lines.append("")
        lines.append("Unattached:")
        for node_id in orphans:
            lines.append(f"  {_line(node_id)}")

    return "\n".join(lines)


def render_messages(messages: list[Message]) -> str:
    """Render a message history as ``role: content`` blocks."""
    blocks = []
    for msg in messages:
        speaker = "🧑 user" if msg.role == "user" else "🤖 model"
        extra = f"  📎 {', '.join(a.name for a in msg.attachments)}" if msg.attachments else ""
        blocks.append(f"{speaker}:{extra}\n{msg.content}")
    return "\n\n".join(blocks)
