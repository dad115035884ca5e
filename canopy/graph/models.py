"""Dataclass models for the conversation graph.

These are plain Python objects.  The persistence and HTTP layers serialise /
deserialise them to and from the camelCase JSON shape the graph canvas
expects::

    node    {"id", "type", "position": {"x", "y"},
             "data": {"label", "chatHistory": [message, ...]}}
    message {"role", "content", "attachments"?, "modelId"?}
    edge    {"id", "source", "target"}

State objects are treated as immutable: graph operations build new lists and
use :func:`dataclasses.replace` instead of mutating in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal, Optional

Role = Literal["user", "model"]

ROOT_ID = "root"
ROOT_LABEL = "Start your conversation"
RESET_LABEL = "New Chat"
NODE_TYPE = "chatNode"


@dataclass
class Attachment:
    name: str
    type: str
    data: str  # base64
    preview_url: str = ""  # client-side handle, never persisted

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type, "data": self.data}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Attachment:
        return cls(
            name=str(raw.get("name", "")),
            type=str(raw.get("type", "")),
            data=str(raw.get("data", "")),
        )


@dataclass
class Message:
    role: Role
    content: str
    attachments: list[Attachment] = field(default_factory=list)
    model_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.attachments:
            out["attachments"] = [a.to_dict() for a in self.attachments]
        if self.model_id is not None:
            out["modelId"] = self.model_id
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        return cls(
            role=raw.get("role", "user"),
            content=str(raw.get("content", "")),
            attachments=[Attachment.from_dict(a) for a in raw.get("attachments") or []],
            model_id=raw.get("modelId"),
        )


@dataclass
class Position:
    x: float = 0.0
    y: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"x": self.x, "y": self.y}

    @classmethod
    def from_dict(cls, raw: Optional[dict[str, Any]]) -> Position:
        raw = raw or {}
        return cls(x=float(raw.get("x", 0.0)), y=float(raw.get("y", 0.0)))


@dataclass
class NodeData:
    label: str
    chat_history: list[Message] = field(default_factory=list)


@dataclass
class Node:
    id: str
    data: NodeData
    position: Position = field(default_factory=Position)
    type: str = NODE_TYPE

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "position": self.position.to_dict(),
            "data": {
                "label": self.data.label,
                "chatHistory": [m.to_dict() for m in self.data.chat_history],
            },
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Node:
        data = raw.get("data") or {}
        return cls(
            id=str(raw["id"]),
            type=raw.get("type") or NODE_TYPE,
            position=Position.from_dict(raw.get("position")),
            data=NodeData(
                label=str(data.get("label", "")),
                chat_history=[Message.from_dict(m) for m in data.get("chatHistory") or []],
            ),
        )

    def with_history(self, history: list[Message]) -> Node:
        return replace(self, data=replace(self.data, chat_history=history))

    def with_label(self, label: str) -> Node:
        return replace(self, data=replace(self.data, label=label))


@dataclass
class Edge:
    id: str
    source: str
    target: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "source": self.source, "target": self.target}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Edge:
        source = str(raw["source"])
        target = str(raw["target"])
        return cls(id=str(raw.get("id") or edge_id_for(source, target)), source=source, target=target)


@dataclass
class ActivePath:
    node_ids: list[str] = field(default_factory=list)
    edge_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        return {"nodeIds": list(self.node_ids), "edgeIds": list(self.edge_ids)}


@dataclass
class GraphState:
    nodes: list[Node] = field(default_factory=lambda: [root_node()])
    edges: list[Edge] = field(default_factory=list)
    active_node_id: Optional[str] = ROOT_ID
    active_path: ActivePath = field(default_factory=lambda: ActivePath([ROOT_ID], []))

    # ------------------------------------------------------------------
    # Convenience helpers
    # ------------------------------------------------------------------
    def get_node(self, node_id: str) -> Optional[Node]:
        """Return the node with *node_id*, or ``None``."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def has_node(self, node_id: str) -> bool:
        return self.get_node(node_id) is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "activeNodeId": self.active_node_id,
            "activePath": self.active_path.to_dict(),
        }


def root_node() -> Node:
    """Return a fresh copy of the canonical root record."""
    return Node(
        id=ROOT_ID,
        data=NodeData(label=ROOT_LABEL, chat_history=[]),
        position=Position(250, 50),
    )


def edge_id_for(source: str, target: str) -> str:
    return f"e-{source}-{target}"
