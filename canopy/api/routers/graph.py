"""Conversation graph endpoints.

Routes
------
GET    /graph                              Nodes, edges, active node and path
PATCH  /graph/nodes                        Apply a batch of node changes
PATCH  /graph/edges                        Apply a batch of edge changes
PUT    /graph/active                       Focus a node (``null`` clears)
POST   /graph/model                        Configure the chat model
POST   /graph/nodes/{node_id}/children     Create a response or branch child
POST   /graph/nodes/{node_id}/reset        Clear history and drop descendants
DELETE /graph/nodes/{node_id}              Delete a node and its descendants
PUT    /graph/nodes/{node_id}/label        Rename a node
GET    /graph/nodes/{node_id}/path         Root-to-node ids and messages
POST   /graph/nodes/{node_id}/messages     Append a message
DELETE /graph/nodes/{node_id}/messages/last  Drop the last message
POST   /graph/nodes/{node_id}/send         Send a message, wait for the reply
POST   /graph/nodes/{node_id}/stream       Send a message (SSE token stream)
"""

from __future__ import annotations

import json
from typing import Any, Iterator, Literal, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel

from canopy.graph.models import ROOT_ID, Attachment, Message, Node
from canopy.store import ChatManagerNotInitializedError, ChatStore

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class ChangeBatch(BaseModel):
    changes: list[dict[str, Any]]


class ActiveUpdate(BaseModel):
    node_id: Optional[str] = None


class ModelConfig(BaseModel):
    api_key: Optional[str] = None


class ChildCreate(BaseModel):
    label: str = "New Chat"
    kind: Literal["response", "branch"] = "response"


class LabelUpdate(BaseModel):
    label: str


class AttachmentIn(BaseModel):
    name: str
    type: str
    data: str


class MessageIn(BaseModel):
    role: Literal["user", "model"]
    content: str
    attachments: list[AttachmentIn] = []
    model_id: Optional[str] = None
    is_partial: bool = False


class SendRequest(BaseModel):
    text: str
    attachments: list[AttachmentIn] = []


class PathResponse(BaseModel):
    node_ids: list[str]
    edge_ids: list[str]
    messages: list[dict[str, Any]]


class SendResponse(BaseModel):
    reply: str
    node: dict[str, Any]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _store(request: Request) -> ChatStore:
    return request.app.state.store


def _require_node(store: ChatStore, node_id: str) -> Node:
    node = store.state.get_node(node_id)
    if node is None:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id!r}")
    return node


def _attachments(items: list[AttachmentIn]) -> list[Attachment]:
    return [Attachment(name=a.name, type=a.type, data=a.data) for a in items]


def _node_out(store: ChatStore, node_id: str) -> dict[str, Any]:
    return _require_node(store, node_id).to_dict()


# ---------------------------------------------------------------------------
# Graph-wide endpoints
# ---------------------------------------------------------------------------

@router.get("")
def get_graph(request: Request) -> dict[str, Any]:
    """Return the whole graph plus the active node and path."""
    return _store(request).state.to_dict()


@router.patch("/nodes")
def patch_nodes(body: ChangeBatch, request: Request) -> dict[str, Any]:
    """Apply canvas node deltas (add / replace / position / remove …)."""
    store = _store(request)
    try:
        store.on_nodes_change(body.changes)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid node change: {exc}") from exc
    return store.state.to_dict()


@router.patch("/edges")
def patch_edges(body: ChangeBatch, request: Request) -> dict[str, Any]:
    """Apply canvas edge deltas."""
    store = _store(request)
    try:
        store.on_edges_change(body.changes)
    except (KeyError, TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid edge change: {exc}") from exc
    return store.state.to_dict()


@router.put("/active")
def set_active(body: ActiveUpdate, request: Request) -> dict[str, Any]:
    store = _store(request)
    if body.node_id:
        _require_node(store, body.node_id)
    store.set_active_node_id(body.node_id)
    state = store.state
    return {"activeNodeId": state.active_node_id, "activePath": state.active_path.to_dict()}


@router.post("/model", status_code=204, response_class=Response, response_model=None)
def configure_model(body: ModelConfig, request: Request) -> Response:
    """(Re)create the chat manager; the model client is built on first use."""
    _store(request).initialize_chat_manager(api_key=body.api_key)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Node endpoints
# ---------------------------------------------------------------------------

@router.post("/nodes/{node_id}/children", status_code=201)
def create_child(node_id: str, body: ChildCreate, request: Request) -> dict[str, Any]:
    """Create a response or branch child under *node_id*."""
    store = _store(request)
    new_id = store.create_node_and_edge(node_id, body.label, body.kind)
    if not new_id:
        raise HTTPException(status_code=404, detail=f"Node not found: {node_id!r}")
    return _node_out(store, new_id)


@router.post("/nodes/{node_id}/reset")
def reset(node_id: str, request: Request) -> dict[str, Any]:
    store = _store(request)
    _require_node(store, node_id)
    store.reset_node(node_id)
    return _node_out(store, node_id)


@router.delete("/nodes/{node_id}", status_code=204, response_class=Response, response_model=None)
def delete(node_id: str, request: Request) -> Response:
    """Delete a node and everything below it.  The root cannot be deleted."""
    store = _store(request)
    if node_id == ROOT_ID:
        raise HTTPException(status_code=400, detail="The root node cannot be deleted.")
    _require_node(store, node_id)
    store.delete_node_and_descendants(node_id)
    return Response(status_code=204)


@router.put("/nodes/{node_id}/label")
def rename(node_id: str, body: LabelUpdate, request: Request) -> dict[str, Any]:
    store = _store(request)
    _require_node(store, node_id)
    store.rename_node(node_id, body.label)
    return _node_out(store, node_id)


@router.get("/nodes/{node_id}/path", response_model=PathResponse)
def get_path(node_id: str, request: Request) -> PathResponse:
    """Return the root-to-node path and the concatenated message history."""
    store = _store(request)
    _require_node(store, node_id)
    return PathResponse(
        node_ids=store.get_path_node_ids(node_id),
        edge_ids=store.get_path_edge_ids(node_id),
        messages=[m.to_dict() for m in store.get_path_to_node(node_id)],
    )


@router.post("/nodes/{node_id}/messages", status_code=201)
def add_message(node_id: str, body: MessageIn, request: Request) -> dict[str, Any]:
    store = _store(request)
    _require_node(store, node_id)
    message = Message(
        role=body.role,
        content=body.content,
        attachments=_attachments(body.attachments),
        model_id=body.model_id,
    )
    store.add_message_to_node(node_id, message, is_partial=body.is_partial)
    return _node_out(store, node_id)


@router.delete("/nodes/{node_id}/messages/last")
def drop_last_message(node_id: str, request: Request) -> dict[str, Any]:
    store = _store(request)
    _require_node(store, node_id)
    store.remove_last_message(node_id)
    return _node_out(store, node_id)


@router.post("/nodes/{node_id}/send", response_model=SendResponse)
def send(node_id: str, body: SendRequest, request: Request) -> SendResponse:
    """Send a user message and wait for the model's reply.

    A failed model call is recorded on the node as ``"Error: …"`` and
    returned as the reply.
    """
    store = _store(request)
    _require_node(store, node_id)
    try:
        reply = store.send_message_to_node(node_id, body.text, _attachments(body.attachments))
    except ChatManagerNotInitializedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return SendResponse(reply=reply, node=_node_out(store, node_id))


@router.post("/nodes/{node_id}/stream")
def stream(node_id: str, body: SendRequest, request: Request) -> StreamingResponse:
    """Send a user message and stream the reply as SSE.

    SSE event shapes::

        data: {"event": "token", "text": " ..."}
        data: {"event": "done",  "nodeId": "..."}
        data: {"event": "error", "detail": "..."}
    """
    store = _store(request)
    _require_node(store, node_id)
    if store.chat_manager is None:
        raise HTTPException(status_code=409, detail="Chat manager not initialized")

    return StreamingResponse(
        _sse_generator(store, node_id, body.text, _attachments(body.attachments)),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# SSE generator
# ---------------------------------------------------------------------------

def _frame(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _sse_generator(
    store: ChatStore, node_id: str, text: str, attachments: list[Attachment]
) -> Iterator[str]:
    """Forward tokens from the store's stream as SSE frames."""
    try:
        for token in store.stream_message_to_node(node_id, text, attachments):
            yield _frame({"event": "token", "text": token})
    except Exception as exc:  # noqa: BLE001
        yield _frame({"event": "error", "detail": str(exc)})
        return
    error = store.get_reply_error(node_id)
    if error is not None:
        yield _frame({"event": "error", "detail": error})
        return
    yield _frame({"event": "done", "nodeId": node_id})
