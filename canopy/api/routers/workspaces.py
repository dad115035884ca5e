"""Workspace directory endpoints.

Routes
------
GET    /workspaces                      List workspaces (active one flagged)
POST   /workspaces                      Create a workspace
GET    /workspaces/current              Metadata of the active workspace
PUT    /workspaces/current/name         Rename the active workspace
POST   /workspaces/{workspace_id}/switch  Save the current graph, load another
DELETE /workspaces/{workspace_id}       Delete a workspace
GET    /workspaces/export               Export the whole durable store (JSON)
POST   /workspaces/import               Replace the durable store from an export
GET    /workspaces/consent              Storage consent state
PUT    /workspaces/consent              Grant or deny storage consent
GET    /workspaces/stats                Storage usage
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel

from canopy.store import ChatStore

router = APIRouter()


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class WorkspaceCreate(BaseModel):
    name: str


class WorkspaceRename(BaseModel):
    name: str


class WorkspaceOut(BaseModel):
    id: str
    name: str
    createdAt: int
    lastModified: int
    active: bool = False


class ImportRequest(BaseModel):
    data: str


class ConsentUpdate(BaseModel):
    granted: bool


class ConsentOut(BaseModel):
    has_consent: bool
    needs_consent: bool


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _store(request: Request) -> ChatStore:
    return request.app.state.store


def _workspace_out(store: ChatStore, workspace_id: str, active_id: Optional[str] = None) -> WorkspaceOut:
    meta = store.workspaces.get_workspace(workspace_id)
    if meta is None:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {workspace_id!r}")
    active_id = active_id or store.workspaces.get_active_workspace_id()
    return WorkspaceOut(**meta.to_dict(), active=meta.id == active_id)


def _consent_out(store: ChatStore) -> ConsentOut:
    return ConsentOut(
        has_consent=store.has_storage_consent(),
        needs_consent=store.needs_storage_consent(),
    )


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------

@router.get("", response_model=list[WorkspaceOut])
def list_all(request: Request) -> list[WorkspaceOut]:
    """Return all workspaces, oldest first."""
    store = _store(request)
    active_id = store.workspaces.get_active_workspace_id()
    return [
        WorkspaceOut(**w.to_dict(), active=w.id == active_id)
        for w in store.workspaces.list_workspaces()
    ]


@router.post("", response_model=WorkspaceOut, status_code=201)
def create(body: WorkspaceCreate, request: Request) -> WorkspaceOut:
    """Create an empty workspace.  The active workspace is unchanged."""
    store = _store(request)
    workspace_id = store.create_new_workspace(body.name)
    if not workspace_id:
        raise HTTPException(status_code=400, detail="Could not create workspace.")
    return _workspace_out(store, workspace_id)


@router.get("/current", response_model=WorkspaceOut)
def current(request: Request) -> WorkspaceOut:
    store = _store(request)
    return _workspace_out(store, store.workspaces.get_active_workspace_id())


@router.put("/current/name", response_model=WorkspaceOut)
def rename_current(body: WorkspaceRename, request: Request) -> WorkspaceOut:
    store = _store(request)
    if not store.rename_current_workspace(body.name):
        raise HTTPException(status_code=400, detail="Workspace name must not be empty.")
    return _workspace_out(store, store.workspaces.get_active_workspace_id())


# ---------------------------------------------------------------------------
# Export / import, consent, stats
# ---------------------------------------------------------------------------

@router.get("/export")
def export(request: Request) -> Response:
    """Return the whole durable store as a downloadable JSON document."""
    blob = _store(request).export_workspace()
    if blob is None:
        raise HTTPException(status_code=500, detail="Export failed.")
    return Response(
        content=blob,
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="canopy-export.json"'},
    )


@router.post("/import")
def import_(body: ImportRequest, request: Request) -> dict[str, Any]:
    """Replace the durable store with an export and reload the active graph."""
    store = _store(request)
    if not store.import_workspace(body.data):
        raise HTTPException(status_code=400, detail="Invalid or oversized export data.")
    return store.state.to_dict()


@router.get("/consent", response_model=ConsentOut)
def get_consent(request: Request) -> ConsentOut:
    return _consent_out(_store(request))


@router.put("/consent", response_model=ConsentOut)
def set_consent(body: ConsentUpdate, request: Request) -> ConsentOut:
    """Record the user's answer; granting consent saves the current graph."""
    store = _store(request)
    store.set_storage_consent(body.granted)
    return _consent_out(store)


@router.get("/stats")
def stats(request: Request) -> dict[str, Any]:
    return _store(request).get_storage_stats()


# ---------------------------------------------------------------------------
# Per-workspace actions
# ---------------------------------------------------------------------------

@router.post("/{workspace_id}/switch", response_model=WorkspaceOut)
def switch(workspace_id: str, request: Request) -> WorkspaceOut:
    """Write the outgoing workspace and load *workspace_id*."""
    store = _store(request)
    if store.workspaces.get_workspace(workspace_id) is None:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {workspace_id!r}")
    if not store.switch_workspace(workspace_id):
        raise HTTPException(status_code=500, detail="Workspace switch failed.")
    return _workspace_out(store, workspace_id)


@router.delete("/{workspace_id}", status_code=204, response_class=Response, response_model=None)
def delete(workspace_id: str, request: Request) -> Response:
    """Delete a workspace and its graph.  The last workspace cannot be deleted."""
    store = _store(request)
    if store.workspaces.get_workspace(workspace_id) is None:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {workspace_id!r}")
    if not store.delete_workspace(workspace_id):
        raise HTTPException(status_code=409, detail="The last workspace cannot be deleted.")
    return Response(status_code=204)
