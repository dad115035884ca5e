"""Workspace directory: many independently persisted conversation graphs.

A workspace is a row in ``workspaces``; its graph snapshot lives in the
key/value store under ``workspace:<id>``.  The active workspace id is a local
preference.  There is always at least one workspace: the first lookup of the
active id creates a default one.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any, Optional

from canopy.db.models import WorkspaceMetadata
from canopy.db.storage import ACTIVE_WORKSPACE_KEY, PersistentStorage, workspace_key
from canopy.persistence.snapshot import now_ms

logger = logging.getLogger(__name__)

DEFAULT_WORKSPACE_NAME = "Default Workspace"


class WorkspaceManager:
    """Workspace directory collaborator."""

    def __init__(self, conn: sqlite3.Connection, storage: PersistentStorage) -> None:
        self.conn = conn
        self.storage = storage

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------
    def list_workspaces(self) -> list[WorkspaceMetadata]:
        """Return all workspaces, oldest first."""
        with self.storage.lock:
            rows = self.conn.execute(
                "SELECT * FROM workspaces ORDER BY created_at, rowid"
            ).fetchall()
        return [WorkspaceMetadata.from_row(r) for r in rows]

    def get_workspace(self, workspace_id: str) -> Optional[WorkspaceMetadata]:
        """Fetch one workspace.  Returns ``None`` if not found."""
        with self.storage.lock:
            row = self.conn.execute(
                "SELECT * FROM workspaces WHERE id = ?", (workspace_id,)
            ).fetchone()
        return WorkspaceMetadata.from_row(row) if row else None

    def create_workspace(self, name: str) -> str:
        """Insert a new, empty workspace and return its id.

        Raises:
            ValueError: If *name* is blank.
        """
        name = name.strip()
        if not name:
            raise ValueError("Workspace name must not be empty")

        wid = str(uuid.uuid4())
        stamp = now_ms()
        with self.storage.lock, self.conn:
            self.conn.execute(
                "INSERT INTO workspaces (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (wid, name, stamp, stamp),
            )
        logger.info("Created workspace %s (%r)", wid, name)
        return wid

    def rename_workspace(self, workspace_id: str, name: str) -> bool:
        name = name.strip()
        if not name:
            return False
        with self.storage.lock, self.conn:
            cursor = self.conn.execute(
                "UPDATE workspaces SET name = ?, updated_at = ? WHERE id = ?",
                (name, now_ms(), workspace_id),
            )
        return cursor.rowcount > 0

    def delete_workspace(self, workspace_id: str) -> bool:
        """Delete a workspace and its snapshot.

        The last remaining workspace cannot be deleted.  Deleting the active
        workspace activates the oldest remaining one.
        """
        workspaces = self.list_workspaces()
        if not any(w.id == workspace_id for w in workspaces):
            return False
        if len(workspaces) <= 1:
            logger.warning("Refusing to delete the last workspace %s", workspace_id)
            return False

        was_active = self.storage.get_preference(ACTIVE_WORKSPACE_KEY) == workspace_id
        with self.storage.lock, self.conn:
            self.conn.execute("DELETE FROM workspaces WHERE id = ?", (workspace_id,))
            self.conn.execute("DELETE FROM kv_store WHERE key = ?", (workspace_key(workspace_id),))

        if was_active:
            successor = next(w for w in workspaces if w.id != workspace_id)
            self.storage.set_preference(ACTIVE_WORKSPACE_KEY, successor.id)
            logger.info("Active workspace deleted, switched to %s", successor.id)
        return True

    # ------------------------------------------------------------------
    # Active workspace
    # ------------------------------------------------------------------
    def get_active_workspace_id(self) -> str:
        """Return the active workspace id, creating a default workspace if needed."""
        active = self.storage.get_preference(ACTIVE_WORKSPACE_KEY)
        if active and self.get_workspace(active) is not None:
            return active

        workspaces = self.list_workspaces()
        wid = workspaces[0].id if workspaces else self.create_workspace(DEFAULT_WORKSPACE_NAME)
        self.storage.set_preference(ACTIVE_WORKSPACE_KEY, wid)
        return wid

    def get_active_workspace(self) -> Optional[WorkspaceMetadata]:
        return self.get_workspace(self.get_active_workspace_id())

    def set_active_workspace(self, workspace_id: str) -> bool:
        if self.get_workspace(workspace_id) is None:
            logger.warning("Cannot activate unknown workspace %s", workspace_id)
            return False
        self.storage.set_preference(ACTIVE_WORKSPACE_KEY, workspace_id)
        return True

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------
    def get_workspace_data(self, workspace_id: str) -> Optional[dict[str, Any]]:
        return self.storage.get(workspace_key(workspace_id))

    def save_workspace_data(self, workspace_id: str, snapshot: dict[str, Any]) -> bool:
        """Persist *snapshot* for *workspace_id* and touch its modification time."""
        if self.get_workspace(workspace_id) is None:
            logger.warning("Save for unknown workspace %s skipped", workspace_id)
            return False
        if not self.storage.set(workspace_key(workspace_id), snapshot):
            return False
        with self.storage.lock, self.conn:
            self.conn.execute(
                "UPDATE workspaces SET updated_at = ? WHERE id = ?", (now_ms(), workspace_id)
            )
        return True
