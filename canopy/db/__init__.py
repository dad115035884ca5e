"""Database layer package.

Public re-exports so callers can write::

    from canopy.db import get_connection, init_db
    from canopy.db import PersistentStorage, WorkspaceManager
"""

from canopy.db.connection import get_connection
from canopy.db.migrations import init_db
from canopy.db.storage import PersistentStorage
from canopy.db.workspaces import WorkspaceManager

__all__ = ["get_connection", "init_db", "PersistentStorage", "WorkspaceManager"]
