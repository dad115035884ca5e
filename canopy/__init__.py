"""Canopy: state management for branching conversation graphs.

Public re-exports so callers can write::

    from canopy import ChatStore, open_store
"""

from canopy.store import ChatManagerNotInitializedError, ChatStore, open_store

__all__ = ["ChatManagerNotInitializedError", "ChatStore", "open_store"]
