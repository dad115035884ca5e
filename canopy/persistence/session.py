"""Session tier: a process-lifetime key/value slot with a hard capacity.

This is the legacy, synchronous save path.  It is not gated by storage
consent because nothing outlives the running process.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import Any, Optional

from canopy.config import settings
from canopy.graph.models import GraphState
from canopy.persistence.snapshot import compact_snapshot, now_ms, serialize_snapshot

logger = logging.getLogger(__name__)

SESSION_STORAGE_KEY = "canopy-chat-session"
SESSION_VERSION = "1.0.0"


class QuotaExceededError(Exception):
    """Raised when a write would push the session store past its capacity."""


class SessionStorage:
    """In-memory string store that enforces a total size limit."""

    def __init__(self, capacity: Optional[int] = None) -> None:
        self.capacity = capacity if capacity is not None else settings.session_capacity_bytes
        self._items: dict[str, str] = {}
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        """Store *value*; the current value under *key* still counts until replaced."""
        with self._lock:
            used = sum(len(v) for v in self._items.values())
            if used + len(value) > self.capacity:
                raise QuotaExceededError(
                    f"Session storage capacity {self.capacity} exceeded "
                    f"({used + len(value)} requested)"
                )
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def used_bytes(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._items.values())


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def build_session_data(state: GraphState) -> dict[str, Any]:
    return {
        "nodes": [n.to_dict() for n in state.nodes],
        "edges": [e.to_dict() for e in state.edges],
        "activeNodeId": state.active_node_id,
        "timestamp": now_ms(),
        "version": SESSION_VERSION,
    }


def save_session_data(
    store: SessionStorage,
    data: dict[str, Any],
    max_bytes: Optional[int] = None,
) -> bool:
    """Write *data* under the session key, compacting it if it is too large.

    Returns ``False`` (leaving the previous entry alone) when even the
    compacted form exceeds *max_bytes*.  A capacity error from the store is
    retried once after clearing the previous entry.
    """
    limit = max_bytes if max_bytes is not None else settings.session_max_bytes
    serialized = serialize_snapshot(data)
    compressed = False

    if len(serialized) > limit:
        logger.warning(
            "Session data too large (%d > %d bytes), attempting to compress", len(serialized), limit
        )
        serialized = serialize_snapshot(compact_snapshot(data))
        if len(serialized) > limit:
            logger.error("Even compressed session data is too large (%d bytes)", len(serialized))
            return False
        compressed = True

    try:
        store.set_item(SESSION_STORAGE_KEY, serialized)
    except QuotaExceededError:
        logger.error("Session storage quota exceeded, clearing previous entry and retrying")
        store.remove_item(SESSION_STORAGE_KEY)
        try:
            store.set_item(SESSION_STORAGE_KEY, serialized)
        except QuotaExceededError as exc:
            logger.error("Failed to save session even after clearing old data: %s", exc)
            return False
        logger.info("Session saved after clearing old data")
        return True

    if compressed:
        logger.info("Session saved with compression (%d bytes)", len(serialized))
    else:
        logger.debug(
            "Session saved: %d bytes, %d nodes, %d edges",
            len(serialized), len(data.get("nodes", [])), len(data.get("edges", [])),
        )
    return True


def load_session_data(store: SessionStorage) -> Optional[dict[str, Any]]:
    """Return the stored session snapshot, or ``None`` if absent or invalid."""
    stored = store.get_item(SESSION_STORAGE_KEY)
    if not stored:
        logger.debug("No session data found")
        return None

    try:
        data = json.loads(stored)
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse session data: %s", exc)
        return None

    if (
        not isinstance(data, dict)
        or not isinstance(data.get("nodes"), list)
        or not isinstance(data.get("edges"), list)
    ):
        logger.warning("Invalid session data structure")
        return None

    if data.get("version") != SESSION_VERSION:
        logger.warning(
            "Session version mismatch: stored=%s current=%s", data.get("version"), SESSION_VERSION
        )

    logger.info(
        "Session data loaded: %d nodes, %d edges, active=%s",
        len(data["nodes"]), len(data["edges"]), data.get("activeNodeId"),
    )
    return data


def clear_session_data(store: SessionStorage) -> None:
    store.remove_item(SESSION_STORAGE_KEY)
    logger.info("Session cleared")
