"""Snapshot serialisation, the session tier, and the save debouncer."""

from canopy.persistence.debounce import SaveDebouncer
from canopy.persistence.session import (
    QuotaExceededError,
    SessionStorage,
    load_session_data,
    save_session_data,
)
from canopy.persistence.snapshot import (
    STORAGE_VERSION,
    InvalidSnapshotError,
    build_snapshot,
    compact_snapshot,
    restore_state,
)

__all__ = [
    "STORAGE_VERSION",
    "InvalidSnapshotError",
    "QuotaExceededError",
    "SaveDebouncer",
    "SessionStorage",
    "build_snapshot",
    "compact_snapshot",
    "load_session_data",
    "restore_state",
    "save_session_data",
]
