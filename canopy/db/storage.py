"""Durable key/value storage with consent gating, a size quota, and export.

Values are JSON-serialisable objects stored as text in ``kv_store``.  Size and
quota problems are reported through ``False`` return values and the log,
never raised; a failed write leaves the previous value untouched because each
write runs in its own transaction.

Export format (``export_all``)::

    {
        "format": "canopy-export",
        "version": "2.0.0",
        "exportedAt": 1700000000000,
        "activeWorkspaceId": "…",
        "workspaces": [{"id", "name", "createdAt", "lastModified"}, ...],
        "entries": {"workspace:<id>": {...snapshot...}, ...}
    }
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from typing import Any, Optional

from canopy.config import settings
from canopy.persistence.snapshot import STORAGE_VERSION, now_ms

logger = logging.getLogger(__name__)

EXPORT_FORMAT = "canopy-export"
CONSENT_KEY = "storage_consent"
ACTIVE_WORKSPACE_KEY = "active_workspace"
WORKSPACE_KEY_PREFIX = "workspace:"


def workspace_key(workspace_id: str) -> str:
    return f"{WORKSPACE_KEY_PREFIX}{workspace_id}"


class PersistentStorage:
    """Storage collaborator backed by one SQLite connection."""

    def __init__(self, conn: sqlite3.Connection, quota_bytes: Optional[int] = None) -> None:
        self.conn = conn
        self.quota_bytes = quota_bytes if quota_bytes is not None else settings.storage_quota_bytes
        # Shared with WorkspaceManager; the connection is used from timer threads.
        self.lock = threading.RLock()

    # ------------------------------------------------------------------
    # Key/value slots
    # ------------------------------------------------------------------
    def get(self, key: str) -> Optional[Any]:
        """Return the decoded value stored under *key*, or ``None``."""
        with self.lock:
            row = self.conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as exc:
            logger.error("Corrupt value under %r: %s", key, exc)
            return None

    def set(self, key: str, value: Any) -> bool:
        """Store *value* under *key*.

        Skipped (``False``) when storage consent has not been granted, when
        the value cannot be serialised, or when it would exceed the quota.
        """
        if not self.has_consent():
            logger.debug("Durable write of %r skipped: no storage consent", key)
            return False

        try:
            serialized = json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            logger.error("Value for %r is not serialisable: %s", key, exc)
            return False

        with self.lock:
            used = self._used_bytes(exclude_key=key)
            if used + len(serialized) > self.quota_bytes:
                logger.error(
                    "Storage quota exceeded writing %r: %d + %d > %d bytes",
                    key, used, len(serialized), self.quota_bytes,
                )
                return False
            try:
                with self.conn:
                    self.conn.execute(
                        """
                        INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)
                        ON CONFLICT(key) DO UPDATE SET value = excluded.value,
                                                       updated_at = excluded.updated_at
                        """,
                        (key, serialized, now_ms()),
                    )
            except sqlite3.Error as exc:
                logger.error("Failed to write %r (%d bytes): %s", key, len(serialized), exc)
                return False

        logger.debug("Stored %r (%d bytes)", key, len(serialized))
        return True

    def remove(self, key: str) -> None:
        """Delete *key*.  No-op if it does not exist."""
        with self.lock, self.conn:
            self.conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------
    def get_preference(self, key: str) -> Optional[str]:
        with self.lock:
            row = self.conn.execute(
                "SELECT value FROM preferences WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_preference(self, key: str, value: str) -> None:
        with self.lock, self.conn:
            self.conn.execute(
                "INSERT OR REPLACE INTO preferences (key, value) VALUES (?, ?)", (key, value)
            )

    def has_consent(self) -> bool:
        return self.get_preference(CONSENT_KEY) == "granted"

    def needs_consent(self) -> bool:
        """True until the user has answered the consent question either way."""
        return self.get_preference(CONSENT_KEY) is None

    def set_consent(self, granted: bool) -> None:
        self.set_preference(CONSENT_KEY, "granted" if granted else "denied")
        logger.info("Storage consent updated: granted=%s", granted)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------
    def export_all(self) -> str:
        """Serialise every workspace and stored snapshot to a JSON string."""
        with self.lock:
            entries = {
                row["key"]: json.loads(row["value"])
                for row in self.conn.execute("SELECT key, value FROM kv_store ORDER BY key")
            }
            workspaces = [
                {
                    "id": row["id"],
                    "name": row["name"],
                    "createdAt": row["created_at"],
                    "lastModified": row["updated_at"],
                }
                for row in self.conn.execute("SELECT * FROM workspaces ORDER BY created_at")
            ]
            active = self.get_preference(ACTIVE_WORKSPACE_KEY)

        logger.info("Exported %d workspaces, %d entries", len(workspaces), len(entries))
        return json.dumps(
            {
                "format": EXPORT_FORMAT,
                "version": STORAGE_VERSION,
                "exportedAt": now_ms(),
                "activeWorkspaceId": active,
                "workspaces": workspaces,
                "entries": entries,
            },
            ensure_ascii=False,
        )

    def import_all(self, blob: str) -> bool:
        """Validate *blob* and replace the whole store with it.

        Returns ``False`` (store untouched) when the blob is malformed, a
        snapshot entry lacks ``nodes`` / ``edges`` arrays, or the data would
        exceed the quota.
        """
        try:
            payload = json.loads(blob)
        except (json.JSONDecodeError, TypeError) as exc:
            logger.error("Import rejected: not valid JSON (%s)", exc)
            return False

        if not isinstance(payload, dict) or payload.get("format") != EXPORT_FORMAT:
            logger.error("Import rejected: unknown export format")
            return False
        entries = payload.get("entries")
        workspaces = payload.get("workspaces")
        if not isinstance(entries, dict) or not isinstance(workspaces, list):
            logger.error("Import rejected: 'entries' / 'workspaces' missing")
            return False

        for key, value in entries.items():
            if key.startswith(WORKSPACE_KEY_PREFIX) and (
                not isinstance(value, dict)
                or not isinstance(value.get("nodes"), list)
                or not isinstance(value.get("edges"), list)
            ):
                logger.error("Import rejected: invalid snapshot under %r", key)
                return False
        try:
            rows = [
                (str(w["id"]), str(w["name"]), int(w["createdAt"]), int(w["lastModified"]))
                for w in workspaces
            ]
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("Import rejected: invalid workspace record (%s)", exc)
            return False

        serialized = {k: json.dumps(v, separators=(",", ":"), ensure_ascii=False) for k, v in entries.items()}
        total = sum(len(v) for v in serialized.values())
        if total > self.quota_bytes:
            logger.error("Import rejected: %d bytes exceed quota %d", total, self.quota_bytes)
            return False

        if payload.get("version") != STORAGE_VERSION:
            logger.warning(
                "Import version mismatch: blob=%s current=%s", payload.get("version"), STORAGE_VERSION
            )

        stamp = now_ms()
        with self.lock:
            try:
                with self.conn:
                    self.conn.execute("DELETE FROM kv_store")
                    self.conn.execute("DELETE FROM workspaces")
                    self.conn.executemany(
                        "INSERT INTO kv_store (key, value, updated_at) VALUES (?, ?, ?)",
                        [(k, v, stamp) for k, v in serialized.items()],
                    )
                    self.conn.executemany(
                        "INSERT INTO workspaces (id, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                        rows,
                    )
                    active = payload.get("activeWorkspaceId")
                    if active:
                        self.conn.execute(
                            "INSERT OR REPLACE INTO preferences (key, value) VALUES (?, ?)",
                            (ACTIVE_WORKSPACE_KEY, str(active)),
                        )
            except sqlite3.Error as exc:
                logger.error("Import failed, store left unchanged: %s", exc)
                return False

        logger.info("Imported %d workspaces, %d entries (%d bytes)", len(rows), len(serialized), total)
        return True

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------
    def stats(self) -> dict[str, Any]:
        with self.lock:
            entry_count = self.conn.execute("SELECT COUNT(*) FROM kv_store").fetchone()[0]
            workspace_count = self.conn.execute("SELECT COUNT(*) FROM workspaces").fetchone()[0]
            used = self._used_bytes()
        return {
            "entries": entry_count,
            "workspaces": workspace_count,
            "usedBytes": used,
            "quotaBytes": self.quota_bytes,
            "usagePercent": round(100.0 * used / self.quota_bytes, 2) if self.quota_bytes else 0.0,
            "hasConsent": self.has_consent(),
            "needsConsent": self.needs_consent(),
        }

    def _used_bytes(self, exclude_key: Optional[str] = None) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(LENGTH(value)), 0) FROM kv_store WHERE key != ?",
            (exclude_key or "",),
        ).fetchone()
        return int(row[0])
