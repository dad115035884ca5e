"""Dataclass models representing DB rows.

These are plain Python objects – not ORM models.  Graph snapshots themselves
are stored as JSON blobs (see :mod:`canopy.persistence.snapshot`).
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from typing import Any


@dataclass
class WorkspaceMetadata:
    id: str
    name: str
    created_at: int  # epoch ms
    updated_at: int  # epoch ms

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> WorkspaceMetadata:
        return cls(
            id=row["id"],
            name=row["name"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "createdAt": self.created_at,
            "lastModified": self.updated_at,
        }
