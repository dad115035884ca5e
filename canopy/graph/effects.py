"""Side-actions returned by graph operations.

Graph functions never touch storage or the thread collaborator themselves.
They return ``(new_state, effects)`` and the caller (:class:`canopy.store.ChatStore`)
executes the effects after the new state has been published.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from canopy.graph.models import Attachment, Message


@dataclass(frozen=True)
class Persist:
    """Schedule a debounced save of the current graph."""


@dataclass(frozen=True)
class ReleaseThread:
    """Drop the per-node conversation thread of a removed node."""

    node_id: str


@dataclass(frozen=True)
class CreateBranchThread:
    """Seed a thread for a new branch with the documents it inherits."""

    source_id: str
    new_id: str
    path_messages: list[Message] = field(default_factory=list, hash=False)
    documents: list[Attachment] = field(default_factory=list, hash=False)


@dataclass(frozen=True)
class RegenerateTitle:
    """Ask the summariser for a new node label; *fallback* is used on failure."""

    node_id: str
    recent_messages: list[Message] = field(default_factory=list, hash=False)
    fallback: str = ""


Effect = Union[Persist, ReleaseThread, CreateBranchThread, RegenerateTitle]
