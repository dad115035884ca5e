"""Shared helpers for CLI commands.

Every command runs inside :func:`open_cli_store`: the store is opened on the
configured database with the active workspace loaded, and on exit pending
title tasks finish and debounced saves are written before the connection is
closed.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import typer

from canopy.db.models import WorkspaceMetadata
from canopy.graph.models import Node
from canopy.store import ChatStore, open_store


@contextmanager
def open_cli_store() -> Iterator[ChatStore]:
    """Yield a loaded :class:`ChatStore`; flush and close it afterwards."""
    store = open_store()
    try:
        yield store
    finally:
        store.close()
        store.storage.conn.close()


def warn_without_consent(store: ChatStore) -> None:
    """Tell the user when changes will not survive this command."""
    if not store.has_storage_consent():
        typer.echo("⚠️  Storage consent not granted: changes are not saved.")
        typer.echo("   Run 'canopy workspace consent --grant' to enable saving.")


def resolve_node(store: ChatStore, identifier: str) -> Node:
    """Find a node by id, unique label, or unique id prefix.

    Aborts the command when nothing (or more than one node) matches.
    """
    state = store.state
    node = state.get_node(identifier)
    if node is not None:
        return node

    for matches in (
        [n for n in state.nodes if n.data.label == identifier],
        [n for n in state.nodes if n.id.startswith(identifier)],
    ):
        if len(matches) == 1:
            return matches[0]
        if len(matches) > 1:
            typer.echo(f"❌ '{identifier}' is ambiguous ({len(matches)} nodes match).")
            raise typer.Exit(code=1)

    typer.echo(f"❌ Node '{identifier}' not found.")
    raise typer.Exit(code=1)


def resolve_workspace(store: ChatStore, identifier: str) -> WorkspaceMetadata:
    """Find a workspace by id or name."""
    for workspace in store.workspaces.list_workspaces():
        if identifier in (workspace.id, workspace.name):
            return workspace
    typer.echo(f"❌ Workspace '{identifier}' not found.")
    raise typer.Exit(code=1)
