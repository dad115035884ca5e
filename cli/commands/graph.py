"""Conversation graph commands."""

from __future__ import annotations

import base64
import mimetypes
from pathlib import Path
from typing import Optional

import typer

from canopy.graph.models import ROOT_ID, Attachment
from canopy.store import ChatManagerNotInitializedError
from cli.context import open_cli_store, resolve_node, warn_without_consent
from cli.rendering import render_messages, render_tree

graph_app = typer.Typer(help="Inspect and edit the active conversation graph.")


@graph_app.command("show")
def graph_show() -> None:
    """Print the graph as a tree; '*' marks the active path."""
    with open_cli_store() as store:
        current = store.get_current_workspace()
        typer.echo(f"📂 {current.name if current else '(no workspace)'}")
        typer.echo(render_tree(store.state))


@graph_app.command("add")
def graph_add(
    source: str = typer.Argument(ROOT_ID, help="Parent node (id, label or id prefix)."),
    label: str = typer.Option("New Chat", "--label", "-l", help="Label of the new node."),
    branch: bool = typer.Option(False, "--branch", help="Start a branch instead of a response."),
    activate: bool = typer.Option(True, "--activate/--no-activate", help="Focus the new node."),
) -> None:
    """Create a child node under SOURCE."""
    with open_cli_store() as store:
        parent = resolve_node(store, source)
        new_id = store.create_node_and_edge(parent.id, label, "branch" if branch else "response")
        if activate:
            store.set_active_node_id(new_id)
        typer.echo(f"✅ Created {'branch' if branch else 'response'} node {label!r} ({new_id})")
        warn_without_consent(store)


@graph_app.command("delete")
def graph_delete(
    node: str = typer.Argument(..., help="Node id, label or id prefix."),
) -> None:
    """Delete a node and all of its descendants."""
    with open_cli_store() as store:
        target = resolve_node(store, node)
        if target.id == ROOT_ID:
            typer.echo("❌ The root node cannot be deleted.")
            raise typer.Exit(code=1)
        before = len(store.state.nodes)
        store.delete_node_and_descendants(target.id)
        removed = before - len(store.state.nodes)
        typer.echo(f"🗑️  Deleted {target.data.label!r} and {removed - 1} descendants")
        warn_without_consent(store)


@graph_app.command("reset")
def graph_reset(
    node: str = typer.Argument(..., help="Node id, label or id prefix."),
) -> None:
    """Clear a node's messages and remove everything below it."""
    with open_cli_store() as store:
        target = resolve_node(store, node)
        store.reset_node(target.id)
        typer.echo(f"♻️  Reset node {target.id}")
        warn_without_consent(store)


@graph_app.command("activate")
def graph_activate(
    node: str = typer.Argument(..., help="Node id, label or id prefix."),
) -> None:
    """Focus a node; its root path becomes the active path."""
    with open_cli_store() as store:
        target = resolve_node(store, node)
        store.set_active_node_id(target.id)
        path = store.state.active_path
        typer.echo(f"🎯 Active node: {target.data.label} ({len(path.node_ids)} nodes on path)")
        warn_without_consent(store)


@graph_app.command("path")
def graph_path(
    node: Optional[str] = typer.Argument(None, help="Node (default: the active node)."),
) -> None:
    """Print the conversation from the root down to a node."""
    with open_cli_store() as store:
        node_id = resolve_node(store, node).id if node else store.state.active_node_id
        if not node_id:
            typer.echo("❌ No active node; pass a node explicitly.")
            raise typer.Exit(code=1)
        labels = [
            store.state.get_node(i).data.label if store.state.has_node(i) else i
            for i in store.get_path_node_ids(node_id)
        ]
        typer.echo(" → ".join(labels))
        typer.echo("")
        messages = store.get_path_to_node(node_id)
        typer.echo(render_messages(messages) if messages else "(no messages)")


@graph_app.command("say")
def graph_say(
    text: str = typer.Argument(..., help="Message to send."),
    node: Optional[str] = typer.Option(None, "--node", "-n", help="Target node (default: active)."),
    attach: list[Path] = typer.Option(
        [], "--attach", "-a", exists=True, dir_okay=False, help="File(s) to attach."
    ),
    stream: bool = typer.Option(True, "--stream/--no-stream", help="Print tokens as they arrive."),
) -> None:
    """Send a message to a node and print the model's reply."""
    with open_cli_store() as store:
        node_id = resolve_node(store, node).id if node else (store.state.active_node_id or ROOT_ID)
        attachments = [_read_attachment(p) for p in attach]
        store.initialize_chat_manager()

        try:
            if stream:
                for token in store.stream_message_to_node(node_id, text, attachments):
                    typer.echo(token, nl=False)
                typer.echo("")
            else:
                typer.echo(store.send_message_to_node(node_id, text, attachments))
        except ChatManagerNotInitializedError as exc:
            typer.echo(f"❌ {exc}")
            raise typer.Exit(code=1)
        except Exception as exc:  # noqa: BLE001
            typer.echo(f"\n❌ Model call failed: {exc}")
            raise typer.Exit(code=1)
        error = store.get_reply_error(node_id) if stream else None
        if error is not None:
            typer.echo(f"❌ Model call failed: {error}")
            raise typer.Exit(code=1)
        warn_without_consent(store)


def _read_attachment(path: Path) -> Attachment:
    mime, _ = mimetypes.guess_type(path.name)
    return Attachment(
        name=path.name,
        type=mime or "application/octet-stream",
        data=base64.b64encode(path.read_bytes()).decode("ascii"),
    )
