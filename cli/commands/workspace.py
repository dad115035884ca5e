"""Workspace management commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer

from cli.context import open_cli_store, resolve_workspace, warn_without_consent

workspace_app = typer.Typer(help="Manage workspaces (independent conversation graphs).")


@workspace_app.command("new")
def workspace_new(
    name: str = typer.Argument(..., help="Name of the new workspace."),
    switch: bool = typer.Option(True, "--switch/--no-switch", help="Switch to it afterwards."),
) -> None:
    """Create a new workspace (and switch to it by default)."""
    with open_cli_store() as store:
        workspace_id = store.create_new_workspace(name)
        if not workspace_id:
            typer.echo(f"❌ Could not create workspace {name!r}.")
            raise typer.Exit(code=1)
        typer.echo(f"✅ Workspace created: {name.strip()} ({workspace_id})")

        if switch:
            store.switch_workspace(workspace_id)
            typer.echo(f"📂 Switched to workspace: {name.strip()}")


@workspace_app.command("list")
def workspace_list() -> None:
    """List all workspaces; the active one is marked with '*'."""
    with open_cli_store() as store:
        active_id = store.workspaces.get_active_workspace_id()
        typer.echo("Workspaces:")
        for w in store.workspaces.list_workspaces():
            marker = "*" if w.id == active_id else " "
            typer.echo(f"{marker} {w.name} \t[{w.id}]")


@workspace_app.command("switch")
def workspace_switch(
    identifier: str = typer.Argument(..., help="Workspace name or id."),
) -> None:
    """Save the current graph and switch to another workspace."""
    with open_cli_store() as store:
        target = resolve_workspace(store, identifier)
        if not store.switch_workspace(target.id):
            typer.echo(f"❌ Could not switch to workspace {target.name!r}.")
            raise typer.Exit(code=1)
        state = store.state
        typer.echo(f"📂 Switched to workspace: {target.name} ({len(state.nodes)} nodes)")


@workspace_app.command("rename")
def workspace_rename(
    name: str = typer.Argument(..., help="New name for the active workspace."),
) -> None:
    """Rename the active workspace."""
    with open_cli_store() as store:
        if not store.rename_current_workspace(name):
            typer.echo("❌ Workspace name must not be empty.")
            raise typer.Exit(code=1)
        typer.echo(f"✅ Workspace renamed to {name.strip()!r}")


@workspace_app.command("delete")
def workspace_delete(
    identifier: str = typer.Argument(..., help="Workspace name or id."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete a workspace and its conversation graph."""
    with open_cli_store() as store:
        target = resolve_workspace(store, identifier)
        if not yes:
            typer.confirm(f"Delete workspace {target.name!r}?", abort=True)
        if not store.delete_workspace(target.id):
            typer.echo("❌ The last workspace cannot be deleted.")
            raise typer.Exit(code=1)
        current = store.get_current_workspace()
        typer.echo(f"🗑️  Deleted workspace {target.name!r}")
        if current is not None:
            typer.echo(f"📂 Active workspace: {current.name}")


@workspace_app.command("export")
def workspace_export(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="File to write (default: stdout)."),
) -> None:
    """Export every workspace as JSON."""
    with open_cli_store() as store:
        blob = store.export_workspace()
    if blob is None:
        typer.echo("❌ Export failed.")
        raise typer.Exit(code=1)

    if output is None:
        typer.echo(json.dumps(json.loads(blob), indent=2, ensure_ascii=False))
        return
    output.write_text(blob, encoding="utf-8")
    typer.echo(f"✅ Exported to {output}")


@workspace_app.command("import")
def workspace_import(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Export file to import."),
) -> None:
    """Replace all workspaces with the contents of an export file."""
    blob = path.read_text(encoding="utf-8")
    with open_cli_store() as store:
        if not store.import_workspace(blob):
            typer.echo(f"❌ {path} is not a valid export.")
            raise typer.Exit(code=1)
        count = len(store.workspaces.list_workspaces())
        typer.echo(f"✅ Imported {count} workspaces; active graph has {len(store.state.nodes)} nodes")


@workspace_app.command("consent")
def workspace_consent(
    grant: Optional[bool] = typer.Option(
        None, "--grant/--deny", help="Allow or refuse saving conversations to disk."
    ),
) -> None:
    """Show or change the storage consent."""
    with open_cli_store() as store:
        if grant is not None:
            store.set_storage_consent(grant)
            typer.echo("✅ Storage consent granted." if grant else "🚫 Storage consent denied.")
            return

        if store.needs_storage_consent():
            typer.echo("Storage consent: not answered yet")
        else:
            typer.echo(f"Storage consent: {'granted' if store.has_storage_consent() else 'denied'}")
        warn_without_consent(store)


@workspace_app.command("stats")
def workspace_stats() -> None:
    """Show storage usage for the durable store."""
    with open_cli_store() as store:
        stats = store.get_storage_stats()
        current = store.get_current_workspace()

    typer.echo(f"\n📊 Workspace: {current.name if current else '(none)'}")
    typer.echo("-" * 40)
    typer.echo(f"   Workspaces : {stats['workspaces']}")
    typer.echo(f"   Entries    : {stats['entries']}")
    typer.echo(f"   Used       : {stats['usedBytes']} / {stats['quotaBytes']} bytes ({stats['usagePercent']}%)")
    typer.echo(f"   Consent    : {'granted' if stats['hasConsent'] else 'not granted'}")
