"""Canopy CLI: entry-point for the branching conversation store.

Usage:
    canopy --help
    python cli/main.py --help

Command groups:
    workspace → workspace directory, consent, export / import, stats
    graph     → the active conversation graph and its messages
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure the project root is on sys.path so that `from canopy.xxx import ...`
# works when the CLI is invoked as `python cli/main.py` from any directory.
_ROOT = Path(__file__).resolve().parent.parent
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from typing import Optional

import typer

from canopy.config import configure_logging, settings
from cli.commands.graph import graph_app
from cli.commands.workspace import workspace_app

app = typer.Typer(
    name="canopy",
    help="Canopy branching-conversation CLI.",
    no_args_is_help=True,
)
app.add_typer(workspace_app, name="workspace")
app.add_typer(graph_app, name="graph")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, "--log-level", help="Override CANOPY_LOG_LEVEL (DEBUG, INFO, WARNING …)."
    ),
) -> None:
    """Configure logging before any command runs."""
    configure_logging(log_level or settings.log_level)


@app.command("info")
def info() -> None:
    """Show where data is stored and which model provider is configured."""
    typer.echo(f"Database : {settings.db_path}")
    typer.echo(f"Provider : {settings.llm_provider}")
    model = settings.openai_chat_model if settings.llm_provider == "openai" else settings.ollama_chat_model
    typer.echo(f"Model    : {model}")


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    app()
