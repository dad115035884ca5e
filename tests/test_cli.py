"""Tests for the 'workspace' and 'graph' CLI command groups."""

import json
from unittest.mock import MagicMock

import pytest
from typer.testing import CliRunner

from canopy.graph.models import ROOT_ID
from canopy.store import open_store
from cli.main import app

runner = CliRunner()


@pytest.fixture
def clean_db(tmp_path, monkeypatch):
    """Point the CLI at a fresh database under tmp_path."""
    monkeypatch.setattr("canopy.config.settings.workspace_dir", tmp_path)
    return tmp_path / "canopy.db"


@pytest.fixture
def consented(clean_db):
    result = runner.invoke(app, ["workspace", "consent", "--grant"])
    assert result.exit_code == 0
    return clean_db


@pytest.fixture
def fake_llm(monkeypatch):
    llm = MagicMock()
    llm.invoke.return_value = MagicMock(content="Fake Title")
    llm.stream.return_value = iter([MagicMock(content="Hi "), MagicMock(content="there")])
    monkeypatch.setattr("canopy.threads._get_llm", lambda api_key=None: llm)
    return llm


def _load_state():
    store = open_store()
    try:
        return store.state
    finally:
        store.close()
        store.storage.conn.close()


# ---------------------------------------------------------------------------
# workspace
# ---------------------------------------------------------------------------

def test_consent_status(clean_db):
    result = runner.invoke(app, ["workspace", "consent"])
    assert result.exit_code == 0
    assert "not answered yet" in result.stdout
    assert "Storage consent not granted" in result.stdout


def test_consent_grant(clean_db):
    result = runner.invoke(app, ["workspace", "consent", "--grant"])
    assert "✅ Storage consent granted." in result.stdout
    result = runner.invoke(app, ["workspace", "consent"])
    assert "Storage consent: granted" in result.stdout


def test_workspace_new_and_list(consented):
    result = runner.invoke(app, ["workspace", "new", "Research"])
    assert result.exit_code == 0
    assert "✅ Workspace created: Research" in result.stdout
    assert "📂 Switched to workspace: Research" in result.stdout

    result = runner.invoke(app, ["workspace", "list"])
    assert "* Research" in result.stdout


def test_workspace_new_without_switch(consented):
    runner.invoke(app, ["workspace", "new", "Later", "--no-switch"])
    result = runner.invoke(app, ["workspace", "list"])
    assert "  Later" in result.stdout


def test_workspace_switch_keeps_graphs_apart(consented):
    runner.invoke(app, ["graph", "add", "--label", "Only in default"])
    runner.invoke(app, ["workspace", "new", "Empty"])
    assert "Only in default" not in runner.invoke(app, ["graph", "show"]).stdout

    result = runner.invoke(app, ["workspace", "switch", "Default Workspace"])
    assert result.exit_code == 0
    assert "Only in default" in runner.invoke(app, ["graph", "show"]).stdout


def test_workspace_switch_unknown(consented):
    result = runner.invoke(app, ["workspace", "switch", "Nope"])
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_workspace_rename(consented):
    result = runner.invoke(app, ["workspace", "rename", "Main"])
    assert result.exit_code == 0
    assert "* Main" in runner.invoke(app, ["workspace", "list"]).stdout


def test_workspace_delete(consented):
    runner.invoke(app, ["workspace", "new", "Scratch"])
    result = runner.invoke(app, ["workspace", "delete", "Scratch", "--yes"])
    assert result.exit_code == 0
    assert "Deleted workspace 'Scratch'" in result.stdout
    assert "Scratch" not in runner.invoke(app, ["workspace", "list"]).stdout


def test_workspace_delete_last(consented):
    result = runner.invoke(app, ["workspace", "delete", "Default Workspace", "-y"])
    assert result.exit_code == 1


def test_workspace_export_import(consented, tmp_path):
    runner.invoke(app, ["graph", "add", "--label", "Exported"])
    out = tmp_path / "export.json"
    result = runner.invoke(app, ["workspace", "export", "--output", str(out)])
    assert result.exit_code == 0
    assert json.loads(out.read_text())["format"] == "canopy-export"

    runner.invoke(app, ["graph", "delete", "Exported"])
    result = runner.invoke(app, ["workspace", "import", str(out)])
    assert result.exit_code == 0
    assert "Exported" in [n.data.label for n in _load_state().nodes]


def test_workspace_import_invalid(consented, tmp_path):
    bad = tmp_path / "bad.json"
    bad.write_text("{}")
    result = runner.invoke(app, ["workspace", "import", str(bad)])
    assert result.exit_code == 1


def test_workspace_stats(consented):
    result = runner.invoke(app, ["workspace", "stats"])
    assert result.exit_code == 0
    assert "Workspaces : 1" in result.stdout
    assert "Consent    : granted" in result.stdout


# ---------------------------------------------------------------------------
# graph
# ---------------------------------------------------------------------------

def test_graph_add_and_show(consented):
    result = runner.invoke(app, ["graph", "add", "--label", "Child"])
    assert result.exit_code == 0
    assert "✅ Created response node 'Child'" in result.stdout

    result = runner.invoke(app, ["graph", "show"])
    assert "Child" in result.stdout
    assert "◀" in result.stdout.splitlines()[-1]


def test_graph_add_without_consent_warns(clean_db):
    result = runner.invoke(app, ["graph", "add", "--label", "Ephemeral"])
    assert result.exit_code == 0
    assert "changes are not saved" in result.stdout
    assert "Ephemeral" not in [n.data.label for n in _load_state().nodes]


def test_graph_add_under_unknown_parent(consented):
    result = runner.invoke(app, ["graph", "add", "missing"])
    assert result.exit_code == 1
    assert "not found" in result.stdout


def test_graph_ambiguous_label(consented):
    runner.invoke(app, ["graph", "add"])
    runner.invoke(app, ["graph", "add"])
    result = runner.invoke(app, ["graph", "activate", "New Chat"])
    assert result.exit_code == 1
    assert "ambiguous" in result.stdout


def test_graph_activate(consented):
    runner.invoke(app, ["graph", "add", "--label", "A", "--no-activate"])
    result = runner.invoke(app, ["graph", "activate", "A"])
    assert result.exit_code == 0
    assert "2 nodes on path" in result.stdout


def test_graph_delete(consented):
    runner.invoke(app, ["graph", "add", "--label", "Parent"])
    runner.invoke(app, ["graph", "add", "Parent", "--label", "Kid"])
    result = runner.invoke(app, ["graph", "delete", "Parent"])
    assert result.exit_code == 0
    assert "and 1 descendants" in result.stdout
    assert [n.id for n in _load_state().nodes] == [ROOT_ID]


def test_graph_delete_root(consented):
    result = runner.invoke(app, ["graph", "delete", ROOT_ID])
    assert result.exit_code == 1


def test_graph_reset(consented):
    runner.invoke(app, ["graph", "add", "--label", "Kid"])
    result = runner.invoke(app, ["graph", "reset", ROOT_ID])
    assert result.exit_code == 0
    state = _load_state()
    assert [n.id for n in state.nodes] == [ROOT_ID]
    assert state.nodes[0].data.label == "New Chat"


def test_graph_say_stream(consented, fake_llm):
    result = runner.invoke(app, ["graph", "say", "Hello"])
    assert result.exit_code == 0
    assert "Hi there" in result.stdout

    root = _load_state().get_node(ROOT_ID)
    assert [m.content for m in root.data.chat_history] == ["Hello", "Hi there"]
    assert root.data.label == "Fake Title"


def test_graph_say_stream_failure(consented, fake_llm):
    def broken(*_args, **_kwargs):
        yield "Hi "
        raise RuntimeError("model went away")

    fake_llm.stream.side_effect = broken
    result = runner.invoke(app, ["graph", "say", "Hello"])
    assert result.exit_code == 1
    assert "❌ Model call failed: model went away" in result.stdout

    last = _load_state().get_node(ROOT_ID).data.chat_history[-1]
    assert (last.content, last.model_id) == ("Error: model went away", "error")


def test_graph_say_with_attachment(consented, fake_llm, tmp_path):
    doc = tmp_path / "notes.txt"
    doc.write_text("some notes")
    result = runner.invoke(app, ["graph", "say", "Read this", "--attach", str(doc), "--no-stream"])
    assert result.exit_code == 0
    assert "Fake Title" in result.stdout

    user_msg = _load_state().get_node(ROOT_ID).data.chat_history[0]
    assert user_msg.attachments[0].name == "notes.txt"
    assert user_msg.attachments[0].type == "text/plain"


def test_graph_path(consented, fake_llm):
    runner.invoke(app, ["graph", "say", "Question", "--no-stream"])
    runner.invoke(app, ["graph", "add", "--label", "Follow"])
    result = runner.invoke(app, ["graph", "path"])
    assert result.exit_code == 0
    assert "→ Follow" in result.stdout
    assert "🧑 user:\nQuestion" in result.stdout


def test_info(clean_db):
    result = runner.invoke(app, ["info"])
    assert result.exit_code == 0
    assert str(clean_db) in result.stdout
