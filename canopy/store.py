"""The conversation graph store.

:class:`ChatStore` owns the live :class:`~canopy.graph.models.GraphState` and
is the single writer for it.  Every command runs a pure graph operation
under one lock, publishes the new state, and then executes the returned
effects:

* ``Persist``: schedule a debounced workspace save (the write reads the
  state current at fire time);
* ``ReleaseThread`` / ``CreateBranchThread``: notify the thread collaborator;
* ``RegenerateTitle``: ask the summariser on a worker thread; the result (or
  the fallback) comes back through :meth:`ChatStore.rename_node`, the same
  command interface every other caller uses.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Callable, Iterator, Optional, Union

from canopy.config import settings
from canopy.db.connection import get_connection
from canopy.db.migrations import init_db
from canopy.db.models import WorkspaceMetadata
from canopy.db.storage import PersistentStorage, workspace_key
from canopy.db.workspaces import WorkspaceManager
from canopy.graph import active, ledger, mutations, paths
from canopy.graph.effects import CreateBranchThread, Effect, Persist, RegenerateTitle, ReleaseThread
from canopy.graph.models import ROOT_ID, ActivePath, Attachment, GraphState, Message, root_node
from canopy.graph.mutations import EdgeChange, NodeChange, NodeKind
from canopy.persistence.debounce import SaveDebouncer
from canopy.persistence.session import (
    SESSION_VERSION,
    SessionStorage,
    build_session_data,
    clear_session_data,
    load_session_data,
    save_session_data,
)
from canopy.persistence.snapshot import InvalidSnapshotError, build_snapshot, restore_state
from canopy.threads import ChatManager

logger = logging.getLogger(__name__)

SAVE_SCOPE = "workspace"


class ChatManagerNotInitializedError(RuntimeError):
    """Raised when a message is sent before a chat manager is configured."""


class ChatStore:
    """Owned graph state plus its command / query interface."""

    def __init__(
        self,
        storage: PersistentStorage,
        workspaces: WorkspaceManager,
        session: Optional[SessionStorage] = None,
        chat_manager: Optional[ChatManager] = None,
        debouncer: Optional[SaveDebouncer] = None,
        debounce_ms: Optional[int] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.storage = storage
        self.workspaces = workspaces
        self.session = session or SessionStorage()
        self.chat_manager = chat_manager
        self.debouncer = debouncer or SaveDebouncer()
        self.debounce_ms = debounce_ms if debounce_ms is not None else settings.save_debounce_ms
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.title_workers, thread_name_prefix="canopy-title"
        )
        self._state = GraphState()
        self._lock = threading.RLock()
        self._tasks: list[Future] = []
        self._tasks_lock = threading.Lock()
        # Make sure a default workspace exists before any other is created.
        self.workspaces.get_active_workspace_id()

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------
    @property
    def state(self) -> GraphState:
        with self._lock:
            return self._state

    def _dispatch(self, operation: Callable[..., Any], *args: Any) -> Any:
        """Apply *operation* to the current state, publish, then run effects."""
        with self._lock:
            result = operation(self._state, *args)
            self._state = result[0]
        self._run_effects(result[1])
        return result

    def _run_effects(self, effects: list[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, Persist):
                self.save_to_storage()
            elif isinstance(effect, ReleaseThread):
                if self.chat_manager is not None:
                    self.chat_manager.delete_thread(effect.node_id)
                    logger.debug("Chat thread deleted for node %s", effect.node_id)
            elif isinstance(effect, CreateBranchThread):
                if self.chat_manager is not None:
                    self.chat_manager.create_branch_thread(
                        effect.source_id, effect.new_id, effect.path_messages
                    )
            elif isinstance(effect, RegenerateTitle):
                if self.chat_manager is not None:
                    self._submit(self._regenerate_title, effect)

    # ------------------------------------------------------------------
    # Graph commands
    # ------------------------------------------------------------------
    def on_nodes_change(self, changes: list[Union[NodeChange, dict[str, Any]]]) -> None:
        parsed = [c if isinstance(c, NodeChange) else NodeChange.from_dict(c) for c in changes]
        logger.debug("Processing %d node changes: %s", len(parsed), [c.type for c in parsed])
        self._dispatch(mutations.apply_node_changes, parsed)

    def on_edges_change(self, changes: list[Union[EdgeChange, dict[str, Any]]]) -> None:
        parsed = [c if isinstance(c, EdgeChange) else EdgeChange.from_dict(c) for c in changes]
        logger.debug("Processing %d edge changes: %s", len(parsed), [c.type for c in parsed])
        self._dispatch(mutations.apply_edge_changes, parsed)

    def create_node_and_edge(self, source_id: str, label: str, kind: NodeKind) -> str:
        """Create a child of *source_id*; returns ``""`` if the source is unknown."""
        _, _, new_id = self._dispatch(mutations.create_node_and_edge, source_id, label, kind)
        return new_id

    def reset_node(self, node_id: str) -> None:
        self._dispatch(mutations.reset_node, node_id)

    def delete_node_and_descendants(self, node_id: str) -> None:
        self._dispatch(mutations.delete_node_and_descendants, node_id)

    def set_active_node_id(self, node_id: Optional[str]) -> None:
        self._dispatch(active.set_active_node, node_id)

    # ------------------------------------------------------------------
    # Message commands
    # ------------------------------------------------------------------
    def add_message_to_node(self, node_id: str, message: Message, is_partial: bool = False) -> None:
        self._dispatch(ledger.append_message, node_id, message, is_partial)

    def update_last_message(
        self, node_id: str, content: str, model_id: Optional[str] = None
    ) -> None:
        self._dispatch(ledger.replace_last_message, node_id, content, model_id)

    def complete_last_message(self, node_id: str, model_id: Optional[str] = None) -> None:
        self._dispatch(ledger.complete_last_message, node_id, model_id)

    def remove_last_message(self, node_id: str) -> None:
        self._dispatch(ledger.drop_last_message, node_id)

    def rename_node(self, node_id: str, label: str) -> None:
        self._dispatch(ledger.set_node_label, node_id, label)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_path_node_ids(self, node_id: str) -> list[str]:
        return paths.path_node_ids(self.state, node_id)

    def get_path_edge_ids(self, node_id: str) -> list[str]:
        return paths.path_edge_ids(self.state, node_id)

    def get_path_to_node(self, node_id: str) -> list[Message]:
        return paths.path_messages(self.state, node_id)

    def get_reply_error(self, node_id: str) -> Optional[str]:
        """The failure text if the node's last reply is a recorded error."""
        node = self.state.get_node(node_id)
        if node is None or not node.data.chat_history:
            return None
        last = node.data.chat_history[-1]
        if last.model_id != ledger.ERROR_MODEL_ID:
            return None
        return last.content.removeprefix("Error: ")

    # ------------------------------------------------------------------
    # Model collaborator
    # ------------------------------------------------------------------
    def initialize_chat_manager(self, api_key: Optional[str] = None, llm: Any = None) -> ChatManager:
        logger.info("Initializing chat manager (api key given: %s)", bool(api_key))
        self.chat_manager = ChatManager(llm=llm, api_key=api_key)
        return self.chat_manager

    def send_message_to_node(
        self, node_id: str, text: str, attachments: Optional[list[Attachment]] = None
    ) -> str:
        """Record the user's message, call the model, and record its reply.

        A failed call is recorded as a model message ``"Error: …"`` with
        ``model_id="error"`` instead of raising.

        Raises:
            ChatManagerNotInitializedError: If no chat manager is configured.
        """
        manager = self._require_manager(node_id)
        self._prepare_send(manager, node_id, text, attachments)
        try:
            reply = manager.send_message(node_id, text, attachments)
        except Exception as exc:  # noqa: BLE001
            logger.error("sendMessage failed for node %s: %s", node_id, exc)
            error_text = f"Error: {exc or 'An unexpected error occurred'}"
            self.add_message_to_node(node_id, Message(role="model", content=error_text, model_id=ledger.ERROR_MODEL_ID))
            return error_text

        logger.info("Received response for node %s (%d chars)", node_id, len(reply))
        self.add_message_to_node(node_id, Message(role="model", content=reply, model_id="chatManager"))
        return reply

    def stream_message_to_node(
        self, node_id: str, text: str, attachments: Optional[list[Attachment]] = None
    ) -> Iterator[str]:
        """Like :meth:`send_message_to_node`, yielding tokens as they arrive.

        The reply is written in place as it grows; updates carry a per-stream
        model id so a stream that lost its message (reset, rollback) cannot
        overwrite a newer one.

        A failed stream ends quietly with its partial reply replaced by the
        same ``"Error: …"`` message a failed send records.
        """
        manager = self._require_manager(node_id)
        self._prepare_send(manager, node_id, text, attachments)
        stream_id = f"stream-{uuid.uuid4().hex[:12]}"
        self.add_message_to_node(node_id, Message(role="model", content="", model_id=stream_id), is_partial=True)

        accumulated = ""
        failed = False
        try:
            for token in manager.stream_message(node_id, text, attachments):
                accumulated += token
                self.update_last_message(node_id, accumulated, stream_id)
                yield token
        except Exception as exc:  # noqa: BLE001
            logger.error("Streaming failed for node %s: %s", node_id, exc)
            failed = True
            error_text = f"Error: {exc or 'An unexpected error occurred'}"
            self._dispatch(ledger.fail_last_message, node_id, error_text, stream_id)
        finally:
            if not failed:
                self.complete_last_message(node_id, stream_id)

    def _require_manager(self, node_id: str) -> ChatManager:
        if self.chat_manager is None:
            logger.error("Chat manager not initialized (node %s)", node_id)
            raise ChatManagerNotInitializedError("Chat manager not initialized")
        return self.chat_manager

    def _prepare_send(
        self,
        manager: ChatManager,
        node_id: str,
        text: str,
        attachments: Optional[list[Attachment]],
    ) -> None:
        # Seed the thread from the path before the new user message joins it.
        thread = manager.get_thread(node_id, self.get_path_to_node(node_id))
        logger.info(
            "Sending message to node %s (%d chars, %d attachments, %d thread documents)",
            node_id, len(text), len(attachments or []), len(thread.document_context),
        )
        self.add_message_to_node(
            node_id, Message(role="user", content=text, attachments=list(attachments or []))
        )

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------
    def _submit(self, fn: Callable[..., Any], *args: Any) -> Future:
        future = self._executor.submit(fn, *args)
        with self._tasks_lock:
            self._tasks = [t for t in self._tasks if not t.done()]
            self._tasks.append(future)
        return future

    def _regenerate_title(self, effect: RegenerateTitle) -> None:
        manager = self.chat_manager
        if manager is None:
            return
        try:
            title = manager.generate_title(effect.recent_messages)
            logger.info(
                "New title for node %s: %r (from %d messages)",
                effect.node_id, title, len(effect.recent_messages),
            )
        except Exception as exc:  # noqa: BLE001
            logger.error("Title generation failed for node %s: %s", effect.node_id, exc)
            title = effect.fallback
        self.rename_node(effect.node_id, title)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until background title tasks have finished."""
        while True:
            with self._tasks_lock:
                pending = [t for t in self._tasks if not t.done()]
            if not pending:
                return
            wait(pending, timeout=timeout)
            if timeout is not None:
                return

    def flush(self) -> None:
        """Write any pending debounced save now."""
        self.debouncer.flush(SAVE_SCOPE)

    def close(self) -> None:
        """Finish background work and write pending saves."""
        self.drain()
        self.flush()
        self._executor.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Workspace tier
    # ------------------------------------------------------------------
    def save_to_storage(self) -> bool:
        """Schedule a debounced save; ``False`` if a write is already running."""
        already_saving = self.debouncer.is_saving(SAVE_SCOPE)
        self.debouncer.schedule(SAVE_SCOPE, self._write_workspace, self.debounce_ms)
        return not already_saving

    def _write_workspace(self, workspace_id: Optional[str] = None) -> bool:
        # The target id and the graph must come from the same moment.
        with self._lock:
            state = self._state
            wid = workspace_id or self.workspaces.get_active_workspace_id()
            meta = self.workspaces.get_workspace(wid)
        snapshot = build_snapshot(
            state,
            name=meta.name if meta else "Current Workspace",
            created_at=meta.created_at if meta else None,
        )
        success = self.workspaces.save_workspace_data(wid, snapshot)
        if success:
            logger.debug(
                "Workspace %s saved: %d nodes, %d bytes",
                wid, len(snapshot["nodes"]), snapshot["metadata"]["dataSize"],
            )
        else:
            logger.warning("Failed to save workspace %s", wid)
        return success

    def load_from_storage(self) -> bool:
        """Restore the active workspace.  ``False`` when it has no saved data."""
        wid = self.workspaces.get_active_workspace_id()
        data = self.workspaces.get_workspace_data(wid)
        if data is None:
            logger.debug("No saved data for workspace %s", wid)
            return False
        try:
            state = restore_state(data)
        except InvalidSnapshotError as exc:
            logger.error("Failed to load workspace %s: %s", wid, exc)
            return False

        with self._lock:
            self._state = state
        logger.info(
            "Workspace %s restored: %d nodes, %d edges, %s messages (consent=%s)",
            wid, len(state.nodes), len(state.edges),
            (data.get("metadata") or {}).get("totalMessages"), self.storage.has_consent(),
        )
        return True

    def clear_storage(self) -> None:
        """Forget the active workspace's saved graph and start over."""
        with self.debouncer.hold(SAVE_SCOPE), self._lock:
            self.debouncer.cancel(SAVE_SCOPE)
            self.storage.remove(workspace_key(self.workspaces.get_active_workspace_id()))
            self._state = GraphState(nodes=[root_node()], active_node_id=None, active_path=ActivePath())
        logger.info("Workspace cleared from persistent storage")

    def export_workspace(self) -> Optional[str]:
        self.flush()
        try:
            return self.storage.export_all()
        except sqlite3.Error as exc:
            logger.error("Export failed: %s", exc)
            return None

    def import_workspace(self, blob: str) -> bool:
        """Replace the durable store with *blob* and reload the active workspace."""
        with self.debouncer.hold(SAVE_SCOPE), self._lock:
            self.debouncer.cancel(SAVE_SCOPE)
            if not self.storage.import_all(blob):
                return False
            if not self.load_from_storage():
                self._state = GraphState()
        return True

    def get_storage_stats(self) -> dict[str, Any]:
        active_id = self.workspaces.get_active_workspace_id()
        stats = self.storage.stats()
        stats["sessionBytes"] = self.session.used_bytes()
        stats["activeWorkspaceId"] = active_id
        return stats

    # ------------------------------------------------------------------
    # Consent
    # ------------------------------------------------------------------
    def has_storage_consent(self) -> bool:
        return self.storage.has_consent()

    def needs_storage_consent(self) -> bool:
        return self.storage.needs_consent()

    def set_storage_consent(self, granted: bool) -> None:
        self.storage.set_consent(granted)
        if granted:
            self.save_to_storage()

    # ------------------------------------------------------------------
    # Session tier
    # ------------------------------------------------------------------
    def save_to_session(self) -> bool:
        return save_session_data(self.session, build_session_data(self.state))

    def load_from_session(self) -> bool:
        data = load_session_data(self.session)
        if data is None:
            return False
        try:
            state = restore_state(data, current_version=SESSION_VERSION)
        except InvalidSnapshotError as exc:
            logger.error("Failed to restore session: %s", exc)
            return False
        with self._lock:
            self._state = state
        return True

    def clear_session(self) -> None:
        clear_session_data(self.session)

    # ------------------------------------------------------------------
    # Workspace directory
    # ------------------------------------------------------------------
    def get_current_workspace(self) -> Optional[WorkspaceMetadata]:
        return self.workspaces.get_active_workspace()

    def switch_workspace(self, workspace_id: str) -> bool:
        """Write the outgoing workspace, then load *workspace_id*.

        Debounced writes are held off for the whole swap, so a timer cannot
        pair one workspace's id with the other's graph.
        """
        if self.workspaces.get_workspace(workspace_id) is None:
            logger.warning("Cannot switch to unknown workspace %s", workspace_id)
            return False

        try:
            with self.debouncer.hold(SAVE_SCOPE), self._lock:
                current = self.workspaces.get_active_workspace_id()
                if workspace_id == current:
                    return True
                self.debouncer.cancel(SAVE_SCOPE)
                self._write_workspace(current)
                data = self.workspaces.get_workspace_data(workspace_id)
                state = restore_state(data) if data is not None else GraphState()
                if state.active_node_id is None:
                    state = active.set_active_node(state, ROOT_ID)[0]
                self.workspaces.set_active_workspace(workspace_id)
                self._state = state
        except (sqlite3.Error, InvalidSnapshotError) as exc:
            logger.error("Failed to switch to workspace %s: %s", workspace_id, exc)
            return False

        logger.info("Switched workspace to %s", workspace_id)
        return True

    def create_new_workspace(self, name: str) -> str:
        try:
            return self.workspaces.create_workspace(name)
        except (ValueError, sqlite3.Error) as exc:
            logger.error("Failed to create workspace %r: %s", name, exc)
            return ""

    def rename_current_workspace(self, name: str) -> bool:
        current = self.workspaces.get_active_workspace()
        if current is None:
            return False
        success = self.workspaces.rename_workspace(current.id, name)
        if success:
            logger.info("Renamed workspace %s to %r", current.id, name)
        return success

    def delete_workspace(self, workspace_id: str) -> bool:
        """Delete a workspace; deleting the active one loads its successor."""
        with self.debouncer.hold(SAVE_SCOPE), self._lock:
            was_active = workspace_id == self.workspaces.get_active_workspace_id()
            if not self.workspaces.delete_workspace(workspace_id):
                return False
            logger.info("Deleted workspace %s", workspace_id)
            if was_active:
                self.debouncer.cancel(SAVE_SCOPE)
                if not self.load_from_storage():
                    self._state = GraphState()
        return True


def open_store(db_path: Optional[Path] = None, **kwargs: Any) -> ChatStore:
    """Open the database, initialise the schema and load the active workspace.

    The caller owns the connection: close it with ``store.storage.conn.close()``
    after :meth:`ChatStore.close`.
    """
    conn = get_connection(db_path)
    init_db(conn)
    storage = PersistentStorage(conn)
    store = ChatStore(storage, WorkspaceManager(conn, storage), **kwargs)
    if not store.load_from_storage():
        logger.info("Starting with an empty conversation graph")
    return store
