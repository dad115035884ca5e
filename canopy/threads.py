"""Per-node conversation threads and model invocation.

Each graph node that talks to the model gets a :class:`Thread`: the message
history the model sees plus the documents it can refer to.  A thread is
seeded from the node's ancestor path the first time it is used; a branch
thread starts with an empty history but carries the documents inherited from
its ancestors.

Chat model
----------
``ollama`` (default)
    ``langchain_ollama.ChatOllama`` with ``OLLAMA_CHAT_MODEL``.

``openai``
    ``langchain_openai.ChatOpenAI`` with ``OPENAI_CHAT_MODEL``.
    Requires ``OPENAI_API_KEY`` (or an explicit ``api_key``).
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional

from canopy.config import settings
from canopy.graph.documents import inherit_documents
from canopy.graph.models import Attachment, Message

logger = logging.getLogger(__name__)

# Characters of each document included in the system prompt
_MAX_DOCUMENT_CHARS = 20_000
_MAX_TITLE_CHARS = 60

_SYSTEM_PROMPT = (
    "You are a helpful assistant in a branching conversation. "
    "Answer the user's latest message using the conversation so far."
)

_TITLE_PROMPT = (
    "Summarise the topic of the following conversation as a short title of at "
    "most six words. Reply with the title only, without quotes or punctuation "
    "at the end.\n\n{transcript}"
)


@dataclass
class Thread:
    node_id: str
    history: list[Message] = field(default_factory=list)
    document_context: list[Attachment] = field(default_factory=list)


# ---------------------------------------------------------------------------
# LLM helper
# ---------------------------------------------------------------------------

def _get_llm(api_key: Optional[str] = None) -> Any:
    """Return a LangChain chat model from ``settings``."""
    if settings.llm_provider == "openai":
        from langchain_openai import ChatOpenAI

        kwargs: dict[str, Any] = {"model": settings.openai_chat_model, "temperature": 0}
        if api_key:
            kwargs["api_key"] = api_key
        return ChatOpenAI(**kwargs)

    from langchain_ollama import ChatOllama

    return ChatOllama(model=settings.ollama_chat_model, temperature=0)


def document_text(att: Attachment) -> str:
    """Decode a document attachment into plain text for the prompt."""
    try:
        raw = base64.b64decode(att.data, validate=False)
    except (binascii.Error, ValueError) as exc:
        logger.warning("Attachment %s is not valid base64: %s", att.name, exc)
        return ""

    if att.type == "application/pdf":
        import pypdf  # noqa: PLC0415

        try:
            reader = pypdf.PdfReader(io.BytesIO(raw))
            pages = [page.extract_text() or "" for page in reader.pages]
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not extract text from PDF %s: %s", att.name, exc)
            return ""
        return "\n\n".join(p for p in pages if p.strip())

    return raw.decode("utf-8", errors="replace")


# ---------------------------------------------------------------------------
# Thread manager
# ---------------------------------------------------------------------------

class ChatManager:
    """Thread collaborator: owns one :class:`Thread` per node."""

    def __init__(self, llm: Any = None, api_key: Optional[str] = None) -> None:
        self._llm = llm
        self._api_key = api_key
        self._threads: dict[str, Thread] = {}
        self._lock = threading.Lock()

    @property
    def llm(self) -> Any:
        if self._llm is None:
            self._llm = _get_llm(self._api_key)
        return self._llm

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------
    def get_thread(self, node_id: str, path_messages: list[Message]) -> Thread:
        """Return the node's thread, seeding it from *path_messages* if new."""
        with self._lock:
            thread = self._threads.get(node_id)
            if thread is None:
                thread = Thread(
                    node_id=node_id,
                    history=list(path_messages),
                    document_context=inherit_documents(path_messages),
                )
                self._threads[node_id] = thread
                logger.debug(
                    "Thread for %s seeded with %d messages, %d documents",
                    node_id, len(thread.history), len(thread.document_context),
                )
            return thread

    def has_thread(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._threads

    def create_branch_thread(
        self, source_id: str, new_id: str, path_messages: list[Message]
    ) -> Thread:
        """Start an empty thread for *new_id* that keeps the ancestors' documents."""
        with self._lock:
            docs = inherit_documents(path_messages)
            source = self._threads.get(source_id)
            if source is not None:
                known = {(d.name, d.type) for d in docs}
                docs += [d for d in source.document_context if (d.name, d.type) not in known]
            thread = Thread(node_id=new_id, history=[], document_context=docs)
            self._threads[new_id] = thread
        logger.info(
            "Branch thread %s created from %s with %d documents", new_id, source_id, len(docs)
        )
        return thread

    def delete_thread(self, node_id: str) -> None:
        with self._lock:
            self._threads.pop(node_id, None)

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------
    def send_message(
        self, node_id: str, text: str, attachments: Optional[list[Attachment]] = None
    ) -> str:
        """Send *text* on the node's thread and return the model's reply.

        Raises whatever the model client raises; the caller turns failures
        into visible error messages.
        """
        thread = self.get_thread(node_id, [])
        prompt = self._build_prompt(thread, text, attachments)
        result = self.llm.invoke(prompt)
        reply = result.content if hasattr(result, "content") else str(result)
        self._record(thread, text, attachments, reply)
        return reply

    def stream_message(
        self, node_id: str, text: str, attachments: Optional[list[Attachment]] = None
    ) -> Iterator[str]:
        """Yield reply tokens for *text*; the thread is updated once the stream ends."""
        thread = self.get_thread(node_id, [])
        prompt = self._build_prompt(thread, text, attachments)
        parts: list[str] = []
        for chunk in self.llm.stream(prompt):
            token = chunk.content if hasattr(chunk, "content") else str(chunk)
            if token:
                parts.append(token)
                yield token
        self._record(thread, text, attachments, "".join(parts))

    def generate_title(self, messages: list[Message]) -> str:
        """Ask the model for a short title summarising *messages*."""
        from langchain_core.messages import HumanMessage

        transcript = "\n".join(f"{m.role}: {m.content}" for m in messages)
        result = self.llm.invoke([HumanMessage(content=_TITLE_PROMPT.format(transcript=transcript))])
        lines = (result.content if hasattr(result, "content") else str(result)).strip().splitlines()
        title = lines[0].strip().strip("\"'").strip() if lines else ""
        if not title:
            raise ValueError("Model returned an empty title")
        return title[:_MAX_TITLE_CHARS]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _build_prompt(
        self, thread: Thread, text: str, attachments: Optional[list[Attachment]]
    ) -> list[Any]:
        from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

        system = _SYSTEM_PROMPT
        documents = list(thread.document_context)
        for att in attachments or []:
            if (att.name, att.type) not in {(d.name, d.type) for d in documents}:
                documents.append(att)
        blocks = []
        for doc in documents:
            body = document_text(doc)
            if body:
                blocks.append(f"--- {doc.name} ({doc.type}) ---\n{body[:_MAX_DOCUMENT_CHARS]}")
        if blocks:
            system += "\n\nReference documents:\n\n" + "\n\n".join(blocks)

        prompt: list[Any] = [SystemMessage(content=system)]
        for msg in thread.history:
            if msg.role == "model":
                prompt.append(AIMessage(content=msg.content))
            else:
                prompt.append(HumanMessage(content=msg.content))
        prompt.append(HumanMessage(content=text))
        return prompt

    def _record(
        self,
        thread: Thread,
        text: str,
        attachments: Optional[list[Attachment]],
        reply: str,
    ) -> None:
        with self._lock:
            thread.history.append(Message(role="user", content=text, attachments=list(attachments or [])))
            thread.history.append(Message(role="model", content=reply))
            known = {(d.name, d.type) for d in thread.document_context}
            for doc in inherit_documents([Message(role="user", content=text, attachments=list(attachments or []))]):
                if (doc.name, doc.type) not in known:
                    thread.document_context.append(doc)
