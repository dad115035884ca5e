"""Shared documents a new branch inherits from its ancestor chain."""

from __future__ import annotations

import logging

from canopy.graph.models import Attachment, Message

logger = logging.getLogger(__name__)


def is_document(mime_type: str) -> bool:
    """True for PDFs, any ``text/*`` type, and JavaScript / Python sources."""
    return (
        mime_type == "application/pdf"
        or mime_type.startswith("text/")
        or "javascript" in mime_type
        or "python" in mime_type
    )


def inherit_documents(messages: list[Message]) -> list[Attachment]:
    """Collect document attachments along *messages*, first ``(name, type)`` wins."""
    docs: list[Attachment] = []
    seen: set[tuple[str, str]] = set()
    for msg in messages:
        for att in msg.attachments:
            if not is_document(att.type):
                continue
            key = (att.name, att.type)
            if key in seen:
                continue
            seen.add(key)
            docs.append(
                Attachment(name=att.name, type=att.type, data=att.data, preview_url=att.preview_url)
            )
    logger.debug("Inherited %d documents: %s", len(docs), [d.name for d in docs])
    return docs
