"""Tests for document inheritance along an ancestor chain."""

from __future__ import annotations

import pytest

from canopy.graph.documents import inherit_documents, is_document
from canopy.graph.models import Attachment, Message


def _att(name: str, mime: str, data: str = "ZGF0YQ==") -> Attachment:
    return Attachment(name=name, type=mime, data=data)


class TestIsDocument:
    @pytest.mark.parametrize(
        "mime",
        ["application/pdf", "text/plain", "text/markdown", "application/javascript", "text/x-python"],
    )
    def test_documents(self, mime):
        assert is_document(mime)

    @pytest.mark.parametrize("mime", ["image/png", "application/zip", "audio/mpeg", ""])
    def test_non_documents(self, mime):
        assert not is_document(mime)


class TestInheritDocuments:
    def test_duplicate_name_and_type_kept_once(self):
        messages = [
            Message(role="user", content="first", attachments=[_att("paper.pdf", "application/pdf", "one")]),
            Message(role="user", content="again", attachments=[_att("paper.pdf", "application/pdf", "two")]),
        ]
        docs = inherit_documents(messages)
        assert len(docs) == 1
        assert docs[0].data == "one"

    def test_same_name_different_type_both_kept(self):
        messages = [
            Message(
                role="user",
                content="",
                attachments=[_att("paper", "application/pdf"), _att("paper", "text/plain")],
            )
        ]
        assert [(d.name, d.type) for d in inherit_documents(messages)] == [
            ("paper", "application/pdf"),
            ("paper", "text/plain"),
        ]

    def test_images_are_not_inherited(self):
        messages = [
            Message(
                role="user",
                content="look",
                attachments=[_att("photo.png", "image/png"), _att("main.py", "text/x-python")],
            )
        ]
        assert [d.name for d in inherit_documents(messages)] == ["main.py"]

    def test_order_follows_the_path(self):
        messages = [
            Message(role="user", content="", attachments=[_att("b.txt", "text/plain")]),
            Message(role="model", content="ok"),
            Message(role="user", content="", attachments=[_att("a.js", "application/javascript")]),
        ]
        assert [d.name for d in inherit_documents(messages)] == ["b.txt", "a.js"]

    def test_empty_path(self):
        assert inherit_documents([]) == []
