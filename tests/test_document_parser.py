"""Tests for requirement document uploads."""

import pytest

from flowchart_ai.domain.errors import RequestValidationError
from flowchart_ai.services.documents import (
    TRUNCATION_MARKER,
    PlainTextDocumentParser,
    clean_text,
    strip_markdown,
)


def test_plain_text_is_cleaned() -> None:
    parser = PlainTextDocumentParser()
    content = "\ufeffUsers   log in\r\n\r\n\r\n\r\nthen   see orders  \n".encode()

    assert parser.parse("notes.txt", content) == "Users log in\n\nthen see orders"


def test_markdown_markup_is_removed() -> None:
    parser = PlainTextDocumentParser()
    content = (
        "# Checkout\n"
        "\n"
        "- The user opens the **cart**\n"
        "- Pays with `wallet` or [card](https://pay.example.com)\n"
        "> Refunds are out of scope\n"
    ).encode()

    assert parser.parse("Requirement.MD", content) == (
        "Checkout\n\n"
        "The user opens the cart\n"
        "Pays with wallet or card\n"
        "Refunds are out of scope"
    )


def test_long_documents_are_truncated() -> None:
    parser = PlainTextDocumentParser(max_length=100)

    text = parser.parse("long.txt", ("word " * 100).encode())

    assert len(text) == 100
    assert text.endswith(TRUNCATION_MARKER)


@pytest.mark.parametrize(
    ("filename", "content"),
    [
        ("brief.pdf", b"%PDF-1.4"),
        ("README", b"no extension"),
        ("broken.txt", b"\xff\xfe\xfa"),
        ("blank.md", b"  \n\n  "),
    ],
)
def test_rejected_uploads(filename: str, content: bytes) -> None:
    with pytest.raises(RequestValidationError) as exc_info:
        PlainTextDocumentParser().parse(filename, content)

    assert exc_info.value.field == "file"


def test_helpers() -> None:
    assert strip_markdown("## Title\n1. *first* step") == "Title\nfirst step"
    assert clean_text("  a \t b \n\n\n\n c  ") == "a b\n\nc"
