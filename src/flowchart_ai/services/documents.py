"""Turn uploaded documents into plain requirement text."""

import logging
import re
from dataclasses import dataclass
from pathlib import PurePath
from typing import Protocol

from flowchart_ai.domain.errors import RequestValidationError

_logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "...[content truncated]"

_HEADING = re.compile(r"^[ \t]{0,3}#{1,6}[ \t]+", re.MULTILINE)
_LIST_MARKER = re.compile(r"^[ \t]*(?:[-*+]|\d+[.)])[ \t]+", re.MULTILINE)
_BLOCKQUOTE = re.compile(r"^[ \t]*>[ \t]?", re.MULTILINE)
_EMPHASIS = re.compile(r"(\*{1,3}|_{1,3})(\S(?:.*?\S)?)\1")
_INLINE_CODE = re.compile(r"`([^`\n]+)`")
_LINK = re.compile(r"!?\[([^\]\n]*)\]\([^)\n]*\)")
_FENCE = re.compile(r"^[ \t]*```.*$", re.MULTILINE)


class DocumentParser(Protocol):
    """Extracts plain text from an uploaded file."""

    def parse(self, filename: str, content: bytes) -> str:
        """Return the text content or raise ``RequestValidationError``."""


@dataclass
class PlainTextDocumentParser(DocumentParser):
    """Parser for UTF-8 text and Markdown uploads."""

    max_length: int = 5000

    supported_extensions = (".txt", ".md", ".markdown")

    def parse(self, filename: str, content: bytes) -> str:
        extension = PurePath(filename or "").suffix.lower()
        if extension not in self.supported_extensions:
            raise RequestValidationError(
                "file", f"Unsupported file type: {extension or filename}"
            )
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise RequestValidationError("file", "File is not valid UTF-8") from exc
        if extension != ".txt":
            text = strip_markdown(text)
        cleaned = clean_text(text)
        if not cleaned:
            raise RequestValidationError("file", "File has no readable text")
        if len(cleaned) > self.max_length:
            _logger.warning(
                "Upload %s truncated from %s to %s characters",
                filename,
                len(cleaned),
                self.max_length,
            )
            keep = max(self.max_length - len(TRUNCATION_MARKER), 0)
            cleaned = cleaned[:keep] + TRUNCATION_MARKER
        return cleaned


def strip_markdown(text: str) -> str:
    """Drop Markdown markup while keeping the readable text."""
    text = _FENCE.sub("", text)
    text = _HEADING.sub("", text)
    text = _BLOCKQUOTE.sub("", text)
    text = _LIST_MARKER.sub("", text)
    text = _LINK.sub(r"\1", text)
    text = _INLINE_CODE.sub(r"\1", text)
    return _EMPHASIS.sub(r"\2", text)


def clean_text(text: str) -> str:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
