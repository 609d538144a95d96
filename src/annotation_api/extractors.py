"""
Plain-text extraction from uploaded documents.

Extractors are keyed by lowercased file type tag. Only PDF is implemented;
get_extractor() raises UnsupportedType for anything else.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Dict, List, Protocol

import fitz  # PyMuPDF

from .errors import ExtractionFailed, NoTextFound, UnsupportedType

logger = logging.getLogger(__name__)

_INTERIOR_WHITESPACE = re.compile(r"[ \t\f\v\u00a0]+")


def page_marker(page_number: int) -> str:
    return f"--- Page {page_number} ---"


def normalize_text(text: str) -> str:
    """
    Normalize extracted text.

    Line endings become "\\n", every line is trimmed, blank lines are dropped
    and runs of interior whitespace collapse to a single space.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = []
    for line in text.split("\n"):
        line = _INTERIOR_WHITESPACE.sub(" ", line).strip()
        if line:
            lines.append(line)
    return "\n".join(lines).strip()


class TextExtractor(Protocol):
    def extract(self, data: bytes) -> str:
        ...


class PDFExtractor:
    """Extract text from PDF bytes with PyMuPDF."""

    def extract(self, data: bytes) -> str:
        if not data:
            raise ExtractionFailed("failed to parse PDF: empty file")

        try:
            doc = fitz.open(stream=data, filetype="pdf")
        except Exception as exc:
            raise ExtractionFailed(f"failed to parse PDF: {exc}") from exc

        parts: List[str] = []
        has_text = False
        try:
            for index, page in enumerate(doc):
                try:
                    content = page.get_text("text")
                except Exception as exc:
                    logger.warning(f"Skipping unreadable PDF page {index + 1}: {exc}")
                    continue

                if index > 0:
                    parts.append(f"\n\n{page_marker(index + 1)}\n\n")
                parts.append(content)
                if normalize_text(content):
                    has_text = True
        finally:
            doc.close()

        if not has_text:
            raise NoTextFound("no text content found in PDF")

        return normalize_text("".join(parts))


EXTRACTORS: Dict[str, Callable[[], TextExtractor]] = {
    "pdf": PDFExtractor,
}


def get_extractor(file_type: str) -> TextExtractor:
    key = (file_type or "").strip().lower().lstrip(".")
    factory = EXTRACTORS.get(key)
    if factory is None:
        raise UnsupportedType(f"unsupported file type: {file_type}")
    return factory()


def extract_text(data: bytes, file_type: str) -> str:
    """Extract normalized plain text from a document of the given type."""
    return get_extractor(file_type).extract(data)
