"""
Utility functions for file handling and timestamps.

This module provides helper functions for:
- Ensuring directory creation for the local database file
- Splitting filenames and mapping extensions to document/image types
- Producing the UTC timestamps stored on records
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

# Extension (lowercase, with dot) -> content type for accepted image uploads
IMAGE_CONTENT_TYPES: Dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

# Content type -> extension used for stored image keys
IMAGE_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}

SUPPORTED_DOCUMENT_EXTENSIONS = (".pdf",)


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and lowercased extension.

    Example:
        >>> split_extension("Lecture Notes.PDF")
        ("Lecture Notes", ".pdf")
    """
    path = Path(filename)
    return path.stem, path.suffix.lower()


def document_type_for(filename: str) -> Optional[str]:
    """Return the file type tag ("pdf") for a supported document, else None."""
    _, ext = split_extension(filename)
    if ext in SUPPORTED_DOCUMENT_EXTENSIONS:
        return ext.lstrip(".")
    return None


def image_content_type_for(filename: str) -> Optional[str]:
    _, ext = split_extension(filename)
    return IMAGE_CONTENT_TYPES.get(ext)


def image_extension_for(content_type: str) -> str:
    return IMAGE_EXTENSIONS.get(content_type, ".jpg")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def unix_millis() -> int:
    return int(time.time() * 1000)
