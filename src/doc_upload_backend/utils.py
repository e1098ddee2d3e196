"""
Utility functions for file names, storage keys and process setup.

This module provides helper functions for:
- Reducing client-supplied file names to a safe base name
- Building object-storage keys for uploaded files
- Ensuring directory creation
- Applying the configured log level
"""

from __future__ import annotations

import logging
import re
from pathlib import Path, PurePosixPath
from typing import Optional
from uuid import uuid4

# Pattern to match characters that are not safe for object keys and paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def base_filename(filename: str) -> str:
    """
    Strip any client-side folder path from a file name.

    Browsers send folder uploads as ``dir/sub/file.pdf``; only the last
    component is the file's name.

    Example:
        >>> base_filename("reports/2024/q1.pdf")
        "q1.pdf"
        >>> base_filename("C:\\\\docs\\\\notes.txt")
        "notes.txt"
    """
    name = PurePosixPath(filename.replace("\\", "/")).name
    return name or filename


def sanitize_filename(filename: str, fallback: str = "file") -> str:
    """
    Generate a storage-safe file name from user input.

    Args:
        filename: The original file name, possibly with a folder path
        fallback: Stem to use if sanitization leaves nothing

    Returns:
        A file name containing only safe characters, extension preserved

    Example:
        >>> sanitize_filename("My Report (final).PDF")
        "My-Report-final.pdf"
        >>> sanitize_filename("###")
        "file"
    """
    path = PurePosixPath(base_filename(filename))
    stem = SANITIZE_PATTERN.sub("-", path.stem.strip()).strip("-_.")
    suffix = SANITIZE_PATTERN.sub("", path.suffix).lower()
    return f"{stem or fallback}{suffix}"


def build_object_key(prefix: str, filename: str, folder_id: Optional[str] = None) -> str:
    """
    Build a unique object-storage key for an upload.

    Keys have the form ``<prefix>/<folder or "root">/<random>-<safe name>`` so
    two uploads of the same file never collide.
    """
    folder = SANITIZE_PATTERN.sub("-", folder_id).strip("-") if folder_id else "root"
    parts = [prefix.strip("/"), folder or "root", f"{uuid4().hex[:12]}-{sanitize_filename(filename)}"]
    return "/".join(part for part in parts if part)


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
