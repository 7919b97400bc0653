"""Filesystem path helpers for generated book assets.

All path helpers automatically create directories if they don't exist.

Security:
    Book identifiers must be alphanumeric with optional underscores/dashes
    (UUID strings qualify). Resolved paths are verified to stay within
    WORKSPACE_ROOT.

Architecture Pattern:
    {WORKSPACE_ROOT}/books/{book_id}/
    └── covers/
        ├── cover_<timestamp>.png
        └── asset_<timestamp>.png
"""

import re
from pathlib import Path

from chronicle.config import get_workspace_root
from chronicle.models import utcnow

__all__ = [
    "BOOK_DIR_NAME",
    "COVER_DIR_NAME",
    "WORKSPACE_ROOT",
    "get_book_dir",
    "get_cover_dir",
    "write_cover_image",
]

WORKSPACE_ROOT = Path(get_workspace_root())

BOOK_DIR_NAME = "books"
COVER_DIR_NAME = "covers"

# Validation pattern: alphanumeric, underscores, dashes only
_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_identifier(identifier: str, name: str) -> None:
    """Validate identifier to prevent path traversal attacks.

    Raises:
        ValueError: If identifier is invalid or contains path traversal sequences
    """
    if not identifier:
        raise ValueError(f"{name} cannot be empty")

    if not _ID_PATTERN.match(identifier):
        raise ValueError(
            f"Invalid {name}: '{identifier}'. "
            f"Only alphanumeric characters, underscores, and dashes are allowed."
        )


def _verify_path_in_workspace(path: Path) -> None:
    """Verify that resolved path stays within WORKSPACE_ROOT.

    Raises:
        ValueError: If resolved path escapes WORKSPACE_ROOT
    """
    resolved = path.resolve()
    workspace_resolved = WORKSPACE_ROOT.resolve()

    if not resolved.is_relative_to(workspace_resolved):
        raise ValueError(
            f"Path traversal detected: resolved path '{resolved}' "
            f"is outside workspace '{workspace_resolved}'"
        )


def get_book_dir(book_id: str) -> Path:
    """Get workspace directory for a book.

    Creates the directory if it doesn't exist.

    Args:
        book_id: Book identifier (UUID string)

    Returns:
        Path to book workspace: {WORKSPACE_ROOT}/books/{book_id}/

    Raises:
        ValueError: If book_id is invalid or contains path traversal sequences
    """
    _validate_identifier(book_id, "book_id")

    path = WORKSPACE_ROOT / BOOK_DIR_NAME / book_id
    _verify_path_in_workspace(path)

    path.mkdir(parents=True, exist_ok=True)
    return path


def get_cover_dir(book_id: str) -> Path:
    """Get covers directory for a book (auto-created)."""
    path = get_book_dir(book_id) / COVER_DIR_NAME
    _verify_path_in_workspace(path)

    path.mkdir(parents=True, exist_ok=True)
    return path


def write_cover_image(book_id: str, image_bytes: bytes, kind: str = "cover") -> str:
    """Write a cover PNG and return its path relative to WORKSPACE_ROOT.

    Each generation gets a fresh timestamped file so a regeneration never
    overwrites the image a reader may currently be served.

    Args:
        book_id: Book identifier (UUID string)
        image_bytes: PNG bytes
        kind: File prefix ("cover" for the typeset cover, "asset" for the raw image)

    Returns:
        Relative path string, e.g. "books/<id>/covers/cover_20260101T120000123456.png"
    """
    _validate_identifier(kind, "kind")

    stamp = utcnow().strftime("%Y%m%dT%H%M%S%f")
    path = get_cover_dir(book_id) / f"{kind}_{stamp}.png"
    path.write_bytes(image_bytes)

    return str(path.relative_to(WORKSPACE_ROOT))
