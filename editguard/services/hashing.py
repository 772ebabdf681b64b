"""Content hashing used as the integrity token everywhere."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from editguard.config.constants import HASH_LENGTH
from editguard.core.workspace import Workspace


def content_hash(text: str | None) -> str:
    """Generate a stable short SHA1 token for text.

    None (missing file) hashes the same as empty content.
    """
    return hashlib.sha1((text or "").encode("utf-8")).hexdigest()[:HASH_LENGTH]


EMPTY_HASH = content_hash("")


@dataclass
class FileState:
    path: str
    exists: bool
    content: str | None
    hash: str


def read_file_state(workspace: Workspace, relpath: str) -> FileState:
    """Read one workspace file; unreadable files count as absent."""
    content = workspace.read_text(relpath)
    return FileState(
        path=relpath,
        exists=content is not None,
        content=content,
        hash=content_hash(content),
    )
