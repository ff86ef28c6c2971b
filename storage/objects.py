"""
storage/objects.py -- Store uploaded blobs and hand back a reference URL.

The credential workflows only ever persist the returned reference strings;
how the bytes are kept is this module's concern alone.

LocalObjectStore writes each blob under DOCUMENT_STORAGE_DIR with a
collision-free key ("<safe-stem>_<uuid4hex><suffix>") and returns
DOCUMENT_BASE_URL/<key>. A bucket-backed implementation only has to provide
the same store() method.

Security:
  Client-supplied filenames are reduced to a safe character set and stripped
  of any directory part before use, so "../../etc/passwd" cannot escape the
  storage root.
"""

from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path
from typing import Protocol

logger = logging.getLogger("scholargate.storage")

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_STEM = 64


class ObjectStore(Protocol):
    def store(self, filename: str, content: bytes) -> str: ...


def object_key(filename: str) -> str:
    """Build a unique, filesystem-safe key from a client filename."""
    name = Path(filename.replace("\\", "/")).name
    suffix = Path(name).suffix.lower()
    if not re.fullmatch(r"\.[a-z0-9]{1,10}", suffix):
        suffix = ""
    stem = _UNSAFE_CHARS.sub("_", Path(name).stem).strip("._") or "document"
    return f"{stem[:_MAX_STEM]}_{uuid.uuid4().hex}{suffix}"


class LocalObjectStore:
    """Filesystem-backed object store.

    Usage:
        objects = LocalObjectStore("/var/lib/scholargate/documents", "https://cdn.example.com/docs")
        url = objects.store("accreditation.pdf", data)
    """

    def __init__(self, root: str | Path, base_url: str) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def store(self, filename: str, content: bytes) -> str:
        key = object_key(filename)
        (self.root / key).write_bytes(content)
        logger.info("Stored object %s (%d bytes)", key, len(content))
        return f"{self.base_url}/{key}"
