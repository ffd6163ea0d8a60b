from __future__ import annotations

import hashlib
from typing import Any

from .constants import DIGESTS

_CHUNK = 1024 * 1024


def new_digest(algorithm: str) -> Any:
    if algorithm not in DIGESTS:
        raise ValueError(f"unsupported digest {algorithm!r}; expected one of {', '.join(DIGESTS)}")
    return hashlib.new(algorithm)


def file_digest(path: str, algorithm: str = "sha1") -> bytes:
    """Digest of a file's contents, comparable with ``Transfer.digest``."""
    h = new_digest(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.digest()
