from __future__ import annotations

import hashlib
from pathlib import Path

CHUNK_SIZE = 1024 * 1024


def compute_file_hash(file_path: str | Path, algorithm: str = "sha256") -> str:
    """Hash a file in chunks and return the lowercase hex digest."""
    h = hashlib.new(algorithm)
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


def normalize_hash(value: str) -> str:
    return value.strip().lower()


def hashes_match(a: str, b: str) -> bool:
    return normalize_hash(a) == normalize_hash(b)
