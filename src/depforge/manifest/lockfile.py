"""Lock-file fingerprinting."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path

from depforge.errors import InputError

DEFAULT_HASH_LENGTH = 12
_CHUNK_SIZE = 1 << 16


@dataclass(frozen=True, slots=True)
class LockFile:
    """A lock file identified only by its exact byte content."""

    path: Path
    digest: str
    short_hash: str


def file_digest(path: Path) -> str:
    """Return the full sha256 hex digest of a file's bytes."""

    digest = hashlib.sha256()
    with path.open("rb") as handle:
        while True:
            chunk = handle.read(_CHUNK_SIZE)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


def short_hash(digest: str, length: int = DEFAULT_HASH_LENGTH) -> str:
    """Truncate a hex digest to the bundle-name prefix."""

    if length < DEFAULT_HASH_LENGTH:
        raise ValueError(f"hash length must be at least {DEFAULT_HASH_LENGTH}, got {length}")
    return digest[:length]


def read_lock_file(path: Path, hash_length: int = DEFAULT_HASH_LENGTH) -> LockFile:
    """Fingerprint a lock file; raise InputError when it is missing."""

    if not path.is_file():
        raise InputError(f"Lock file not found: {path}")
    digest = file_digest(path)
    return LockFile(path=path, digest=digest, short_hash=short_hash(digest, hash_length))
