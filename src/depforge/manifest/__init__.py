"""Dependency manifest and lock-file readers."""

from depforge.manifest.lockfile import (
    DEFAULT_HASH_LENGTH,
    LockFile,
    file_digest,
    read_lock_file,
    short_hash,
)
from depforge.manifest.parser import (
    DependencyEntry,
    dependency_names,
    load_manifest,
    parse_manifest_lines,
)

__all__ = [
    "DEFAULT_HASH_LENGTH",
    "DependencyEntry",
    "LockFile",
    "dependency_names",
    "file_digest",
    "load_manifest",
    "parse_manifest_lines",
    "read_lock_file",
    "short_hash",
]
