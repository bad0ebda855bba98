"""Path and filesystem helper functions."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable
from uuid import uuid4


def ensure_directories(paths: Iterable[Path]) -> list[Path]:
    """Create all directories in the iterable if they do not exist."""

    created_or_existing: list[Path] = []
    for directory in paths:
        directory.mkdir(parents=True, exist_ok=True)
        created_or_existing.append(directory)
    return created_or_existing


def atomic_temp_path(target_path: Path) -> Path:
    """Create a temp path in the same directory for atomic replacement."""

    return target_path.parent / f".{target_path.name}.{uuid4().hex}.tmp"


def write_text_atomically(content: str, output_path: Path) -> Path:
    """Write UTF-8 text to a temp file and rename it onto the output path."""

    output_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = atomic_temp_path(output_path)
    try:
        temp_path.write_text(content, encoding="utf-8")
        os.replace(temp_path, output_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return output_path


def replace_symlink(link_path: Path, target_name: str) -> Path:
    """Point `link_path` at `target_name` by swapping in a fresh symlink."""

    link_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = atomic_temp_path(link_path)
    try:
        os.symlink(target_name, temp_path)
        os.replace(temp_path, link_path)
    finally:
        if temp_path.is_symlink() or temp_path.exists():
            temp_path.unlink()
    return link_path


def safe_file_stem(name: str) -> str:
    """Return a filesystem-safe stem for a namespaced dependency name."""

    return name.replace("::", "-").replace("/", "-").replace(":", "-")
