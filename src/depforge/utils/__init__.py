"""Shared utility helpers."""

from depforge.utils.paths import (
    atomic_temp_path,
    ensure_directories,
    replace_symlink,
    safe_file_stem,
    write_text_atomically,
)
from depforge.utils.time_utils import now_utc, report_timestamp

__all__ = [
    "atomic_temp_path",
    "ensure_directories",
    "replace_symlink",
    "safe_file_stem",
    "write_text_atomically",
    "now_utc",
    "report_timestamp",
]
