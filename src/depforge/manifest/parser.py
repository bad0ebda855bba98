"""Parse dependency manifests into ordered declaration entries."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from depforge.errors import InputError, ManifestParseError

LOGGER = logging.getLogger(__name__)

# requires "Name"[, "constraint"][;]  (single or double quotes, bare numeric versions)
_REQUIRES_RE = re.compile(
    r"""^requires\s+(?P<q>["'])(?P<name>[^"']+)(?P=q)"""
    r"""(?:\s*(?:,|=>)\s*(?:(?P<cq>["'])(?P<constraint>[^"']*)(?P=cq)|(?P<bare>v?[0-9][0-9._]*)))?"""
    r"""\s*;?\s*(?:\#.*)?$"""
)
_REQUIRES_KEYWORD_RE = re.compile(r"^requires\b")
# on 'develop' => sub { requires 'X'; requires 'Y' };
_INLINE_BLOCK_RE = re.compile(r"^.*?\bsub\s*\{\s*(?P<body>requires\b.*?)\s*\}\s*;?\s*(?:\#.*)?$")


@dataclass(frozen=True, slots=True)
class DependencyEntry:
    """One `requires` declaration from the manifest."""

    name: str
    version_constraint: str = ""
    line_no: int = 0


def parse_manifest_lines(lines: Iterable[str], *, source: object = "<manifest>") -> list[DependencyEntry]:
    """Parse manifest lines, keeping declaration order and duplicates.

    Single-line blocks such as ``on 'develop' => sub { requires 'X' };`` contribute
    each of their `requires` statements.
    """

    entries: list[DependencyEntry] = []
    for line_no, raw_line in enumerate(lines, start=1):
        stripped = raw_line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        for statement in _statements(stripped):
            if not _REQUIRES_KEYWORD_RE.match(statement):
                continue
            match = _REQUIRES_RE.match(statement)
            if match is None:
                raise ManifestParseError(source, line_no, raw_line)
            entries.append(
                DependencyEntry(
                    name=match.group("name").strip(),
                    version_constraint=(match.group("constraint") or match.group("bare") or "").strip(),
                    line_no=line_no,
                )
            )
    return entries


def _statements(line: str) -> list[str]:
    block = _INLINE_BLOCK_RE.match(line)
    if block is None:
        return [line]
    return [f"{part.strip()};" for part in block.group("body").split(";") if part.strip()]


def load_manifest(path: Path, logger: logging.Logger | None = None) -> list[DependencyEntry]:
    """Read a manifest file and return its dependency entries in declaration order."""

    effective_logger = logger or LOGGER
    if not path.is_file():
        raise InputError(f"Manifest not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            entries = parse_manifest_lines(handle, source=path)
    except UnicodeDecodeError as exc:
        raise InputError(f"Manifest is not valid UTF-8: {path} ({exc.reason} at byte {exc.start})") from exc

    duplicates = _duplicate_names(entries)
    if duplicates:
        effective_logger.warning("manifest.duplicates path=%s names=%s", path, duplicates)
    effective_logger.info("manifest.loaded path=%s entries=%s", path, len(entries))
    return entries


def dependency_names(entries: Sequence[DependencyEntry]) -> list[str]:
    """Return dependency names in manifest order."""

    return [entry.name for entry in entries]


def _duplicate_names(entries: Sequence[DependencyEntry]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for entry in entries:
        if entry.name in seen and entry.name not in duplicates:
            duplicates.append(entry.name)
        seen.add(entry.name)
    return duplicates
