"""Read the stage structure out of a Containerfile and diff it against the declared graph."""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from depforge.errors import InputError
from depforge.images.graph import BUNDLER_TAG, CopyEdge, ImageGraph

_FROM_RE = re.compile(
    r"^FROM\s+(?:--platform=\S+\s+)?(?P<image>\S+)(?:\s+AS\s+(?P<name>\S+))?\s*$",
    re.IGNORECASE,
)
_COPY_RE = re.compile(r"^COPY\s+(?P<body>.+)$", re.IGNORECASE)
_RUN_RE = re.compile(r"^RUN\s+(?P<body>.+)$", re.IGNORECASE)
_FROM_FLAG_RE = re.compile(r"^--from=(?P<source>\S+)$")
# Installing cpanm or Carton, as opposed to running them.
_BUNDLER_INSTALL_RE = re.compile(r"cpanmin\.us|App::cpanminus|\bCarton\b")


@dataclass(frozen=True, slots=True)
class ParsedStage:
    """A `FROM` block: its name, base, and `COPY --from` edges."""

    name: str
    base: str
    copies_from: tuple[CopyEdge, ...]
    line_no: int
    installs_bundler: bool = False


def _logical_lines(lines: Iterable[str]) -> Iterable[tuple[int, str]]:
    buffer: list[str] = []
    start = 0
    for line_no, raw in enumerate(lines, start=1):
        stripped = raw.strip()
        if not buffer and (not stripped or stripped.startswith("#")):
            continue
        if not buffer:
            start = line_no
        if stripped.endswith("\\"):
            buffer.append(stripped[:-1].strip())
            continue
        buffer.append(stripped)
        yield start, " ".join(part for part in buffer if part)
        buffer = []
    if buffer:
        yield start, " ".join(part for part in buffer if part)


def _copy_edges(body: str, line_no: int) -> list[CopyEdge]:
    try:
        tokens = shlex.split(body)
    except ValueError as exc:
        raise InputError(f"Malformed COPY instruction at line {line_no}: {exc}") from exc
    source_stage: str | None = None
    paths: list[str] = []
    for token in tokens:
        flag = _FROM_FLAG_RE.match(token)
        if flag:
            source_stage = flag.group("source")
        elif token.startswith("--"):
            continue
        else:
            paths.append(token)
    if source_stage is None or len(paths) < 2:
        return []
    return [CopyEdge(source_stage, path.rstrip("/") or "/") for path in paths[:-1]]


def parse_containerfile_lines(lines: Iterable[str]) -> list[ParsedStage]:
    """Parse `FROM ... AS name` blocks, their `COPY --from=` edges, and bundler installs in `RUN`."""

    stages: list[ParsedStage] = []
    current: dict[str, object] | None = None
    edges: list[CopyEdge] = []
    installs_bundler = False

    def flush() -> None:
        if current is not None:
            stages.append(
                ParsedStage(
                    name=str(current["name"]),
                    base=str(current["base"]),
                    copies_from=tuple(edges),
                    line_no=int(current["line_no"]),
                    installs_bundler=installs_bundler,
                )
            )

    for line_no, line in _logical_lines(lines):
        from_match = _FROM_RE.match(line)
        if from_match:
            flush()
            edges = []
            installs_bundler = False
            current = {
                "name": from_match.group("name") or str(len(stages)),
                "base": from_match.group("image"),
                "line_no": line_no,
            }
            continue
        if current is None:
            continue
        copy_match = _COPY_RE.match(line)
        if copy_match:
            edges.extend(_copy_edges(copy_match.group("body"), line_no))
            continue
        run_match = _RUN_RE.match(line)
        if run_match and _BUNDLER_INSTALL_RE.search(run_match.group("body")):
            installs_bundler = True
    flush()
    return stages


def load_containerfile(path: Path) -> list[ParsedStage]:
    if not path.is_file():
        raise InputError(f"Containerfile not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        return parse_containerfile_lines(handle)


def compare_with_graph(graph: ImageGraph, parsed: Iterable[ParsedStage]) -> list[str]:
    """Return drift between the declared graph and a parsed build definition."""

    drift: list[str] = []
    parsed_by_name = {stage.name: stage for stage in parsed}

    for stage in graph:
        actual = parsed_by_name.get(stage.name)
        if actual is None:
            drift.append(f"stage '{stage.name}' is declared but missing from the Containerfile")
            continue
        if actual.base != stage.base:
            drift.append(f"stage '{stage.name}' is FROM '{actual.base}' in the Containerfile, declared '{stage.base}'")
        declared_edges = set(stage.copies_from)
        actual_edges = set(actual.copies_from)
        for edge in sorted(declared_edges - actual_edges, key=lambda item: (item.source, item.path)):
            drift.append(f"stage '{stage.name}' should COPY --from={edge.source} {edge.path}")
        for edge in sorted(actual_edges - declared_edges, key=lambda item: (item.source, item.path)):
            drift.append(f"stage '{stage.name}' has undeclared COPY --from={edge.source} {edge.path}")
        if actual.installs_bundler and BUNDLER_TAG not in stage.tags:
            drift.append(
                f"stage '{stage.name}' installs bundling tools in the Containerfile but is not tagged '{BUNDLER_TAG}'"
            )

    for name, actual in parsed_by_name.items():
        if name not in graph:
            drift.append(f"Containerfile stage '{name}' (line {actual.line_no}) is not declared in the image graph")
    return drift
