"""Declared multi-stage image graph and its structural invariants.

Stages are nodes. A stage *inherits* from its `base` (the whole filesystem
comes along) and *copies* individual paths from other stages. Only the copied
path crosses a copy edge, never the source stage's base, which is what lets the
production image reuse a compiled runtime without carrying compilers.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Iterator, Literal, Sequence

from depforge.errors import GraphInvariantError

StageKind = Literal[
    "extract",
    "runtime_libs",
    "build_tooling",
    "runtime_compile",
    "bundle_generation",
    "module_install",
    "dev",
    "production",
]

COMPILER_TAG = "installs-compilers"
BUNDLER_TAG = "installs-bundler"


@dataclass(frozen=True, slots=True)
class CopyEdge:
    """`COPY --from=<source> <path>`."""

    source: str
    path: str


@dataclass(frozen=True, slots=True)
class ImageStage:
    """One build stage of the image graph."""

    name: str
    kind: StageKind
    base: str
    copies_from: tuple[CopyEdge, ...] = ()
    produces: tuple[str, ...] = ()
    consumes: tuple[str, ...] = ()
    tags: frozenset[str] = field(default_factory=frozenset)


class ImageGraph:
    """Ordered collection of stages with lineage and provenance queries."""

    def __init__(self, stages: Sequence[ImageStage]) -> None:
        self.stages = list(stages)
        self._by_name: dict[str, ImageStage] = {}
        for stage in self.stages:
            self._by_name.setdefault(stage.name, stage)

    def __iter__(self) -> Iterator[ImageStage]:
        return iter(self.stages)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self.stages)

    @property
    def names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def stage(self, name: str) -> ImageStage:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"Unknown image stage: {name}") from None

    def stages_of_kind(self, kind: StageKind) -> list[ImageStage]:
        return [stage for stage in self.stages if stage.kind == kind]

    def lineage(self, name: str) -> list[str]:
        """Return the stage followed by its base chain, ending at the stage built on an external image."""

        chain: list[str] = []
        current: str | None = name
        while current is not None and current in self._by_name and current not in chain:
            chain.append(current)
            base = self._by_name[current].base
            current = base if base in self._by_name else None
        return chain

    def lineage_root(self, name: str) -> str:
        return self.lineage(name)[-1]

    def _copy_provenance(self, name: str, seen: set[str]) -> None:
        if name in seen or name not in self._by_name:
            return
        seen.add(name)
        for edge in self._by_name[name].copies_from:
            self._copy_provenance(edge.source, seen)

    def provenance(self, name: str) -> set[str]:
        """Every stage whose content can end up in `name`'s filesystem."""

        result: set[str] = set()
        for member in self.lineage(name):
            result.add(member)
            for edge in self._by_name[member].copies_from:
                self._copy_provenance(edge.source, result)
        return result

    def validate(self) -> None:
        violations = validate_graph(self)
        if violations:
            raise GraphInvariantError(violations)


def _structural_violations(graph: ImageGraph) -> list[str]:
    violations: list[str] = []
    counts = Counter(stage.name for stage in graph)
    for name, count in counts.items():
        if count > 1:
            violations.append(f"stage name '{name}' is declared {count} times")

    for stage in graph:
        for edge in stage.copies_from:
            if edge.source not in graph:
                violations.append(f"stage '{stage.name}' copies from unknown stage '{edge.source}'")
                continue
            source = graph.stage(edge.source)
            if edge.path not in source.produces:
                violations.append(
                    f"stage '{stage.name}' copies '{edge.path}' from '{edge.source}', which does not produce it"
                )

    # Depth-first cycle search over both base and copy edges.
    state: dict[str, int] = {}

    def visit(name: str, stack: list[str]) -> None:
        state[name] = 1
        stack.append(name)
        stage = graph.stage(name)
        neighbours = [stage.base] if stage.base in graph else []
        neighbours.extend(edge.source for edge in stage.copies_from if edge.source in graph)
        for neighbour in neighbours:
            if state.get(neighbour) == 1:
                cycle = stack[stack.index(neighbour):] + [neighbour]
                violations.append("cycle between stages: " + " -> ".join(cycle))
            elif neighbour not in state:
                visit(neighbour, stack)
        stack.pop()
        state[name] = 2

    for name in counts:
        if name not in state:
            visit(name, [])
    return violations


def validate_graph(graph: ImageGraph) -> list[str]:
    """Return every invariant violation; an empty list means the graph is valid."""

    violations = _structural_violations(graph)
    if violations:
        return violations

    compile_stages = graph.stages_of_kind("runtime_compile")
    if len(compile_stages) != 1:
        violations.append(f"expected exactly one runtime_compile stage, found {len(compile_stages)}")
    for compile_stage in compile_stages:
        for stage in graph:
            if stage.base == compile_stage.name:
                violations.append(
                    f"stage '{stage.name}' inherits from runtime_compile stage '{compile_stage.name}'; copy from it instead"
                )

    runtime_libs = graph.stages_of_kind("runtime_libs")
    if len(runtime_libs) != 1:
        violations.append(f"expected exactly one runtime_libs stage, found {len(runtime_libs)}")
    libs_name = runtime_libs[0].name if len(runtime_libs) == 1 else None

    productions = graph.stages_of_kind("production")
    if len(productions) != 1:
        violations.append(f"expected exactly one production stage, found {len(productions)}")
    tooling_stages = graph.stages_of_kind("build_tooling")
    if not tooling_stages:
        violations.append("expected at least one build_tooling stage, found 0")

    if libs_name is not None:
        for stage in [*productions, *tooling_stages]:
            root = graph.lineage_root(stage.name)
            if root != libs_name:
                violations.append(
                    f"{stage.kind} stage '{stage.name}' descends from '{root}', not runtime_libs stage '{libs_name}'"
                )

    module_install = {stage.name for stage in graph.stages_of_kind("module_install")}
    bundle_stages = graph.stages_of_kind("bundle_generation")
    for production in productions:
        if not any(edge.source in module_install for edge in production.copies_from):
            violations.append(f"production stage '{production.name}' does not copy from a module_install stage")
        provenance = graph.provenance(production.name)
        for tag, label in ((COMPILER_TAG, "compiler"), (BUNDLER_TAG, "bundler")):
            tainted = sorted(name for name in provenance if tag in graph.stage(name).tags)
            if tainted:
                violations.append(
                    f"production stage '{production.name}' has {label}-installing stages in its provenance: "
                    + ", ".join(tainted)
                )
        for bundle_stage in bundle_stages:
            if bundle_stage.name in provenance:
                violations.append(
                    f"bundle_generation stage '{bundle_stage.name}' is in the provenance of production stage '{production.name}'"
                )

    tooling_names = {stage.name for stage in tooling_stages}
    for bundle_stage in bundle_stages:
        if not tooling_names.intersection(graph.lineage(bundle_stage.name)):
            violations.append(f"bundle_generation stage '{bundle_stage.name}' has no build_tooling stage in its lineage")

    for stage in graph.stages_of_kind("extract"):
        if stage.base in graph:
            violations.append(f"extract stage '{stage.name}' must use an external base, not stage '{stage.base}'")
        leaked = sorted(set(stage.produces) & set(stage.consumes))
        if leaked:
            violations.append(f"extract stage '{stage.name}' hands forward consumed paths: {', '.join(leaked)}")

    return violations


def render_graph(graph: ImageGraph, violations: Sequence[str] | None = None) -> str:
    """Render the stage table, production provenance, and any violations."""

    lines = [f"{'stage':<16} {'kind':<18} {'base':<40} copies from"]
    for stage in graph:
        copies = ", ".join(f"{edge.source}:{edge.path}" for edge in stage.copies_from) or "-"
        name = stage.name + (f" [{', '.join(sorted(stage.tags))}]" if stage.tags else "")
        lines.append(f"{name:<16} {stage.kind:<18} {stage.base:<40} {copies}")
    for production in graph.stages_of_kind("production"):
        ordered = [name for name in graph.names if name in graph.provenance(production.name)]
        lines.append("")
        lines.append(f"provenance({production.name}): {', '.join(ordered)}")
    if violations is not None:
        lines.append("")
        if violations:
            lines.append("Violations:")
            lines.extend(f"  - {item}" for item in violations)
        else:
            lines.append("All graph invariants hold.")
    return "\n".join(lines) + "\n"


DEFAULT_IMAGE_GRAPH = ImageGraph(
    [
        ImageStage(
            name="sdk-extract",
            kind="extract",
            base="docker.io/library/alpine:3.20",
            produces=("/opt/sdk",),
            consumes=("/tmp/sdk.tar.gz",),
        ),
        ImageStage(
            name="runtime-base",
            kind="runtime_libs",
            base="docker.io/library/debian:bookworm-slim",
        ),
        ImageStage(
            name="build-base",
            kind="build_tooling",
            base="runtime-base",
            tags=frozenset({COMPILER_TAG}),
        ),
        ImageStage(
            name="perl-build",
            kind="runtime_compile",
            base="build-base",
            produces=("/opt/perl",),
        ),
        ImageStage(
            name="bundler-tools",
            kind="build_tooling",
            base="build-base",
            copies_from=(CopyEdge("perl-build", "/opt/perl"),),
            tags=frozenset({BUNDLER_TAG}),
        ),
        ImageStage(
            name="carton-runner",
            kind="bundle_generation",
            base="bundler-tools",
            produces=("/build/cpan-bundle.tar.gz",),
        ),
        ImageStage(
            name="modules",
            kind="module_install",
            base="bundler-tools",
            produces=("/app/local",),
            consumes=("/tmp/cpan-bundle.tar.gz",),
        ),
        ImageStage(
            name="perl-dev",
            kind="dev",
            base="bundler-tools",
            copies_from=(
                CopyEdge("modules", "/app/local"),
                CopyEdge("sdk-extract", "/opt/sdk"),
            ),
        ),
        ImageStage(
            name="runtime",
            kind="production",
            base="runtime-base",
            copies_from=(
                CopyEdge("perl-build", "/opt/perl"),
                CopyEdge("modules", "/app/local"),
                CopyEdge("sdk-extract", "/opt/sdk"),
            ),
        ),
    ]
)
