"""Exception taxonomy shared by the CLI and pipeline modules."""

from __future__ import annotations

from typing import Sequence


class DepforgeError(Exception):
    """Base class for all expected depforge failures."""


class InputError(DepforgeError, ValueError):
    """Raised when manifest, lock, or policy input is missing or malformed."""


class ManifestParseError(InputError):
    """Raised when a manifest line looks like a declaration but cannot be parsed."""

    def __init__(self, path: object, line_no: int, line: str) -> None:
        super().__init__(f"Malformed dependency declaration at {path}:{line_no}: {line.strip()}")
        self.path = path
        self.line_no = line_no
        self.line = line


class UnknownDependencyError(InputError):
    """Raised when a single-dependency run names a dependency missing from the manifest."""

    def __init__(self, name: str, manifest_path: object) -> None:
        super().__init__(f"Dependency '{name}' not found in {manifest_path}")
        self.name = name


class BuildError(DepforgeError, RuntimeError):
    """Raised when a bundle or image build sub-step fails."""


class EngineCommandError(BuildError):
    """Raised when a container engine invocation exits non-zero."""

    def __init__(self, argv: Sequence[str], exit_code: int, output: str) -> None:
        rendered = " ".join(argv)
        tail = output.strip().splitlines()[-5:]
        detail = "\n".join(tail)
        message = f"Command failed (exit {exit_code}): {rendered}"
        if detail:
            message = f"{message}\n{detail}"
        super().__init__(message)
        self.argv = list(argv)
        self.exit_code = exit_code
        self.output = output


class BundleCollisionError(BuildError):
    """Raised when two different lock files share the same truncated bundle hash."""


class GraphInvariantError(BuildError):
    """Raised when the image stage graph violates a structural invariant."""

    def __init__(self, violations: Sequence[str]) -> None:
        super().__init__("Image graph invariants violated:\n" + "\n".join(f"  - {item}" for item in violations))
        self.violations = list(violations)


class EnvironmentPreconditionError(DepforgeError, RuntimeError):
    """Raised when the container engine or a required image is unavailable."""
