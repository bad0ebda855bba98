"""Thin adapter over the podman CLI.

Only the handful of operations the harness needs are exposed: build a stage
target, query images, and drive short-lived containers (create, start, exec,
copy in/out, remove). Everything else about images and registries stays with
the engine.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from depforge.engine.commands import CommandResult, run_command
from depforge.errors import EngineCommandError, EnvironmentPreconditionError

LOGGER = logging.getLogger(__name__)

_EMPTY_LABEL_VALUES = {"", "<no value>"}


class ContainerEngine(Protocol):
    """Engine operations consumed by the bundle builder, image builder, and test runner."""

    def ensure_available(self) -> str: ...

    def build_image(
        self,
        *,
        target: str,
        tags: Sequence[str],
        containerfile: Path,
        context: Path,
        labels: Mapping[str, str] | None = None,
        build_args: Mapping[str, str] | None = None,
    ) -> None: ...

    def image_exists(self, tag: str) -> bool: ...

    def image_label(self, tag: str, key: str) -> str | None: ...

    def image_size(self, tag: str) -> str | None: ...

    def remove_image(self, tag: str) -> bool: ...

    def create_container(self, image: str, command: Sequence[str]) -> str: ...

    def start_container(self, container_id: str) -> None: ...

    def exec_in_container(
        self,
        container_id: str,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        workdir: str | None = None,
    ) -> CommandResult: ...

    def copy_to_container(self, container_id: str, source: Path, destination: str) -> None: ...

    def copy_from_container(self, container_id: str, source: str, destination: Path) -> None: ...

    def remove_container(self, container_id: str) -> None: ...


class PodmanEngine:
    """ContainerEngine implementation that shells out to `podman` (or a compatible CLI)."""

    def __init__(self, executable: str = "podman", logger: logging.Logger | None = None) -> None:
        self.executable = executable
        self.logger = logger or LOGGER

    def _run(self, args: Sequence[str]) -> CommandResult:
        argv = [self.executable, *args]
        try:
            return run_command(argv)
        except FileNotFoundError as exc:
            raise EnvironmentPreconditionError(
                f"Container engine '{self.executable}' not found on PATH. Install it or set engine.executable."
            ) from exc

    def _run_checked(self, args: Sequence[str]) -> CommandResult:
        result = self._run(args)
        if not result.ok:
            raise EngineCommandError(result.argv, result.exit_code, result.output)
        return result

    def ensure_available(self) -> str:
        result = self._run(["--version"])
        if not result.ok:
            raise EnvironmentPreconditionError(
                f"Container engine '{self.executable}' is not usable (exit {result.exit_code}): {result.output.strip()}"
            )
        return result.output.strip()

    def build_image(
        self,
        *,
        target: str,
        tags: Sequence[str],
        containerfile: Path,
        context: Path,
        labels: Mapping[str, str] | None = None,
        build_args: Mapping[str, str] | None = None,
    ) -> None:
        args: list[str] = ["build", "--target", target]
        for key, value in (labels or {}).items():
            args.extend(["--label", f"{key}={value}"])
        for key, value in (build_args or {}).items():
            args.extend(["--build-arg", f"{key}={value}"])
        for tag in tags:
            args.extend(["-t", tag])
        args.extend(["-f", str(containerfile), str(context)])
        self.logger.info("engine.build target=%s tags=%s", target, list(tags))
        self._run_checked(args)

    def image_exists(self, tag: str) -> bool:
        return self._run(["image", "exists", tag]).ok

    def image_label(self, tag: str, key: str) -> str | None:
        result = self._run(["image", "inspect", "--format", f'{{{{index .Config.Labels "{key}"}}}}', tag])
        if not result.ok:
            return None
        value = result.output.strip()
        return None if value in _EMPTY_LABEL_VALUES else value

    def image_size(self, tag: str) -> str | None:
        result = self._run(["images", "--format", "{{.Size}}", tag])
        if not result.ok:
            return None
        lines = [line.strip() for line in result.output.splitlines() if line.strip()]
        return lines[0] if lines else None

    def remove_image(self, tag: str) -> bool:
        result = self._run(["rmi", "-f", tag])
        if not result.ok:
            self.logger.info("engine.rmi_skipped tag=%s exit=%s", tag, result.exit_code)
        return result.ok

    def create_container(self, image: str, command: Sequence[str]) -> str:
        result = self._run_checked(["create", image, *command])
        lines = [line.strip() for line in result.output.splitlines() if line.strip()]
        if not lines:
            raise EngineCommandError(result.argv, result.exit_code, "engine returned no container id")
        return lines[-1]

    def start_container(self, container_id: str) -> None:
        self._run_checked(["start", container_id])

    def exec_in_container(
        self,
        container_id: str,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
        workdir: str | None = None,
    ) -> CommandResult:
        args: list[str] = ["exec"]
        for key, value in (env or {}).items():
            args.extend(["-e", f"{key}={value}"])
        if workdir:
            args.extend(["-w", workdir])
        args.append(container_id)
        args.extend(argv)
        result = self._run(args)
        # Report the in-container argv, not the engine wrapper.
        return CommandResult(argv=tuple(argv), exit_code=result.exit_code, output=result.output)

    def copy_to_container(self, container_id: str, source: Path, destination: str) -> None:
        self._run_checked(["cp", str(source), f"{container_id}:{destination}"])

    def copy_from_container(self, container_id: str, source: str, destination: Path) -> None:
        self._run_checked(["cp", f"{container_id}:{source}", str(destination)])

    def remove_container(self, container_id: str) -> None:
        result = self._run(["rm", "-f", container_id])
        if not result.ok:
            self.logger.warning(
                "engine.container_remove_failed container=%s exit=%s output=%s",
                container_id,
                result.exit_code,
                result.output.strip(),
            )


def require_image(engine: ContainerEngine, tag: str, *, build_hint: str) -> None:
    """Raise EnvironmentPreconditionError unless the engine works and `tag` exists."""

    engine.ensure_available()
    if not engine.image_exists(tag):
        raise EnvironmentPreconditionError(f"Image {tag} does not exist. Build the image first with: {build_hint}")
