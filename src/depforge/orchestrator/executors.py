"""Where dependency checks run: inside a container or as local child processes."""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Protocol, Sequence

from depforge.engine.commands import CommandResult, run_command
from depforge.engine.podman import ContainerEngine

COMMAND_NOT_RUNNABLE_EXIT = 127


class CommandExecutor(Protocol):
    """Runs one argv with extra environment, returning combined output and exit code."""

    def run(self, argv: Sequence[str], env: Mapping[str, str]) -> CommandResult: ...


class LocalExecutor:
    """Runs each dependency check as an independent local child process."""

    def __init__(self, cwd: Path | None = None) -> None:
        self.cwd = cwd

    def run(self, argv: Sequence[str], env: Mapping[str, str]) -> CommandResult:
        try:
            return run_command(argv, env=env, cwd=self.cwd)
        except OSError as exc:
            # A missing tool is a failed check, not a crashed run.
            return CommandResult(argv=tuple(argv), exit_code=COMMAND_NOT_RUNNABLE_EXIT, output=f"{argv[0]}: {exc}\n")


class ContainerExecutor:
    """Runs each dependency check via `exec` in one long-lived container."""

    def __init__(self, engine: ContainerEngine, container_id: str, workdir: str | None = None) -> None:
        self.engine = engine
        self.container_id = container_id
        self.workdir = workdir

    def run(self, argv: Sequence[str], env: Mapping[str, str]) -> CommandResult:
        return self.engine.exec_in_container(self.container_id, argv, env=env, workdir=self.workdir)
