"""Child-process execution with combined output capture."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Exit code and combined stdout+stderr of one child process."""

    argv: tuple[str, ...]
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run_command(
    argv: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    inherit_env: bool = True,
) -> CommandResult:
    """Run argv without a shell, merging `env` over the inherited environment."""

    child_env: dict[str, str] | None = None
    if env:
        child_env = dict(os.environ) if inherit_env else {}
        child_env.update(env)
    completed = subprocess.run(
        list(argv),
        cwd=str(cwd) if cwd is not None else None,
        env=child_env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        check=False,
    )
    return CommandResult(argv=tuple(argv), exit_code=int(completed.returncode), output=str(completed.stdout or ""))


def substitute_name(template: Sequence[str], name: str) -> list[str]:
    """Replace `{name}` inside each argv element; no shell parsing happens."""

    return [part.replace("{name}", name) for part in template]
