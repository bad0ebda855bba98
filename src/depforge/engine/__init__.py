"""Container engine adapter and child-process helpers."""

from depforge.engine.commands import CommandResult, run_command, substitute_name
from depforge.engine.podman import ContainerEngine, PodmanEngine, require_image
from depforge.engine.session import container_session

__all__ = [
    "CommandResult",
    "ContainerEngine",
    "PodmanEngine",
    "container_session",
    "require_image",
    "run_command",
    "substitute_name",
]
