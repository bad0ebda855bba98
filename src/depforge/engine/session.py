"""Scoped containers that are always removed by the operation that created them."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Sequence

from depforge.engine.podman import ContainerEngine

LOGGER = logging.getLogger(__name__)


@contextmanager
def container_session(
    engine: ContainerEngine,
    image: str,
    keepalive_command: Sequence[str],
    logger: logging.Logger | None = None,
) -> Iterator[str]:
    """Create and start a long-lived container from `image`; remove it on exit."""

    effective_logger = logger or LOGGER
    container_id = engine.create_container(image, keepalive_command)
    effective_logger.info("container.created image=%s container=%s", image, container_id)
    try:
        engine.start_container(container_id)
        yield container_id
    finally:
        engine.remove_container(container_id)
        effective_logger.info("container.removed container=%s", container_id)
