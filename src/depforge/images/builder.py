"""Materialize dev and runtime images from the current bundle."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from depforge.bundle.cache import BundleArtifact, BundleCache
from depforge.config import AppSettings
from depforge.engine.podman import ContainerEngine
from depforge.errors import EnvironmentPreconditionError, InputError
from depforge.images.graph import DEFAULT_IMAGE_GRAPH, ImageGraph

LOGGER = logging.getLogger(__name__)

ALL_TARGETS = "all"


@dataclass(frozen=True, slots=True)
class ImageHandle:
    """A built image: the stage target, its tags, and the bundle it was built from."""

    alias: str
    stage: str
    tags: tuple[str, ...]
    bundle_hash: str

    @property
    def pinned_tag(self) -> str:
        return self.tags[0]

    @property
    def floating_tag(self) -> str:
        return self.tags[-1]


class ImageBuilder:
    """Builds graph stages as tagged, labelled images."""

    def __init__(
        self,
        engine: ContainerEngine,
        cache: BundleCache,
        *,
        containerfile: Path,
        context: Path,
        repository: str,
        label_key: str = "bundle.hash",
        bundle_build_arg: str = "BUNDLE_FILE",
        targets: Mapping[str, str] | None = None,
        graph: ImageGraph = DEFAULT_IMAGE_GRAPH,
        logger: logging.Logger | None = None,
    ) -> None:
        self.engine = engine
        self.cache = cache
        self.containerfile = containerfile
        self.context = context
        self.repository = repository
        self.label_key = label_key
        self.bundle_build_arg = bundle_build_arg
        self.targets = dict(targets or {"dev": "perl-dev", "runtime": "runtime"})
        self.graph = graph
        self.logger = logger or LOGGER

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        engine: ContainerEngine,
        cache: BundleCache,
        graph: ImageGraph = DEFAULT_IMAGE_GRAPH,
        logger: logging.Logger | None = None,
    ) -> "ImageBuilder":
        return cls(
            engine,
            cache,
            containerfile=settings.paths.containerfile,
            context=settings.paths.build_context,
            repository=settings.images.repository,
            label_key=settings.images.label_key,
            bundle_build_arg=settings.images.bundle_build_arg,
            targets=settings.images.targets,
            graph=graph,
            logger=logger,
        )

    def expand_target(self, target: str) -> list[str]:
        """Map `dev`, `runtime`, or `all` to the list of image aliases to build."""

        if target == ALL_TARGETS:
            return list(self.targets)
        if target not in self.targets:
            choices = ", ".join([*self.targets, ALL_TARGETS])
            raise InputError(f"Invalid target '{target}'. Expected one of: {choices}")
        return [target]

    def bundle_file_arg(self, artifact: BundleArtifact) -> str:
        """Return the bundle path as seen from the build context."""

        try:
            return artifact.path.resolve().relative_to(self.context.resolve()).as_posix()
        except ValueError:
            return artifact.path.as_posix()

    def materialize(self, stage_name: str, artifact: BundleArtifact, alias: str | None = None) -> ImageHandle:
        """Build one stage target pinned to `artifact`."""

        if stage_name not in self.graph:
            raise InputError(f"Unknown image stage: {stage_name}")
        if alias is None:
            alias = next((key for key, value in self.targets.items() if value == stage_name), stage_name)
        tags = (f"{self.repository}:{alias}-{artifact.hash}", f"{self.repository}:{alias}")
        started = time.monotonic()
        self.logger.info("image.build_start stage=%s alias=%s bundle_hash=%s", stage_name, alias, artifact.hash)
        self.engine.build_image(
            target=stage_name,
            tags=tags,
            containerfile=self.containerfile,
            context=self.context,
            labels={self.label_key: artifact.hash},
            build_args={self.bundle_build_arg: self.bundle_file_arg(artifact)},
        )
        self.logger.info(
            "image.build_done stage=%s tags=%s elapsed_sec=%.2f",
            stage_name,
            ",".join(tags),
            time.monotonic() - started,
        )
        return ImageHandle(alias=alias, stage=stage_name, tags=tags, bundle_hash=artifact.hash)

    def build_targets(self, target: str) -> list[ImageHandle]:
        """Build `dev`, `runtime`, or both from the bundle the latest alias points at."""

        aliases = self.expand_target(target)
        artifact = self.cache.current()
        if artifact is None:
            raise EnvironmentPreconditionError(
                f"Bundle not found at {self.cache.latest_path}. Run 'depforge bundle' first to generate the bundle."
            )
        self.graph.validate()
        self.engine.ensure_available()
        self.logger.info("image.using_bundle name=%s hash=%s", artifact.name, artifact.hash)
        return [self.materialize(self.targets[alias], artifact, alias=alias) for alias in aliases]


def clean_images(engine: ContainerEngine, settings: AppSettings, logger: logging.Logger | None = None) -> list[str]:
    """Remove the tooling, dev and runtime image aliases; bundles are left alone."""

    effective_logger = logger or LOGGER
    tags = [settings.image_tag(settings.bundle.tooling_tag)]
    tags.extend(settings.image_tag(alias) for alias in settings.images.targets)
    removed = [tag for tag in tags if engine.remove_image(tag)]
    effective_logger.info("image.clean requested=%s removed=%s", len(tags), len(removed))
    return removed
