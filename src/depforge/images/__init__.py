"""Image stage graph, Containerfile parsing, and image materialization."""

from depforge.images.builder import ImageBuilder, ImageHandle, clean_images
from depforge.images.containerfile import (
    ParsedStage,
    compare_with_graph,
    load_containerfile,
    parse_containerfile_lines,
)
from depforge.images.graph import (
    BUNDLER_TAG,
    COMPILER_TAG,
    DEFAULT_IMAGE_GRAPH,
    CopyEdge,
    ImageGraph,
    ImageStage,
    render_graph,
    validate_graph,
)

__all__ = [
    "BUNDLER_TAG",
    "COMPILER_TAG",
    "DEFAULT_IMAGE_GRAPH",
    "CopyEdge",
    "ImageBuilder",
    "ImageGraph",
    "ImageHandle",
    "ImageStage",
    "ParsedStage",
    "clean_images",
    "compare_with_graph",
    "load_containerfile",
    "parse_containerfile_lines",
    "render_graph",
    "validate_graph",
]
