"""Bundle cache and builder."""

from depforge.bundle.builder import BundleBuilder, HashBuildLock, LockUpdateResult
from depforge.bundle.cache import (
    BUNDLE_PREFIX,
    LATEST_ALIAS,
    BundleArtifact,
    BundleCache,
    BundleResolution,
    compute_bundle_hash,
)

__all__ = [
    "BUNDLE_PREFIX",
    "LATEST_ALIAS",
    "BundleArtifact",
    "BundleBuilder",
    "BundleCache",
    "BundleResolution",
    "HashBuildLock",
    "LockUpdateResult",
    "compute_bundle_hash",
]
