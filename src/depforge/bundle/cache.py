"""Content-addressed bundle store keyed by the lock-file hash."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from depforge.errors import BundleCollisionError
from depforge.manifest.lockfile import DEFAULT_HASH_LENGTH, LockFile, file_digest, read_lock_file, short_hash
from depforge.utils.paths import replace_symlink, write_text_atomically

LOGGER = logging.getLogger(__name__)

BUNDLE_PREFIX = "bundle-"
LATEST_ALIAS = "latest"
DIGEST_SUFFIX = ".sha256"


class ArtifactBuilder(Protocol):
    def build(self, manifest_path: Path, lock_file_path: Path) -> "BundleArtifact": ...


def compute_bundle_hash(path: Path, length: int = DEFAULT_HASH_LENGTH) -> str:
    """Return the truncated sha256 of a lock file's exact bytes."""

    return short_hash(file_digest(path), length)


@dataclass(frozen=True, slots=True)
class BundleArtifact:
    """One immutable bundle archive and the full lock digest it was built from."""

    hash: str
    path: Path
    digest: str | None = None

    @property
    def name(self) -> str:
        return self.path.name

    def size_bytes(self) -> int:
        return self.path.stat().st_size if self.path.exists() else 0


@dataclass(frozen=True, slots=True)
class BundleResolution:
    """Outcome of looking up the bundle for the current lock file."""

    hit: bool
    hash: str
    artifact_path: Path
    digest: str


class BundleCache:
    """Maps lock-file hashes to `bundle-<hash>.<ext>` artifacts under one directory."""

    def __init__(
        self,
        bundles_root: Path,
        *,
        hash_length: int = DEFAULT_HASH_LENGTH,
        extension: str = "tar.gz",
        logger: logging.Logger | None = None,
    ) -> None:
        self.bundles_root = bundles_root
        self.hash_length = hash_length
        self.extension = extension.lstrip(".")
        self.logger = logger or LOGGER
        self._name_re = re.compile(rf"^{BUNDLE_PREFIX}(?P<hash>[0-9a-f]{{{DEFAULT_HASH_LENGTH},}})\.{re.escape(self.extension)}$")

    def artifact_name(self, bundle_hash: str) -> str:
        return f"{BUNDLE_PREFIX}{bundle_hash}.{self.extension}"

    def artifact_path(self, bundle_hash: str) -> Path:
        return self.bundles_root / self.artifact_name(bundle_hash)

    def digest_path(self, bundle_hash: str) -> Path:
        return self.bundles_root / f"{BUNDLE_PREFIX}{bundle_hash}{DIGEST_SUFFIX}"

    @property
    def latest_path(self) -> Path:
        return self.bundles_root / self.artifact_name(LATEST_ALIAS)

    def hash_from_name(self, name: str) -> str | None:
        match = self._name_re.match(name)
        return match.group("hash") if match else None

    def fingerprint(self, lock_file_path: Path) -> LockFile:
        return read_lock_file(lock_file_path, hash_length=self.hash_length)

    def recorded_digest(self, bundle_hash: str) -> str | None:
        path = self.digest_path(bundle_hash)
        if not path.is_file():
            return None
        return path.read_text(encoding="utf-8").strip() or None

    def lookup(self, lock: LockFile) -> BundleArtifact | None:
        """Return the artifact for `lock`, or None on a cache miss.

        Raises BundleCollisionError when the artifact under this hash prefix was
        built from a different lock file.
        """

        path = self.artifact_path(lock.short_hash)
        if not path.is_file():
            return None
        recorded = self.recorded_digest(lock.short_hash)
        if recorded is None:
            self.logger.warning(
                "bundle.digest_missing hash=%s path=%s; trusting prefix match",
                lock.short_hash,
                path,
            )
        elif recorded != lock.digest:
            raise BundleCollisionError(
                f"Bundle hash prefix collision for {path.name}: recorded digest {recorded} "
                f"differs from lock file digest {lock.digest}. Increase bundle.hash_length."
            )
        return BundleArtifact(hash=lock.short_hash, path=path, digest=recorded or lock.digest)

    def resolve(self, lock_file_path: Path) -> BundleResolution:
        """Look up the bundle for a lock file; on a hit repoint the latest alias."""

        lock = self.fingerprint(lock_file_path)
        artifact = self.lookup(lock)
        hit = artifact is not None
        if artifact is not None:
            self.update_latest(artifact.hash)
        self.logger.info("bundle.resolve hash=%s hit=%s path=%s", lock.short_hash, hit, self.artifact_path(lock.short_hash))
        return BundleResolution(
            hit=hit,
            hash=lock.short_hash,
            artifact_path=self.artifact_path(lock.short_hash),
            digest=lock.digest,
        )

    def resolve_or_build(
        self,
        lock_file_path: Path,
        manifest_path: Path,
        builder: ArtifactBuilder,
    ) -> tuple[BundleResolution, BundleArtifact]:
        """Return the bundle for a lock file, delegating to `builder` only on a miss."""

        resolution = self.resolve(lock_file_path)
        if resolution.hit:
            artifact = BundleArtifact(hash=resolution.hash, path=resolution.artifact_path, digest=resolution.digest)
            return resolution, artifact
        return resolution, builder.build(manifest_path, lock_file_path)

    def register(self, lock: LockFile, staged_archive: Path) -> BundleArtifact:
        """Publish a fully written archive under its final name and repoint the alias.

        The digest sidecar is written first so a visible archive always has one.
        """

        final_path = self.artifact_path(lock.short_hash)
        write_text_atomically(lock.digest + "\n", self.digest_path(lock.short_hash))
        os.replace(staged_archive, final_path)
        self.update_latest(lock.short_hash)
        self.logger.info("bundle.registered hash=%s path=%s", lock.short_hash, final_path)
        return BundleArtifact(hash=lock.short_hash, path=final_path, digest=lock.digest)

    def update_latest(self, bundle_hash: str) -> Path:
        """Swap the latest alias to point at `bundle-<hash>`."""

        replace_symlink(self.latest_path, self.artifact_name(bundle_hash))
        return self.latest_path

    def latest_target(self) -> str | None:
        """Return the file name the latest alias points at, if the alias exists."""

        if not self.latest_path.is_symlink():
            return None
        return Path(os.readlink(self.latest_path)).name

    def current(self) -> BundleArtifact | None:
        """Return the artifact the latest alias currently points at."""

        target = self.latest_target()
        if target is None:
            return None
        bundle_hash = self.hash_from_name(target)
        path = self.bundles_root / target
        if bundle_hash is None or not path.is_file():
            return None
        return BundleArtifact(hash=bundle_hash, path=path, digest=self.recorded_digest(bundle_hash))

    def list_artifacts(self) -> list[BundleArtifact]:
        """Return every published bundle, sorted by name; the alias is excluded."""

        if not self.bundles_root.is_dir():
            return []
        artifacts: list[BundleArtifact] = []
        for path in sorted(self.bundles_root.iterdir()):
            if path.is_symlink() or not path.is_file():
                continue
            bundle_hash = self.hash_from_name(path.name)
            if bundle_hash is None:
                continue
            artifacts.append(BundleArtifact(hash=bundle_hash, path=path, digest=self.recorded_digest(bundle_hash)))
        return artifacts
