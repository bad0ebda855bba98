"""Generate bundle artifacts inside the isolated bundle-generation stage."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from depforge.bundle.cache import BundleArtifact, BundleCache
from depforge.config import AppSettings, BundleConfig
from depforge.engine.commands import substitute_name
from depforge.engine.podman import ContainerEngine
from depforge.engine.session import container_session
from depforge.errors import BuildError, EngineCommandError, InputError
from depforge.manifest.lockfile import LockFile, read_lock_file
from depforge.utils.paths import atomic_temp_path

LOGGER = logging.getLogger(__name__)

_THREAD_LOCKS: dict[str, threading.Lock] = {}
_THREAD_LOCKS_GUARD = threading.Lock()


def _thread_lock_for(key: str) -> threading.Lock:
    with _THREAD_LOCKS_GUARD:
        lock = _THREAD_LOCKS.get(key)
        if lock is None:
            lock = threading.Lock()
            _THREAD_LOCKS[key] = lock
        return lock


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class HashBuildLock:
    """At most one build per bundle hash, across threads and processes.

    Threads in this process queue on a per-path `threading.Lock`; other
    processes are excluded by an `O_EXCL` lock file next to the artifact. A lock
    file whose recorded PID is no longer running is removed and retried.
    """

    def __init__(self, lock_path: Path, *, timeout_sec: float, poll_sec: float, logger: logging.Logger | None = None) -> None:
        self.lock_path = lock_path
        self.timeout_sec = timeout_sec
        self.poll_sec = poll_sec
        self.logger = logger or LOGGER
        self._thread_lock = _thread_lock_for(str(lock_path.resolve()))
        self._held_file = False

    def __enter__(self) -> "HashBuildLock":
        deadline = time.monotonic() + self.timeout_sec
        if not self._thread_lock.acquire(timeout=self.timeout_sec):
            raise BuildError(f"Timed out waiting for in-flight bundle build ({self.lock_path.name})")
        try:
            self._acquire_file(deadline)
        except BaseException:
            self._thread_lock.release()
            raise
        return self

    def _acquire_file(self, deadline: float) -> None:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        announced = False
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                owner = self._recorded_owner()
                if owner is not None and not _pid_alive(owner):
                    self.logger.warning("bundle.lock_stale path=%s pid=%s; removing", self.lock_path, owner)
                    self.lock_path.unlink(missing_ok=True)
                    continue
                if time.monotonic() >= deadline:
                    raise BuildError(
                        f"Timed out waiting for in-flight bundle build; remove {self.lock_path} if no build is running"
                    ) from None
                if not announced:
                    self.logger.info("bundle.lock_wait path=%s", self.lock_path)
                    announced = True
                time.sleep(self.poll_sec)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(f"{os.getpid()}\n")
            self._held_file = True
            return

    def _recorded_owner(self) -> int | None:
        """PID written by the lock holder; None while it is still being written or already gone."""

        try:
            content = self.lock_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(content)
        except ValueError:
            return None

    def __exit__(self, *exc_info: object) -> None:
        try:
            if self._held_file:
                self.lock_path.unlink(missing_ok=True)
                self._held_file = False
        finally:
            self._thread_lock.release()


@dataclass(frozen=True, slots=True)
class LockUpdateResult:
    """Lock-file fingerprints before and after an update."""

    previous_hash: str | None
    lock: LockFile

    @property
    def changed(self) -> bool:
        return self.previous_hash != self.lock.short_hash


class BundleBuilder:
    """Builds bundle artifacts on cache misses and registers them in the cache."""

    def __init__(
        self,
        engine: ContainerEngine,
        cache: BundleCache,
        *,
        containerfile: Path,
        context: Path,
        image_tag: str,
        config: BundleConfig,
        keepalive_command: Sequence[str] = ("sleep", "infinity"),
        logger: logging.Logger | None = None,
    ) -> None:
        self.engine = engine
        self.cache = cache
        self.containerfile = containerfile
        self.context = context
        self.image_tag = image_tag
        self.config = config
        self.keepalive_command = list(keepalive_command)
        self.logger = logger or LOGGER

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        engine: ContainerEngine,
        cache: BundleCache,
        logger: logging.Logger | None = None,
    ) -> "BundleBuilder":
        return cls(
            engine,
            cache,
            containerfile=settings.paths.containerfile,
            context=settings.paths.build_context,
            image_tag=settings.image_tag(settings.bundle.tooling_tag),
            config=settings.bundle,
            keepalive_command=settings.engine.keepalive_command,
            logger=logger,
        )

    def build(self, manifest_path: Path, lock_file_path: Path) -> BundleArtifact:
        """Build and register the bundle for the lock file, unless one already exists."""

        if not manifest_path.is_file():
            raise InputError(f"Manifest not found: {manifest_path}")
        lock = self.cache.fingerprint(lock_file_path)
        lock_path = self.cache.bundles_root / f".bundle-{lock.short_hash}.lock"
        with HashBuildLock(
            lock_path,
            timeout_sec=self.config.lock_timeout_sec,
            poll_sec=self.config.lock_poll_sec,
            logger=self.logger,
        ):
            existing = self.cache.lookup(lock)
            if existing is not None:
                self.logger.info("bundle.build_deduplicated hash=%s path=%s", lock.short_hash, existing.path)
                self.cache.update_latest(existing.hash)
                return existing
            return self._build_locked(manifest_path, lock)

    def _build_tooling_image(self) -> None:
        self.engine.build_image(
            target=self.config.tooling_stage,
            tags=[self.image_tag],
            containerfile=self.containerfile,
            context=self.context,
        )

    def _exec_step(self, container_id: str, step: str, argv: Sequence[str]) -> None:
        self.logger.info("bundle.step step=%s argv=%s", step, list(argv))
        result = self.engine.exec_in_container(container_id, argv, workdir=self.config.workdir)
        if not result.ok:
            raise BuildError(f"Bundle step '{step}' failed") from EngineCommandError(
                result.argv, result.exit_code, result.output
            )

    def _workdir_path(self, path: Path) -> str:
        return f"{self.config.workdir.rstrip('/')}/{path.name}"

    def _build_locked(self, manifest_path: Path, lock: LockFile) -> BundleArtifact:
        started = time.monotonic()
        final_path = self.cache.artifact_path(lock.short_hash)
        final_path.parent.mkdir(parents=True, exist_ok=True)
        staged_path = atomic_temp_path(final_path)
        self.logger.info("bundle.build_start hash=%s stage=%s", lock.short_hash, self.config.tooling_stage)

        try:
            self._build_tooling_image()
            with container_session(self.engine, self.image_tag, self.keepalive_command, logger=self.logger) as container_id:
                self.engine.copy_to_container(container_id, manifest_path, self._workdir_path(manifest_path))
                self.engine.copy_to_container(container_id, lock.path, self._workdir_path(lock.path))
                self._exec_step(container_id, "install", self.config.install_command)
                self._exec_step(container_id, "mirror", self.config.mirror_command)
                self._exec_step(container_id, "package", self.config.package_command)
                self.engine.copy_from_container(container_id, self.config.archive_path, staged_path)

            if not staged_path.is_file() or staged_path.stat().st_size == 0:
                raise BuildError(f"Failed to extract bundle archive {self.config.archive_path} from container")
            artifact = self.cache.register(lock, staged_path)
        except OSError as exc:
            raise BuildError(f"Bundle build for {lock.short_hash} failed: {exc}") from exc
        finally:
            if staged_path.exists():
                staged_path.unlink()

        self.logger.info(
            "bundle.build_done hash=%s path=%s size_bytes=%s elapsed_sec=%.2f",
            artifact.hash,
            artifact.path,
            artifact.size_bytes(),
            time.monotonic() - started,
        )
        return artifact

    def update_lock(self, manifest_path: Path, lock_file_path: Path, module: str | None = None) -> LockUpdateResult:
        """Refresh the lock file with the external resolver (all modules, or one)."""

        if not manifest_path.is_file():
            raise InputError(f"Manifest not found: {manifest_path}")
        previous_hash = (
            read_lock_file(lock_file_path, hash_length=self.cache.hash_length).short_hash
            if lock_file_path.is_file()
            else None
        )
        if module:
            argv = substitute_name(self.config.lock_update_module_command, module)
        else:
            argv = list(self.config.lock_update_all_command)

        staged_path = atomic_temp_path(lock_file_path)
        try:
            self._build_tooling_image()
            with container_session(self.engine, self.image_tag, self.keepalive_command, logger=self.logger) as container_id:
                self.engine.copy_to_container(container_id, manifest_path, self._workdir_path(manifest_path))
                if lock_file_path.is_file():
                    self.engine.copy_to_container(container_id, lock_file_path, self._workdir_path(lock_file_path))
                self._exec_step(container_id, "lock-update", argv)
                self.engine.copy_from_container(container_id, self._workdir_path(lock_file_path), staged_path)
            if not staged_path.is_file():
                raise BuildError("Lock update produced no lock file")
            os.replace(staged_path, lock_file_path)
        except OSError as exc:
            raise BuildError(f"Lock update failed: {exc}") from exc
        finally:
            if staged_path.exists():
                staged_path.unlink()

        lock = read_lock_file(lock_file_path, hash_length=self.cache.hash_length)
        self.logger.info(
            "bundle.lock_updated module=%s previous_hash=%s new_hash=%s",
            module or "<all>",
            previous_hash,
            lock.short_hash,
        )
        return LockUpdateResult(previous_hash=previous_hash, lock=lock)

