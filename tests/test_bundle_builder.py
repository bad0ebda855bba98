from __future__ import annotations

import logging
import os
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from depforge.bundle import BundleBuilder, BundleCache, compute_bundle_hash
from depforge.config import AppSettings
from depforge.engine.commands import CommandResult
from depforge.errors import BuildError, InputError

from fakes import LOCK_V1, LOCK_V2, FakeEngine


def _builder(settings: AppSettings, engine: FakeEngine, cache: BundleCache, **overrides: object) -> BundleBuilder:
    if overrides:
        settings = settings.model_copy(update={"bundle": settings.bundle.model_copy(update=overrides)})
    return BundleBuilder.from_settings(settings, engine, cache)


def test_build_runs_steps_in_tooling_container_and_registers(
    settings: AppSettings,
    engine: FakeEngine,
    cache: BundleCache,
):
    artifact = _builder(settings, engine, cache).build(settings.paths.manifest_file, settings.paths.lock_file)

    assert artifact.hash == compute_bundle_hash(settings.paths.lock_file)
    assert artifact.path.read_bytes() == engine.archive_bytes
    assert cache.current() is not None and cache.current().hash == artifact.hash
    assert engine.builds[0]["target"] == "carton-runner"
    assert engine.builds[0]["tags"] == ["myapp:carton-runner"]

    container = engine.containers["ctr1"]
    assert container.image == "myapp:carton-runner"
    assert container.command == ["sleep", "infinity"]
    assert set(container.files) == {"/app/cpanfile", "/app/cpanfile.snapshot"}
    assert [argv[:2] for _, argv, _ in engine.execs] == [("carton", "install"), ("carton", "bundle"), ("tar", "-czf")]
    assert engine.live_containers == []


def test_failed_step_registers_nothing_and_removes_container(
    settings: AppSettings,
    engine: FakeEngine,
    cache: BundleCache,
):
    def handler(argv: list[str], env: dict[str, str]) -> CommandResult:
        if argv[:2] == ["carton", "bundle"]:
            return CommandResult(argv=tuple(argv), exit_code=1, output="Could not fetch Foo-1.0.tar.gz\n")
        return CommandResult(argv=tuple(argv), exit_code=0, output="")

    engine.exec_handler = handler

    with pytest.raises(BuildError) as excinfo:
        _builder(settings, engine, cache).build(settings.paths.manifest_file, settings.paths.lock_file)

    assert "mirror" in str(excinfo.value)
    assert "Could not fetch" in str(excinfo.value.__cause__)
    assert engine.live_containers == []
    assert cache.list_artifacts() == []
    assert cache.latest_target() is None
    assert not [path for path in cache.bundles_root.iterdir() if not path.name.startswith(".bundle-")]


def test_tooling_image_failure_is_build_error(settings: AppSettings, engine: FakeEngine, cache: BundleCache):
    engine.failing_build_targets.add("carton-runner")

    with pytest.raises(BuildError):
        _builder(settings, engine, cache).build(settings.paths.manifest_file, settings.paths.lock_file)

    assert engine.containers == {}
    assert cache.list_artifacts() == []


def test_missing_manifest_is_input_error(settings: AppSettings, engine: FakeEngine, cache: BundleCache):
    with pytest.raises(InputError):
        _builder(settings, engine, cache).build(settings.paths.manifest_file.with_name("missing"), settings.paths.lock_file)


def test_second_build_for_same_hash_reuses_artifact(settings: AppSettings, engine: FakeEngine, cache: BundleCache):
    builder = _builder(settings, engine, cache)

    first = builder.build(settings.paths.manifest_file, settings.paths.lock_file)
    second = builder.build(settings.paths.manifest_file, settings.paths.lock_file)

    assert first.path == second.path
    assert len(engine.builds) == 1


def test_concurrent_builds_of_one_hash_run_once(settings: AppSettings, engine: FakeEngine, cache: BundleCache):
    builder = _builder(settings, engine, cache)

    with ThreadPoolExecutor(max_workers=4) as pool:
        futures = [
            pool.submit(builder.build, settings.paths.manifest_file, settings.paths.lock_file) for _ in range(4)
        ]
        artifacts = [future.result() for future in futures]

    assert len({artifact.path for artifact in artifacts}) == 1
    assert len(engine.containers) == 1


def test_live_build_lock_times_out(settings: AppSettings, engine: FakeEngine, cache: BundleCache):
    lock_hash = compute_bundle_hash(settings.paths.lock_file)
    cache.bundles_root.mkdir(parents=True)
    (cache.bundles_root / f".bundle-{lock_hash}.lock").write_text(f"{os.getpid()}\n", encoding="utf-8")
    builder = _builder(settings, engine, cache, lock_timeout_sec=0.05, lock_poll_sec=0.01)

    with pytest.raises(BuildError, match="Timed out"):
        builder.build(settings.paths.manifest_file, settings.paths.lock_file)

    assert engine.builds == []


def test_build_lock_left_by_dead_process_is_broken(
    settings: AppSettings,
    engine: FakeEngine,
    cache: BundleCache,
    caplog: pytest.LogCaptureFixture,
):
    finished = subprocess.Popen([sys.executable, "-c", "pass"])
    finished.wait()
    lock_hash = compute_bundle_hash(settings.paths.lock_file)
    cache.bundles_root.mkdir(parents=True)
    lock_path = cache.bundles_root / f".bundle-{lock_hash}.lock"
    lock_path.write_text(f"{finished.pid}\n", encoding="utf-8")
    builder = _builder(settings, engine, cache, lock_timeout_sec=0.05, lock_poll_sec=0.01)

    with caplog.at_level(logging.WARNING):
        artifact = builder.build(settings.paths.manifest_file, settings.paths.lock_file)

    assert artifact.hash == lock_hash
    assert not lock_path.exists()
    assert f"bundle.lock_stale path={lock_path} pid={finished.pid}" in caplog.text


def test_lock_change_produces_new_bundle_and_old_one_survives(
    settings: AppSettings,
    engine: FakeEngine,
    cache: BundleCache,
):
    builder = _builder(settings, engine, cache)
    lock_path = settings.paths.lock_file

    _, v1 = cache.resolve_or_build(lock_path, settings.paths.manifest_file, builder)
    lock_path.write_text(LOCK_V2, encoding="utf-8")
    resolution_v2, v2 = cache.resolve_or_build(lock_path, settings.paths.manifest_file, builder)

    assert resolution_v2.hit is False
    assert v1.hash != v2.hash
    assert v1.path.exists() and v2.path.exists()
    assert cache.current().hash == v2.hash

    lock_path.write_text(LOCK_V1, encoding="utf-8")
    resolution_back, again = cache.resolve_or_build(lock_path, settings.paths.manifest_file, builder)

    assert resolution_back.hit is True
    assert again.hash == v1.hash
    assert cache.current().hash == v1.hash
    assert len(engine.builds) == 2


def test_update_lock_copies_refreshed_lock_back(settings: AppSettings, engine: FakeEngine, cache: BundleCache):
    def handler(argv: list[str], env: dict[str, str]) -> CommandResult:
        if argv[:2] == ["carton", "update"]:
            for container_id in engine.live_containers:
                engine.containers[container_id].files["/app/cpanfile.snapshot"] = LOCK_V2.encode("utf-8")
        return CommandResult(argv=tuple(argv), exit_code=0, output="")

    engine.exec_handler = handler

    result = _builder(settings, engine, cache).update_lock(settings.paths.manifest_file, settings.paths.lock_file)

    assert result.changed
    assert settings.paths.lock_file.read_text(encoding="utf-8") == LOCK_V2
    assert engine.live_containers == []


def test_update_lock_for_one_module(settings: AppSettings, engine: FakeEngine, cache: BundleCache):
    result = _builder(settings, engine, cache).update_lock(
        settings.paths.manifest_file,
        settings.paths.lock_file,
        module="Foo::Bar",
    )

    assert engine.execs[0][1] == ("carton", "install", "Foo::Bar")
    assert result.changed is False


def test_update_lock_failure_keeps_existing_lock(settings: AppSettings, engine: FakeEngine, cache: BundleCache):
    engine.exec_handler = lambda argv, env: CommandResult(argv=tuple(argv), exit_code=1, output="resolve failed")

    with pytest.raises(BuildError):
        _builder(settings, engine, cache).update_lock(settings.paths.manifest_file, settings.paths.lock_file)

    assert settings.paths.lock_file.read_text(encoding="utf-8") == LOCK_V1
    assert [path.name for path in Path(settings.paths.lock_file).parent.glob(".cpanfile.snapshot.*.tmp")] == []
