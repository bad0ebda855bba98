from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Iterator

import pytest
from typer.testing import CliRunner

from depforge import cli
from depforge.engine.commands import CommandResult

from fakes import PASS_OUTPUT, FakeEngine

SHIPPED_CONTAINERFILE = Path(__file__).resolve().parents[1] / "Containerfile"

runner = CliRunner()


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def config_file(project_root: Path) -> Path:
    return project_root / "configs" / "settings.yaml"


@pytest.fixture
def fake_engine(monkeypatch: pytest.MonkeyPatch) -> FakeEngine:
    engine = FakeEngine()
    monkeypatch.setattr(cli, "_build_engine", lambda settings, logger: engine)
    return engine


def _invoke(*args: str):
    return runner.invoke(cli.app, list(args))


def test_show_config_prints_effective_settings(config_file: Path):
    result = _invoke("show-config", "--config-file", str(config_file))

    assert result.exit_code == 0
    assert "repository: myapp" in result.output
    assert "default_target: dev" in result.output


def test_graph_command_reports_valid_graph(config_file: Path):
    result = _invoke("graph", "--config-file", str(config_file))

    assert result.exit_code == 0
    assert "All graph invariants hold." in result.output
    assert "provenance(runtime):" in result.output


def test_graph_containerfile_check(config_file: Path, project_root: Path):
    missing = _invoke("graph", "--containerfile", "--config-file", str(config_file))
    shutil.copy(SHIPPED_CONTAINERFILE, project_root / "Containerfile")
    matching = _invoke("graph", "--containerfile", "--config-file", str(config_file))

    assert missing.exit_code == 2
    assert "Containerfile not found" in missing.output
    assert matching.exit_code == 0
    assert "Containerfile matches the declared graph" in matching.output


def test_graph_containerfile_malformed_copy_is_usage_error(config_file: Path, project_root: Path):
    (project_root / "Containerfile").write_text(
        "FROM debian:bookworm AS base\nCOPY --from=base '/opt/perl /opt/perl\n", encoding="utf-8"
    )

    result = _invoke("graph", "--containerfile", "--config-file", str(config_file))

    assert result.exit_code == 2
    assert "Malformed COPY instruction at line 2" in result.output


def test_bundle_builds_once_then_hits_cache(config_file: Path, project_root: Path, fake_engine: FakeEngine):
    first = _invoke("bundle", "--config-file", str(config_file))
    second = _invoke("bundle", "--config-file", str(config_file))

    assert first.exit_code == 0, first.output
    assert "cache_hit: False" in first.output
    assert second.exit_code == 0, second.output
    assert "cache_hit: True" in second.output
    assert len(fake_engine.builds) == 1
    assert (project_root / "bundles" / "bundle-latest.tar.gz").is_symlink()
    assert (project_root / "logs" / "depforge.log").is_file()


def test_bundle_build_failure_exits_with_build_code(config_file: Path, fake_engine: FakeEngine):
    fake_engine.failing_build_targets.add("carton-runner")

    result = _invoke("bundle", "--config-file", str(config_file))

    assert result.exit_code == 4
    assert "ERROR:" in result.output


def test_build_without_bundle_exits_with_environment_code(config_file: Path, fake_engine: FakeEngine):
    result = _invoke("build", "dev", "--config-file", str(config_file))

    assert result.exit_code == 3
    assert "Run 'depforge bundle' first" in result.output


def test_build_rejects_unknown_target(config_file: Path, fake_engine: FakeEngine):
    result = _invoke("build", "staging", "--config-file", str(config_file))

    assert result.exit_code == 2
    assert fake_engine.builds == []


def test_bundle_then_build_all(config_file: Path, fake_engine: FakeEngine):
    assert _invoke("bundle", "--config-file", str(config_file)).exit_code == 0

    result = _invoke("build", "--config-file", str(config_file))

    assert result.exit_code == 0, result.output
    assert "dev: myapp:dev-" in result.output
    assert "(also tagged as myapp:runtime)" in result.output


def test_test_full_exit_code_follows_failures(config_file: Path, fake_engine: FakeEngine):
    fake_engine.images.add("myapp:dev")

    def handler(argv: list[str], env: dict[str, str]) -> CommandResult:
        exit_code = 1 if argv[-1] == "C" else 0
        return CommandResult(argv=tuple(argv), exit_code=exit_code, output=PASS_OUTPUT if exit_code == 0 else "not ok 1\n")

    fake_engine.exec_handler = handler

    failing = _invoke("test-full", "--config-file", str(config_file))
    passing = _invoke("test-full", "A", "--config-file", str(config_file))

    assert failing.exit_code == 1
    assert "[3/3] [FAIL] C (exit: 1)" in failing.output
    assert passing.exit_code == 0
    assert "summary_path:" in passing.output


def test_test_full_unknown_dependency_is_usage_error(config_file: Path, fake_engine: FakeEngine):
    result = _invoke("test-full", "Nope::Missing", "--config-file", str(config_file))

    assert result.exit_code == 2
    assert "Nope::Missing" in result.output


def test_test_full_undecodable_manifest_is_usage_error(config_file: Path, project_root: Path, fake_engine: FakeEngine):
    (project_root / "cpanfile").write_bytes(b'requires "A";\nrequires "Caf\xe9";\n')

    result = _invoke("test-full", "A", "--config-file", str(config_file))

    assert result.exit_code == 2
    assert "not valid UTF-8" in result.output
    assert fake_engine.live_containers == []


def test_test_load_without_image_is_environment_error(config_file: Path, fake_engine: FakeEngine):
    result = _invoke("test-load", "runtime", "--config-file", str(config_file))

    assert result.exit_code == 3
    assert "depforge build runtime" in result.output


def test_status_reports_drift(config_file: Path, fake_engine: FakeEngine):
    result = _invoke("status", "--no-git", "--config-file", str(config_file))

    assert result.exit_code == 1
    assert "Recommended workflow:" in result.output
    assert "1. depforge bundle" in result.output


@pytest.mark.parametrize("args", [[], ["--all", "--module", "Foo"]])
def test_lock_update_requires_exactly_one_mode(config_file: Path, fake_engine: FakeEngine, args: list[str]):
    result = _invoke("lock-update", *args, "--config-file", str(config_file))

    assert result.exit_code == 2
    assert fake_engine.containers == {}


def test_lock_update_module(config_file: Path, fake_engine: FakeEngine):
    result = _invoke("lock-update", "--module", "Foo::Bar", "--config-file", str(config_file))

    assert result.exit_code == 0, result.output
    assert "changed: False" in result.output
    assert fake_engine.execs[0][1] == ("carton", "install", "Foo::Bar")


def test_clean_preserves_bundles(config_file: Path, fake_engine: FakeEngine):
    fake_engine.images.update({"myapp:dev", "myapp:runtime"})

    result = _invoke("clean", "--config-file", str(config_file))

    assert result.exit_code == 0
    assert "removed: myapp:dev, myapp:runtime" in result.output
    assert "bundles preserved" in result.output
