from __future__ import annotations

import time
from pathlib import Path
from typing import Mapping, Sequence

import pytest

from depforge.config import AppSettings, DependencyTestConfig
from depforge.engine.commands import CommandResult
from depforge.errors import EnvironmentPreconditionError, InputError, UnknownDependencyError
from depforge.manifest.parser import DependencyEntry
from depforge.orchestrator import (
    RunStateMachine,
    execute_full_suite,
    execute_load_check,
    run_full_suite,
    run_load_check,
    select_dependencies,
)
from depforge.orchestrator.classify import UP_TO_DATE_REASON
from depforge.policy import PolicyStore, parse_policy_lines

from fakes import PASS_OUTPUT, FakeEngine, ScriptedExecutor, write_policy

LOAD_COMMAND = ["perl", "-e", "require", "{name}"]


def _entries(*names: str) -> list[DependencyEntry]:
    return [DependencyEntry(name=name, line_no=position) for position, name in enumerate(names, start=1)]


def _policy(text: str = "") -> PolicyStore:
    return PolicyStore(parse_policy_lines(text.splitlines()))


def test_load_check_keeps_going_after_failures(tmp_path: Path):
    executor = ScriptedExecutor({"B": (2, "Can't locate B.pm in @INC\nBEGIN failed\n")}, default=(0, ""))
    policy = _policy("[C]\nskip_load = yes\nreason = optional backend\n")

    report = run_load_check(
        _entries("A", "B", "C", "D"),
        policy,
        executor,
        load_command=LOAD_COMMAND,
        target="dev",
        details_dir=tmp_path,
    )

    assert [(outcome.dependency_name, outcome.status) for outcome in report.outcomes] == [
        ("A", "OK"),
        ("B", "FAIL"),
        ("C", "SKIP"),
        ("D", "OK"),
    ]
    assert [argv[-1] for argv in executor.argvs] == ["A", "B", "D"]
    assert report.outcomes[1].reason_or_error.startswith("Can't locate B.pm")
    assert report.outcomes[2].reason_or_error == "optional backend"
    assert report.detail_log_paths == [tmp_path / "B.log"]
    assert "Can't locate B.pm" in (tmp_path / "B.log").read_text(encoding="utf-8")
    assert report.run_id.startswith("load-run-")
    assert report.exit_code == 1


def test_load_check_applies_no_env_overrides(tmp_path: Path):
    executor = ScriptedExecutor(default=(0, ""))
    policy = _policy("[A]\nenv.DB_HOST = localhost\n")

    run_load_check(_entries("A"), policy, executor, load_command=LOAD_COMMAND, target="dev", details_dir=tmp_path)

    assert executor.calls[0][1] == {}


def test_full_suite_end_to_end_three_dependencies(tmp_path: Path):
    executor = ScriptedExecutor({"B": (1, "t/basic.t .. Failed 1/2 subtests\nnot ok 2\n")})
    policy = _policy("[C]\nskip_test = yes\nreason = needs network\n")

    report = run_full_suite(
        _entries("A", "B", "C"),
        policy,
        executor,
        config=DependencyTestConfig(),
        target="dev",
        details_dir=tmp_path,
    )

    assert [outcome.status for outcome in report.outcomes] == ["OK", "FAIL", "SKIP"]
    assert report.counts == {"OK": 1, "FAIL": 1, "SKIP": 1}
    assert report.outcomes[1].reason_or_error == "exit code 1"
    assert report.outcomes[2].reason_or_error == "needs network"
    assert [path.name for path in report.detail_log_paths] == ["B.log"]
    assert sorted(path.name for path in tmp_path.iterdir()) == ["B.log"]
    assert report.exit_code == 1


def test_full_suite_requires_success_marker(tmp_path: Path):
    executor = ScriptedExecutor(default=(0, "no summary printed\n"))

    report = run_full_suite(
        _entries("A"), _policy(), executor, config=DependencyTestConfig(), target="dev", details_dir=tmp_path
    )

    assert report.outcomes[0].status == "FAIL"
    assert report.outcomes[0].detail_log_path == tmp_path / "A.log"


def test_full_suite_up_to_date_output_is_skip(tmp_path: Path):
    executor = ScriptedExecutor(default=(0, "A is up to date. (1.0)\n"))

    report = run_full_suite(
        _entries("A"), _policy(), executor, config=DependencyTestConfig(), target="dev", details_dir=tmp_path
    )

    assert report.outcomes[0].status == "SKIP"
    assert report.outcomes[0].reason_or_error == UP_TO_DATE_REASON
    assert report.detail_log_paths == []


def test_full_suite_applies_env_and_custom_command(tmp_path: Path):
    executor = ScriptedExecutor()
    policy = _policy("[A]\nenv.DB_HOST = localhost\ntest_command = prove -lr t/\n[B]\nenv.TZ = UTC\n")

    report = run_full_suite(
        _entries("A", "B"), policy, executor, config=DependencyTestConfig(), target="dev", details_dir=tmp_path
    )

    assert executor.calls[0] == (("prove", "-lr", "t/"), {"DB_HOST": "localhost"})
    assert executor.calls[1] == (("cpanm", "--test-only", "--verbose", "B"), {"TZ": "UTC"})
    assert report.outcomes[0].custom_command is True
    assert report.outcomes[1].custom_command is False


def test_unparseable_custom_command_fails_only_that_dependency(tmp_path: Path):
    executor = ScriptedExecutor()
    policy = _policy("[A]\ntest_command = prove 'unterminated\n")

    report = run_full_suite(
        _entries("A", "B"), policy, executor, config=DependencyTestConfig(), target="dev", details_dir=tmp_path
    )

    assert [outcome.status for outcome in report.outcomes] == ["FAIL", "OK"]
    assert "invalid test_command" in report.outcomes[0].reason_or_error
    assert (tmp_path / "A.log").is_file()
    assert [argv[-1] for argv in executor.argvs] == ["B"]


def test_single_dependency_run_always_writes_detail_log(tmp_path: Path):
    executor = ScriptedExecutor()

    report = run_full_suite(
        _entries("A", "Foo::Bar", "C"),
        _policy(),
        executor,
        config=DependencyTestConfig(workers=4),
        target="dev",
        details_dir=tmp_path,
        dependency="Foo::Bar",
    )

    assert [outcome.dependency_name for outcome in report.outcomes] == ["Foo::Bar"]
    assert report.outcomes[0].status == "OK"
    assert report.detail_log_paths == [tmp_path / "Foo-Bar.log"]
    assert "PASSED: Foo::Bar" in (tmp_path / "Foo-Bar.log").read_text(encoding="utf-8")
    assert report.dependency_filter == "Foo::Bar"


def test_single_dependency_skip_also_gets_detail_log(tmp_path: Path):
    report = run_full_suite(
        _entries("A"),
        _policy("[A]\nskip_test = 1\n"),
        ScriptedExecutor(),
        config=DependencyTestConfig(),
        target="dev",
        details_dir=tmp_path,
        dependency="A",
    )

    assert report.outcomes[0].status == "SKIP"
    assert report.outcomes[0].reason_or_error == "skipped"
    assert "Reason: skipped" in (tmp_path / "A.log").read_text(encoding="utf-8")


def test_unknown_dependency_is_rejected():
    with pytest.raises(UnknownDependencyError, match="Nope"):
        select_dependencies(_entries("A", "B"), "Nope", "cpanfile")


def test_duplicate_names_keep_first_for_single_runs():
    entries = [DependencyEntry("A", "1.0", 1), DependencyEntry("B", "", 2), DependencyEntry("A", "2.0", 3)]

    assert select_dependencies(entries, "A") == [entries[0]]
    assert select_dependencies(entries, None) == entries


class SlowFirstExecutor(ScriptedExecutor):
    """Earlier dependencies finish later, so completion order differs from manifest order."""

    def __init__(self, delays: Mapping[str, float]) -> None:
        super().__init__()
        self.delays = dict(delays)

    def run(self, argv: Sequence[str], env: Mapping[str, str]) -> CommandResult:
        time.sleep(self.delays.get(argv[-1], 0.0))
        return super().run(argv, env)


def test_parallel_run_reports_in_manifest_order(tmp_path: Path):
    executor = SlowFirstExecutor({"A": 0.15, "B": 0.05})

    report = run_full_suite(
        _entries("A", "B", "C", "D"),
        _policy(),
        executor,
        config=DependencyTestConfig(workers=3),
        target="dev",
        details_dir=tmp_path,
    )

    assert [outcome.dependency_name for outcome in report.outcomes] == ["A", "B", "C", "D"]
    assert executor.argvs[0][-1] != "A"
    assert report.counts["OK"] == 4


def test_run_state_machine_rejects_skipped_phases():
    machine = RunStateMachine()
    machine.advance("FULL_SUITE")

    with pytest.raises(RuntimeError, match="FULL_SUITE -> DONE"):
        machine.advance("DONE")

    machine.advance("AGGREGATING")
    machine.advance("DONE")
    assert machine.history == ["INIT", "FULL_SUITE", "AGGREGATING", "DONE"]


def test_execute_full_suite_requires_built_image(settings: AppSettings):
    engine = FakeEngine()

    with pytest.raises(EnvironmentPreconditionError, match="Build the image first with: depforge build dev"):
        execute_full_suite(settings, engine)

    assert engine.containers == {}


def test_execute_full_suite_rejects_unknown_name_before_engine(settings: AppSettings):
    engine = FakeEngine(available=False)

    with pytest.raises(UnknownDependencyError):
        execute_full_suite(settings, engine, dependency="Missing::Module")


def test_execute_load_check_rejects_unknown_target(settings: AppSettings, engine: FakeEngine):
    with pytest.raises(InputError, match="Invalid target"):
        execute_load_check(settings, engine, target="staging")


def test_execute_full_suite_in_container_writes_reports(settings: AppSettings):
    engine = FakeEngine(images=["myapp:dev"])
    write_policy(settings, "[C]\nskip_test = yes\nreason = needs network\n")

    def handler(argv: list[str], env: dict[str, str]) -> CommandResult:
        if argv[-1] == "B":
            return CommandResult(argv=tuple(argv), exit_code=1, output="not ok 1 - loads\n")
        return CommandResult(argv=tuple(argv), exit_code=0, output=PASS_OUTPUT)

    engine.exec_handler = handler

    result = execute_full_suite(settings, engine)

    assert result.report.counts == {"OK": 1, "FAIL": 1, "SKIP": 1}
    assert result.paths.label == "full"
    assert result.paths.summary_path.read_text(encoding="utf-8") == result.summary_text
    assert result.paths.json_path.is_file()
    assert result.paths.outcomes_path.is_file()
    assert (result.paths.details_dir / "B.log").is_file()
    assert engine.containers["ctr1"].image == "myapp:dev"
    assert engine.live_containers == []


def test_execute_load_check_labels_reports_by_target(settings: AppSettings):
    engine = FakeEngine(images=["myapp:runtime"])

    result = execute_load_check(settings, engine, target="runtime")

    assert result.report.mode == "load_check"
    assert result.paths.label == "load-runtime"
    assert result.report.exit_code == 0
    assert "DEPENDENCY LOAD CHECK (target: runtime)" in result.summary_text
    assert engine.live_containers == []
