"""Dependency load checks and full test-suite runs against a built image."""

from __future__ import annotations

import logging
import os
import shlex
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterator, Sequence
from uuid import uuid4

from depforge.config import AppSettings, DependencyTestConfig
from depforge.engine.commands import substitute_name
from depforge.engine.podman import ContainerEngine, require_image
from depforge.engine.session import container_session
from depforge.errors import InputError, UnknownDependencyError
from depforge.manifest.parser import DependencyEntry, load_manifest
from depforge.orchestrator.classify import classify, error_context
from depforge.orchestrator.executors import CommandExecutor, ContainerExecutor, LocalExecutor
from depforge.orchestrator.models import RunReport, RunResult, RunStateMachine, TestOutcome
from depforge.orchestrator.reports import build_report_paths, report_label, write_detail_log, write_run_reports
from depforge.policy.store import PolicyStore, load_policy
from depforge.utils.time_utils import now_utc, report_timestamp

LOGGER = logging.getLogger(__name__)


def select_dependencies(
    entries: Sequence[DependencyEntry],
    dependency: str | None,
    manifest_path: object = "manifest",
) -> list[DependencyEntry]:
    """Return all entries, or only the first one named `dependency`."""

    if dependency is None:
        return list(entries)
    for entry in entries:
        if entry.name == dependency:
            return [entry]
    raise UnknownDependencyError(dependency, manifest_path)


def resolve_workers(workers: int) -> int:
    """`0` means one worker per CPU."""

    if workers <= 0:
        return os.cpu_count() or 1
    return workers


def _collect_in_order(
    entries: Sequence[DependencyEntry],
    check: Callable[[int, DependencyEntry], TestOutcome],
    workers: int,
) -> list[TestOutcome]:
    if workers <= 1 or len(entries) <= 1:
        return [check(position, entry) for position, entry in enumerate(entries, start=1)]
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="depforge-check") as pool:
        futures = [pool.submit(check, position, entry) for position, entry in enumerate(entries, start=1)]
        return [future.result() for future in futures]


def run_load_check(
    entries: Sequence[DependencyEntry],
    policy: PolicyStore,
    executor: CommandExecutor,
    *,
    load_command: Sequence[str],
    target: str,
    details_dir: Path,
    run_id: str | None = None,
    logger: logging.Logger | None = None,
) -> RunReport:
    """Check that every declared dependency loads; FAIL outcomes get a detail log."""

    effective_logger = logger or LOGGER
    machine = RunStateMachine()
    machine.advance("LOAD_CHECK")
    run_id = run_id or f"load-run-{uuid4().hex[:12]}"
    started_ts = now_utc()
    total = len(entries)
    effective_logger.info(
        "load_check.start run_id=%s target=%s dependencies=%s skip_configured=%s",
        run_id,
        target,
        total,
        len(policy.skip_load_names()),
    )

    outcomes: list[TestOutcome] = []
    for position, entry in enumerate(entries, start=1):
        name = entry.name
        if policy.should_skip_load(name):
            outcome = TestOutcome(dependency_name=name, status="SKIP", reason_or_error=policy.reason(name))
            effective_logger.info("load_check.skip [%s/%s] %s reason=%s", position, total, name, outcome.reason_or_error)
            outcomes.append(outcome)
            continue

        argv = substitute_name(load_command, name)
        started = time.monotonic()
        result = executor.run(argv, {})
        duration = time.monotonic() - started
        if result.ok:
            outcome = TestOutcome(
                dependency_name=name,
                status="OK",
                exit_code=result.exit_code,
                command=tuple(argv),
                duration_sec=duration,
            )
            effective_logger.info("load_check.ok [%s/%s] %s", position, total, name)
        else:
            outcome = TestOutcome(
                dependency_name=name,
                status="FAIL",
                reason_or_error=result.output.strip() or f"exit code {result.exit_code}",
                exit_code=result.exit_code,
                command=tuple(argv),
                duration_sec=duration,
            )
            detail_path = write_detail_log(details_dir, outcome, result.output)
            outcome = _with_detail_log(outcome, detail_path)
            effective_logger.warning(
                "load_check.fail [%s/%s] %s exit=%s detail_log=%s",
                position,
                total,
                name,
                result.exit_code,
                detail_path,
            )
        outcomes.append(outcome)

    machine.advance("AGGREGATING")
    report = RunReport(
        run_id=run_id,
        mode="load_check",
        target=target,
        started_ts=started_ts,
        finished_ts=now_utc(),
        outcomes=tuple(outcomes),
        skip_configured=len(policy.skip_load_names()),
    )
    machine.advance("DONE")
    effective_logger.info("load_check.complete run_id=%s counts=%s", run_id, report.counts)
    return report


def _with_detail_log(outcome: TestOutcome, path: Path) -> TestOutcome:
    return replace(outcome, detail_log_path=path)


class _FullSuiteCheck:
    """Per-dependency full-suite step; safe to run from worker threads."""

    def __init__(
        self,
        policy: PolicyStore,
        executor: CommandExecutor,
        config: DependencyTestConfig,
        *,
        total: int,
        details_dir: Path,
        always_write_detail: bool,
        logger: logging.Logger,
    ) -> None:
        self.policy = policy
        self.executor = executor
        self.config = config
        self.total = total
        self.details_dir = details_dir
        self.always_write_detail = always_write_detail
        self.logger = logger

    def __call__(self, position: int, entry: DependencyEntry) -> TestOutcome:
        name = entry.name
        progress = f"[{position}/{self.total}]"
        if self.policy.should_skip_test(name):
            outcome = TestOutcome(dependency_name=name, status="SKIP", reason_or_error=self.policy.reason(name))
            self.logger.info("full_suite.skip %s %s reason=%s", progress, name, outcome.reason_or_error)
            if self.always_write_detail:
                outcome = _with_detail_log(outcome, write_detail_log(self.details_dir, outcome, ""))
            return outcome

        env = self.policy.env_overrides(name)
        custom = self.policy.test_command(name)
        self.logger.info("full_suite.test %s %s", progress, name)
        if env:
            self.logger.info("full_suite.env %s %s", name, ", ".join(f"{key}={value}" for key, value in env.items()))

        try:
            argv = shlex.split(custom) if custom else substitute_name(self.config.test_command, name)
        except ValueError as exc:
            failure = f"invalid test_command {custom!r}: {exc}"
            outcome = TestOutcome(
                dependency_name=name,
                status="FAIL",
                reason_or_error=failure,
                env=env,
                custom_command=True,
            )
            self.logger.warning("full_suite.fail %s %s reason=%s", progress, name, failure)
            return _with_detail_log(outcome, write_detail_log(self.details_dir, outcome, failure))
        if not argv:
            argv = substitute_name(self.config.test_command, name)
            custom = None
        if custom:
            self.logger.info("full_suite.custom_command %s %s", name, custom)

        started = time.monotonic()
        result = self.executor.run(argv, env)
        status, reason = classify(
            result.exit_code,
            result.output,
            self.config.success_markers,
            self.config.up_to_date_markers,
        )
        outcome = TestOutcome(
            dependency_name=name,
            status=status,
            reason_or_error=reason,
            exit_code=result.exit_code,
            command=tuple(argv),
            env=env,
            custom_command=bool(custom),
            duration_sec=time.monotonic() - started,
        )

        if status == "FAIL" or self.always_write_detail:
            outcome = _with_detail_log(outcome, write_detail_log(self.details_dir, outcome, result.output))

        if status == "OK":
            self.logger.info("full_suite.ok %s %s", progress, name)
        elif status == "SKIP":
            self.logger.info("full_suite.skip %s %s reason=%s", progress, name, reason)
        else:
            self.logger.warning(
                "full_suite.fail %s %s exit=%s detail_log=%s",
                progress,
                name,
                result.exit_code,
                outcome.detail_log_path,
            )
            for line in error_context(result.output, self.config.error_context_markers, self.config.error_context_lines):
                self.logger.warning("full_suite.error_context %s | %s", name, line)
        return outcome


def run_full_suite(
    entries: Sequence[DependencyEntry],
    policy: PolicyStore,
    executor: CommandExecutor,
    *,
    config: DependencyTestConfig,
    target: str,
    details_dir: Path,
    dependency: str | None = None,
    manifest_path: object = "manifest",
    run_id: str | None = None,
    logger: logging.Logger | None = None,
) -> RunReport:
    """Run each dependency's test suite and classify the outcomes.

    With `dependency` set only that entry runs (sequentially) and its detail log
    is written whatever the outcome; otherwise only failures get detail logs.
    """

    effective_logger = logger or LOGGER
    selected = select_dependencies(entries, dependency, manifest_path)
    machine = RunStateMachine()
    machine.advance("FULL_SUITE")
    run_id = run_id or f"suite-run-{uuid4().hex[:12]}"
    started_ts = now_utc()
    single = dependency is not None
    workers = 1 if single else resolve_workers(config.workers)
    effective_logger.info(
        "full_suite.start run_id=%s target=%s dependencies=%s skip_configured=%s workers=%s filter=%s",
        run_id,
        target,
        len(selected),
        len(policy.skip_test_names()),
        workers,
        dependency,
    )

    check = _FullSuiteCheck(
        policy,
        executor,
        config,
        total=len(selected),
        details_dir=details_dir,
        always_write_detail=single,
        logger=effective_logger,
    )
    outcomes = _collect_in_order(selected, check, workers)

    machine.advance("AGGREGATING")
    report = RunReport(
        run_id=run_id,
        mode="full_suite",
        target=target,
        started_ts=started_ts,
        finished_ts=now_utc(),
        outcomes=tuple(outcomes),
        dependency_filter=dependency,
        skip_configured=len(policy.skip_test_names()),
    )
    machine.advance("DONE")
    effective_logger.info("full_suite.complete run_id=%s counts=%s exit_code=%s", run_id, report.counts, report.exit_code)
    return report


@contextmanager
def executor_scope(
    settings: AppSettings,
    engine: ContainerEngine,
    target: str,
    logger: logging.Logger | None = None,
) -> Iterator[CommandExecutor]:
    """Yield the configured executor; container executors own one scoped container."""

    effective_logger = logger or LOGGER
    if settings.testing.executor == "local":
        yield LocalExecutor(cwd=settings.paths.build_context)
        return
    tag = settings.image_tag(target)
    require_image(engine, tag, build_hint=f"depforge build {target}")
    with container_session(engine, tag, settings.engine.keepalive_command, logger=effective_logger) as container_id:
        yield ContainerExecutor(engine, container_id)


def _validate_target(settings: AppSettings, target: str) -> None:
    if target not in settings.images.targets:
        choices = ", ".join(settings.images.targets)
        raise InputError(f"Invalid target '{target}'. Expected one of: {choices}")


def execute_load_check(
    settings: AppSettings,
    engine: ContainerEngine,
    *,
    target: str,
    logger: logging.Logger | None = None,
) -> RunResult:
    """Load manifest and policy, check the target image, and write the run reports."""

    _validate_target(settings, target)
    entries = load_manifest(settings.paths.manifest_file, logger=logger)
    policy = load_policy(settings.paths.policy_file, logger=logger)
    paths = build_report_paths(
        settings.paths.reports_root,
        report_label("load_check", target),
        report_timestamp(),
    )
    with executor_scope(settings, engine, target, logger=logger) as executor:
        report = run_load_check(
            entries,
            policy,
            executor,
            load_command=settings.testing.load_command,
            target=target,
            details_dir=paths.details_dir,
            logger=logger,
        )
    summary_text = write_run_reports(report, paths, logger=logger)
    return RunResult(report=report, paths=paths, summary_text=summary_text)


def execute_full_suite(
    settings: AppSettings,
    engine: ContainerEngine,
    *,
    dependency: str | None = None,
    target: str | None = None,
    logger: logging.Logger | None = None,
) -> RunResult:
    """Run full test suites (all dependencies or one) and write the run reports."""

    effective_target = target or settings.testing.default_target
    _validate_target(settings, effective_target)
    manifest_path = settings.paths.manifest_file
    entries = load_manifest(manifest_path, logger=logger)
    # Unknown names fail before the engine is touched.
    select_dependencies(entries, dependency, manifest_path)
    policy = load_policy(settings.paths.policy_file, logger=logger)
    paths = build_report_paths(
        settings.paths.reports_root,
        report_label("full_suite", effective_target, dependency),
        report_timestamp(),
    )
    with executor_scope(settings, engine, effective_target, logger=logger) as executor:
        report = run_full_suite(
            entries,
            policy,
            executor,
            config=settings.testing,
            target=effective_target,
            details_dir=paths.details_dir,
            dependency=dependency,
            manifest_path=manifest_path,
            logger=logger,
        )
    summary_text = write_run_reports(report, paths, logger=logger)
    return RunResult(report=report, paths=paths, summary_text=summary_text)
