"""Dependency load checks, full test-suite runs, and their reports."""

from depforge.orchestrator.classify import UP_TO_DATE_REASON, classify, error_context
from depforge.orchestrator.executors import CommandExecutor, ContainerExecutor, LocalExecutor
from depforge.orchestrator.models import (
    OutcomeStatus,
    ReportPaths,
    RunReport,
    RunResult,
    RunStateMachine,
    TestOutcome,
)
from depforge.orchestrator.pipeline import (
    execute_full_suite,
    execute_load_check,
    run_full_suite,
    run_load_check,
    select_dependencies,
)
from depforge.orchestrator.reports import render_summary, write_run_reports

__all__ = [
    "UP_TO_DATE_REASON",
    "CommandExecutor",
    "ContainerExecutor",
    "LocalExecutor",
    "OutcomeStatus",
    "ReportPaths",
    "RunReport",
    "RunResult",
    "RunStateMachine",
    "TestOutcome",
    "classify",
    "error_context",
    "execute_full_suite",
    "execute_load_check",
    "render_summary",
    "run_full_suite",
    "run_load_check",
    "select_dependencies",
    "write_run_reports",
]
