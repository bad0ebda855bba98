"""Typed models for dependency check runs and their outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal

OutcomeStatus = Literal["OK", "FAIL", "SKIP"]
RunMode = Literal["load_check", "full_suite"]
RunState = Literal["INIT", "LOAD_CHECK", "FULL_SUITE", "AGGREGATING", "DONE"]

ALLOWED_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    "INIT": frozenset({"LOAD_CHECK", "FULL_SUITE"}),
    "LOAD_CHECK": frozenset({"AGGREGATING"}),
    "FULL_SUITE": frozenset({"AGGREGATING"}),
    "AGGREGATING": frozenset({"DONE"}),
    "DONE": frozenset(),
}


class RunStateMachine:
    """Tracks a run through INIT -> LOAD_CHECK|FULL_SUITE -> AGGREGATING -> DONE."""

    def __init__(self) -> None:
        self.state: RunState = "INIT"
        self.history: list[RunState] = ["INIT"]

    def advance(self, next_state: RunState) -> RunState:
        if next_state not in ALLOWED_TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid run state transition {self.state} -> {next_state}")
        self.state = next_state
        self.history.append(next_state)
        return next_state


@dataclass(frozen=True, slots=True)
class TestOutcome:
    """Result of checking one dependency."""

    __test__ = False

    dependency_name: str
    status: OutcomeStatus
    reason_or_error: str = ""
    exit_code: int | None = None
    command: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    custom_command: bool = False
    detail_log_path: Path | None = None
    duration_sec: float = 0.0


@dataclass(frozen=True, slots=True)
class RunReport:
    """Aggregated outcomes of one run, in manifest order."""

    run_id: str
    mode: RunMode
    target: str
    started_ts: datetime
    finished_ts: datetime
    outcomes: tuple[TestOutcome, ...]
    dependency_filter: str | None = None
    skip_configured: int = 0

    @property
    def total(self) -> int:
        return len(self.outcomes)

    def by_status(self, status: OutcomeStatus) -> list[TestOutcome]:
        return [outcome for outcome in self.outcomes if outcome.status == status]

    @property
    def passed(self) -> list[TestOutcome]:
        return self.by_status("OK")

    @property
    def failed(self) -> list[TestOutcome]:
        return self.by_status("FAIL")

    @property
    def skipped(self) -> list[TestOutcome]:
        return self.by_status("SKIP")

    @property
    def counts(self) -> dict[str, int]:
        return {"OK": len(self.passed), "FAIL": len(self.failed), "SKIP": len(self.skipped)}

    @property
    def detail_log_paths(self) -> list[Path]:
        return [outcome.detail_log_path for outcome in self.outcomes if outcome.detail_log_path is not None]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0


@dataclass(frozen=True, slots=True)
class ReportPaths:
    """Where one run's report artifacts are written."""

    label: str
    timestamp: str
    summary_path: Path
    json_path: Path
    outcomes_path: Path
    details_dir: Path


@dataclass(frozen=True, slots=True)
class RunResult:
    """Return object for a finished run."""

    report: RunReport
    paths: ReportPaths
    summary_text: str
