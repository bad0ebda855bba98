"""Summary, detail-log and tabular artifacts for dependency check runs."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import polars as pl

from depforge.orchestrator.classify import first_error_line
from depforge.orchestrator.models import ReportPaths, RunMode, RunReport, TestOutcome
from depforge.utils.paths import atomic_temp_path, safe_file_stem, write_text_atomically

LOGGER = logging.getLogger(__name__)

RULE_HEAVY = "=" * 70
RULE_LIGHT = "-" * 70

STATUS_WORDS = {"OK": "PASSED", "FAIL": "FAILED", "SKIP": "SKIPPED"}
STATUS_TAGS = {"OK": "[ OK ]", "FAIL": "[FAIL]", "SKIP": "[SKIP]"}

_OUTCOME_SCHEMA = {
    "run_id": pl.String,
    "mode": pl.String,
    "target": pl.String,
    "position": pl.Int64,
    "dependency_name": pl.String,
    "status": pl.String,
    "reason_or_error": pl.String,
    "exit_code": pl.Int64,
    "command": pl.String,
    "custom_command": pl.Boolean,
    "detail_log_path": pl.String,
    "duration_sec": pl.Float64,
}


def report_label(mode: RunMode, target: str, dependency: str | None = None) -> str:
    """`full`, the filesystem-safe dependency name, or `load-<target>`."""

    if mode == "load_check":
        return f"load-{target}"
    if dependency:
        return safe_file_stem(dependency)
    return "full"


def build_report_paths(reports_root: Path, label: str, timestamp: str) -> ReportPaths:
    stem = f"{label}-{timestamp}"
    return ReportPaths(
        label=label,
        timestamp=timestamp,
        summary_path=reports_root / f"{stem}-summary.txt",
        json_path=reports_root / f"{stem}-summary.json",
        outcomes_path=reports_root / f"{stem}-outcomes.parquet",
        details_dir=reports_root / f"{stem}-details",
    )


def detail_log_name(dependency_name: str) -> str:
    return f"{safe_file_stem(dependency_name)}.log"


def format_env(env: dict[str, str]) -> str:
    return ", ".join(f"{key}={value}" for key, value in env.items())


def render_detail_log(outcome: TestOutcome, output: str) -> str:
    """Render the per-dependency log: header, exit code, environment, command, raw output."""

    command = " ".join(outcome.command)
    lines = [
        RULE_HEAVY,
        f"{STATUS_WORDS[outcome.status]}: {outcome.dependency_name}",
        RULE_HEAVY,
        f"Exit code: {outcome.exit_code if outcome.exit_code is not None else 'n/a'}",
    ]
    if outcome.env:
        lines.append(f"Environment: {format_env(outcome.env)}")
    if outcome.status == "SKIP" and outcome.exit_code is None:
        lines.append(f"Reason: {outcome.reason_or_error}")
    elif outcome.custom_command:
        lines.append(f"Custom command: {command}")
    else:
        lines.append(f"Command: {command}")
    lines.extend(["", RULE_LIGHT, "Full test output:", RULE_LIGHT, output, RULE_HEAVY])
    return "\n".join(lines) + "\n"


def write_detail_log(details_dir: Path, outcome: TestOutcome, output: str) -> Path:
    """Write one dependency's detail log; a repeated name overwrites (last writer wins)."""

    return write_text_atomically(render_detail_log(outcome, output), details_dir / detail_log_name(outcome.dependency_name))


def _percent(count: int, total: int) -> float:
    return count / total * 100 if total else 0.0


def render_summary(report: RunReport, paths: ReportPaths | None = None) -> str:
    """Render the human-readable run summary."""

    title = "DEPENDENCY FULL TEST SUITE" if report.mode == "full_suite" else "DEPENDENCY LOAD CHECK"
    skip_kind = "test" if report.mode == "full_suite" else "load"
    lines = [
        RULE_HEAVY,
        f"{title} (target: {report.target})",
        f"Started: {report.started_ts.isoformat()}",
        RULE_HEAVY,
        "",
        f"Found {report.total} dependencies in manifest"
        + (f" (filter: {report.dependency_filter})" if report.dependency_filter else ""),
        f"Skip {skip_kind} configured: {report.skip_configured} dependencies",
        "",
    ]

    for position, outcome in enumerate(report.outcomes, start=1):
        prefix = f"[{position}/{report.total}] {STATUS_TAGS[outcome.status]} {outcome.dependency_name}"
        if outcome.status == "SKIP":
            lines.append(f"{prefix} ({outcome.reason_or_error})")
        elif outcome.status == "FAIL":
            detail = f"exit: {outcome.exit_code}"
            error_line = first_error_line(outcome.reason_or_error) if report.mode == "load_check" else ""
            lines.append(f"{prefix} ({detail})" + (f" - {error_line}" if error_line else ""))
        else:
            lines.append(prefix)

    counts = report.counts
    lines.extend(
        [
            "",
            RULE_HEAVY,
            "TEST SUMMARY",
            RULE_HEAVY,
            f"Finished: {report.finished_ts.isoformat()}",
            "",
            "  PASSED : %3d / %d (%.1f%%)" % (counts["OK"], report.total, _percent(counts["OK"], report.total)),
            "  FAILED : %3d / %d (%.1f%%)" % (counts["FAIL"], report.total, _percent(counts["FAIL"], report.total)),
            "  SKIPPED: %3d / %d (%.1f%%)" % (counts["SKIP"], report.total, _percent(counts["SKIP"], report.total)),
            "",
        ]
    )

    if report.failed:
        lines.append("Failed dependencies:")
        lines.extend(f"  - {outcome.dependency_name}" for outcome in report.failed)
        lines.append("")

    if report.skipped:
        lines.append("Skipped dependencies:")
        lines.extend("  - %-30s (%s)" % (outcome.dependency_name, outcome.reason_or_error) for outcome in report.skipped)
        lines.append("")

    lines.append(RULE_HEAVY)

    detail_paths = report.detail_log_paths
    if detail_paths:
        details_dir = paths.details_dir if paths is not None else detail_paths[0].parent
        lines.extend(["", f"Detailed logs in: {details_dir}/", "Files:"])
        # Repeated names share one log file.
        seen: set[str] = set()
        for path in detail_paths:
            if path.name not in seen:
                seen.add(path.name)
                lines.append(f"  - {path.name}")
    return "\n".join(lines) + "\n"


def summary_payload(report: RunReport, paths: ReportPaths) -> dict[str, Any]:
    return {
        "run_id": report.run_id,
        "mode": report.mode,
        "target": report.target,
        "dependency_filter": report.dependency_filter,
        "started_ts": report.started_ts.isoformat(),
        "finished_ts": report.finished_ts.isoformat(),
        "duration_sec": round((report.finished_ts - report.started_ts).total_seconds(), 3),
        "total": report.total,
        "counts": report.counts,
        "exit_code": report.exit_code,
        "failed": [outcome.dependency_name for outcome in report.failed],
        "skipped": [
            {"dependency_name": outcome.dependency_name, "reason": outcome.reason_or_error}
            for outcome in report.skipped
        ],
        "outputs": {
            "summary_path": str(paths.summary_path),
            "outcomes_path": str(paths.outcomes_path),
            "details_dir": str(paths.details_dir),
            "detail_logs": [str(path) for path in report.detail_log_paths],
        },
    }


def outcomes_frame(report: RunReport) -> pl.DataFrame:
    """One row per dependency outcome, in manifest order."""

    rows = [
        {
            "run_id": report.run_id,
            "mode": report.mode,
            "target": report.target,
            "position": position,
            "dependency_name": outcome.dependency_name,
            "status": outcome.status,
            "reason_or_error": outcome.reason_or_error,
            "exit_code": outcome.exit_code,
            "command": " ".join(outcome.command) or None,
            "custom_command": outcome.custom_command,
            "detail_log_path": str(outcome.detail_log_path) if outcome.detail_log_path else None,
            "duration_sec": round(outcome.duration_sec, 3),
        }
        for position, outcome in enumerate(report.outcomes, start=1)
    ]
    if not rows:
        return pl.DataFrame(schema=_OUTCOME_SCHEMA)
    return pl.DataFrame(rows, schema_overrides=_OUTCOME_SCHEMA)


def _write_json_atomically(payload: dict[str, Any], output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = atomic_temp_path(output_path)
    try:
        temp_path.write_text(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n", encoding="utf-8")
        os.replace(temp_path, output_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return output_path


def _write_parquet_atomically(df: pl.DataFrame, output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = atomic_temp_path(output_path)
    try:
        df.write_parquet(temp_path)
        os.replace(temp_path, output_path)
    finally:
        if temp_path.exists():
            temp_path.unlink()
    return output_path


def write_run_reports(report: RunReport, paths: ReportPaths, logger: logging.Logger | None = None) -> str:
    """Write summary text, summary JSON and the outcomes parquet; return the summary text."""

    effective_logger = logger or LOGGER
    summary_text = render_summary(report, paths)
    write_text_atomically(summary_text, paths.summary_path)
    _write_json_atomically(summary_payload(report, paths), paths.json_path)
    _write_parquet_atomically(outcomes_frame(report), paths.outcomes_path)
    effective_logger.info(
        "report.written run_id=%s summary_path=%s outcomes_path=%s detail_logs=%s",
        report.run_id,
        paths.summary_path,
        paths.outcomes_path,
        len(report.detail_log_paths),
    )
    return summary_text
