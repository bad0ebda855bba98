"""Success detection for dependency test output."""

from __future__ import annotations

from typing import Sequence

from depforge.orchestrator.models import OutcomeStatus

DEFAULT_SUCCESS_MARKERS: tuple[str, ...] = ("All tests successful", "Result: PASS", "Successfully tested")
DEFAULT_UP_TO_DATE_MARKERS: tuple[str, ...] = ("is up to date", "already installed")
DEFAULT_ERROR_CONTEXT_MARKERS: tuple[str, ...] = ("FAIL", "Error:", "not ok", "Failed test")
UP_TO_DATE_REASON = "already tested/up to date"


def classify(
    exit_code: int,
    output: str,
    success_markers: Sequence[str] = DEFAULT_SUCCESS_MARKERS,
    up_to_date_markers: Sequence[str] = DEFAULT_UP_TO_DATE_MARKERS,
) -> tuple[OutcomeStatus, str]:
    """Classify one full-suite run as OK, SKIP (already up to date) or FAIL.

    OK needs both a zero exit code and a success marker in the output; a zero
    exit code alone is not trusted.
    """

    if exit_code == 0 and any(marker in output for marker in success_markers):
        return "OK", ""
    if any(marker in output for marker in up_to_date_markers):
        return "SKIP", UP_TO_DATE_REASON
    return "FAIL", f"exit code {exit_code}"


def error_context(
    output: str,
    markers: Sequence[str] = DEFAULT_ERROR_CONTEXT_MARKERS,
    limit: int = 3,
) -> list[str]:
    """Return the first `limit` output lines that look like failures."""

    if limit <= 0:
        return []
    matches = [line for line in output.splitlines() if any(marker in line for marker in markers)]
    return matches[:limit]


def first_error_line(output: str) -> str:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return lines[0] if lines else ""
