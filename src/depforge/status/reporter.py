"""Read-only drift report across lock file, bundle cache and built images."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from depforge.bundle.cache import BundleCache
from depforge.config import AppSettings
from depforge.engine.commands import run_command
from depforge.engine.podman import ContainerEngine

LOGGER = logging.getLogger(__name__)

StatusState = Literal["OK", "WARNING", "MISSING"]
StatusSection = Literal["lock", "bundle", "images"]

SECTION_TITLES: dict[str, str] = {
    "lock": "Lock file",
    "bundle": "Bundle status",
    "images": "Image status",
}


@dataclass(frozen=True, slots=True)
class StatusLine:
    section: StatusSection
    state: StatusState
    subject: str
    detail: str = ""


@dataclass(frozen=True, slots=True)
class StatusReport:
    """Ordered status lines plus the minimal commands that bring everything in sync."""

    lock_hash: str
    lines: tuple[StatusLine, ...]
    needs_update: bool
    resync_commands: tuple[str, ...]

    @property
    def exit_code(self) -> int:
        return 1 if self.needs_update else 0


def _human_size(size_bytes: int) -> str:
    size = float(size_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size_bytes} B"


def git_lock_status(lock_path: Path) -> StatusLine | None:
    """Report uncommitted lock-file changes; None outside a git work tree or without git."""

    cwd = lock_path.parent
    try:
        inside = run_command(["git", "rev-parse", "--git-dir"], cwd=cwd)
        if not inside.ok:
            return None
        diff = run_command(["git", "diff", "--quiet", "--", lock_path.name], cwd=cwd)
    except OSError:
        return None
    if diff.ok:
        return StatusLine("lock", "OK", "No uncommitted changes")
    return StatusLine("lock", "WARNING", "Uncommitted changes detected", lock_path.name)


def _image_line(engine: ContainerEngine, tag: str, label_key: str, expected_hash: str) -> tuple[StatusLine, bool]:
    """Return the status line for one image and whether it needs a rebuild."""

    if not engine.image_exists(tag):
        return StatusLine("images", "MISSING", tag, "not found"), True
    size = engine.image_size(tag) or "unknown"
    image_hash = engine.image_label(tag, label_key)
    if image_hash == expected_hash:
        return StatusLine("images", "OK", tag, f"bundle: {image_hash}, size: {size}"), False
    if image_hash:
        return StatusLine("images", "WARNING", tag, f"bundle: {image_hash}, expected: {expected_hash}, size: {size}"), True
    return StatusLine("images", "WARNING", tag, f"no bundle hash label, size: {size}"), True


def build_status_report(
    settings: AppSettings,
    engine: ContainerEngine,
    cache: BundleCache,
    *,
    git_check: bool = True,
    logger: logging.Logger | None = None,
) -> StatusReport:
    """Compare the current lock hash with the bundle cache and image labels."""

    effective_logger = logger or LOGGER
    lock = cache.fingerprint(settings.paths.lock_file)
    lines: list[StatusLine] = []

    if git_check:
        git_line = git_lock_status(settings.paths.lock_file)
        if git_line is not None:
            lines.append(git_line)

    bundle_name = cache.artifact_name(lock.short_hash)
    bundle_path = cache.artifact_path(lock.short_hash)
    bundle_missing = not bundle_path.is_file()
    alias_stale = False
    if bundle_missing:
        lines.append(StatusLine("bundle", "MISSING", f"Bundle missing: {bundle_name}"))
    else:
        lines.append(StatusLine("bundle", "OK", f"Bundle exists: {bundle_name}", _human_size(bundle_path.stat().st_size)))
        latest_target = cache.latest_target()
        alias_name = cache.latest_path.name
        if latest_target == bundle_name:
            lines.append(StatusLine("bundle", "OK", f"Alias up to date: {alias_name} -> {bundle_name}"))
        elif latest_target is None:
            alias_stale = True
            lines.append(StatusLine("bundle", "WARNING", f"Alias missing: {alias_name}"))
        else:
            alias_stale = True
            lines.append(StatusLine("bundle", "WARNING", f"Alias outdated: {alias_name} -> {latest_target}"))

    tooling_tag = settings.image_tag(settings.bundle.tooling_tag)
    if engine.image_exists(tooling_tag):
        lines.append(StatusLine("images", "OK", tooling_tag, f"size: {engine.image_size(tooling_tag) or 'unknown'}"))

    stale_targets: list[str] = []
    for alias in settings.images.targets:
        line, stale = _image_line(engine, settings.image_tag(alias), settings.images.label_key, lock.short_hash)
        lines.append(line)
        if stale or bundle_missing:
            stale_targets.append(alias)

    resync: list[str] = []
    if bundle_missing or alias_stale:
        resync.append("depforge bundle")
    resync.extend(f"depforge build {alias}" for alias in stale_targets)

    needs_update = bool(resync)
    effective_logger.info(
        "status.checked lock_hash=%s bundle_missing=%s alias_stale=%s stale_images=%s",
        lock.short_hash,
        bundle_missing,
        alias_stale,
        ",".join(stale_targets) or "-",
    )
    return StatusReport(
        lock_hash=lock.short_hash,
        lines=tuple(lines),
        needs_update=needs_update,
        resync_commands=tuple(resync),
    )


def render_status(report: StatusReport) -> str:
    """Render the report as plain text grouped by section."""

    out = ["==> Dependency Status Check", "", f"Lock file hash: {report.lock_hash}"]
    current_section: str | None = None
    for line in report.lines:
        if line.section != current_section:
            out.extend(["", f"{SECTION_TITLES[line.section]}:"])
            current_section = line.section
        text = f"  [{line.state}] {line.subject}"
        if line.detail:
            text = f"{text} ({line.detail})"
        out.append(text)

    out.append("")
    if not report.needs_update:
        out.append("[OK] Everything up to date!")
    else:
        out.extend(["[WARNING] Updates needed", "", "Recommended workflow:"])
        out.extend(f"  {index}. {command}" for index, command in enumerate(report.resync_commands, start=1))
    return "\n".join(out) + "\n"
