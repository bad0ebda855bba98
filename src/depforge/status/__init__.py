"""Bundle and image drift reporting."""

from depforge.status.reporter import StatusLine, StatusReport, build_status_report, git_lock_status, render_status

__all__ = ["StatusLine", "StatusReport", "build_status_report", "git_lock_status", "render_status"]
