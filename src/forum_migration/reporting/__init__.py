"""Reporting and progress tracking for forum imports."""

from forum_migration.reporting.progress import ProgressTracker
from forum_migration.reporting.report import RunReport, generate_run_report

__all__ = [
    "ProgressTracker",
    "RunReport",
    "generate_run_report",
]
