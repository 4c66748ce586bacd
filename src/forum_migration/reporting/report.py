"""Import run report generation.

This module writes a run summary to disk as JSON (machine readable, with
full tracebacks) and Markdown (for the operator).
"""

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from forum_migration.utils.logging import get_logger

if TYPE_CHECKING:
    from forum_migration.migration.coordinator import RunSummary

logger = get_logger(__name__)

# Errors listed individually in the Markdown report
MAX_LISTED_ERRORS = 20


def format_duration(seconds: float | None) -> str:
    """Seconds as ``12.5s``, ``3m 4s`` or ``1h 2m 3s``."""
    if seconds is None:
        return "N/A"
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m {secs}s"


class RunReport:
    """Renders a run summary in several formats."""

    def __init__(self, summary: dict[str, Any]):
        """Initialize run report.

        Args:
            summary: ``RunSummary.to_dict()`` output
        """
        self.summary = summary
        self.generated_at = datetime.now(UTC)

    def generate_json(self, output_path: str | None = None) -> str:
        """Generate JSON report.

        Args:
            output_path: Optional path to save report

        Returns:
            JSON report as string
        """
        report = {
            "report_version": "1.0",
            "generated_at": self.generated_at.isoformat(),
            **self.summary,
        }
        json_str = json.dumps(report, indent=2, default=str)

        if output_path:
            Path(output_path).write_text(json_str)
            logger.info("json_report_saved", path=output_path)

        return json_str

    def generate_markdown(self, output_path: str | None = None) -> str:
        """Generate Markdown report.

        Args:
            output_path: Optional path to save report

        Returns:
            Markdown report as string
        """
        summary = self.summary
        totals = summary.get("totals", {})
        lines = [
            "# Forum Import Report",
            "",
            f"**Run ID:** `{summary.get('run_id')}`  ",
            f"**Generated:** {self.generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}  ",
            f"**Status:** {summary.get('status', 'unknown')}  ",
            f"**Source:** phpBB {summary.get('source_version') or 'unknown'}  ",
            "",
            "## Summary",
            "",
            f"- **Start Time:** {summary.get('started_at', 'N/A')}",
            f"- **End Time:** {summary.get('completed_at') or 'N/A'}",
            f"- **Duration:** {format_duration(summary.get('duration_seconds'))}",
            f"- **Dry Run:** {'Yes' if summary.get('dry_run') else 'No'}",
            "",
            "## Entity Statistics",
            "",
            "| Kind | Total | Created | Skipped | Failed |",
            "|------|------:|--------:|--------:|-------:|",
        ]

        for kind, stats in summary.get("kinds", {}).items():
            lines.append(
                f"| {kind} | {stats['total']:,} | {stats['created']:,} | "
                f"{stats['skipped']:,} | {stats['failed']:,} |"
            )
        lines.append(
            f"| **all** | | {totals.get('created', 0):,} | {totals.get('skipped', 0):,} | "
            f"{totals.get('failed', 0):,} |"
        )
        lines.append("")

        if summary.get("fatal_error"):
            lines.extend(["## Aborted", "", f"```\n{summary['fatal_error']}\n```", ""])

        errors = summary.get("errors", [])
        if errors:
            lines.extend(["## Errors", "", f"Total errors encountered: {len(errors)}", ""])
            for error in errors[:MAX_LISTED_ERRORS]:
                lines.append(
                    f"- `{error['entity_kind']}` `{error['external_id']}`: "
                    f"{error['message']} ({error['cause']})"
                )
            if len(errors) > MAX_LISTED_ERRORS:
                lines.append(f"\n*... and {len(errors) - MAX_LISTED_ERRORS} more errors*")
            lines.append("")

        markdown = "\n".join(lines)

        if output_path:
            Path(output_path).write_text(markdown)
            logger.info("markdown_report_saved", path=output_path)

        return markdown


def generate_run_report(
    summary: "RunSummary",
    output_dir: str = "reports",
    formats: list[str] | None = None,
) -> dict[str, str]:
    """Write reports for a run.

    Args:
        summary: Run summary
        output_dir: Directory to save reports
        formats: Formats to generate (json, markdown). Default: both

    Returns:
        Dictionary mapping format to file path
    """
    if formats is None:
        formats = ["json", "markdown"]

    report = RunReport(summary.to_dict())
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    timestamp = summary.started_at.strftime("%Y%m%d_%H%M%S")
    base_filename = f"import_report_{timestamp}_{summary.run_id[:8]}"
    generated_files = {}

    if "json" in formats:
        json_path = output_path / f"{base_filename}.json"
        report.generate_json(str(json_path))
        generated_files["json"] = str(json_path)

    if "markdown" in formats:
        md_path = output_path / f"{base_filename}.md"
        report.generate_markdown(str(md_path))
        generated_files["markdown"] = str(md_path)

    logger.info("run_reports_generated", run_id=summary.run_id, files=generated_files)
    return generated_files
