"""
Import commands.

This module provides the commands that run an import and report on
previous runs.
"""

import asyncio

import click

from forum_migration.cli.context import MigrationContext
from forum_migration.cli.decorators import handle_errors, pass_context, requires_config
from forum_migration.cli.utils import (
    echo_error,
    echo_info,
    echo_success,
    echo_warning,
    format_count,
    format_timestamp,
    print_cursors,
    print_import_errors,
    print_kind_counts,
    print_table,
)
from forum_migration.client.exceptions import ForumMigrationError
from forum_migration.entities import IMPORTABLE_KINDS
from forum_migration.migration.coordinator import ImportOrchestrator, RunSummary, list_runs
from forum_migration.reporting.report import format_duration
from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="migrate")
def migrate() -> None:
    """Import commands.

    Run the phpBB3 import and inspect previous runs.
    """
    pass


@migrate.command(name="run")
@click.option(
    "--only",
    "only",
    multiple=True,
    type=click.Choice(IMPORTABLE_KINDS),
    help="Import only this entity kind (repeatable)",
)
@click.option(
    "--fresh",
    is_flag=True,
    help="Forget saved cursors and re-read the source from the start",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Map every row without creating anything on the target",
)
@click.option(
    "--no-report",
    is_flag=True,
    help="Do not write run reports",
)
@pass_context
@requires_config
@handle_errors
def run(
    ctx: MigrationContext,
    only: tuple[str, ...],
    fresh: bool,
    dry_run: bool,
    no_report: bool,
) -> None:
    """Run an import.

    Stages run in dependency order. Rows that were imported before are
    skipped, so the command can be re-run after a failure or to pick up
    new content.

    Examples:

        # Full import
        forum-bridge migrate run --config config.yaml

        # Re-check every row from the start
        forum-bridge migrate run --fresh --config config.yaml

        # Preview posts only
        forum-bridge migrate run --only post --dry-run --config config.yaml
    """
    config = ctx.config
    options = config.options
    if dry_run:
        options = options.model_copy(update={"dry_run": True})

    if options.dry_run:
        echo_warning("Dry run: nothing will be created on the target")

    async def run_import() -> RunSummary:
        target = ctx.create_target_client()
        orchestrator = ImportOrchestrator.from_config(
            config,
            source=ctx.source,
            target=target,
            options=options,
            enable_progress=not config.logging.disable_progress,
        )
        try:
            return await orchestrator.run(
                only=only or None,
                fresh=fresh,
                generate_report=not no_report,
                report_dir=config.paths.report_dir,
            )
        except ForumMigrationError:
            if orchestrator.summary is not None:
                _display_summary(orchestrator.summary)
            raise
        finally:
            await target.close()

    echo_info(f"Importing from {config.source.url.split('@')[-1]}")
    summary = asyncio.run(run_import())

    _display_summary(summary)

    totals = summary.totals()
    if totals["failed"]:
        echo_warning(
            f"Completed with {format_count(totals['failed'])} failed rows. "
            "Re-run the import to retry them."
        )
    else:
        echo_success("Import completed")


def _display_summary(summary: RunSummary) -> None:
    click.echo()
    print_kind_counts(
        f"Run {summary.run_id[:8]} ({summary.status})",
        {kind: stats.to_dict() for kind, stats in summary.kinds.items()},
    )
    if summary.duration_seconds is not None:
        echo_info(f"Duration: {format_duration(summary.duration_seconds)}")

    if summary.errors:
        click.echo()
        print_import_errors(summary.errors)

    if summary.fatal_error:
        echo_error(f"Run aborted: {summary.fatal_error}")

    for fmt, path in summary.report_files.items():
        echo_info(f"{fmt.title()} report: {path}")


@migrate.command(name="status")
@click.option("--limit", type=int, default=10, show_default=True, help="Runs to show")
@pass_context
@requires_config
@handle_errors
def status(ctx: MigrationContext, limit: int) -> None:
    """Show recent import runs and saved cursors.

    Examples:

        forum-bridge migrate status --config config.yaml
    """
    runs = list_runs(ctx.config.state.database_url, limit=limit)
    if not runs:
        echo_info("No import runs recorded yet")
    else:
        rows = []
        for r in runs:
            created = sum(s.get("created", 0) for s in r["stats"].values())
            rows.append(
                [
                    r["run_id"][:8],
                    r["status"] + (" (dry run)" if r["dry_run"] else ""),
                    format_timestamp(r["started_at"]),
                    format_timestamp(r["completed_at"]),
                    format_count(created),
                    format_count(r["error_count"] or 0),
                ]
            )
        print_table(
            "Import Runs",
            ["Run", "Status", "Started", "Completed", "Created", "Errors"],
            rows,
        )

    click.echo()
    print_cursors(ctx.reader.list_cursors())
