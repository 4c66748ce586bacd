"""
Console output helpers shared by the CLI commands.

Status lines go through click; tables are rendered with rich.
"""

from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Any

import click
from rich.console import Console
from rich.table import Table

console = Console()

# Errors printed after a run; the report file has all of them
MAX_PRINTED_ERRORS = 10


def echo_success(message: str) -> None:
    click.secho(f"✓ {message}", fg="green")


def echo_error(message: str) -> None:
    click.secho(f"✗ {message}", fg="red", err=True)


def echo_warning(message: str) -> None:
    click.secho(f"! {message}", fg="yellow")


def echo_info(message: str) -> None:
    click.echo(f"  {message}")


def format_timestamp(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def format_count(count: int | None) -> str:
    return f"{count or 0:,}"


def print_table(
    title: str,
    columns: Sequence[str],
    rows: Iterable[Sequence[Any]],
    show_header: bool = True,
    numeric: Sequence[str] = (),
) -> None:
    """Render rows as a rich table; ``numeric`` columns are right aligned."""
    table = Table(title=title, show_header=show_header, title_justify="left")
    for column in columns:
        table.add_column(column, justify="right" if column in numeric else "left")
    for row in rows:
        table.add_row(*(str(cell) for cell in row))
    console.print(table)


def print_kind_counts(title: str, kinds: Mapping[str, Mapping[str, int]]) -> None:
    """Per-kind source/created/skipped/failed counts, with a total line."""
    columns = ["Kind", "Source Rows", "Created", "Skipped", "Failed"]
    rows = []
    totals = {"created": 0, "skipped": 0, "failed": 0}
    for kind, counts in kinds.items():
        rows.append(
            [
                kind,
                format_count(counts.get("total")),
                format_count(counts.get("created")),
                format_count(counts.get("skipped")),
                format_count(counts.get("failed")),
            ]
        )
        for key in totals:
            totals[key] += counts.get(key, 0)
    if len(rows) > 1:
        rows.append(
            ["all", "", *(format_count(totals[key]) for key in ("created", "skipped", "failed"))]
        )
    print_table(title, columns, rows, numeric=columns[1:])


def print_import_errors(errors: Sequence[Any], limit: int = MAX_PRINTED_ERRORS) -> None:
    """The first ``limit`` failed rows (kind, external id, cause, message)."""
    if not errors:
        return
    rows = [
        [error.entity_kind, error.external_id, error.cause, error.message[:80]]
        for error in errors[:limit]
    ]
    print_table(f"Failed Rows ({len(errors)})", ["Kind", "External ID", "Cause", "Message"], rows)
    if len(errors) > limit:
        echo_warning(f"{len(errors) - limit} more failed rows are listed in the report")


def print_cursors(cursors: Sequence[Mapping[str, Any]]) -> None:
    """Saved resume positions, one row per entity kind."""
    if not cursors:
        echo_info("No saved cursors; the next run starts from the beginning")
        return
    print_table(
        "Saved Cursors",
        ["Kind", "Resumes After", "Rows Processed", "Updated"],
        (
            [
                c["kind"],
                c["cursor"],
                format_count(c["rows_processed"]),
                format_timestamp(c["updated_at"]),
            ]
            for c in cursors
        ),
        numeric=["Rows Processed"],
    )
