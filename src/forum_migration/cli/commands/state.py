"""
State management commands.

This module provides commands for inspecting and resetting the import
state: identifier mappings and saved cursors.
"""

from pathlib import Path

import click

from forum_migration.cli.context import MigrationContext
from forum_migration.cli.decorators import (
    confirm_action,
    handle_errors,
    pass_context,
    requires_config,
)
from forum_migration.cli.utils import (
    echo_info,
    echo_success,
    echo_warning,
    format_count,
    print_cursors,
    print_table,
)
from forum_migration.entities import IMPORTABLE_KINDS, EntityKind
from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="state")
def state() -> None:
    """Import state management commands.

    Inspect and reset identifier mappings and resume cursors.
    """
    pass


@state.command(name="show")
@pass_context
@requires_config
@handle_errors
def show_state(ctx: MigrationContext) -> None:
    """Show identifier mappings and saved cursors.

    Examples:

        forum-bridge state show --config config.yaml
    """
    echo_info(f"State database: {ctx.config.state.db_path}")

    stats = ctx.registry.stats()
    click.echo()
    if stats:
        rows = [[namespace, format_count(count)] for namespace, count in sorted(stats.items())]
        rows.append(["all", format_count(sum(stats.values()))])
        print_table("Identifier Mappings", ["Namespace", "Mappings"], rows, numeric=["Mappings"])
    else:
        echo_info("No identifier mappings recorded")

    click.echo()
    print_cursors(ctx.reader.list_cursors())


@state.command(name="export")
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@pass_context
@requires_config
@handle_errors
def export_state(ctx: MigrationContext, output: Path) -> None:
    """Export identifier mappings to a JSON file.

    Examples:

        forum-bridge state export mappings.json --config config.yaml
    """
    count = ctx.registry.export_mappings(output)
    echo_success(f"Exported {format_count(count)} mappings to {output}")


@state.command(name="reset-cursors")
@click.option(
    "--kind",
    type=click.Choice(IMPORTABLE_KINDS),
    help="Reset only this kind's cursor",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@pass_context
@requires_config
@handle_errors
@confirm_action(
    message="The next run will re-read the source from the start. Continue?",
)
def reset_cursors(ctx: MigrationContext, kind: str | None, yes: bool) -> None:
    """Forget saved cursors.

    Mappings are kept, so re-read rows are skipped rather than duplicated.

    Examples:

        forum-bridge state reset-cursors --kind post --config config.yaml
    """
    count = ctx.reader.reset(EntityKind(kind) if kind else None)
    echo_success(f"Removed {count} saved cursors")


@state.command(name="clear-mappings")
@click.option(
    "--kind",
    type=click.Choice(IMPORTABLE_KINDS),
    help="Clear only this kind's namespace",
)
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@pass_context
@requires_config
@handle_errors
@confirm_action(
    message="Rows already on the target will be created again by the next run. Continue?",
)
def clear_mappings(ctx: MigrationContext, kind: str | None, yes: bool) -> None:
    """Delete identifier mappings.

    Only useful after the target forum itself was wiped. Cursors are reset
    together with the mappings they depend on.

    Examples:

        forum-bridge state clear-mappings --yes --config config.yaml
    """
    entity_kind = EntityKind(kind) if kind else None
    removed = ctx.registry.clear(entity_kind)
    ctx.reader.reset(entity_kind)
    if removed:
        echo_success(f"Deleted {format_count(removed)} mappings")
    else:
        echo_warning("No mappings to delete")
