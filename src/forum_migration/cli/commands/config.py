"""
Configuration management commands.

This module provides commands for validating and displaying the
import configuration.
"""

import asyncio

import click
import yaml

from forum_migration.cli.context import MigrationContext
from forum_migration.cli.decorators import handle_errors, pass_context, requires_config
from forum_migration.cli.utils import echo_error, echo_info, echo_success, echo_warning, print_table
from forum_migration.client.exceptions import APIError, NetworkError, SourceError
from forum_migration.config import SKIP, MigrationConfig, sanitized_config_dict
from forum_migration.migration.database import validate_database_connection
from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)


@click.group(name="config")
def config() -> None:
    """Configuration management commands.

    Validate and display import configuration files.
    """
    pass


@config.command(name="validate")
@click.option(
    "--check-connectivity",
    is_flag=True,
    help="Test the phpBB database and the target API",
)
@pass_context
@requires_config
@handle_errors
def validate(ctx: MigrationContext, check_connectivity: bool) -> None:
    """Validate import configuration.

    Loading the file already checks required fields, URLs and value
    ranges. This command also reports settings that are valid but
    probably unintended.

    Examples:

        forum-bridge config validate --config config.yaml

        forum-bridge config validate --config config.yaml --check-connectivity
    """
    echo_info(f"Validating configuration: {ctx.config_path}")
    cfg = ctx.config

    click.echo()
    _display_config_summary(cfg)

    click.echo()
    warnings = _check_settings(cfg)
    for warning in warnings:
        echo_warning(warning)

    if check_connectivity:
        click.echo()
        if not _check_connectivity(ctx):
            raise click.exceptions.Exit(1)

    echo_success("Configuration is valid")


@config.command(name="show")
@pass_context
@requires_config
@handle_errors
def show(ctx: MigrationContext) -> None:
    """Print the effective configuration with secrets masked.

    Examples:

        forum-bridge config show --config config.yaml
    """
    click.echo(yaml.safe_dump(sanitized_config_dict(ctx.config), sort_keys=False))


def _display_config_summary(cfg: MigrationConfig) -> None:
    options = cfg.options
    rows = [
        ["Source", cfg.source.url.split("@")[-1]],
        ["Table prefix", cfg.source.table_prefix],
        ["Batch size", str(cfg.source.batch_size)],
        ["Target", cfg.target.url],
        ["External id prefix", options.prefix or "(none)"],
        ["Anonymous users", "yes" if options.import_anonymous_users else "no"],
        ["Private messages", "yes" if options.import_private_messages else "no"],
        ["Bookmarks", "yes" if options.import_bookmarks else "no"],
        ["Max errors", "unlimited" if options.max_errors is None else str(options.max_errors)],
        ["State database", cfg.state.db_path],
    ]
    print_table("Configuration Summary", ["Setting", "Value"], rows, show_header=False)


def _check_settings(cfg: MigrationConfig) -> list[str]:
    warnings = []
    options = cfg.options
    mapping = options.category_mapping

    if mapping and all(value == SKIP for value in mapping.values()):
        warnings.append("category_mapping only skips forums; no categories will be remapped")
    for forum_id, value in mapping.items():
        if value != SKIP and len(value) == 1 and value[0].isdigit():
            warnings.append(
                f"category_mapping[{forum_id}] is a single numeric segment and shares "
                f"its external id with forum {value[0]}"
            )
    if options.dry_run:
        warnings.append("options.dry_run is set; runs will not create anything")
    if options.max_errors == 0:
        warnings.append("max_errors is 0; the first failed row aborts the run")
    if not cfg.target.verify_ssl:
        warnings.append("SSL verification is disabled for the target")

    return warnings


def _check_connectivity(ctx: MigrationContext) -> bool:
    ok = True

    echo_info("Checking state database...")
    if validate_database_connection(ctx.config.state.database_url):
        echo_success("State database reachable")
    else:
        echo_error("State database check failed")
        ok = False

    echo_info("Checking phpBB database...")
    try:
        values = ctx.source.config_values()
        echo_success(f"phpBB {values.get('phpbb_version') or 'unknown version'} reachable")
    except SourceError as e:
        echo_error(f"Source check failed: {e}")
        ok = False

    echo_info("Checking target API...")

    async def check_target() -> None:
        client = ctx.create_target_client()
        try:
            await client.get_site_setting("max_image_size_kb")
        finally:
            await client.close()

    try:
        asyncio.run(check_target())
        echo_success("Target API reachable")
    except (APIError, NetworkError) as e:
        echo_error(f"Target check failed: {e}")
        ok = False

    return ok
