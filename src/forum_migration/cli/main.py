"""
Main CLI entry point for Forum Bridge.

This module provides the command-line interface for importing a phpBB3
board into the target forum.
"""

from pathlib import Path

import click
from dotenv import load_dotenv

from forum_migration import __version__
from forum_migration.cli.commands import config as config_commands
from forum_migration.cli.commands import migrate as migrate_commands
from forum_migration.cli.commands import state as state_commands
from forum_migration.cli.context import MigrationContext
from forum_migration.utils.logging import configure_logging, get_logger

# Load environment variables from .env file
load_dotenv()

logger = get_logger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="forum-bridge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
    envvar="FORUM_BRIDGE_CONFIG",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Console logging level (default: logging.level from the config, else WARNING)",
    envvar="FORUM_BRIDGE_LOG_LEVEL",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    help="Write the log to this file (default: logging.file from the config)",
    envvar="FORUM_BRIDGE_LOG_FILE",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config: Path | None,
    log_level: str | None,
    log_file: Path | None,
) -> None:
    """Forum Bridge - Import a phpBB3 board into a forum over its API.

    Runs are incremental: rows already imported are skipped, and an
    interrupted run resumes from the last saved position.

    Examples:

        # Validate configuration
        forum-bridge config validate --config config.yaml

        # Import everything
        forum-bridge migrate run --config config.yaml

        # Only users, without creating anything
        forum-bridge migrate run --only user --dry-run --config config.yaml

        # Show recent runs and cursors
        forum-bridge migrate status --config config.yaml
    """
    # Console only until the config names a log file; see MigrationContext.config
    configure_logging(level=log_level or "WARNING", log_file=str(log_file) if log_file else None)

    ctx.obj = MigrationContext(
        config_path=config,
        log_level=log_level,
        log_file=log_file,
    )
    ctx.call_on_close(ctx.obj.cleanup)

    logger.debug(
        "cli_initialized",
        config=str(config) if config else None,
        log_level=log_level,
    )


cli.add_command(config_commands.config)
cli.add_command(migrate_commands.migrate)
cli.add_command(state_commands.state)


def main() -> int:
    """Main entry point for CLI."""
    try:
        result = cli(standalone_mode=False)
        return result if isinstance(result, int) else 0
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        return 1
    except click.ClickException as e:
        e.show()
        return e.exit_code
    except Exception as e:
        logger.error("unexpected_error", error=str(e), exc_info=True)
        click.echo(f"Error: {e}", err=True)
        return 1
