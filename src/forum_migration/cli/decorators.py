"""
Decorators shared by the CLI commands.

``handle_errors`` is where run-fatal exceptions become exit codes:

    0  completed (failed rows do not change this)
    1  import aborted, or an unexpected error
    2  configuration
    3  target authentication
    4  target API or network
    5  state database
    6  phpBB source database
"""

import functools
from collections.abc import Callable

import click
from pydantic import ValidationError

from forum_migration.cli.context import MigrationContext
from forum_migration.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    MigrationError,
    NetworkError,
    SourceError,
    StateError,
)
from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)

EXIT_ABORTED = 1
EXIT_CONFIG = 2
EXIT_AUTH = 3
EXIT_TARGET = 4
EXIT_STATE = 5
EXIT_SOURCE = 6

# Checked in order; the first matching entry wins, so subclasses come first
_ERROR_EXITS: list[tuple[tuple[type[BaseException], ...], int, str, str | None]] = [
    (
        (ConfigurationError, ValidationError),
        EXIT_CONFIG,
        "Configuration error",
        "Check the configuration file and the FORUM_BRIDGE_* environment variables.",
    ),
    (
        (AuthenticationError, AuthorizationError),
        EXIT_AUTH,
        "Target rejected the credentials",
        "Check target.api_key and target.api_username; the user needs admin rights.",
    ),
    ((APIError, NetworkError), EXIT_TARGET, "Target API error", None),
    (
        (StateError,),
        EXIT_STATE,
        "State database error",
        "Mappings saved so far are kept; fix the database and re-run.",
    ),
    (
        (SourceError,),
        EXIT_SOURCE,
        "phpBB database error",
        "Check source.url and source.table_prefix.",
    ),
    (
        (MigrationError,),
        EXIT_ABORTED,
        "Import aborted",
        "Mappings saved so far are kept; re-running continues where this run stopped.",
    ),
]


def pass_context(f: Callable) -> Callable:
    """Call the command with the MigrationContext as first argument."""

    @click.pass_context
    @functools.wraps(f)
    def wrapper(click_ctx: click.Context, *args, **kwargs):
        return f(click_ctx.obj, *args, **kwargs)

    return wrapper


def handle_errors(f: Callable) -> Callable:
    """Turn run-fatal exceptions into a message and an exit code."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except (click.exceptions.Exit, click.exceptions.Abort, click.ClickException):
            raise
        except Exception as e:
            for error_types, exit_code, label, hint in _ERROR_EXITS:
                if isinstance(e, error_types):
                    break
            else:
                exit_code, label, hint = EXIT_ABORTED, "Unexpected error", "See the log file."

            logger.error(
                "command_failed",
                command=f.__name__,
                error_type=type(e).__name__,
                error=str(e),
                exit_code=exit_code,
                exc_info=exit_code == EXIT_ABORTED,
            )
            click.secho(f"{label}: {e}", fg="red", err=True)
            if hint:
                click.echo(hint, err=True)
            raise click.exceptions.Exit(exit_code) from e

    return wrapper


def requires_config(f: Callable) -> Callable:
    """Fail with exit code 2 unless a readable configuration file was given."""

    @functools.wraps(f)
    def wrapper(ctx: MigrationContext, *args, **kwargs):
        if ctx.config_path is None:
            click.echo(
                "Configuration file required: pass --config or set FORUM_BRIDGE_CONFIG.",
                err=True,
            )
            raise click.exceptions.Exit(EXIT_CONFIG)

        try:
            ctx.config
        except (OSError, ValueError) as e:
            click.echo(f"Cannot load {ctx.config_path}: {e}", err=True)
            raise click.exceptions.Exit(EXIT_CONFIG) from e

        return f(ctx, *args, **kwargs)

    return wrapper


def confirm_action(message: str, abort_message: str = "Operation cancelled.") -> Callable:
    """Ask before running a destructive command, unless ``--yes`` was passed."""

    def decorator(f: Callable) -> Callable:
        @functools.wraps(f)
        def wrapper(*args, **kwargs):
            if not kwargs.get("yes") and not click.confirm(message):
                click.echo(abort_message)
                raise click.exceptions.Exit(0)
            return f(*args, **kwargs)

        return wrapper

    return decorator
