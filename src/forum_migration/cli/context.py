"""
CLI context for Forum Bridge.

This module provides the context object that is passed to all CLI commands,
containing configuration and lazily created collaborators.
"""

from dataclasses import dataclass, field
from pathlib import Path

from forum_migration.client.target_client import TargetClient
from forum_migration.config import MigrationConfig, load_config_from_yaml
from forum_migration.migration.cursor import SourceCursorReader
from forum_migration.migration.database import dispose_engines
from forum_migration.migration.registry import IdentifierRegistry
from forum_migration.source.phpbb import PhpBB3Adapter
from forum_migration.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


@dataclass
class MigrationContext:
    """
    Context object for CLI commands.

    Holds configuration and the collaborators built from it. Everything is
    created on first access, so commands only connect to what they use.

    Attributes:
        config_path: Path to configuration file
        log_level: Logging level
        log_file: Optional log file path
    """

    config_path: Path | None = None
    log_level: str | None = None
    log_file: Path | None = None

    # Lazy-loaded attributes
    _config: MigrationConfig | None = field(default=None, init=False, repr=False)
    _source: PhpBB3Adapter | None = field(default=None, init=False, repr=False)
    _registry: IdentifierRegistry | None = field(default=None, init=False, repr=False)
    _reader: SourceCursorReader | None = field(default=None, init=False, repr=False)

    @property
    def config(self) -> MigrationConfig:
        """Get or load migration configuration."""
        if self._config is None:
            if self.config_path is None:
                raise ValueError(
                    "Configuration file path not provided. "
                    "Use --config option or set FORUM_BRIDGE_CONFIG environment variable."
                )

            logger.debug("loading_configuration", config_path=str(self.config_path))
            self._config = load_config_from_yaml(self.config_path)

            # Command-line options win over the config's logging section
            settings = self._config.logging
            configure_logging(
                level=self.log_level or settings.level,
                log_file=str(self.log_file) if self.log_file else settings.file,
                file_level=settings.file_level,
                log_format=settings.format,
            )

        return self._config

    @property
    def source(self) -> PhpBB3Adapter:
        """Get or create the phpBB3 source adapter."""
        if self._source is None:
            self._source = PhpBB3Adapter(self.config.source)
        return self._source

    @property
    def registry(self) -> IdentifierRegistry:
        """Get or create the identifier registry."""
        if self._registry is None:
            self._registry = IdentifierRegistry(self.config.state)
        return self._registry

    @property
    def reader(self) -> SourceCursorReader:
        """Get or create the cursor reader.

        Built over the source only if something already opened it; managing
        persisted cursors needs no source connection.
        """
        if self._reader is None:
            self._reader = SourceCursorReader(
                self._source, self.config.state, self.config.source.batch_size
            )
        return self._reader

    def create_target_client(self) -> TargetClient:
        """Create a target client. The caller closes it inside its event loop."""
        return TargetClient(
            config=self.config.target,
            log_payloads=self.config.logging.log_payloads,
            max_payload_size=self.config.logging.max_payload_size,
        )

    def cleanup(self) -> None:
        """Release source and state database connections."""
        if self._source is not None:
            logger.debug("closing_source_adapter")
            self._source.close()
            self._source = None
        dispose_engines()
        self._registry = None
        self._reader = None

    def __enter__(self) -> "MigrationContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.cleanup()
