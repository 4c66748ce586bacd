"""Configuration management for Forum Bridge using Pydantic.

This module provides type-safe configuration models for the source phpBB3
database, the target forum API, import behaviour, state storage and logging.
"""

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SKIP = "skip"


class SourceDatabaseConfig(BaseModel):
    """Connection settings for the phpBB3 source database."""

    url: str = Field(..., description="SQLAlchemy URL, e.g. mysql+pymysql://user:pw@host/phpbb")
    table_prefix: str = Field(default="phpbb_", description="phpBB table prefix")
    batch_size: int = Field(
        default=1000, ge=1, le=50000, description="Rows fetched per batch"
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL is not empty."""
        if not v or v.strip() == "":
            raise ValueError("Source database URL cannot be empty")
        return v

    @field_validator("table_prefix")
    @classmethod
    def validate_table_prefix(cls, v: str) -> str:
        """Only allow identifier characters, the prefix is interpolated into SQL."""
        if not re.fullmatch(r"[A-Za-z0-9_]*", v):
            raise ValueError("Table prefix may only contain letters, digits and underscores")
        return v


class TargetConfig(BaseModel):
    """Configuration for the target forum API."""

    url: str = Field(..., description="Target API base URL")
    api_key: str = Field(..., description="API key")
    api_username: str = Field(default="system", description="User the API key acts as")
    verify_ssl: bool = Field(default=True, description="Verify SSL certificates")
    timeout: int = Field(default=30, ge=1, le=600, description="API request timeout in seconds")
    rate_limit: int = Field(default=20, ge=1, le=200, description="Requests per second limit")
    retry_attempts: int = Field(default=5, ge=1, le=10, description="Attempts per API call")
    retry_backoff_min: float = Field(default=2, ge=0, le=60, description="Minimum backoff seconds")
    retry_backoff_max: float = Field(
        default=60, ge=0, le=300, description="Maximum backoff seconds"
    )
    endpoints: dict[str, str] = Field(
        default_factory=lambda: {
            "user": "users",
            "group": "groups",
            "group_membership": "group_memberships",
            "category": "categories",
            "post": "posts",
            "bookmark": "bookmarks",
            "site_setting": "site_settings",
        },
        description="Endpoint per registry namespace",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate and normalize URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v.rstrip("/")

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: str) -> str:
        """Validate API key is not empty."""
        if not v or v.strip() == "":
            raise ValueError("API key cannot be empty")
        return v


class ImportConfig(BaseModel):
    """Import behaviour passed to the engine components.

    Frozen: components receive it at construction and never mutate it.
    """

    model_config = ConfigDict(frozen=True)

    prefix: str = Field(
        default="",
        description="Prepended to every external id (namespaces several sources or re-imports)",
    )
    site_name: str | None = Field(
        default=None, description="Prepended to imported group names"
    )
    import_anonymous_users: bool = Field(default=False)
    import_private_messages: bool = Field(default=False)
    import_bookmarks: bool = Field(default=False)
    category_mapping: dict[str, list[str] | Literal["skip"]] = Field(
        default_factory=dict,
        description="Source forum id -> target category path (ancestors first) or 'skip'",
    )
    tags_mapping: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Source forum id -> tags added to every topic imported from it",
    )
    fallback_user_id: int = Field(
        default=-1, description="Target user owning posts whose author was not imported"
    )
    max_errors: int | None = Field(
        default=None, ge=0, description="Abort the run once this many rows have failed"
    )
    adjust_upload_limits: bool = Field(
        default=False,
        description="Raise target upload size limits to the source's max attachment size",
    )
    dry_run: bool = Field(default=False, description="Map rows without creating anything")

    @field_validator("category_mapping", mode="before")
    @classmethod
    def normalize_category_mapping(cls, v: Any) -> Any:
        """Accept integer forum ids and a single-string path from YAML."""
        if not isinstance(v, dict):
            return v
        normalized: dict[str, Any] = {}
        for key, value in v.items():
            if isinstance(value, str) and value != SKIP:
                value = [value]
            normalized[str(key)] = value
        return normalized

    @field_validator("tags_mapping", mode="before")
    @classmethod
    def normalize_tags_mapping(cls, v: Any) -> Any:
        if not isinstance(v, dict):
            return v
        return {str(key): [value] if isinstance(value, str) else value for key, value in v.items()}

    @field_validator("tags_mapping")
    @classmethod
    def validate_tags_mapping(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for forum_id, tags in v.items():
            if any(not tag.strip() for tag in tags):
                raise ValueError(f"Tags for forum {forum_id} include a blank tag")
        return {forum_id: list(dict.fromkeys(tags)) for forum_id, tags in v.items()}

    @field_validator("category_mapping")
    @classmethod
    def validate_category_mapping(
        cls, v: dict[str, list[str] | str]
    ) -> dict[str, list[str] | str]:
        """Reject empty paths, blank segments and commas.

        A path's external id is its segments joined with commas, so a comma
        inside a segment would make ["A,B"] and ["A", "B"] the same category.
        """
        for forum_id, path in v.items():
            if path == SKIP:
                continue
            if not path:
                raise ValueError(f"Category path for forum {forum_id} is empty")
            if any(not segment.strip() for segment in path):
                raise ValueError(f"Category path for forum {forum_id} has a blank segment")
            if any("," in segment for segment in path):
                raise ValueError(
                    f"Category path for forum {forum_id} has a comma in a segment: {path}"
                )
        return v

    def prefixed(self, key: Any) -> str:
        """Build the registry external id for a source key.

        Composite keys are joined with commas.
        """
        if isinstance(key, (tuple, list)):
            key = ",".join(str(part) for part in key)
        return f"{self.prefix}{key}"

    def is_skipped_forum(self, forum_id: Any) -> bool:
        """Return True if the forum is marked skip in the category mapping."""
        return self.category_mapping.get(str(forum_id)) == SKIP

    def is_mapped_forum(self, forum_id: Any) -> bool:
        """Return True if the forum is mapped onto a configured category path."""
        value = self.category_mapping.get(str(forum_id))
        return value is not None and value != SKIP

    def tags_for_forum(self, forum_id: Any) -> list[str]:
        return list(self.tags_mapping.get(str(forum_id), ()))

    @property
    def uses_tags(self) -> bool:
        """Whether imported topics can carry tags, so the target must allow them."""
        return bool(self.category_mapping or self.tags_mapping)


class StateConfig(BaseModel):
    """State management configuration."""

    db_path: str = Field(
        default="./migration_state.db",
        description="Path to SQLite state file, or a full database URL",
    )
    db_pool_size: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Number of connections to maintain in the pool (PostgreSQL only)",
    )
    db_max_overflow: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum number of connections to create beyond pool_size (PostgreSQL only)",
    )

    @property
    def database_url(self) -> str:
        """Full SQLAlchemy URL for the state database."""
        if self.db_path.startswith(("postgresql://", "postgresql+", "sqlite://", "mysql")):
            return self.db_path
        return f"sqlite:///{self.db_path}"


class PathConfig(BaseModel):
    """Configuration for file paths."""

    report_dir: str = Field(default="reports", description="Directory for run reports")


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class LoggingConfig(BaseModel):
    """Console and log-file settings. ``--log-level``/``--log-file`` override them."""

    level: LogLevel = "WARNING"
    file_level: LogLevel = "DEBUG"
    format: Literal["json", "console"] = Field(
        default="json", description="Log file format; the console is always human readable"
    )
    file: str | None = Field(default="logs/migration.log", description="None logs to the console only")
    disable_progress: bool = Field(default=False, description="Hide the per-stage progress bars")
    log_payloads: bool = Field(
        default=False, description="Log redacted target request and response bodies at DEBUG"
    )
    max_payload_size: int = Field(default=10000, ge=100, le=1000000)

    @field_validator("level", "file_level", "format", mode="before")
    @classmethod
    def normalize_case(cls, v: Any, info: ValidationInfo) -> Any:
        if not isinstance(v, str):
            return v
        return v.lower() if info.field_name == "format" else v.upper()


class MigrationConfig(BaseSettings):
    """Everything a run needs.

    Built from the YAML file; ``FORUM_BRIDGE_<SECTION>__<KEY>`` environment
    variables fill keys the file leaves out.
    """

    model_config = SettingsConfigDict(
        env_prefix="FORUM_BRIDGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    source: SourceDatabaseConfig
    target: TargetConfig
    options: ImportConfig = Field(default_factory=ImportConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    paths: PathConfig = Field(default_factory=PathConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# A whole value of the form ${NAME} or ${NAME:-fallback}
_ENV_REFERENCE = re.compile(r"^\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>.*))?\}$")


def _expand_env_vars(data: Any) -> Any:
    """Replace ``${NAME}`` values (whole values only) with the environment's.

    Raises:
        ValueError: If a referenced variable is unset and has no fallback
    """
    if isinstance(data, dict):
        return {key: _expand_env_vars(value) for key, value in data.items()}
    if isinstance(data, list):
        return [_expand_env_vars(item) for item in data]
    if not isinstance(data, str):
        return data

    match = _ENV_REFERENCE.match(data)
    if match is None:
        return data
    value = os.environ.get(match["name"], match["default"])
    if value is None:
        raise ValueError(
            f"Environment variable {match['name']} is not set (add it to the environment or .env)"
        )
    return value


def load_config_from_yaml(config_path: str | Path) -> MigrationConfig:
    """Load and validate a YAML configuration file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is empty, references an unset variable, or
            fails validation (pydantic's ValidationError is a ValueError)
    """
    path = Path(config_path)
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not raw:
        raise ValueError(f"Empty configuration file: {path}")
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a mapping of sections")

    return MigrationConfig(**_expand_env_vars(raw))


def sanitized_config_dict(config: MigrationConfig) -> dict[str, Any]:
    """Dump configuration with secrets masked, for display and run records."""
    data = config.model_dump()
    data["target"]["api_key"] = "********"
    data["source"]["url"] = re.sub(r"//([^:/@]+):[^@]*@", r"//\1:********@", data["source"]["url"])
    return data
