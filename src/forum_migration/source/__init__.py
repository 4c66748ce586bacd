"""Source adapters that read legacy forum databases."""

from forum_migration.source.base import SourceAdapter
from forum_migration.source.phpbb import PhpBB3Adapter

__all__ = ["SourceAdapter", "PhpBB3Adapter"]
