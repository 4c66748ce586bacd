"""
Import engine for Forum Bridge.

This module provides the identifier registry, the source cursor reader,
entity mappers, category hierarchy resolution, the batch importer and the
orchestrator that sequences an import run.
"""

from forum_migration.migration.coordinator import ImportOrchestrator, RunSummary
from forum_migration.migration.cursor import ExternalRecord, SourceCursorReader
from forum_migration.migration.database import (
    create_database_engine,
    get_engine,
    get_session,
    init_database,
    validate_database_connection,
)
from forum_migration.migration.hierarchy import HierarchyResolver, HierarchyResult
from forum_migration.migration.importer import (
    BatchImporter,
    BatchResult,
    ImportErrorRecord,
    RowResult,
    RowStatus,
)
from forum_migration.migration.mappers import LookupContext, MappedRequest, create_mapper
from forum_migration.migration.models import Base, IDMapping, ImportCursor, ImportRun
from forum_migration.migration.registry import IdentifierRegistry

__all__ = [
    # Models
    "Base",
    "IDMapping",
    "ImportCursor",
    "ImportRun",
    # Database utilities
    "init_database",
    "get_engine",
    "get_session",
    "create_database_engine",
    "validate_database_connection",
    # Engine
    "IdentifierRegistry",
    "ExternalRecord",
    "SourceCursorReader",
    "LookupContext",
    "MappedRequest",
    "create_mapper",
    "HierarchyResolver",
    "HierarchyResult",
    "BatchImporter",
    "BatchResult",
    "RowResult",
    "RowStatus",
    "ImportErrorRecord",
    "ImportOrchestrator",
    "RunSummary",
]
