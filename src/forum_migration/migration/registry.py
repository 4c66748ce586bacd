"""
Identifier registry.

This module provides the IdentifierRegistry class, the durable mapping from
(namespace, external id) to the internal id the target assigned. It is what
makes an import re-runnable: a row whose external id is registered is never
created again, and later stages resolve cross-entity references through it.
"""

import json
import threading
from collections.abc import Iterable
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import func, select

from forum_migration.client.exceptions import DuplicateMappingError, StateError
from forum_migration.config import StateConfig
from forum_migration.entities import EntityKind
from forum_migration.migration.database import get_session, init_database
from forum_migration.migration.models import IDMapping
from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
_LOOKUP_CHUNK = 500


def _namespace(kind: EntityKind | str) -> str:
    if isinstance(kind, EntityKind):
        return kind.namespace
    return EntityKind(kind).namespace


class IdentifierRegistry:
    """
    Durable (namespace, external id) -> internal id mapping.

    Entity kinds that share a target object type share a namespace, so
    ``lookup(EntityKind.ANONYMOUS_USER, ...)`` and ``lookup(EntityKind.USER, ...)``
    read the same table. Every register() commits in its own transaction
    before returning, which is what lets a crashed run resume safely.

    Usage:
        registry = IdentifierRegistry(config.state)
        if registry.lookup(EntityKind.USER, "2") is None:
            registry.register(EntityKind.USER, "2", 17)
    """

    def __init__(self, config: StateConfig):
        """
        Initialize the registry and create the state tables if needed.

        Args:
            config: State configuration

        Raises:
            StateError: If the state database cannot be initialized
        """
        self.config = config
        self.database_url = config.database_url
        self._lock = threading.RLock()

        try:
            init_database(
                self.database_url,
                pool_size=config.db_pool_size,
                max_overflow=config.db_max_overflow,
            )
            logger.info("identifier_registry_initialized", database_path=config.db_path)
        except Exception as e:
            logger.error("identifier_registry_init_failed", error=str(e))
            raise StateError(f"Failed to initialize identifier registry: {e}") from e

    def register(self, kind: EntityKind | str, external_id: str, internal_id: int) -> None:
        """
        Record that an external id was created as internal_id.

        Registering the same pair twice is a no-op.

        Raises:
            DuplicateMappingError: If the external id is mapped to a different internal id
            StateError: If the write fails
        """
        self.register_many([(kind, external_id, internal_id)])

    def register_many(self, mappings: Iterable[tuple[EntityKind | str, str, int]]) -> None:
        """
        Record several mappings in one transaction: all of them or none.

        Used when one created record carries more than one id (a first post
        and the topic it opened).

        Raises:
            DuplicateMappingError: If any external id is mapped to a different
                internal id; nothing is written then
            StateError: If the write fails
        """
        entries = [
            (_namespace(kind), external_id, internal_id)
            for kind, external_id, internal_id in mappings
        ]
        conflict: tuple[str, str, int, int] | None = None

        with self._lock:
            with get_session(self.database_url) as session:
                pending: dict[tuple[str, str], int] = {}
                for namespace, external_id, internal_id in entries:
                    existing = pending.get((namespace, external_id))
                    if existing is None:
                        existing = session.execute(
                            select(IDMapping.internal_id).filter_by(
                                namespace=namespace, external_id=external_id
                            )
                        ).scalar_one_or_none()

                    if existing is None:
                        session.add(
                            IDMapping(
                                namespace=namespace,
                                external_id=external_id,
                                internal_id=internal_id,
                            )
                        )
                        pending[(namespace, external_id)] = internal_id
                    elif existing != internal_id:
                        conflict = (namespace, external_id, existing, internal_id)
                        session.rollback()
                        break

        if conflict is not None:
            namespace, external_id, existing_id, new_id = conflict
            logger.error(
                "duplicate_mapping",
                namespace=namespace,
                external_id=external_id,
                existing_id=existing_id,
                new_id=new_id,
            )
            raise DuplicateMappingError(namespace, external_id, existing_id, new_id)

        for namespace, external_id, internal_id in entries:
            logger.debug(
                "mapping_registered",
                namespace=namespace,
                external_id=external_id,
                internal_id=internal_id,
            )

    def lookup(self, kind: EntityKind | str, external_id: str) -> int | None:
        """
        Get the internal id for an external id.

        Returns:
            Internal id, or None if the external id was never imported
        """
        namespace = _namespace(kind)
        with self._lock:
            with get_session(self.database_url) as session:
                return session.execute(
                    select(IDMapping.internal_id).filter_by(
                        namespace=namespace, external_id=external_id
                    )
                ).scalar_one_or_none()

    def all_exist(self, kind: EntityKind | str, external_ids: Iterable[str]) -> bool:
        """
        Check whether every external id in the set is mapped.

        An empty set is trivially mapped.
        """
        wanted = set(external_ids)
        if not wanted:
            return True

        namespace = _namespace(kind)
        ordered = sorted(wanted)
        found = 0

        with self._lock:
            with get_session(self.database_url) as session:
                for start in range(0, len(ordered), _LOOKUP_CHUNK):
                    chunk = ordered[start : start + _LOOKUP_CHUNK]
                    found += session.execute(
                        select(func.count(IDMapping.id)).where(
                            IDMapping.namespace == namespace,
                            IDMapping.external_id.in_(chunk),
                        )
                    ).scalar_one()

        return found == len(wanted)

    def count(self, kind: EntityKind | str) -> int:
        """Number of mappings in the kind's namespace."""
        namespace = _namespace(kind)
        with self._lock:
            with get_session(self.database_url) as session:
                return session.execute(
                    select(func.count(IDMapping.id)).where(IDMapping.namespace == namespace)
                ).scalar_one()

    def stats(self) -> dict[str, int]:
        """Mapping counts per namespace."""
        with self._lock:
            with get_session(self.database_url) as session:
                rows = session.execute(
                    select(IDMapping.namespace, func.count(IDMapping.id))
                    .group_by(IDMapping.namespace)
                    .order_by(IDMapping.namespace)
                ).all()
                return {namespace: count for namespace, count in rows}

    def export_mappings(self, output_path: str | Path) -> int:
        """
        Dump every mapping to a JSON file.

        Args:
            output_path: Path to output JSON file

        Returns:
            Number of mappings written

        Raises:
            StateError: If export fails
        """
        with self._lock:
            with get_session(self.database_url) as session:
                mappings = session.execute(
                    select(IDMapping).order_by(IDMapping.namespace, IDMapping.id)
                ).scalars().all()
                export_data = {
                    "exported_at": datetime.now(UTC).isoformat(),
                    "stats": {},
                    "id_mappings": [
                        {
                            "namespace": m.namespace,
                            "external_id": m.external_id,
                            "internal_id": m.internal_id,
                        }
                        for m in mappings
                    ],
                }

        for m in export_data["id_mappings"]:
            export_data["stats"][m["namespace"]] = export_data["stats"].get(m["namespace"], 0) + 1

        try:
            path = Path(output_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(export_data, indent=2))
        except OSError as e:
            logger.error("mapping_export_failed", output_path=str(output_path), error=str(e))
            raise StateError(f"Failed to export mappings: {e}") from e

        logger.info(
            "mappings_exported",
            output_path=str(output_path),
            record_count=len(export_data["id_mappings"]),
        )
        return len(export_data["id_mappings"])

    def clear(self, kind: EntityKind | str | None = None) -> int:
        """
        Delete mappings, for one namespace or all of them.

        Only for operator resets between runs: records already created on the
        target will be created again by the next run.

        Returns:
            Number of mappings deleted
        """
        with self._lock:
            with get_session(self.database_url) as session:
                query = session.query(IDMapping)
                if kind is not None:
                    query = query.filter(IDMapping.namespace == _namespace(kind))
                count = query.delete(synchronize_session=False)

        logger.warning(
            "mappings_cleared",
            namespace=_namespace(kind) if kind is not None else "all",
            count=count,
        )
        return count
