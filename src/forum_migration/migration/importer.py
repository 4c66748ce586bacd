"""Batch importer.

Drives one batch of source records through mapping, creation on the target
and registration in the identifier registry. A failing row is recorded and
the batch moves on; only errors that make the whole run unsafe propagate.
"""

import traceback
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from forum_migration.client.exceptions import (
    FATAL_TARGET_ERRORS,
    APIError,
    ConfigurationError,
    DuplicateMappingError,
    ErrorThresholdExceeded,
    SkipRecord,
    SourceError,
    StateError,
    TargetContractError,
)
from forum_migration.client.target_client import CreatedRecord, ForumTarget
from forum_migration.config import ImportConfig
from forum_migration.entities import EntityKind
from forum_migration.migration.cursor import ExternalRecord
from forum_migration.migration.mappers import EntityMapper, MappedRequest, SecondaryId
from forum_migration.migration.registry import IdentifierRegistry
from forum_migration.utils.logging import get_logger, log_row_failure

logger = get_logger(__name__)

# Errors that abort the run no matter where they surface
RUN_FATAL_ERRORS = (StateError, SourceError, DuplicateMappingError, ConfigurationError)


class RowStatus(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ImportErrorRecord:
    """A row that could not be imported."""

    entity_kind: str
    external_id: str
    message: str
    cause: str
    traceback: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_kind": self.entity_kind,
            "external_id": self.external_id,
            "message": self.message,
            "cause": self.cause,
            "traceback": self.traceback,
        }


@dataclass
class RowResult:
    """Outcome of one row."""

    external_id: str
    status: RowStatus
    internal_id: int | None = None
    reason: str | None = None
    error: ImportErrorRecord | None = None


@dataclass
class BatchResult:
    """Outcome of one batch."""

    kind: EntityKind
    rows: list[RowResult] = field(default_factory=list)
    skipped_batch: bool = False

    @property
    def created(self) -> int:
        return sum(1 for r in self.rows if r.status == RowStatus.CREATED)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.rows if r.status == RowStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.rows if r.status == RowStatus.FAILED)

    @property
    def errors(self) -> list[ImportErrorRecord]:
        return [r.error for r in self.rows if r.error is not None]


def _secondary_internal_id(created: CreatedRecord, secondary: SecondaryId) -> int:
    value = created.payload.get(secondary.response_key)
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise TargetContractError(
            f"Created record {created.internal_id} has no usable {secondary.response_key} "
            f"(got {value!r})",
            response=created.payload,
        ) from e


class BatchImporter:
    """Imports batches of records of one kind at a time.

    One importer is shared by all stages of a run, so ``error_count`` and the
    ``max_errors`` threshold cover the whole run.
    """

    def __init__(
        self,
        registry: IdentifierRegistry,
        target: ForumTarget,
        config: ImportConfig,
    ):
        """Initialize batch importer.

        Args:
            registry: Identifier registry
            target: Target system records are created in
            config: Import configuration
        """
        self.registry = registry
        self.target = target
        self.config = config
        self.error_count = 0
        self.errors: list[ImportErrorRecord] = []

    async def import_batch(
        self,
        kind: EntityKind,
        records: Sequence[ExternalRecord],
        mapper: EntityMapper,
    ) -> BatchResult:
        """Import one ordered batch of records.

        Args:
            kind: Entity kind of every record in the batch
            records: Records in source order
            mapper: Mapper for the kind

        Returns:
            BatchResult with one RowResult per record

        Raises:
            DuplicateMappingError: If a created record's id conflicts with the registry
            StateError: If the registry cannot be read or written
            ErrorThresholdExceeded: If failed rows exceed ``max_errors``
            NetworkError, ServerError, RateLimitError, AuthenticationError,
            AuthorizationError: If the target is unusable
            TargetContractError: If a created record's response lacks a secondary id
        """
        result = BatchResult(kind=kind)
        external_ids = [mapper.external_id(record) for record in records]

        if self.registry.all_exist(kind, external_ids):
            result.skipped_batch = True
            result.rows = [
                RowResult(external_id, RowStatus.SKIPPED, reason="already imported")
                for external_id in external_ids
            ]
            logger.debug("batch_already_imported", kind=kind.value, rows=len(records))
            return result

        for record, external_id in zip(records, external_ids, strict=True):
            row_result = await self._import_row(kind, record, external_id, mapper)
            result.rows.append(row_result)

            if row_result.status == RowStatus.FAILED:
                self.error_count += 1
                self._check_threshold()

        logger.debug(
            "batch_imported",
            kind=kind.value,
            created=result.created,
            skipped=result.skipped,
            failed=result.failed,
        )
        return result

    def _failure(
        self, kind: EntityKind, external_id: str, error: BaseException, step: str
    ) -> RowResult:
        """Record a failed row. Call from inside the ``except`` block."""
        log_row_failure(logger, error, kind.value, external_id, step)
        record = ImportErrorRecord(
            entity_kind=kind.value,
            external_id=external_id,
            message=str(error),
            cause=type(error).__name__,
            traceback=traceback.format_exc(),
        )
        self.errors.append(record)
        return RowResult(external_id, RowStatus.FAILED, reason=str(error), error=record)

    async def _import_row(
        self,
        kind: EntityKind,
        record: ExternalRecord,
        external_id: str,
        mapper: EntityMapper,
    ) -> RowResult:
        existing = self.registry.lookup(kind, external_id)
        if existing is not None:
            return RowResult(
                external_id, RowStatus.SKIPPED, internal_id=existing, reason="already imported"
            )

        try:
            request: MappedRequest = mapper.map(record)
        except SkipRecord as e:
            logger.debug("row_skipped", kind=kind.value, external_id=external_id, reason=str(e))
            return RowResult(external_id, RowStatus.SKIPPED, reason=str(e))
        except RUN_FATAL_ERRORS:
            raise
        except Exception as e:
            return self._failure(kind, external_id, e, step="map")

        if self.config.dry_run:
            return RowResult(external_id, RowStatus.CREATED, reason="dry run")

        try:
            created: CreatedRecord = await self.target.create(kind, request.attributes)
        except FATAL_TARGET_ERRORS:
            raise
        except RUN_FATAL_ERRORS:
            raise
        except APIError as e:
            return self._failure(kind, external_id, e, step="create")

        try:
            secondary = [
                (sid.kind, sid.external_id, _secondary_internal_id(created, sid))
                for sid in request.secondary_ids
            ]
        except TargetContractError as e:
            self._failure(kind, external_id, e, step="register")
            raise

        self.registry.register_many([(kind, external_id, created.internal_id), *secondary])

        return RowResult(external_id, RowStatus.CREATED, internal_id=created.internal_id)

    def add_errors(self, errors: Sequence[ImportErrorRecord]) -> None:
        """Count errors recorded outside import_batch() towards the run's threshold."""
        self.errors.extend(errors)
        self.error_count += len(errors)
        if errors:
            self._check_threshold()

    def _check_threshold(self) -> None:
        if self.config.max_errors is not None and self.error_count > self.config.max_errors:
            raise ErrorThresholdExceeded(
                f"{self.error_count} rows failed, more than max_errors={self.config.max_errors}"
            )
