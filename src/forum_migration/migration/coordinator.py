"""Import orchestrator for running a full phpBB3 import.

This module sequences the import stages in dependency order (users before
the posts that reference them, categories before the topics filed under
them), drives each stage's fetch/import loop until the source is exhausted,
and records the run in the state database.
"""

import math
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from forum_migration.client.exceptions import FATAL_TARGET_ERRORS, APIError, SourceError
from forum_migration.client.target_client import ForumTarget
from forum_migration.config import ImportConfig, MigrationConfig
from forum_migration.entities import STAGES, EntityKind, StageInfo
from forum_migration.migration.cursor import SourceCursorReader
from forum_migration.migration.database import get_session
from forum_migration.migration.hierarchy import HierarchyResolver, HierarchyResult
from forum_migration.migration.importer import BatchImporter, ImportErrorRecord
from forum_migration.migration.mappers import LookupContext, create_mapper
from forum_migration.migration.models import ImportRun
from forum_migration.migration.registry import IdentifierRegistry
from forum_migration.migration.text import TextProcessor
from forum_migration.reporting.progress import ProgressTracker
from forum_migration.reporting.report import generate_run_report
from forum_migration.source.base import SourceAdapter
from forum_migration.utils.logging import (
    bind_run_context,
    clear_run_context,
    get_logger,
    log_stage_progress,
)

logger = get_logger(__name__)

UPLOAD_LIMIT_SETTINGS = ("max_image_size_kb", "max_attachment_size_kb")
TAGGING_SETTING = "tagging_enabled"


@dataclass
class KindStats:
    """Row counts for one entity kind."""

    total: int = 0
    created: int = 0
    skipped: int = 0
    failed: int = 0
    batches: int = 0
    skipped_batches: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "created": self.created,
            "skipped": self.skipped,
            "failed": self.failed,
            "batches": self.batches,
            "skipped_batches": self.skipped_batches,
        }


@dataclass
class RunSummary:
    """What one import run did."""

    run_id: str
    dry_run: bool = False
    status: str = "in_progress"
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    source_version: str | None = None
    kinds: dict[str, KindStats] = field(default_factory=dict)
    errors: list[ImportErrorRecord] = field(default_factory=list)
    fatal_error: str | None = None
    report_files: dict[str, str] = field(default_factory=dict)

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def totals(self) -> dict[str, int]:
        return {
            "created": sum(s.created for s in self.kinds.values()),
            "skipped": sum(s.skipped for s in self.kinds.values()),
            "failed": sum(s.failed for s in self.kinds.values()),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "source_version": self.source_version,
            "totals": self.totals(),
            "kinds": {kind: stats.to_dict() for kind, stats in self.kinds.items()},
            "errors": [error.to_dict() for error in self.errors],
            "fatal_error": self.fatal_error,
        }


class ImportOrchestrator:
    """Runs the import stages in dependency order.

    Each cursor stage loops fetch -> import until the source is exhausted.
    The durable cursor only advances past batches that, together with every
    earlier batch of the run, finished without failed rows; the next run
    therefore re-reads from the first batch with a failure and retries it,
    while batches that are fully mapped are skipped with a single query.
    """

    def __init__(
        self,
        source: SourceAdapter,
        target: ForumTarget,
        registry: IdentifierRegistry,
        reader: SourceCursorReader,
        options: ImportConfig,
        enable_progress: bool = False,
        text_processor: TextProcessor | None = None,
    ):
        """Initialize import orchestrator.

        Args:
            source: Source adapter
            target: Target system records are created in
            registry: Identifier registry
            reader: Cursor reader over ``source``
            options: Import configuration
            enable_progress: Whether to show progress bars
            text_processor: BBCode to Markdown converter
        """
        self.source = source
        self.target = target
        self.registry = registry
        self.reader = reader
        self.options = options
        self.enable_progress = enable_progress
        self.text_processor = text_processor or TextProcessor()
        self.importer = BatchImporter(registry, target, options)
        self.hierarchy: HierarchyResult | None = None
        self.summary: RunSummary | None = None

    @classmethod
    def from_config(
        cls,
        config: MigrationConfig,
        source: SourceAdapter,
        target: ForumTarget,
        options: ImportConfig | None = None,
        enable_progress: bool = False,
    ) -> "ImportOrchestrator":
        """Build an orchestrator with registry and reader from configuration."""
        registry = IdentifierRegistry(config.state)
        reader = SourceCursorReader(source, config.state, config.source.batch_size)
        return cls(
            source=source,
            target=target,
            registry=registry,
            reader=reader,
            options=options or config.options,
            enable_progress=enable_progress,
        )

    def planned_stages(self, only: Iterable[EntityKind | str] | None = None) -> list[StageInfo]:
        """Stages a run executes, in order.

        Optional stages are left out when their option flag is off. ``only``
        narrows the run to the given kinds without changing their order.
        """
        wanted = {EntityKind(kind) for kind in only} if only else None
        stages = []
        for stage in STAGES:
            if stage.option_flag and not getattr(self.options, stage.option_flag):
                continue
            if wanted is not None and stage.kind not in wanted:
                continue
            stages.append(stage)
        return stages

    async def run(
        self,
        only: Iterable[EntityKind | str] | None = None,
        fresh: bool = False,
        generate_report: bool = False,
        report_dir: str = "reports",
    ) -> RunSummary:
        """Execute an import run.

        Args:
            only: Limit the run to these kinds
            fresh: Forget persisted cursors first (mappings are kept)
            generate_report: Whether to write a JSON run report
            report_dir: Directory for the run report

        Returns:
            RunSummary of the run. Also kept on ``self.summary`` when the run
            aborts, so callers can show what was done before the failure.

        Raises:
            ForumMigrationError: Any run-fatal error, after the run is recorded as failed
        """
        summary = RunSummary(run_id=str(uuid.uuid4()), dry_run=self.options.dry_run)
        self.summary = summary
        stages = self.planned_stages(only)

        self._record_run_start(summary)
        bind_run_context(run_id=summary.run_id)
        logger.info(
            "import_started",
            run_id=summary.run_id,
            dry_run=summary.dry_run,
            stages=[stage.kind.value for stage in stages],
        )

        tracker = ProgressTracker(total_stages=len(stages), enable=self.enable_progress)
        try:
            if fresh:
                self.reader.reset()

            source_values = self.source.config_values()
            summary.source_version = source_values.get("phpbb_version")
            logger.info("importing_from_phpbb", version=summary.source_version)

            if self.options.adjust_upload_limits and not self.options.dry_run:
                await self.adjust_upload_limits(int(source_values.get("max_filesize") or 0))
            if self.options.uses_tags and not self.options.dry_run:
                await self.enable_tagging()

            for stage in stages:
                stats = summary.kinds.setdefault(stage.kind.value, KindStats())
                bind_run_context(entity_kind=stage.kind.value)
                if stage.kind == EntityKind.MAPPED_CATEGORY:
                    await self._run_hierarchy_stage(stage, stats, tracker)
                else:
                    await self._run_stage(stage, stats, tracker)
                tracker.complete_stage()

            summary.status = "completed"
        except Exception as e:
            summary.status = "failed"
            summary.fatal_error = f"{type(e).__name__}: {e}"
            logger.error("import_failed", run_id=summary.run_id, error=str(e), exc_info=True)
            raise
        finally:
            clear_run_context("run_id", "entity_kind")
            tracker.close()
            summary.errors = list(self.importer.errors)
            summary.completed_at = datetime.now(UTC)
            self._record_run_end(summary)

            if generate_report:
                try:
                    summary.report_files = generate_run_report(summary, report_dir)
                except OSError as e:
                    logger.error("report_generation_failed", error=str(e))

        logger.info("import_completed", run_id=summary.run_id, totals=summary.totals())
        return summary

    async def _run_hierarchy_stage(
        self, stage: StageInfo, stats: KindStats, tracker: ProgressTracker
    ) -> None:
        resolver = HierarchyResolver(self.options, self.registry, self.target)
        tracker.start_stage(stage.description, total_rows=0)

        result = await resolver.resolve()
        self.hierarchy = result

        stats.total = len(result.order)
        stats.created = result.created
        stats.skipped = result.reused
        stats.failed = len(result.errors)
        tracker.update(created=result.created, skipped=result.reused, failed=len(result.errors))
        self.importer.add_errors(result.errors)

        logger.info(
            "category_mapping_resolved",
            category_mapping=result.category_ids,
            skipped_forums=sorted(result.skipped_forums),
            tags_mapping=self.options.tags_mapping,
        )

    async def _run_stage(self, stage: StageInfo, stats: KindStats, tracker: ProgressTracker) -> None:
        kind = stage.kind
        lookup = LookupContext(
            self.registry,
            self.options,
            category_ids=self.hierarchy.category_ids if self.hierarchy else None,
        )
        mapper = create_mapper(kind, self.options, lookup, self.text_processor)

        stats.total = self.source.count(kind)
        tracker.start_stage(stage.description, total_rows=stats.total)

        cursor = self.reader.load_cursor(kind)
        if cursor is not None:
            logger.info("stage_resuming", kind=kind.value, cursor=cursor)

        # Cleared by the first batch with a failed row; the durable cursor
        # stays behind that batch for the rest of the stage.
        advance_cursor = not self.options.dry_run
        processed = 0

        while True:
            records, next_cursor = self.reader.fetch_next(kind, cursor)
            if not records:
                break
            if next_cursor == cursor:
                raise SourceError(f"Source cursor for {kind.value} did not advance past {cursor!r}")

            batch = await self.importer.import_batch(kind, records, mapper)

            stats.batches += 1
            stats.created += batch.created
            stats.skipped += batch.skipped
            stats.failed += batch.failed
            if batch.skipped_batch:
                stats.skipped_batches += 1
            tracker.update(created=batch.created, skipped=batch.skipped, failed=batch.failed)

            if batch.failed:
                advance_cursor = False
            if advance_cursor:
                self.reader.save_cursor(kind, next_cursor, rows_processed=len(records))

            cursor = next_cursor
            processed += len(records)
            log_stage_progress(
                logger,
                entity_kind=kind.value,
                processed=processed,
                total=stats.total,
                created=stats.created,
                failed=stats.failed,
            )

    async def enable_tagging(self) -> None:
        """Turn on topic tags on the target; mapped forums and tag mappings need them."""
        try:
            await self.target.update_site_setting(TAGGING_SETTING, True)
        except FATAL_TARGET_ERRORS:
            raise
        except APIError as e:
            logger.warning("tagging_not_enabled", error=str(e))
            return
        logger.info("tagging_enabled")

    async def adjust_upload_limits(self, max_filesize: int) -> None:
        """Raise the target's upload size limits to the source's maximum.

        Settings already at or above the source's limit are left alone.

        Args:
            max_filesize: Source maximum attachment size in bytes
        """
        if max_filesize <= 0:
            return

        max_kb = math.ceil(max_filesize / 1024)
        for name in UPLOAD_LIMIT_SETTINGS:
            try:
                current = await self.target.get_site_setting(name)
                current_kb = int(current) if current is not None else 0
                if max_kb > current_kb:
                    await self.target.update_site_setting(name, max_kb)
                    logger.info("upload_limit_raised", setting=name, old=current_kb, new=max_kb)
            except FATAL_TARGET_ERRORS:
                raise
            except (APIError, ValueError) as e:
                logger.warning("upload_limit_not_adjusted", setting=name, error=str(e))

    def _record_run_start(self, summary: RunSummary) -> None:
        with get_session(self.registry.database_url) as session:
            session.add(
                ImportRun(
                    run_id=summary.run_id,
                    status="in_progress",
                    started_at=summary.started_at.replace(tzinfo=None),
                    dry_run=summary.dry_run,
                )
            )

    def _record_run_end(self, summary: RunSummary) -> None:
        with get_session(self.registry.database_url) as session:
            run = session.query(ImportRun).filter_by(run_id=summary.run_id).one()
            run.status = summary.status
            run.completed_at = (summary.completed_at or datetime.now(UTC)).replace(tzinfo=None)
            run.stats = {kind: stats.to_dict() for kind, stats in summary.kinds.items()}
            run.error_count = len(summary.errors)
            run.fatal_error = summary.fatal_error[:2000] if summary.fatal_error else None


def list_runs(database_url: str, limit: int = 10) -> list[dict[str, Any]]:
    """Most recent import runs, newest first."""
    with get_session(database_url) as session:
        runs = (
            session.query(ImportRun).order_by(ImportRun.started_at.desc(), ImportRun.id.desc())
            .limit(limit)
            .all()
        )
        return [
            {
                "run_id": r.run_id,
                "status": r.status,
                "dry_run": r.dry_run,
                "started_at": r.started_at,
                "completed_at": r.completed_at,
                "error_count": r.error_count,
                "stats": r.stats or {},
                "fatal_error": r.fatal_error,
            }
            for r in runs
        ]
