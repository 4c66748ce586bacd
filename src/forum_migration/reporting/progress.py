"""Progress tracking for import runs.

This module provides progress display using tqdm: one bar for the run's
stages and one bar per entity kind while it is being imported.
"""

from tqdm import tqdm

from forum_migration.utils.logging import get_logger

logger = get_logger(__name__)


class ProgressTracker:
    """Tracks and displays import progress.

    Counts are kept even when bars are disabled, so the tracker doubles as
    the run's running totals.
    """

    def __init__(self, total_stages: int, enable: bool = True):
        """Initialize progress tracker.

        Args:
            total_stages: Number of stages the run will execute
            enable: Whether to enable progress bars (False for CI/automation)
        """
        self.total_stages = total_stages
        self.enable = enable
        self.stage_bar: tqdm | None = None
        self.kind_bar: tqdm | None = None
        self.current_stage = 0

        self.stats = {
            "stages_completed": 0,
            "created": 0,
            "skipped": 0,
            "failed": 0,
        }

        if self.enable:
            self.stage_bar = tqdm(
                total=total_stages,
                desc="Import Progress",
                unit="stage",
                position=0,
                leave=True,
                bar_format="{desc}: {percentage:3.0f}%|{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]",
            )

    def start_stage(self, description: str, total_rows: int = 0) -> None:
        """Start tracking a new stage.

        Args:
            description: Stage description shown on the bar
            total_rows: Rows the source reports for the kind (0 if unknown)
        """
        self.current_stage += 1

        if self.kind_bar:
            self.kind_bar.close()
            self.kind_bar = None

        if self.enable:
            self.kind_bar = tqdm(
                total=total_rows or None,
                desc=f"  {description}",
                unit="row",
                position=1,
                leave=False,
            )

        logger.info(
            "stage_started",
            stage=description,
            stage_number=self.current_stage,
            total_rows=total_rows,
        )

    def update(self, created: int = 0, skipped: int = 0, failed: int = 0) -> None:
        """Add processed rows to the current stage."""
        self.stats["created"] += created
        self.stats["skipped"] += skipped
        self.stats["failed"] += failed

        if self.kind_bar:
            processed = created + skipped + failed
            if processed > 0:
                self.kind_bar.update(processed)
                self.kind_bar.set_postfix(created=created, skipped=skipped, failed=failed)

    def complete_stage(self) -> None:
        """Mark the current stage as completed."""
        self.stats["stages_completed"] += 1

        if self.kind_bar:
            self.kind_bar.close()
            self.kind_bar = None

        if self.stage_bar:
            self.stage_bar.update(1)
            self.stage_bar.set_postfix(
                created=self.stats["created"],
                skipped=self.stats["skipped"],
                failed=self.stats["failed"],
            )

        logger.info("stage_completed", stage_number=self.current_stage)

    def close(self) -> None:
        """Close all progress bars."""
        if self.kind_bar:
            self.kind_bar.close()
            self.kind_bar = None
        if self.stage_bar:
            self.stage_bar.close()
            self.stage_bar = None

        logger.info("progress_tracker_closed", final_stats=self.stats)

    def __enter__(self) -> "ProgressTracker":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
