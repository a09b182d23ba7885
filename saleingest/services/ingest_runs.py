"""Ingest run bookkeeping: one row per run, running until exactly one terminal transition."""

from typing import Any, Optional
from ulid import ULID
from saleingest.models.ingest_run import IngestRun, RunStatus
from saleingest.services import supabase_client
from saleingest.utils.logging import get_structured_logger, sanitize_text

logger = get_structured_logger(__name__)

LAST_ERROR_MAX_LENGTH = 500


def generate_run_id() -> str:
    """Generate a sortable run ID."""
    return str(ULID())


class IngestRunTracker:
    """
    Tracks one ingest run from start to its terminal state.

    Counters are only changed through ``add_counts`` so partial progress is
    aggregated in one place and persisted together with the terminal status.
    """

    def __init__(self):
        self.run: Optional[IngestRun] = None

    @property
    def run_id(self) -> Optional[str]:
        return self.run.id if self.run else None

    @property
    def is_finished(self) -> bool:
        return self.run is not None and self.run.status != RunStatus.RUNNING

    async def start(self, source: str, dry_run: bool = False) -> str:
        """
        Create the run row in the running state.

        Raises:
            SupabaseError: If the row cannot be created
        """
        if self.run is not None:
            raise RuntimeError(f"Run already started: {self.run.id}")

        run = IngestRun(
            id=generate_run_id(),
            source=source,
            dry_run=dry_run,
            status=RunStatus.RUNNING,
            started_at=supabase_client.utc_now_iso(),
        )
        await supabase_client.create_ingest_run(run.model_dump(mode="json"))
        self.run = run

        logger.info("Ingest run started", run_id=run.id, source=source, dry_run=dry_run)
        return run.id

    def add_counts(self, fetched: int = 0, new: int = 0, updated: int = 0) -> None:
        """Fold completed work into the run counters."""
        if self.run is None or self.is_finished:
            raise RuntimeError("Counters can only change while the run is running")
        self.run.fetched_count += fetched
        self.run.new_count += new
        self.run.updated_count += updated

    def update_details(self, **details: Any) -> None:
        if self.run is None:
            raise RuntimeError("Run not started")
        self.run.details.update(details)

    async def finish(self, status: RunStatus, last_error: Optional[str] = None) -> IngestRun:
        """
        Move the run to ok or error and persist final counters and details.

        The terminal state is applied in memory before the write, so a failed
        write cannot leave the tracker able to finish twice.

        Raises:
            RuntimeError: If the run was never started or already finished
            SupabaseError: If the final update cannot be written
        """
        if self.run is None:
            raise RuntimeError("Run not started")
        if self.is_finished:
            raise RuntimeError(f"Run already finished: {self.run.id}")
        if status == RunStatus.RUNNING:
            raise ValueError("finish requires a terminal status")

        self.run.status = status
        self.run.finished_at = supabase_client.utc_now_iso()
        if last_error:
            self.run.last_error = sanitize_text(last_error, max_length=LAST_ERROR_MAX_LENGTH)
        elif status == RunStatus.ERROR:
            self.run.last_error = "Unknown error"

        updates = self.run.model_dump(
            mode="json",
            include={
                "status",
                "finished_at",
                "fetched_count",
                "new_count",
                "updated_count",
                "last_error",
                "details",
            },
        )
        log = logger.info if status == RunStatus.OK else logger.warning
        log(
            "Ingest run finished",
            run_id=self.run.id,
            status=status.value,
            fetched_count=self.run.fetched_count,
            new_count=self.run.new_count,
            updated_count=self.run.updated_count,
            last_error=self.run.last_error,
        )

        await supabase_client.update_ingest_run(self.run.id, updates)
        return self.run
