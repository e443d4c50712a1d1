"""Run tracker: the persisted state machine behind every pipeline run.

A run starts ``in_progress``, receives progress updates while its stage
works, and ends ``completed`` or ``failed``. Terminal runs are frozen.
Counters only move forward, and ``items_processed`` never passes
``total_items``, so a UI polling ``get_*_status`` sees monotonic progress.
"""

import asyncio
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

import structlog

from county_tax.config import Settings, get_settings
from county_tax.db import PipelineRun, TaxStore
from county_tax.enums import RunStatus, RunType
from county_tax.errors import RunInProgressError, RunStateError

logger = structlog.get_logger(__name__)

# Per-item error strings kept on the run row
MAX_STORED_ERRORS = 500

CANCELLED_MESSAGE = "Run cancelled"


@dataclass
class SyncProgress:
    """Progress of a sync run, shaped for a polling UI."""

    run_id: UUID
    status: RunStatus
    current_page: int
    total_invoices_synced: int
    failed_invoices: int
    current_status: str
    error_message: str | None = None
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "status": self.status.value,
            "current_page": self.current_page,
            "total_invoices_synced": self.total_invoices_synced,
            "failed_invoices": self.failed_invoices,
            "current_status": self.current_status,
            "error_message": self.error_message,
            "cancelled": self.cancelled,
        }


@dataclass
class CalculationProgress:
    """Progress of a calculate run, shaped for a polling UI."""

    run_id: UUID
    status: RunStatus
    total_invoices: int
    processed_invoices: int
    counted_invoices: int
    skipped_invoices: int
    failed_invoices: int
    current_batch: int
    total_batches: int
    current_status: str
    error_message: str | None = None
    cancelled: bool = False

    @property
    def percent_complete(self) -> float:
        if self.total_invoices <= 0:
            return 100.0 if self.status.is_terminal else 0.0
        return round(100.0 * self.processed_invoices / self.total_invoices, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": str(self.run_id),
            "status": self.status.value,
            "total_invoices": self.total_invoices,
            "processed_invoices": self.processed_invoices,
            "counted_invoices": self.counted_invoices,
            "skipped_invoices": self.skipped_invoices,
            "failed_invoices": self.failed_invoices,
            "current_batch": self.current_batch,
            "total_batches": self.total_batches,
            "percent_complete": self.percent_complete,
            "current_status": self.current_status,
            "error_message": self.error_message,
            "cancelled": self.cancelled,
        }


class RunTracker:
    """Creates, advances and finishes pipeline runs.

    Also guards against overlapping runs of the same type: ``exclusive``
    blocks a second run inside this process, and ``start`` refuses while
    the store holds a live ``in_progress`` run of that type (one updated
    within ``stale_after_minutes``). Older in-progress rows are treated
    as abandoned and failed.
    """

    def __init__(
        self,
        store: TaxStore,
        stale_after_minutes: int | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self._store = store
        self._stale_after = timedelta(
            minutes=stale_after_minutes
            if stale_after_minutes is not None
            else settings.run_stale_after_minutes
        )
        self._locks: dict[RunType, asyncio.Lock] = {run_type: asyncio.Lock() for run_type in RunType}

    # === Guard ===

    @asynccontextmanager
    async def exclusive(self, run_type: RunType) -> AsyncIterator[None]:
        """Single-flight guard for one run type within this process."""
        lock = self._locks[run_type]
        if lock.locked():
            raise RunInProgressError(run_type.value)
        async with lock:
            yield

    # === Lifecycle ===

    async def start(
        self,
        run_type: RunType,
        initiated_by: str | None = None,
        status_message: str | None = None,
    ) -> PipelineRun:
        idle_since = datetime.now(UTC) - self._stale_after
        for stale in await self._store.find_active_runs(run_type, idle_since=idle_since):
            logger.warning("abandoned_run_failed", run_id=str(stale.id), run_type=run_type.value)
            await self.fail(
                stale.id,
                f"Run abandoned: no progress for {int(self._stale_after.total_seconds() // 60)} minutes",
            )

        active = await self._store.find_active_runs(run_type)
        if active:
            raise RunInProgressError(run_type.value, active[-1].id)

        run = await self._store.create_run(
            run_type, created_by=initiated_by, current_status=status_message
        )
        logger.info(
            "run_started", run_id=str(run.id), run_type=run_type.value, initiated_by=initiated_by
        )
        return run

    @staticmethod
    def _ensure_active(run: PipelineRun) -> None:
        if run.status.is_terminal:
            raise RunStateError(f"Run {run.id} is already {run.status.value}")

    @staticmethod
    def _apply_counters(
        run: PipelineRun,
        total_items: int | None,
        items_processed: int | None,
        counters: dict[str, int | None],
    ) -> None:
        if total_items is not None:
            run.total_items = max(total_items, run.items_processed)
        if items_processed is not None:
            clamped = min(max(items_processed, run.items_processed), run.total_items)
            if clamped != items_processed:
                logger.warning(
                    "run_progress_clamped",
                    run_id=str(run.id),
                    requested=items_processed,
                    applied=clamped,
                    total_items=run.total_items,
                )
            run.items_processed = clamped
        for name, value in counters.items():
            if value is not None:
                setattr(run, name, max(value, getattr(run, name) or 0))

    async def update(
        self,
        run_id: UUID,
        *,
        status_message: str | None = None,
        total_items: int | None = None,
        items_processed: int | None = None,
        items_succeeded: int | None = None,
        items_skipped: int | None = None,
        items_failed: int | None = None,
        current_batch: int | None = None,
        total_batches: int | None = None,
    ) -> PipelineRun:
        """Persist progress on an in-progress run."""
        async with self._store.run_for_update(run_id) as run:
            self._ensure_active(run)
            if total_batches is not None:
                run.total_batches = total_batches
            self._apply_counters(
                run,
                total_items,
                items_processed,
                {
                    "items_succeeded": items_succeeded,
                    "items_skipped": items_skipped,
                    "items_failed": items_failed,
                    "current_batch": current_batch,
                },
            )
            if status_message is not None:
                run.current_status = status_message
            run.updated_at = datetime.now(UTC)
        return run

    async def record_errors(self, run_id: UUID, errors: list[str]) -> None:
        """Append per-item errors to the run's error list."""
        if not errors:
            return
        async with self._store.run_for_update(run_id) as run:
            self._ensure_active(run)
            # Reassign so the JSON column sees the change
            run.errors = [*(run.errors or []), *errors][-MAX_STORED_ERRORS:]

    async def complete(
        self,
        run_id: UUID,
        status_message: str,
        *,
        total_items: int | None = None,
        items_processed: int | None = None,
        **counters: int | None,
    ) -> PipelineRun:
        async with self._store.run_for_update(run_id) as run:
            self._ensure_active(run)
            self._apply_counters(run, total_items, items_processed, counters)
            now = datetime.now(UTC)
            run.status = RunStatus.COMPLETED
            run.current_status = status_message
            run.completed_at = now
            run.updated_at = now
        logger.info(
            "run_completed",
            run_id=str(run_id),
            run_type=run.run_type.value,
            processed=run.items_processed,
            failed=run.items_failed,
        )
        return run

    async def fail(
        self,
        run_id: UUID,
        error: BaseException | str,
        *,
        cancelled: bool = False,
        total_items: int | None = None,
        items_processed: int | None = None,
        **counters: int | None,
    ) -> PipelineRun:
        message = str(error) or error.__class__.__name__
        stack = (
            "".join(traceback.format_exception(error))
            if isinstance(error, BaseException)
            else None
        )
        async with self._store.run_for_update(run_id) as run:
            self._ensure_active(run)
            self._apply_counters(run, total_items, items_processed, counters)
            now = datetime.now(UTC)
            run.status = RunStatus.FAILED
            run.error_message = message
            run.error_stack = stack
            run.cancelled = cancelled
            run.current_status = f"Cancelled: {message}" if cancelled else f"Failed: {message}"
            run.completed_at = now
            run.updated_at = now
        logger.warning(
            "run_failed",
            run_id=str(run_id),
            run_type=run.run_type.value,
            error=message,
            cancelled=cancelled,
        )
        return run

    # === Read-only projections ===

    async def get_sync_status(self, run_id: UUID) -> SyncProgress | None:
        run = await self._store.get_run(run_id, RunType.SYNC)
        if run is None:
            return None
        return SyncProgress(
            run_id=run.id,
            status=run.status,
            current_page=run.current_batch or 0,
            total_invoices_synced=run.items_succeeded or 0,
            failed_invoices=run.items_failed or 0,
            current_status=run.current_status or "Processing...",
            error_message=run.error_message,
            cancelled=bool(run.cancelled),
        )

    async def get_calculation_status(self, run_id: UUID) -> CalculationProgress | None:
        run = await self._store.get_run(run_id, RunType.CALCULATE)
        if run is None:
            return None
        return CalculationProgress(
            run_id=run.id,
            status=run.status,
            total_invoices=run.total_items or 0,
            processed_invoices=run.items_processed or 0,
            counted_invoices=run.items_succeeded or 0,
            skipped_invoices=run.items_skipped or 0,
            failed_invoices=run.items_failed or 0,
            current_batch=run.current_batch or 0,
            total_batches=run.total_batches or 0,
            current_status=run.current_status or "Processing...",
            error_message=run.error_message,
            cancelled=bool(run.cancelled),
        )

    async def recent_runs(self, run_type: RunType | None = None, limit: int = 20) -> list[PipelineRun]:
        return await self._store.list_runs(run_type, limit)
