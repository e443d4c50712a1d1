"""Tax enrichment stage: turn mirrored invoices into tax results.

Only invoices with no result yet, or whose ``unpaid`` skip has since
become ``paid``, are worked on. Settled invoices are never sent to the
geocoder again, so a rerun costs as much as the new or changed invoices.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog

from county_tax.clients.geocoder import CensusGeocoder
from county_tax.config import Settings, get_settings
from county_tax.db import SyncedInvoice, TaxResult, TaxStore
from county_tax.enums import (
    IncludeMode,
    PaymentStatus,
    ProcessingStatus,
    RunType,
    SkipReason,
)
from county_tax.errors import RunInProgressError
from county_tax.rates import RateTable
from county_tax.tax import compute_tax, to_decimal
from county_tax.tracker import CANCELLED_MESSAGE, RunTracker

logger = structlog.get_logger(__name__)


@dataclass
class FilterOptions:
    """Narrows the candidate invoices by customer.

    With ``customer_ids`` left empty, EXCLUDE uses the stored exclusion
    list and INCLUDE_ONLY uses the stored inclusion list. An empty list
    in either mode filters nothing.
    """

    include_mode: IncludeMode = IncludeMode.ALL
    customer_ids: list[str] | None = None


@dataclass
class CalculationResult:
    """Outcome of one calculate run."""

    success: bool = False
    run_id: UUID | None = None
    total_invoices: int = 0
    processed_invoices: int = 0
    counted_invoices: int = 0
    skipped_invoices: int = 0
    failed_invoices: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "run_id": str(self.run_id) if self.run_id else None,
            "total_invoices": self.total_invoices,
            "processed_invoices": self.processed_invoices,
            "counted_invoices": self.counted_invoices,
            "skipped_invoices": self.skipped_invoices,
            "failed_invoices": self.failed_invoices,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            "cancelled": self.cancelled,
        }


def needs_processing(invoice: SyncedInvoice, existing: TaxResult | None) -> bool:
    """Whether an invoice has to go through the per-invoice steps."""
    if existing is None:
        return True
    return (
        existing.skip_reason == SkipReason.UNPAID
        and invoice.payment_status == PaymentStatus.PAID
    )


def _result_values(
    invoice: SyncedInvoice,
    run_id: UUID,
    status: ProcessingStatus,
    **fields: Any,
) -> dict[str, Any]:
    """Every column of a result row.

    Fields not given are reset to None so nothing from an earlier outcome
    survives a reprocess.
    """
    values: dict[str, Any] = {
        "external_invoice_id": invoice.external_id,
        "invoice_number": invoice.invoice_number,
        "invoice_date": invoice.invoice_date,
        "paid_date": invoice.paid_date,
        "external_customer_id": invoice.external_customer_id,
        "customer_name": invoice.customer_name,
        "customer_address": invoice.customer_address,
        "subtotal": to_decimal(invoice.subtotal),
        "status": status,
        "skip_reason": None,
        "error_message": None,
        "geocoded_county": None,
        "geocoding_confidence": None,
        "geocoding_raw_response": None,
        "state_tax_rate": None,
        "state_tax_amount": None,
        "county_tax_rate": None,
        "county_tax_amount": None,
        "total_tax": None,
        "run_id": run_id,
        "processed_at": datetime.now(UTC),
    }
    values.update(fields)
    return values


@dataclass
class _Tally:
    processed: int = 0
    counted: int = 0
    skipped: int = 0
    failed: int = 0

    def counters(self, batch: int) -> dict[str, int]:
        return {
            "items_processed": self.processed,
            "items_succeeded": self.counted,
            "items_skipped": self.skipped,
            "items_failed": self.failed,
            "current_batch": batch,
        }


class TaxEnrichment:
    """Geocodes paid invoices, looks up county rates and records tax results.

    Each invoice ends in exactly one result row: ``excluded``, ``skipped``
    (unpaid), ``failed`` with a reason, or ``counted`` with amounts. A
    per-invoice failure never stops the batch.
    """

    def __init__(
        self,
        store: TaxStore,
        tracker: RunTracker,
        geocoder: CensusGeocoder,
        rates: RateTable,
        state_tax_rate: Decimal | None = None,
        batch_size: int | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self._store = store
        self._tracker = tracker
        self._geocoder = geocoder
        self._rates = rates
        self._state_tax_rate = to_decimal(
            state_tax_rate if state_tax_rate is not None else settings.state_tax_rate
        )
        self._batch_size = batch_size or settings.calculation_batch_size

    async def calculate_taxes(
        self,
        initiated_by: str | None = None,
        filters: FilterOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> CalculationResult:
        """Run the calculation. Never raises; failures come back in the result."""
        started = time.monotonic()
        result = CalculationResult()
        try:
            async with self._tracker.exclusive(RunType.CALCULATE):
                await self._run(result, initiated_by, filters or FilterOptions(), cancel_event)
        except RunInProgressError as e:
            logger.warning("calculation_already_running", error=str(e))
            result.errors.append(str(e))
        except Exception as e:
            logger.exception("calculation_start_failed", error=str(e))
            result.errors.append(str(e))
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    # === Selection ===

    async def _select_candidates(self, filters: FilterOptions) -> list[SyncedInvoice]:
        if filters.include_mode == IncludeMode.EXCLUDE:
            ids = filters.customer_ids or [
                entry.external_customer_id for entry in await self._store.list_exclusions()
            ]
            return await self._store.list_synced_invoices(exclude_customer_ids=ids or None)
        if filters.include_mode == IncludeMode.INCLUDE_ONLY:
            ids = filters.customer_ids or [
                entry.external_customer_id for entry in await self._store.list_inclusions()
            ]
            return await self._store.list_synced_invoices(only_customer_ids=ids or None)
        return await self._store.list_synced_invoices()

    # === Run ===

    async def _run(
        self,
        result: CalculationResult,
        initiated_by: str | None,
        filters: FilterOptions,
        cancel_event: asyncio.Event | None,
    ) -> None:
        run = await self._tracker.start(
            RunType.CALCULATE, initiated_by, status_message="Loading invoices from database..."
        )
        result.run_id = run.id
        log = logger.bind(run_id=str(run.id))
        tally = _Tally()
        batch_number = 0
        self._rates.clear_cache()

        try:
            candidates = await self._select_candidates(filters)
            existing = await self._store.get_tax_results_for(
                invoice.external_id for invoice in candidates
            )
            selected = [
                invoice
                for invoice in candidates
                if needs_processing(invoice, existing.get(invoice.external_id))
            ]
            exclusions = {
                entry.external_customer_id: entry
                for entry in await self._store.list_exclusions()
            }

            total = len(selected)
            total_batches = -(-total // self._batch_size)
            result.total_invoices = total
            log.info(
                "calculation_selected",
                candidates=len(candidates),
                selected=total,
                settled=len(candidates) - total,
                batches=total_batches,
            )
            await self._tracker.update(
                run.id,
                total_items=total,
                total_batches=total_batches,
                status_message=f"Processing {total} invoices in {total_batches} batches...",
            )

            for start in range(0, total, self._batch_size):
                batch_number += 1
                batch = selected[start : start + self._batch_size]
                await self._tracker.update(
                    run.id,
                    current_batch=batch_number,
                    status_message=(
                        f"Processing batch {batch_number}/{total_batches}: "
                        f"invoices {start + 1}-{start + len(batch)}..."
                    ),
                )

                batch_errors: list[str] = []
                for invoice in batch:
                    if cancel_event is not None and cancel_event.is_set():
                        await self._tracker.record_errors(run.id, batch_errors)
                        result.errors.extend(batch_errors)
                        self._copy_tally(result, tally)
                        result.cancelled = True
                        result.errors.append(CANCELLED_MESSAGE)
                        log.warning("calculation_cancelled", processed=tally.processed)
                        await self._tracker.fail(
                            run.id,
                            CANCELLED_MESSAGE,
                            cancelled=True,
                            **tally.counters(batch_number),
                        )
                        return

                    error = await self._process_one(invoice, run.id, exclusions, tally, log)
                    if error:
                        batch_errors.append(error)

                await self._tracker.record_errors(run.id, batch_errors)
                result.errors.extend(batch_errors)
                self._copy_tally(result, tally)
                await self._tracker.update(run.id, **tally.counters(batch_number))

            self._copy_tally(result, tally)
            await self._tracker.complete(
                run.id,
                f"Complete: {tally.counted} invoices counted, "
                f"{tally.skipped} skipped, {tally.failed} failed",
                **tally.counters(batch_number),
            )
            result.success = True
            log.info(
                "calculation_completed",
                processed=tally.processed,
                counted=tally.counted,
                skipped=tally.skipped,
                failed=tally.failed,
            )
        except Exception as e:
            log.exception("calculation_failed", error=str(e))
            self._copy_tally(result, tally)
            result.errors.append(str(e))
            try:
                await self._tracker.fail(run.id, e, **tally.counters(batch_number))
            except Exception as fail_error:
                log.exception("calculation_failure_not_recorded", error=str(fail_error))

    @staticmethod
    def _copy_tally(result: CalculationResult, tally: _Tally) -> None:
        result.processed_invoices = tally.processed
        result.counted_invoices = tally.counted
        result.skipped_invoices = tally.skipped
        result.failed_invoices = tally.failed

    async def _process_one(
        self,
        invoice: SyncedInvoice,
        run_id: UUID,
        exclusions: dict[str, Any],
        tally: _Tally,
        log: Any,
    ) -> str | None:
        """Process one invoice and count its outcome; returns an error line on failure."""
        label = invoice.invoice_number or invoice.external_id
        try:
            status, message = await self._evaluate(invoice, run_id, exclusions)
        except Exception as e:
            # No result row is written, so the next run picks the invoice up again
            log.exception("invoice_processing_error", invoice=label, error=str(e))
            tally.processed += 1
            tally.failed += 1
            return f"Invoice {label}: {e}"

        tally.processed += 1
        if status == ProcessingStatus.COUNTED:
            tally.counted += 1
        elif status in (ProcessingStatus.SKIPPED, ProcessingStatus.EXCLUDED):
            tally.skipped += 1
        else:
            tally.failed += 1
            return f"Invoice {label}: {message}"
        return None

    async def _evaluate(
        self,
        invoice: SyncedInvoice,
        run_id: UUID,
        exclusions: dict[str, Any],
    ) -> tuple[ProcessingStatus, str | None]:
        """Run the per-invoice steps in order and persist the outcome."""
        exclusion = exclusions.get(invoice.external_customer_id or "")
        if exclusion is not None:
            return await self._save(
                invoice,
                run_id,
                ProcessingStatus.EXCLUDED,
                skip_reason=SkipReason.CUSTOMER_EXCLUDED,
                error_message=exclusion.reason,
            )

        if invoice.payment_status != PaymentStatus.PAID:
            return await self._save(
                invoice, run_id, ProcessingStatus.SKIPPED, skip_reason=SkipReason.UNPAID
            )

        if not (invoice.customer_address or "").strip():
            return await self._save(
                invoice,
                run_id,
                ProcessingStatus.FAILED,
                skip_reason=SkipReason.NO_ADDRESS,
                error_message="Customer address is missing",
            )

        geocoded = await self._geocoder.geocode(invoice.customer_address)
        audit = {
            "geocoding_confidence": geocoded.confidence,
            "geocoding_raw_response": geocoded.raw_response,
        }
        if not geocoded.success or not geocoded.county:
            return await self._save(
                invoice,
                run_id,
                ProcessingStatus.FAILED,
                skip_reason=SkipReason.GEOCODING_FAILED,
                error_message=geocoded.error_message or "Failed to determine county",
                **audit,
            )

        rate = await self._rates.rate_for(geocoded.county)
        if rate is None:
            return await self._save(
                invoice,
                run_id,
                ProcessingStatus.FAILED,
                skip_reason=SkipReason.COUNTY_RATE_NOT_FOUND,
                error_message=f"Tax rate not found for {geocoded.county} County",
                geocoded_county=geocoded.county,
                **audit,
            )

        breakdown = compute_tax(invoice.subtotal, self._state_tax_rate, rate.county_tax_rate)
        return await self._save(
            invoice,
            run_id,
            ProcessingStatus.COUNTED,
            geocoded_county=geocoded.county,
            state_tax_rate=self._state_tax_rate,
            state_tax_amount=breakdown.state_tax_amount,
            county_tax_rate=rate.county_tax_rate,
            county_tax_amount=breakdown.county_tax_amount,
            total_tax=breakdown.total_tax,
            **audit,
        )

    async def _save(
        self,
        invoice: SyncedInvoice,
        run_id: UUID,
        status: ProcessingStatus,
        **fields: Any,
    ) -> tuple[ProcessingStatus, str | None]:
        await self._store.upsert_tax_result(_result_values(invoice, run_id, status, **fields))
        return status, fields.get("error_message")
