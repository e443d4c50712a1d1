"""Invoice sync stage: mirror every Bill.com invoice into ``synced_invoices``."""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

import structlog

from county_tax.clients.billcom import BillcomAPIError, BillcomClient
from county_tax.config import Settings, get_settings
from county_tax.db import TaxStore
from county_tax.enums import PaymentStatus, RunType
from county_tax.errors import RunInProgressError
from county_tax.tax import to_decimal
from county_tax.tracker import CANCELLED_MESSAGE, RunTracker

logger = structlog.get_logger(__name__)

# Bill.com reports paymentStatus as numeric codes; older exports use words
PAYMENT_STATUS_CODES: dict[str, PaymentStatus] = {
    "0": PaymentStatus.PAID,
    "paid": PaymentStatus.PAID,
    "1": PaymentStatus.UNPAID,
    "unpaid": PaymentStatus.UNPAID,
    "open": PaymentStatus.UNPAID,
    "2": PaymentStatus.PARTIALLY_PAID,
    "partial": PaymentStatus.PARTIALLY_PAID,
    "partially_paid": PaymentStatus.PARTIALLY_PAID,
    "4": PaymentStatus.SCHEDULED,
    "scheduled": PaymentStatus.SCHEDULED,
}

_CUSTOMER_FIELDS = ("customer_name", "customer_address", "customer_email")


@dataclass
class SyncResult:
    """Outcome of one sync run."""

    success: bool = False
    run_id: UUID | None = None
    total_synced: int = 0
    new_invoices: int = 0
    updated_invoices: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "run_id": str(self.run_id) if self.run_id else None,
            "total_synced": self.total_synced,
            "new_invoices": self.new_invoices,
            "updated_invoices": self.updated_invoices,
            "errors": self.errors,
            "duration_ms": self.duration_ms,
            "cancelled": self.cancelled,
        }


def parse_payment_status(value: Any) -> PaymentStatus:
    if value is None:
        return PaymentStatus.UNKNOWN
    return PAYMENT_STATUS_CODES.get(str(value).strip().lower(), PaymentStatus.UNKNOWN)


def parse_date(value: Any) -> date | None:
    """Parse an ISO date or timestamp ("2024-03-01T10:00:00.000+0000")."""
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _parse_amount(value: Any, name: str) -> Decimal:
    try:
        return to_decimal(value)
    except InvalidOperation as e:
        raise ValueError(f"invalid {name} {value!r}") from e


def build_customer_address(record: dict[str, Any]) -> str | None:
    """One-line billing address from Bill.com ``billAddress*`` fields."""
    state_zip = " ".join(
        part
        for part in (record.get("billAddressState"), record.get("billAddressZip"))
        if part and str(part).strip()
    )
    parts = [
        record.get("billAddress1"),
        record.get("billAddress2"),
        record.get("billAddressCity"),
        state_zip,
    ]
    address = ", ".join(str(part).strip() for part in parts if part and str(part).strip())
    return address or None


def normalize_invoice(invoice: dict[str, Any]) -> dict[str, Any]:
    """Map a raw Bill.com invoice onto ``SyncedInvoice`` column values.

    Raises:
        ValueError: If the invoice has no id or carries an unparseable
            date or amount.
    """
    external_id = invoice.get("id")
    if not external_id:
        raise ValueError("invoice has no id")

    address = invoice.get("customerAddress") or build_customer_address(invoice)
    return {
        "external_id": str(external_id),
        "invoice_number": invoice.get("invoiceNumber"),
        "invoice_date": parse_date(invoice.get("invoiceDate")),
        "due_date": parse_date(invoice.get("dueDate")),
        "external_customer_id": invoice.get("customerId") or None,
        "customer_name": invoice.get("customerName") or None,
        "customer_address": address,
        "customer_email": invoice.get("customerEmail") or None,
        "subtotal": _parse_amount(invoice.get("amount"), "amount"),
        "amount_due": _parse_amount(invoice.get("amountDue"), "amountDue"),
        "payment_status": parse_payment_status(
            invoice.get("paymentStatus", invoice.get("status"))
        ),
        "paid_date": parse_date(invoice.get("paidDate")),
        "last_synced_at": datetime.now(UTC),
    }


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class InvoiceSync:
    """Pages through Bill.com and upserts each invoice by external id.

    Re-running is safe: the mirror is keyed on the invoice id, so a page
    seen twice updates rows instead of duplicating them. One bad invoice is
    recorded in the run's error list and the loop moves on.
    """

    def __init__(
        self,
        client: BillcomClient,
        store: TaxStore,
        tracker: RunTracker,
        page_size: int | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self._client = client
        self._store = store
        self._tracker = tracker
        self._page_size = page_size or settings.sync_page_size

    async def sync_invoices(
        self,
        initiated_by: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncResult:
        """Run a full sync. Never raises; failures come back in the result."""
        started = time.monotonic()
        result = SyncResult()
        try:
            async with self._tracker.exclusive(RunType.SYNC):
                await self._run(result, initiated_by, cancel_event)
        except RunInProgressError as e:
            logger.warning("sync_already_running", error=str(e))
            result.errors.append(str(e))
        except Exception as e:
            # Run record could not be created
            logger.exception("sync_start_failed", error=str(e))
            result.errors.append(str(e))
        result.duration_ms = _elapsed_ms(started)
        return result

    async def _run(
        self,
        result: SyncResult,
        initiated_by: str | None,
        cancel_event: asyncio.Event | None,
    ) -> None:
        run = await self._tracker.start(
            RunType.SYNC, initiated_by, status_message="Connecting to Bill.com..."
        )
        result.run_id = run.id
        log = logger.bind(run_id=str(run.id))

        seen: set[str] = set()
        synced: set[str] = set()
        customers: dict[str, dict[str, Any] | None] = {}
        failed = 0
        page = 0

        def counters() -> dict[str, int]:
            return {
                "total_items": len(seen),
                "items_processed": len(seen),
                "items_succeeded": len(synced),
                "items_failed": failed,
                "current_batch": page,
            }

        try:
            await self._client.authenticate()
            offset = 0
            while True:
                page += 1
                await self._tracker.update(
                    run.id,
                    status_message=f"Fetching page {page} from Bill.com...",
                    current_batch=page,
                )
                invoices = await self._client.list_invoices(offset, self._page_size)
                log.info("sync_page_fetched", page=page, offset=offset, count=len(invoices))

                page_errors: list[str] = []
                for invoice in invoices:
                    if cancel_event is not None and cancel_event.is_set():
                        await self._tracker.record_errors(run.id, page_errors)
                        result.errors.extend(page_errors)
                        await self._cancel(result, run.id, counters(), log)
                        return

                    invoice_id = str(invoice.get("id") or "")
                    if invoice_id:
                        seen.add(invoice_id)
                    try:
                        values = normalize_invoice(invoice)
                        page_errors.extend(await self._fill_customer(values, customers))
                        created = await self._store.upsert_synced_invoice(values)
                    except Exception as e:
                        failed += 1
                        label = invoice.get("invoiceNumber") or invoice_id or "<no id>"
                        log.warning("sync_invoice_failed", invoice=label, error=str(e))
                        page_errors.append(f"Invoice {label}: {e}")
                        continue

                    if invoice_id not in synced:
                        synced.add(invoice_id)
                        if created:
                            result.new_invoices += 1
                        else:
                            result.updated_invoices += 1

                await self._tracker.record_errors(run.id, page_errors)
                result.errors.extend(page_errors)
                result.total_synced = len(synced)
                await self._tracker.update(
                    run.id,
                    status_message=f"Synced {len(synced)} invoices so far...",
                    **counters(),
                )

                if len(invoices) < self._page_size:
                    break
                offset += self._page_size

            await self._tracker.complete(
                run.id, f"Sync complete: {len(synced)} invoices synced", **counters()
            )
            result.success = True
            log.info(
                "sync_completed",
                synced=len(synced),
                new=result.new_invoices,
                updated=result.updated_invoices,
                failed=failed,
            )
        except Exception as e:
            log.exception("sync_failed", error=str(e))
            result.errors.append(str(e))
            result.total_synced = len(synced)
            try:
                await self._tracker.fail(run.id, e, **counters())
            except Exception as fail_error:
                log.exception("sync_failure_not_recorded", error=str(fail_error))

    async def _cancel(
        self,
        result: SyncResult,
        run_id: UUID,
        counters: dict[str, int],
        log: Any,
    ) -> None:
        log.warning("sync_cancelled", processed=counters["items_processed"])
        result.cancelled = True
        result.total_synced = counters["items_succeeded"]
        result.errors.append(CANCELLED_MESSAGE)
        await self._tracker.fail(run_id, CANCELLED_MESSAGE, cancelled=True, **counters)

    async def _fill_customer(
        self,
        values: dict[str, Any],
        cache: dict[str, dict[str, Any] | None],
    ) -> list[str]:
        """Complete missing customer fields from the customer record.

        Lookups are cached for the run. A failed lookup is reported back as
        an error string; the invoice is still synced with what it has.
        """
        customer_id = values.get("external_customer_id")
        if not customer_id or all(values.get(name) for name in _CUSTOMER_FIELDS):
            values["customer_name"] = values.get("customer_name") or "Unknown"
            return []

        errors: list[str] = []
        if customer_id not in cache:
            try:
                cache[customer_id] = await self._client.get_customer(customer_id)
            except BillcomAPIError as e:
                cache[customer_id] = None
                logger.warning("customer_lookup_failed", customer_id=customer_id, error=str(e))
                errors.append(f"Customer {customer_id}: lookup failed: {e}")

        customer = cache[customer_id]
        if customer:
            values["customer_name"] = values.get("customer_name") or customer.get("name")
            values["customer_address"] = values.get(
                "customer_address"
            ) or build_customer_address(customer)
            values["customer_email"] = values.get("customer_email") or customer.get("email")
        values["customer_name"] = values.get("customer_name") or "Unknown"
        return errors
