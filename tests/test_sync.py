"""Tests for the invoice sync stage."""

import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from county_tax.clients.billcom import AuthenticationError, BillcomAPIError
from county_tax.enums import PaymentStatus, RunStatus, RunType
from county_tax.sync import (
    InvoiceSync,
    build_customer_address,
    normalize_invoice,
    parse_payment_status,
)


def bill_invoice(invoice_id: str, **overrides):
    """Raw invoice as Bill.com returns it."""
    invoice = {
        "id": invoice_id,
        "invoiceNumber": f"N-{invoice_id}",
        "invoiceDate": "2024-03-01",
        "dueDate": "2024-03-31",
        "customerId": "0cu01",
        "customerName": "Blue Ridge Dental",
        "customerAddress": "123 Main St, Asheville, NC 28801",
        "customerEmail": "office@blueridge.example",
        "amount": "1000.00",
        "amountDue": "0",
        "paymentStatus": "0",
        "paidDate": "2024-03-15T14:02:11.000+0000",
    }
    invoice.update(overrides)
    return invoice


def paged_client(pages: dict[int, list[dict]]):
    """Bill.com client double serving ``pages`` keyed by offset."""
    client = AsyncMock()
    client.authenticate = AsyncMock(return_value="session-123")
    client.list_invoices = AsyncMock(side_effect=lambda offset, page_size: pages.get(offset, []))
    client.get_customer = AsyncMock(return_value={})
    return client


@pytest.fixture
def make_sync(store, tracker):
    def factory(client, page_size=2):
        return InvoiceSync(client, store, tracker, page_size=page_size)

    return factory


class TestNormalizeInvoice:
    """Tests for mapping raw invoices to mirror rows."""

    def test_full_invoice(self):
        values = normalize_invoice(bill_invoice("00e01"))

        assert values["external_id"] == "00e01"
        assert values["invoice_date"] == date(2024, 3, 1)
        assert values["paid_date"] == date(2024, 3, 15)
        assert values["subtotal"] == Decimal("1000.00")
        assert values["amount_due"] == Decimal("0")
        assert values["payment_status"] == PaymentStatus.PAID
        assert values["external_customer_id"] == "0cu01"

    def test_missing_amounts_are_zero(self):
        values = normalize_invoice(bill_invoice("00e01", amount=None, amountDue=""))

        assert values["subtotal"] == Decimal("0")
        assert values["amount_due"] == Decimal("0")

    def test_address_from_bill_fields(self):
        invoice = bill_invoice("00e01", customerAddress=None)
        invoice.update(
            billAddress1="50 Broadway",
            billAddress2="Suite 2",
            billAddressCity="Asheville",
            billAddressState="NC",
            billAddressZip="28801",
        )

        values = normalize_invoice(invoice)

        assert values["customer_address"] == "50 Broadway, Suite 2, Asheville, NC 28801"

    def test_missing_id_raises(self):
        with pytest.raises(ValueError):
            normalize_invoice(bill_invoice(""))

    def test_bad_date_raises(self):
        with pytest.raises(ValueError):
            normalize_invoice(bill_invoice("00e01", invoiceDate="03/01/2024"))

    def test_bad_amount_raises(self):
        with pytest.raises(ValueError, match="amount"):
            normalize_invoice(bill_invoice("00e01", amount="12,00"))

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("0", PaymentStatus.PAID),
            ("paid", PaymentStatus.PAID),
            ("PAID", PaymentStatus.PAID),
            ("1", PaymentStatus.UNPAID),
            ("open", PaymentStatus.UNPAID),
            ("2", PaymentStatus.PARTIALLY_PAID),
            ("partial", PaymentStatus.PARTIALLY_PAID),
            ("4", PaymentStatus.SCHEDULED),
            (0, PaymentStatus.PAID),
            ("9", PaymentStatus.UNKNOWN),
            (None, PaymentStatus.UNKNOWN),
        ],
    )
    def test_payment_status_codes(self, raw, expected):
        assert parse_payment_status(raw) == expected

    def test_status_field_fallback(self):
        invoice = bill_invoice("00e01")
        del invoice["paymentStatus"]
        invoice["status"] = "unpaid"

        assert normalize_invoice(invoice)["payment_status"] == PaymentStatus.UNPAID

    def test_build_customer_address_empty(self):
        assert build_customer_address({}) is None


class TestSyncInvoices:
    """Tests for full sync runs."""

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self, make_sync, store):
        client = paged_client(
            {0: [bill_invoice("A"), bill_invoice("B")], 2: [bill_invoice("C")]}
        )

        result = await make_sync(client).sync_invoices(initiated_by="ops")

        assert result.success is True
        assert result.total_synced == 3
        assert result.new_invoices == 3
        assert [call.args[0] for call in client.list_invoices.await_args_list] == [0, 2]
        assert await store.count_synced_invoices() == 3

        run = await store.get_run(result.run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.run_type == RunType.SYNC
        assert run.items_processed == 3
        assert run.current_batch == 2
        assert run.created_by == "ops"

    @pytest.mark.asyncio
    async def test_empty_invoice_set(self, make_sync, store):
        result = await make_sync(paged_client({})).sync_invoices()

        assert result.success is True
        assert result.total_synced == 0
        run = await store.get_run(result.run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.items_processed == 0

    @pytest.mark.asyncio
    async def test_sync_is_idempotent(self, make_sync, store):
        pages = {0: [bill_invoice("A"), bill_invoice("B")], 2: []}

        first = await make_sync(paged_client(pages)).sync_invoices()
        second = await make_sync(paged_client(pages)).sync_invoices()

        assert first.new_invoices == 2
        assert second.new_invoices == 0
        assert second.updated_invoices == 2
        assert await store.count_synced_invoices() == 2

    @pytest.mark.asyncio
    async def test_resync_moves_last_synced_at(self, make_sync, store):
        pages = {0: [bill_invoice("A")]}

        await make_sync(paged_client(pages)).sync_invoices()
        (first,) = await store.list_synced_invoices()
        await asyncio.sleep(0.01)
        await make_sync(paged_client(pages)).sync_invoices()
        (second,) = await store.list_synced_invoices()

        assert second.last_synced_at > first.last_synced_at

    @pytest.mark.asyncio
    async def test_duplicate_across_pages_counted_once(self, make_sync, store):
        client = paged_client(
            {
                0: [bill_invoice("A"), bill_invoice("B")],
                2: [bill_invoice("B", amount="1200.00"), bill_invoice("C")],
            }
        )

        result = await make_sync(client).sync_invoices()

        assert result.total_synced == 3
        assert result.new_invoices == 3
        assert result.updated_invoices == 0
        assert await store.count_synced_invoices() == 3
        run = await store.get_run(result.run_id)
        assert run.items_processed == 3
        assert run.total_items == 3

    @pytest.mark.asyncio
    async def test_bad_invoice_does_not_stop_sync(self, make_sync, store):
        client = paged_client(
            {
                0: [
                    bill_invoice("A"),
                    bill_invoice("B", invoiceDate="not-a-date"),
                    bill_invoice("C"),
                ]
            }
        )

        result = await make_sync(client, page_size=10).sync_invoices()

        assert result.success is True
        assert result.total_synced == 2
        assert len(result.errors) == 1
        assert "N-B" in result.errors[0]
        run = await store.get_run(result.run_id)
        assert run.status == RunStatus.COMPLETED
        assert run.items_failed == 1
        assert run.errors == result.errors

    @pytest.mark.asyncio
    async def test_authentication_failure_fails_run(self, make_sync, store):
        client = paged_client({0: [bill_invoice("A")]})
        client.authenticate = AsyncMock(side_effect=AuthenticationError("bad credentials"))

        result = await make_sync(client).sync_invoices()

        assert result.success is False
        assert "bad credentials" in result.errors
        client.list_invoices.assert_not_awaited()
        run = await store.get_run(result.run_id)
        assert run.status == RunStatus.FAILED
        assert run.items_processed == 0
        assert run.error_message == "bad credentials"
        assert "AuthenticationError" in run.error_stack

    @pytest.mark.asyncio
    async def test_page_fetch_failure_keeps_partial_stats(self, make_sync, store):
        client = paged_client({})
        client.list_invoices = AsyncMock(
            side_effect=[[bill_invoice("A"), bill_invoice("B")], BillcomAPIError("HTTP 502")]
        )

        result = await make_sync(client).sync_invoices()

        assert result.success is False
        assert result.total_synced == 2
        run = await store.get_run(result.run_id)
        assert run.status == RunStatus.FAILED
        assert run.items_succeeded == 2

    @pytest.mark.asyncio
    async def test_customer_fields_filled_from_lookup(self, make_sync, store):
        sparse = {"customerName": None, "customerAddress": None, "customerEmail": None}
        client = paged_client(
            {0: [bill_invoice("A", **sparse), bill_invoice("B", **sparse)]}
        )
        client.get_customer = AsyncMock(
            return_value={
                "id": "0cu01",
                "name": "Blue Ridge Dental",
                "email": "office@blueridge.example",
                "billAddress1": "123 Main St",
                "billAddressCity": "Asheville",
                "billAddressState": "NC",
                "billAddressZip": "28801",
            }
        )

        result = await make_sync(client, page_size=10).sync_invoices()

        assert result.success is True
        client.get_customer.assert_awaited_once_with("0cu01")
        rows = await store.list_synced_invoices()
        assert {row.customer_address for row in rows} == {"123 Main St, Asheville, NC 28801"}
        assert {row.customer_name for row in rows} == {"Blue Ridge Dental"}

    @pytest.mark.asyncio
    async def test_customer_lookup_failure_still_syncs(self, make_sync, store):
        client = paged_client({0: [bill_invoice("A", customerName=None, customerAddress=None)]})
        client.get_customer = AsyncMock(side_effect=BillcomAPIError("Customer not found"))

        result = await make_sync(client, page_size=10).sync_invoices()

        assert result.success is True
        assert result.total_synced == 1
        assert any("0cu01" in error for error in result.errors)
        row = (await store.list_synced_invoices())[0]
        assert row.customer_name == "Unknown"
        assert row.customer_address is None

    @pytest.mark.asyncio
    async def test_cancellation(self, make_sync, store):
        cancel_event = asyncio.Event()
        cancel_event.set()
        client = paged_client({0: [bill_invoice("A")]})

        result = await make_sync(client).sync_invoices(cancel_event=cancel_event)

        assert result.success is False
        assert result.cancelled is True
        assert await store.count_synced_invoices() == 0
        run = await store.get_run(result.run_id)
        assert run.status == RunStatus.FAILED
        assert run.cancelled is True
        assert run.error_message == "Run cancelled"

    @pytest.mark.asyncio
    async def test_concurrent_sync_refused(self, make_sync, tracker):
        sync = make_sync(paged_client({}))

        async with tracker.exclusive(RunType.SYNC):
            result = await sync.sync_invoices()

        assert result.success is False
        assert result.run_id is None
        assert "already in progress" in result.errors[0]
