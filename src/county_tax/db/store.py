"""Repository over the pipeline tables.

Every method opens its own short session and commits before returning,
so progress written by a running stage is visible to pollers immediately.
"""

from collections.abc import AsyncIterator, Collection, Iterable
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Any, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from county_tax.db.models import (
    CountyTaxRate,
    CustomerExclusion,
    CustomerInclusion,
    PipelineRun,
    SyncedInvoice,
    TaxResult,
)
from county_tax.enums import ProcessingStatus, RunStatus, RunType
from county_tax.errors import DuplicateEntryError, RunNotFoundError

logger = structlog.get_logger(__name__)

# Keeps IN (...) lists under SQLite's bound-parameter limit
_IN_CHUNK = 500

_ListEntry = TypeVar("_ListEntry", CustomerExclusion, CustomerInclusion)


def _chunks(values: list[str], size: int = _IN_CHUNK) -> Iterable[list[str]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


class TaxStore:
    """Upsert-by-key and read-by-filter access to the pipeline tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # === Synced invoices ===

    async def upsert_synced_invoice(self, values: dict[str, Any]) -> bool:
        """Insert or update an invoice by external id.

        Returns:
            True when a new row was created.
        """
        async with self._session_factory() as session, session.begin():
            existing = await session.scalar(
                select(SyncedInvoice).where(SyncedInvoice.external_id == values["external_id"])
            )
            if existing is None:
                session.add(SyncedInvoice(**values))
                return True
            for key, value in values.items():
                setattr(existing, key, value)
            return False

    async def list_synced_invoices(
        self,
        only_customer_ids: Collection[str] | None = None,
        exclude_customer_ids: Collection[str] | None = None,
    ) -> list[SyncedInvoice]:
        """Mirror rows, newest invoice date first."""
        stmt = select(SyncedInvoice).order_by(
            SyncedInvoice.invoice_date.desc().nulls_last(), SyncedInvoice.id.desc()
        )
        if only_customer_ids is not None:
            stmt = stmt.where(SyncedInvoice.external_customer_id.in_(list(only_customer_ids)))
        if exclude_customer_ids:
            stmt = stmt.where(
                SyncedInvoice.external_customer_id.is_(None)
                | SyncedInvoice.external_customer_id.not_in(list(exclude_customer_ids))
            )
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def count_synced_invoices(self) -> int:
        async with self._session_factory() as session:
            return await session.scalar(select(func.count()).select_from(SyncedInvoice)) or 0

    # === Tax results ===

    async def get_tax_result(self, external_invoice_id: str) -> TaxResult | None:
        async with self._session_factory() as session:
            return await session.scalar(
                select(TaxResult).where(TaxResult.external_invoice_id == external_invoice_id)
            )

    async def get_tax_results_for(self, external_invoice_ids: Iterable[str]) -> dict[str, TaxResult]:
        """Existing results keyed by invoice id, loaded in chunks."""
        ids = list(dict.fromkeys(external_invoice_ids))
        found: dict[str, TaxResult] = {}
        async with self._session_factory() as session:
            for chunk in _chunks(ids):
                rows = await session.scalars(
                    select(TaxResult).where(TaxResult.external_invoice_id.in_(chunk))
                )
                found.update({row.external_invoice_id: row for row in rows})
        return found

    async def upsert_tax_result(self, values: dict[str, Any]) -> bool:
        """Insert or overwrite the single result row of an invoice."""
        async with self._session_factory() as session, session.begin():
            existing = await session.scalar(
                select(TaxResult).where(
                    TaxResult.external_invoice_id == values["external_invoice_id"]
                )
            )
            if existing is None:
                session.add(TaxResult(**values))
                return True
            for key, value in values.items():
                setattr(existing, key, value)
            return False

    async def list_tax_results(
        self,
        status: ProcessingStatus | None = None,
        paid_from: date | None = None,
        paid_to: date | None = None,
        county: str | None = None,
        customer_name: str | None = None,
    ) -> list[TaxResult]:
        stmt = select(TaxResult).order_by(
            TaxResult.paid_date.desc().nulls_last(), TaxResult.id.desc()
        )
        if status is not None:
            stmt = stmt.where(TaxResult.status == status)
        if paid_from is not None:
            stmt = stmt.where(TaxResult.paid_date >= paid_from)
        if paid_to is not None:
            stmt = stmt.where(TaxResult.paid_date <= paid_to)
        if county:
            stmt = stmt.where(TaxResult.geocoded_county == county)
        if customer_name:
            stmt = stmt.where(
                func.lower(TaxResult.customer_name).contains(customer_name.lower(), autoescape=True)
            )
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def count_tax_results(self) -> int:
        async with self._session_factory() as session:
            return await session.scalar(select(func.count()).select_from(TaxResult)) or 0

    # === County rates ===

    async def find_county_rates(self, fragment: str) -> list[CountyTaxRate]:
        """Rates whose county name contains ``fragment`` (case-insensitive)."""
        stmt = select(CountyTaxRate).where(
            func.lower(CountyTaxRate.county_name).contains(fragment.lower(), autoescape=True)
        )
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())

    async def upsert_county_rate(
        self,
        county_name: str,
        state_tax_rate: Decimal,
        county_tax_rate: Decimal,
        total_tax_rate: Decimal | None = None,
    ) -> bool:
        total = total_tax_rate if total_tax_rate is not None else state_tax_rate + county_tax_rate
        async with self._session_factory() as session, session.begin():
            existing = await session.scalar(
                select(CountyTaxRate).where(CountyTaxRate.county_name == county_name)
            )
            if existing is None:
                session.add(
                    CountyTaxRate(
                        county_name=county_name,
                        state_tax_rate=state_tax_rate,
                        county_tax_rate=county_tax_rate,
                        total_tax_rate=total,
                    )
                )
                return True
            existing.state_tax_rate = state_tax_rate
            existing.county_tax_rate = county_tax_rate
            existing.total_tax_rate = total
            return False

    async def list_county_rates(self) -> list[CountyTaxRate]:
        async with self._session_factory() as session:
            stmt = select(CountyTaxRate).order_by(CountyTaxRate.county_name)
            return list((await session.scalars(stmt)).all())

    # === Customer exclusion / inclusion lists ===

    async def _add_list_entry(
        self,
        model: type[_ListEntry],
        external_customer_id: str,
        customer_name: str | None,
        customer_address: str | None,
        reason: str | None,
        created_by: str | None,
    ) -> _ListEntry:
        async with self._session_factory() as session, session.begin():
            existing = await session.scalar(
                select(model).where(model.external_customer_id == external_customer_id)
            )
            if existing is not None:
                raise DuplicateEntryError(
                    f"Customer {external_customer_id} is already on the "
                    f"{model.__tablename__.replace('_', ' ')} list"
                )
            entry = model(
                external_customer_id=external_customer_id,
                customer_name=customer_name,
                customer_address=customer_address,
                reason=reason,
                created_by=created_by,
            )
            session.add(entry)
        return entry

    async def _remove_list_entry(self, model: type[_ListEntry], entry_id: int) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(delete(model).where(model.id == entry_id))
            return bool(result.rowcount)

    async def _list_entries(self, model: type[_ListEntry]) -> list[_ListEntry]:
        async with self._session_factory() as session:
            stmt = select(model).order_by(model.created_at.desc(), model.id.desc())
            return list((await session.scalars(stmt)).all())

    async def add_exclusion(
        self,
        external_customer_id: str,
        customer_name: str | None = None,
        customer_address: str | None = None,
        reason: str | None = None,
        created_by: str | None = None,
    ) -> CustomerExclusion:
        return await self._add_list_entry(
            CustomerExclusion, external_customer_id, customer_name,
            customer_address, reason, created_by,
        )

    async def remove_exclusion(self, exclusion_id: int) -> bool:
        return await self._remove_list_entry(CustomerExclusion, exclusion_id)

    async def list_exclusions(self) -> list[CustomerExclusion]:
        return await self._list_entries(CustomerExclusion)

    async def get_exclusion(self, external_customer_id: str) -> CustomerExclusion | None:
        async with self._session_factory() as session:
            return await session.scalar(
                select(CustomerExclusion).where(
                    CustomerExclusion.external_customer_id == external_customer_id
                )
            )

    async def add_inclusion(
        self,
        external_customer_id: str,
        customer_name: str | None = None,
        customer_address: str | None = None,
        reason: str | None = None,
        created_by: str | None = None,
    ) -> CustomerInclusion:
        return await self._add_list_entry(
            CustomerInclusion, external_customer_id, customer_name,
            customer_address, reason, created_by,
        )

    async def remove_inclusion(self, inclusion_id: int) -> bool:
        return await self._remove_list_entry(CustomerInclusion, inclusion_id)

    async def list_inclusions(self) -> list[CustomerInclusion]:
        return await self._list_entries(CustomerInclusion)

    # === Pipeline runs ===

    async def create_run(
        self,
        run_type: RunType,
        created_by: str | None = None,
        current_status: str | None = None,
    ) -> PipelineRun:
        run = PipelineRun(
            run_type=run_type,
            status=RunStatus.IN_PROGRESS,
            current_status=current_status,
            created_by=created_by,
            errors=[],
        )
        async with self._session_factory() as session, session.begin():
            session.add(run)
        return run

    async def get_run(self, run_id: UUID, run_type: RunType | None = None) -> PipelineRun | None:
        stmt = select(PipelineRun).where(PipelineRun.id == run_id)
        if run_type is not None:
            stmt = stmt.where(PipelineRun.run_type == run_type)
        async with self._session_factory() as session:
            return await session.scalar(stmt)

    @asynccontextmanager
    async def run_for_update(self, run_id: UUID) -> AsyncIterator[PipelineRun]:
        """Load a run inside a transaction; changes commit when the block exits."""
        async with self._session_factory() as session, session.begin():
            run = await session.scalar(
                select(PipelineRun).where(PipelineRun.id == run_id).with_for_update()
            )
            if run is None:
                raise RunNotFoundError(run_id)
            yield run

    async def find_active_runs(
        self, run_type: RunType, idle_since: datetime | None = None
    ) -> list[PipelineRun]:
        """In-progress runs of a type, optionally only those not updated since ``idle_since``."""
        stmt = select(PipelineRun).where(
            PipelineRun.run_type == run_type,
            PipelineRun.status == RunStatus.IN_PROGRESS,
        )
        if idle_since is not None:
            stmt = stmt.where(PipelineRun.updated_at < idle_since)
        async with self._session_factory() as session:
            return list((await session.scalars(stmt.order_by(PipelineRun.created_at))).all())

    async def list_runs(self, run_type: RunType | None = None, limit: int = 20) -> list[PipelineRun]:
        stmt = select(PipelineRun).order_by(PipelineRun.created_at.desc()).limit(limit)
        if run_type is not None:
            stmt = stmt.where(PipelineRun.run_type == run_type)
        async with self._session_factory() as session:
            return list((await session.scalars(stmt)).all())
