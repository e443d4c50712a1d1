"""Facade that wires the pipeline collaborators from settings."""

import asyncio
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from county_tax.clients import BillcomClient, CensusGeocoder
from county_tax.config import Settings, get_settings
from county_tax.db import TaxStore, create_engine, create_session_factory, init_db
from county_tax.enrichment import CalculationResult, FilterOptions, TaxEnrichment
from county_tax.enums import RunType
from county_tax.rates import RateTable
from county_tax.sync import InvoiceSync, SyncResult
from county_tax.tax import TaxCalculation, TaxCalculator
from county_tax.tracker import CalculationProgress, RunTracker, SyncProgress

logger = structlog.get_logger(__name__)


class TaxPipeline:
    """One process-wide handle on the store, clients and stages.

    Usage:
        async with TaxPipeline() as pipeline:
            sync = await pipeline.sync_invoices(initiated_by="ops")
            calc = await pipeline.calculate_taxes(initiated_by="ops")
    """

    def __init__(
        self,
        settings: Settings | None = None,
        database_url: str | None = None,
        create_tables: bool = True,
    ):
        self._settings = settings or get_settings()
        self._database_url = database_url
        self._create_tables = create_tables

        self._engine: AsyncEngine | None = None
        self._store: TaxStore | None = None
        self._tracker: RunTracker | None = None
        self._billcom: BillcomClient | None = None
        self._geocoder: CensusGeocoder | None = None
        self._rates: RateTable | None = None
        self._sync: InvoiceSync | None = None
        self._enrichment: TaxEnrichment | None = None
        self._calculator: TaxCalculator | None = None

    async def __aenter__(self) -> "TaxPipeline":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.shutdown()

    async def initialize(self) -> None:
        if self._engine is not None:
            return
        settings = self._settings
        self._engine = create_engine(self._database_url, settings=settings)
        if self._create_tables:
            await init_db(self._engine)

        self._store = TaxStore(create_session_factory(self._engine))
        self._tracker = RunTracker(self._store, settings=settings)
        self._billcom = BillcomClient(settings=settings)
        self._geocoder = CensusGeocoder(settings=settings)
        self._rates = RateTable(self._store)
        self._sync = InvoiceSync(self._billcom, self._store, self._tracker, settings=settings)
        self._enrichment = TaxEnrichment(
            self._store, self._tracker, self._geocoder, self._rates, settings=settings
        )
        self._calculator = TaxCalculator(self._geocoder, self._rates, settings=settings)
        logger.info("pipeline_initialized")

    async def shutdown(self) -> None:
        if self._billcom:
            await self._billcom.close()
        if self._geocoder:
            await self._geocoder.close()
        if self._engine:
            await self._engine.dispose()
        self._engine = None

    def _require(self, component: Any) -> Any:
        if component is None:
            raise RuntimeError("TaxPipeline is not initialized; use 'async with TaxPipeline()'")
        return component

    @property
    def store(self) -> TaxStore:
        return self._require(self._store)

    @property
    def tracker(self) -> RunTracker:
        return self._require(self._tracker)

    @property
    def rates(self) -> RateTable:
        return self._require(self._rates)

    # === Stages ===

    async def sync_invoices(
        self,
        initiated_by: str | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncResult:
        stage: InvoiceSync = self._require(self._sync)
        return await stage.sync_invoices(initiated_by=initiated_by, cancel_event=cancel_event)

    async def calculate_taxes(
        self,
        initiated_by: str | None = None,
        filters: FilterOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> CalculationResult:
        stage: TaxEnrichment = self._require(self._enrichment)
        # Rates may have been reloaded since the last run
        self.rates.clear_cache()
        return await stage.calculate_taxes(
            initiated_by=initiated_by, filters=filters, cancel_event=cancel_event
        )

    async def quote(
        self,
        subtotal: Decimal | float | str,
        address: str | None = None,
        county: str | None = None,
    ) -> TaxCalculation:
        calculator: TaxCalculator = self._require(self._calculator)
        return await calculator.calculate(subtotal, address=address, county_override=county)

    # === Progress ===

    async def get_sync_status(self, run_id: UUID) -> SyncProgress | None:
        return await self.tracker.get_sync_status(run_id)

    async def get_calculation_status(self, run_id: UUID) -> CalculationProgress | None:
        return await self.tracker.get_calculation_status(run_id)

    async def get_status(self, run_id: UUID) -> SyncProgress | CalculationProgress | None:
        """Progress of a run of either type."""
        run = await self.store.get_run(run_id)
        if run is None:
            return None
        if run.run_type == RunType.SYNC:
            return await self.get_sync_status(run_id)
        return await self.get_calculation_status(run_id)
