"""Persistence layer: tables, engine and the TaxStore repository."""

from county_tax.db.models import (
    Base,
    CountyTaxRate,
    CustomerExclusion,
    CustomerInclusion,
    PipelineRun,
    SyncedInvoice,
    TaxResult,
)
from county_tax.db.session import create_engine, create_session_factory, init_db
from county_tax.db.store import TaxStore

__all__ = [
    # Tables
    "Base",
    "SyncedInvoice",
    "TaxResult",
    "PipelineRun",
    "CountyTaxRate",
    "CustomerExclusion",
    "CustomerInclusion",
    # Engine
    "create_engine",
    "create_session_factory",
    "init_db",
    # Repository
    "TaxStore",
]
