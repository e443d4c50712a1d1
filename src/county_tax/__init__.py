"""County sales tax reconciliation pipeline for Bill.com invoices."""

__version__ = "0.1.0"

from county_tax.address import ParsedAddress, parse_address
from county_tax.clients import BillcomClient, CensusGeocoder, GeocodingResult
from county_tax.config import configure_logging, get_settings
from county_tax.enrichment import CalculationResult, FilterOptions, TaxEnrichment
from county_tax.enums import (
    Confidence,
    IncludeMode,
    PaymentStatus,
    ProcessingStatus,
    RunStatus,
    RunType,
    SkipReason,
)
from county_tax.pipeline import TaxPipeline
from county_tax.rates import CountyRate, RateTable
from county_tax.sync import InvoiceSync, SyncResult
from county_tax.tax import TaxCalculation, TaxCalculator, compute_tax
from county_tax.tracker import CalculationProgress, RunTracker, SyncProgress

__all__ = [
    # Version
    "__version__",
    # Pipeline
    "TaxPipeline",
    "InvoiceSync",
    "SyncResult",
    "TaxEnrichment",
    "FilterOptions",
    "CalculationResult",
    "RunTracker",
    "SyncProgress",
    "CalculationProgress",
    # Tax
    "TaxCalculator",
    "TaxCalculation",
    "compute_tax",
    "RateTable",
    "CountyRate",
    # Addresses & clients
    "ParsedAddress",
    "parse_address",
    "BillcomClient",
    "CensusGeocoder",
    "GeocodingResult",
    # Enums
    "Confidence",
    "IncludeMode",
    "PaymentStatus",
    "ProcessingStatus",
    "RunStatus",
    "RunType",
    "SkipReason",
    # Config
    "get_settings",
    "configure_logging",
]
