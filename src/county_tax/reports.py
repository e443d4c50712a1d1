"""Roll-ups over counted tax results."""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any

from county_tax.db import TaxResult, TaxStore
from county_tax.enums import ProcessingStatus
from county_tax.tax import round_currency, to_decimal

ZERO = Decimal("0")


@dataclass
class ResultFilters:
    """Paid-date range, exact county and partial customer name."""

    start: date | None = None
    end: date | None = None
    county: str | None = None
    customer: str | None = None


@dataclass
class TaxTotals:
    invoice_count: int = 0
    subtotal: Decimal = ZERO
    state_tax: Decimal = ZERO
    county_tax: Decimal = ZERO
    total_tax: Decimal = ZERO

    def add(self, result: TaxResult) -> None:
        self.invoice_count += 1
        self.subtotal += to_decimal(result.subtotal)
        self.state_tax += to_decimal(result.state_tax_amount)
        self.county_tax += to_decimal(result.county_tax_amount)
        self.total_tax += to_decimal(result.total_tax)

    def to_dict(self) -> dict[str, Any]:
        return {
            "invoice_count": self.invoice_count,
            "subtotal": str(round_currency(self.subtotal)),
            "state_tax": str(round_currency(self.state_tax)),
            "county_tax": str(round_currency(self.county_tax)),
            "total_tax": str(round_currency(self.total_tax)),
        }


@dataclass
class CountySummary(TaxTotals):
    county: str = ""
    rate_sum: Decimal = ZERO

    def add(self, result: TaxResult) -> None:
        super().add(result)
        self.rate_sum += to_decimal(result.county_tax_rate)

    @property
    def average_county_rate(self) -> Decimal:
        if not self.invoice_count:
            return ZERO
        return (self.rate_sum / self.invoice_count).quantize(Decimal("0.00001"))

    def to_dict(self) -> dict[str, Any]:
        return {
            "county": self.county,
            **super().to_dict(),
            "average_county_rate": str(self.average_county_rate),
        }


@dataclass
class CountyReport:
    counties: list[CountySummary] = field(default_factory=list)
    totals: TaxTotals = field(default_factory=TaxTotals)

    def to_dict(self) -> dict[str, Any]:
        return {
            "counties": [county.to_dict() for county in self.counties],
            "totals": self.totals.to_dict(),
        }


@dataclass
class InvoiceListing:
    results: list[TaxResult] = field(default_factory=list)
    totals: TaxTotals = field(default_factory=TaxTotals)


async def _counted(store: TaxStore, filters: ResultFilters | None) -> list[TaxResult]:
    filters = filters or ResultFilters()
    return await store.list_tax_results(
        status=ProcessingStatus.COUNTED,
        paid_from=filters.start,
        paid_to=filters.end,
        county=filters.county,
        customer_name=filters.customer,
    )


async def summarize_by_county(
    store: TaxStore, filters: ResultFilters | None = None
) -> CountyReport:
    """Counted tax grouped by county, largest total tax first.

    Counties whose total tax is zero are left out of the listing and the
    grand totals.
    """
    by_county: dict[str, CountySummary] = {}
    for result in await _counted(store, filters):
        county = result.geocoded_county or "Unknown"
        summary = by_county.setdefault(county, CountySummary(county=county))
        summary.add(result)

    report = CountyReport()
    for summary in by_county.values():
        if summary.total_tax <= ZERO:
            continue
        report.counties.append(summary)
        report.totals.invoice_count += summary.invoice_count
        report.totals.subtotal += summary.subtotal
        report.totals.state_tax += summary.state_tax
        report.totals.county_tax += summary.county_tax
        report.totals.total_tax += summary.total_tax
    report.counties.sort(key=lambda summary: summary.total_tax, reverse=True)
    return report


async def list_counted_results(
    store: TaxStore, filters: ResultFilters | None = None
) -> InvoiceListing:
    """Counted results one per invoice, newest paid date first."""
    listing = InvoiceListing(results=await _counted(store, filters))
    for result in listing.results:
        listing.totals.add(result)
    return listing
