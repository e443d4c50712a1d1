"""Tax arithmetic and the synchronous single-invoice calculator.

The batch enrichment stage and ``TaxCalculator`` both go through
``compute_tax`` so they produce identical amounts for identical inputs.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import structlog

from county_tax.address import DEFAULT_STATE, ParsedAddress, normalize_county_name, parse_address
from county_tax.clients.geocoder import CensusGeocoder
from county_tax.config import Settings, get_settings
from county_tax.enums import Confidence
from county_tax.rates import RateTable

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")
OUT_OF_STATE = "Out of State"
UNKNOWN_COUNTY = "Unknown County"


def to_decimal(value: Decimal | float | int | str | None) -> Decimal:
    """Coerce a money or rate value to Decimal; None becomes zero."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # str() first so 0.1 becomes Decimal("0.1"), not its binary expansion
    return Decimal(str(value))


def round_currency(value: Decimal) -> Decimal:
    """Round to cents, halves away from zero."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class TaxBreakdown:
    """State, county and total tax for one subtotal."""

    state_tax_amount: Decimal
    county_tax_amount: Decimal
    total_tax: Decimal


def compute_tax(
    subtotal: Decimal | float | str,
    state_rate: Decimal | float | str,
    county_rate: Decimal | float | str,
) -> TaxBreakdown:
    """Apply state and county rates to a subtotal.

    Each component is rounded to cents as it is computed and the total is
    the sum of the rounded components, so invoice line items always add up.
    """
    subtotal = to_decimal(subtotal)
    state_tax = round_currency(subtotal * to_decimal(state_rate))
    county_tax = round_currency(subtotal * to_decimal(county_rate))
    return TaxBreakdown(
        state_tax_amount=state_tax,
        county_tax_amount=county_tax,
        total_tax=state_tax + county_tax,
    )


@dataclass
class TaxCalculation:
    """Result of the single-invoice calculator."""

    county: str
    state_tax_rate: Decimal
    county_tax_rate: Decimal
    state_tax_amount: Decimal
    county_tax_amount: Decimal
    total_tax_amount: Decimal
    fallback: bool = False
    fallback_reason: str | None = None
    confidence: Confidence | None = None

    @property
    def total_tax_rate(self) -> Decimal:
        return self.state_tax_rate + self.county_tax_rate

    def to_dict(self) -> dict[str, Any]:
        return {
            "county": self.county,
            "state_tax_rate": str(self.state_tax_rate),
            "county_tax_rate": str(self.county_tax_rate),
            "total_tax_rate": str(self.total_tax_rate),
            "state_tax_amount": str(self.state_tax_amount),
            "county_tax_amount": str(self.county_tax_amount),
            "total_tax_amount": str(self.total_tax_amount),
            "fallback": self.fallback,
            "fallback_reason": self.fallback_reason,
            "confidence": self.confidence.value if self.confidence else None,
        }


class TaxCalculator:
    """Immediate tax quote for an invoice that is not in the mirror yet.

    County resolution order: explicit override, "Out of State" for an
    address outside the home state, then geocoding. When no rate can be
    found the documented default county rate is used and the result is
    flagged with ``fallback=True``.
    """

    def __init__(
        self,
        geocoder: CensusGeocoder,
        rates: RateTable,
        state_tax_rate: Decimal | None = None,
        default_county_tax_rate: Decimal | None = None,
        home_state: str | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self._geocoder = geocoder
        self._rates = rates
        self._state_tax_rate = to_decimal(
            state_tax_rate if state_tax_rate is not None else settings.state_tax_rate
        )
        self._default_county_rate = to_decimal(
            default_county_tax_rate
            if default_county_tax_rate is not None
            else settings.default_county_tax_rate
        )
        self._home_state = (home_state or settings.home_state).upper()

    async def calculate(
        self,
        subtotal: Decimal | float | str,
        address: str | ParsedAddress | None = None,
        county_override: str | None = None,
    ) -> TaxCalculation:
        subtotal = to_decimal(subtotal)
        county = normalize_county_name(county_override) or None
        confidence: Confidence | None = None
        fallback_reason: str | None = None

        if county is None and address:
            parsed = (
                address
                if isinstance(address, ParsedAddress)
                else parse_address(address, default_state=self._home_state)
            )
            if parsed.state_found and parsed.state != self._home_state:
                county = OUT_OF_STATE
            else:
                geocoded = await self._geocoder.geocode(parsed.one_line)
                confidence = geocoded.confidence
                if geocoded.success and geocoded.county:
                    county = geocoded.county
                else:
                    fallback_reason = f"geocoding failed: {geocoded.error_message or 'no county'}"
        elif county is None:
            fallback_reason = "no address or county override"

        rate = await self._rates.rate_for(county) if county else None
        if rate is None:
            if fallback_reason is None:
                fallback_reason = f"no rate on file for {county}"
            county_rate = self._default_county_rate
        else:
            county_rate = rate.county_tax_rate

        breakdown = compute_tax(subtotal, self._state_tax_rate, county_rate)
        if rate is None:
            logger.warning(
                "tax_default_county_rate_used",
                county=county,
                reason=fallback_reason,
                county_rate=str(county_rate),
            )

        return TaxCalculation(
            county=county or UNKNOWN_COUNTY,
            state_tax_rate=self._state_tax_rate,
            county_tax_rate=county_rate,
            state_tax_amount=breakdown.state_tax_amount,
            county_tax_amount=breakdown.county_tax_amount,
            total_tax_amount=breakdown.total_tax,
            fallback=rate is None,
            fallback_reason=fallback_reason if rate is None else None,
            confidence=confidence,
        )


def _percent(rate: Decimal) -> str:
    return f"{(rate * 100).quantize(CENT)}%"


def format_tax_display(tax: TaxCalculation, state: str = DEFAULT_STATE) -> str:
    """Three-line human summary of a tax quote."""
    return (
        f"{state} State Tax ({_percent(tax.state_tax_rate)}): ${tax.state_tax_amount:.2f}\n"
        f"{tax.county} Tax ({_percent(tax.county_tax_rate)}): ${tax.county_tax_amount:.2f}\n"
        f"Total Tax ({_percent(tax.total_tax_rate)}): ${tax.total_tax_amount:.2f}"
    )


def tax_line_items(tax: TaxCalculation, state: str = DEFAULT_STATE) -> list[dict[str, Any]]:
    """Tax lines to append to an invoice in the invoicing system."""
    return [
        {
            "description": f"{state} State Sales Tax ({_percent(tax.state_tax_rate)})",
            "amount": tax.state_tax_amount,
            "quantity": 1,
            "price": tax.state_tax_amount,
            "type": "TAX",
        },
        {
            "description": f"{tax.county} Tax ({_percent(tax.county_tax_rate)})",
            "amount": tax.county_tax_amount,
            "quantity": 1,
            "price": tax.county_tax_amount,
            "type": "TAX",
        },
    ]
