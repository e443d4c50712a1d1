"""County tax rate lookup."""

import csv
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import structlog

from county_tax.address import normalize_county_name
from county_tax.db import CountyTaxRate, TaxStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CountyRate:
    """Rates for one county, as decimal fractions (0.0475 == 4.75%)."""

    county_name: str
    state_tax_rate: Decimal
    county_tax_rate: Decimal
    total_tax_rate: Decimal

    @classmethod
    def from_row(cls, row: CountyTaxRate) -> "CountyRate":
        return cls(
            county_name=row.county_name,
            state_tax_rate=Decimal(row.state_tax_rate),
            county_tax_rate=Decimal(row.county_tax_rate),
            total_tax_rate=Decimal(row.total_tax_rate),
        )


class RateTable:
    """Maps a geocoded county name to its rate.

    The geocoder may hand back "Buncombe County" or "BUNCOMBE" for a table
    row named "Buncombe", so names are normalized and matched
    case-insensitively on a partial basis. A miss returns ``None`` rather
    than a zero rate. Lookups are memoized until ``clear_cache``.
    """

    def __init__(self, store: TaxStore):
        self._store = store
        self._cache: dict[str, CountyRate | None] = {}

    def clear_cache(self) -> None:
        self._cache.clear()

    async def rate_for(self, county: str | None) -> CountyRate | None:
        name = normalize_county_name(county)
        if not name:
            return None

        key = name.lower()
        if key in self._cache:
            return self._cache[key]

        rows = await self._store.find_county_rates(name)
        rate: CountyRate | None = None
        if rows:
            exact = [row for row in rows if normalize_county_name(row.county_name).lower() == key]
            chosen = exact[0] if exact else min(rows, key=lambda row: len(row.county_name))
            rate = CountyRate.from_row(chosen)
        else:
            logger.warning("county_rate_not_found", county=name)

        self._cache[key] = rate
        return rate


def _parse_rate(value: str | None, column: str) -> Decimal | None:
    if value is None or not value.strip():
        return None
    try:
        rate = Decimal(value.strip().rstrip("%"))
    except InvalidOperation as e:
        raise ValueError(f"invalid {column} {value!r}") from e
    # "4.75" and "4.75%" are percentages; "0.0475" is already a fraction
    return rate / 100 if rate >= 1 or value.strip().endswith("%") else rate


def read_rates_csv(path: str | Path) -> list[dict[str, Any]]:
    """Read a rate table export.

    Columns: ``county_name``, ``state_tax_rate``, ``county_tax_rate`` and an
    optional ``total_tax_rate``.

    Raises:
        ValueError: On a missing column or an unparseable rate.
    """
    rows: list[dict[str, Any]] = []
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        missing = {"county_name", "state_tax_rate", "county_tax_rate"} - set(
            reader.fieldnames or []
        )
        if missing:
            raise ValueError(f"{path}: missing columns {', '.join(sorted(missing))}")
        for line, record in enumerate(reader, start=2):
            name = (record.get("county_name") or "").strip()
            if not name:
                continue
            try:
                state = _parse_rate(record.get("state_tax_rate"), "state_tax_rate")
                county = _parse_rate(record.get("county_tax_rate"), "county_tax_rate")
                total = _parse_rate(record.get("total_tax_rate"), "total_tax_rate")
            except ValueError as e:
                raise ValueError(f"{path}:{line}: {e}") from e
            if state is None or county is None:
                raise ValueError(f"{path}:{line}: state and county rates are required")
            rows.append(
                {
                    "county_name": name,
                    "state_tax_rate": state,
                    "county_tax_rate": county,
                    "total_tax_rate": total,
                }
            )
    return rows


async def load_rates(store: TaxStore, rows: list[dict[str, Any]]) -> tuple[int, int]:
    """Upsert rate rows by county name; returns (created, updated)."""
    created = updated = 0
    for row in rows:
        if await store.upsert_county_rate(**row):
            created += 1
        else:
            updated += 1
    logger.info("county_rates_loaded", created=created, updated=updated)
    return created, updated
