"""Pytest configuration and fixtures."""

import os
from datetime import date
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Set test environment variables before importing settings
os.environ.setdefault("BILLCOM_DEV_KEY", "dev-key-test")
os.environ.setdefault("BILLCOM_USERNAME", "test@example.com")
os.environ.setdefault("BILLCOM_PASSWORD", "testpassword")
os.environ.setdefault("BILLCOM_ORG_ID", "org-test")
os.environ.setdefault("GEOCODER_MIN_INTERVAL", "0")

from county_tax.clients.geocoder import GeocodingResult  # noqa: E402
from county_tax.db import TaxStore, create_engine, create_session_factory, init_db  # noqa: E402
from county_tax.enums import Confidence, PaymentStatus  # noqa: E402
from county_tax.rates import RateTable  # noqa: E402
from county_tax.tracker import RunTracker  # noqa: E402


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database file per test."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'county_tax_test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return TaxStore(create_session_factory(engine))


@pytest.fixture
def tracker(store):
    return RunTracker(store, stale_after_minutes=60)


@pytest.fixture
def rate_table(store):
    return RateTable(store)


@pytest_asyncio.fixture
async def nc_rates(store):
    """A few North Carolina county rates."""
    await store.upsert_county_rate("Buncombe", Decimal("0.0475"), Decimal("0.0225"))
    await store.upsert_county_rate("Wake", Decimal("0.0475"), Decimal("0.0250"))
    await store.upsert_county_rate("Mecklenburg", Decimal("0.0475"), Decimal("0.0250"))
    await store.upsert_county_rate("Henderson", Decimal("0.0475"), Decimal("0.0200"))


def invoice_values(external_id: str, **overrides: Any) -> dict[str, Any]:
    """Column values for a mirrored, paid, addressed invoice."""
    values: dict[str, Any] = {
        "external_id": external_id,
        "invoice_number": f"INV-{external_id}",
        "invoice_date": date(2024, 3, 1),
        "due_date": date(2024, 3, 31),
        "external_customer_id": "CUST-1",
        "customer_name": "Blue Ridge Dental",
        "customer_address": "123 Main St, Asheville, NC 28801",
        "customer_email": "office@blueridge.example",
        "subtotal": Decimal("1000.00"),
        "amount_due": Decimal("0.00"),
        "payment_status": PaymentStatus.PAID,
        "paid_date": date(2024, 3, 15),
    }
    values.update(overrides)
    return values


def geocoded(county: str | None = "Buncombe", confidence: Confidence = Confidence.MATCH):
    """A geocoder result; ``county=None`` gives a no-match."""
    if county is None:
        return GeocodingResult(
            success=False,
            confidence=Confidence.NO_MATCH,
            raw_response={"result": {"addressMatches": []}},
            error_message="No address matches found",
        )
    return GeocodingResult(
        success=True,
        confidence=confidence,
        county=county,
        state="NC",
        raw_response={"result": {"addressMatches": [{"matchedAddress": "X"}]}},
    )


@pytest.fixture
def mock_geocoder():
    """Geocoder double that resolves every address to Buncombe."""
    geocoder = AsyncMock()
    geocoder.geocode = AsyncMock(return_value=geocoded("Buncombe"))
    return geocoder


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx AsyncClient."""
    client = AsyncMock()
    client.post = AsyncMock()
    client.get = AsyncMock()
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def billcom_login_response():
    """Successful Bill.com login body."""
    return {
        "response_status": 0,
        "response_message": "Success",
        "response_data": {"sessionId": "session-123", "usersId": "user-1", "orgId": "org-test"},
    }


@pytest.fixture
def census_match_response():
    """Census geographies response with one Buncombe County match."""
    return {
        "result": {
            "input": {"address": {"address": "123 Main St, Asheville, NC 28801"}},
            "addressMatches": [
                {
                    "matchedAddress": "123 MAIN ST, ASHEVILLE, NC, 28801",
                    "addressComponents": {"state": "NC", "city": "ASHEVILLE", "zip": "28801"},
                    "geographies": {
                        "Counties": [
                            {
                                "BASENAME": "Buncombe",
                                "NAME": "Buncombe County",
                                "STATE": "37",
                                "COUNTY": "021",
                            }
                        ]
                    },
                }
            ],
        }
    }
