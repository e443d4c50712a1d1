"""US Census geocoder client: free-text address to county.

API docs: https://geocoding.geo.census.gov/geocoder/Geocoding_Services_API.html
No API key is needed; the service is public but rate sensitive, so requests
are spaced by a minimum interval.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from county_tax.address import ParsedAddress, normalize_county_name, parse_address
from county_tax.config import Settings, get_settings
from county_tax.enums import Confidence

logger = structlog.get_logger(__name__)


class GeocoderError(Exception):
    """Transport-level failure talking to the geocoder."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class GeocodingResult:
    """Outcome of geocoding one address."""

    success: bool
    confidence: Confidence
    county: str | None = None
    state: str | None = None
    raw_response: dict[str, Any] | None = None
    error_message: str | None = None
    parsed: ParsedAddress | None = None


class CensusGeocoder:
    """Async client for the Census ``geographies`` endpoints.

    ``geocode`` never raises for expected outcomes: no match, no county,
    HTTP and network errors all come back as an unsuccessful result with
    the matching confidence.
    """

    def __init__(
        self,
        base_url: str | None = None,
        benchmark: str | None = None,
        vintage: str | None = None,
        default_state: str | None = None,
        min_interval: float | None = None,
        max_retries: int | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.base_url = (base_url or settings.geocoder_url).rstrip("/")
        self._benchmark = benchmark or settings.geocoder_benchmark
        self._vintage = vintage or settings.geocoder_vintage
        self._default_state = default_state or settings.home_state
        self._timeout = settings.geocoder_timeout
        self._min_interval = (
            settings.geocoder_min_interval if min_interval is None else min_interval
        )
        self._max_retries = settings.geocoder_max_retries if max_retries is None else max_retries

        self._client: httpx.AsyncClient | None = None
        self._throttle_lock = asyncio.Lock()
        self._last_request_at: float | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "CensusGeocoder":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _throttle(self) -> None:
        async with self._throttle_lock:
            if self._last_request_at is not None and self._min_interval > 0:
                wait = self._min_interval - (time.monotonic() - self._last_request_at)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request_at = time.monotonic()

    def _build_request(self, parsed: ParsedAddress) -> tuple[str, dict[str, str]]:
        params = {
            "benchmark": self._benchmark,
            "vintage": self._vintage,
            "layers": "Counties",
            "format": "json",
        }
        if parsed.street and (parsed.city or parsed.zip):
            params.update({"street": parsed.street, "state": parsed.state})
            if parsed.city:
                params["city"] = parsed.city
            if parsed.zip:
                params["zip"] = parsed.zip
            return "/geographies/address", params

        params["address"] = parsed.one_line
        return "/geographies/onelineaddress", params

    async def _fetch(
        self, path: str, params: dict[str, str], retry_count: int = 0
    ) -> dict[str, Any]:
        await self._throttle()
        client = await self._get_client()

        try:
            response = await client.get(path, params=params)
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                await asyncio.sleep(2**retry_count)
                return await self._fetch(path, params, retry_count + 1)
            raise GeocoderError(f"Geocoder request failed: {e}") from e

        if response.status_code >= 500 and retry_count < self._max_retries:
            await asyncio.sleep(2**retry_count)
            return await self._fetch(path, params, retry_count + 1)
        if response.status_code >= 400:
            raise GeocoderError(
                f"API returned {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GeocoderError("Geocoder returned invalid JSON") from e
        if not isinstance(data, dict):
            raise GeocoderError("Unexpected geocoder response format")
        return data

    async def geocode(self, address: str | None) -> GeocodingResult:
        """Resolve an address to its county."""
        if not address or not address.strip():
            return GeocodingResult(
                success=False,
                confidence=Confidence.ERROR,
                error_message="Address is empty",
            )

        parsed = parse_address(address, default_state=self._default_state)
        path, params = self._build_request(parsed)
        log = logger.bind(address=address)

        try:
            data = await self._fetch(path, params)
        except GeocoderError as e:
            log.warning("geocoding_request_failed", error=str(e))
            return GeocodingResult(
                success=False,
                confidence=Confidence.ERROR,
                error_message=str(e),
                parsed=parsed,
            )

        result = self._interpret(data)
        result.parsed = parsed
        if result.success:
            log.debug(
                "geocoded",
                county=result.county,
                state=result.state,
                confidence=result.confidence.value,
            )
        else:
            log.info("geocoding_no_match", reason=result.error_message)
        return result

    @staticmethod
    def _interpret(data: dict[str, Any]) -> GeocodingResult:
        """Turn a geocoder response body into a result."""
        matches = (data.get("result") or {}).get("addressMatches") or []
        if not matches:
            return GeocodingResult(
                success=False,
                confidence=Confidence.NO_MATCH,
                raw_response=data,
                error_message="No address matches found",
            )

        # Ambiguity is not fatal: the first match is used either way
        first = matches[0]
        counties = (first.get("geographies") or {}).get("Counties") or []
        if not counties:
            return GeocodingResult(
                success=False,
                confidence=Confidence.NO_MATCH,
                raw_response=data,
                error_message="No county data in geocoding response",
            )

        county_data = counties[0]
        county = county_data.get("BASENAME") or normalize_county_name(county_data.get("NAME"))
        if not county:
            return GeocodingResult(
                success=False,
                confidence=Confidence.NO_MATCH,
                raw_response=data,
                error_message="County geography has no name",
            )

        state = (first.get("addressComponents") or {}).get("state") or county_data.get("STATE")
        return GeocodingResult(
            success=True,
            confidence=Confidence.TIE if len(matches) > 1 else Confidence.MATCH,
            county=county,
            state=state,
            raw_response=data,
        )
