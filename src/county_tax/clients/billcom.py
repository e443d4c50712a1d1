"""Bill.com v2 API client with session authentication and explicit expiry."""

import asyncio
import json as jsonlib
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog
from pydantic import SecretStr

from county_tax.config import Settings, get_settings

logger = structlog.get_logger(__name__)

# Bill.com caps list requests at 999 records
MAX_PAGE_SIZE = 999

# Error codes Bill.com returns when the session id is no longer valid
_SESSION_ERROR_CODES = frozenset({"BDC_1109", "BDC_1110"})


class BillcomAPIError(Exception):
    """Base exception for Bill.com API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.details = details


class AuthenticationError(BillcomAPIError):
    """Login rejected or no session returned."""

    pass


class SessionExpiredError(BillcomAPIError):
    """Bill.com reported the session id as invalid."""

    pass


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


class BillcomClient:
    """Async client for the parts of Bill.com the pipeline consumes.

    One instance is created per process and handed to the stages. The
    session id is reused until ``session_minutes`` have passed since login,
    after which the next call logs in again.
    """

    def __init__(
        self,
        api_url: str | None = None,
        dev_key: str | None = None,
        username: str | None = None,
        password: str | None = None,
        org_id: str | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or get_settings()
        self.api_url = (api_url or settings.billcom_api_url).rstrip("/")
        self._dev_key = dev_key or _secret(settings.billcom_dev_key)
        self._username = username or settings.billcom_username
        self._password = password or _secret(settings.billcom_password)
        self._org_id = org_id or settings.billcom_org_id
        self._timeout = settings.billcom_timeout
        self._max_retries = settings.billcom_max_retries
        self._session_ttl = timedelta(minutes=settings.billcom_session_minutes)

        self._session_id: str | None = None
        self._session_expires_at: datetime | None = None

        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=httpx.Timeout(self._timeout),
                headers={"Accept": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "BillcomClient":
        await self.authenticate()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # === Authentication ===

    @property
    def session_valid(self) -> bool:
        """True while a session id exists and has not passed its expiry."""
        return bool(
            self._session_id
            and self._session_expires_at
            and datetime.now(UTC) < self._session_expires_at
        )

    def invalidate_session(self) -> None:
        self._session_id = None
        self._session_expires_at = None

    async def authenticate(self) -> str:
        """Return a valid session id, logging in when none is cached."""
        async with self._lock:
            if self.session_valid:
                return self._session_id  # type: ignore[return-value]
            return await self._login()

    async def _login(self) -> str:
        missing = [
            name
            for name, value in (
                ("BILLCOM_DEV_KEY", self._dev_key),
                ("BILLCOM_USERNAME", self._username),
                ("BILLCOM_PASSWORD", self._password),
                ("BILLCOM_ORG_ID", self._org_id),
            )
            if not value
        ]
        if missing:
            raise AuthenticationError(
                f"Bill.com credentials are not configured: {', '.join(missing)}"
            )

        client = await self._get_client()
        response = await client.post(
            "/v2/Login.json",
            data={
                "userName": self._username,
                "password": self._password,
                "devKey": self._dev_key,
                "orgId": self._org_id,
            },
        )

        if response.status_code >= 400:
            raise AuthenticationError(
                f"Bill.com authentication failed: HTTP {response.status_code}",
                status_code=response.status_code,
            )

        data = self._decode(response)
        if data.get("response_status") != 0:
            error = data.get("response_data") or {}
            raise AuthenticationError(
                "Bill.com authentication failed: "
                f"{error.get('error_message', 'Unknown error')}",
                error_code=error.get("error_code"),
                details=error,
            )

        payload = data.get("response_data") or {}
        session_id = payload.get("sessionId")
        if not session_id:
            raise AuthenticationError("Bill.com authentication failed: no session id returned")

        self._session_id = session_id
        self._session_expires_at = datetime.now(UTC) + self._session_ttl
        logger.info("billcom_authenticated", org_id=self._org_id)
        return session_id

    # === Requests ===

    @staticmethod
    def _decode(response: httpx.Response) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as e:
            raise BillcomAPIError(
                "Invalid JSON from Bill.com",
                status_code=response.status_code,
                details={"raw": response.text[:500]},
            ) from e
        if not isinstance(data, dict):
            raise BillcomAPIError("Unexpected Bill.com response format", details=data)
        return data

    async def _call(
        self,
        endpoint: str,
        payload: dict[str, Any],
        retry_count: int = 0,
        reauthenticated: bool = False,
    ) -> Any:
        """POST a form-encoded v2 request and unwrap ``response_data``."""
        session_id = await self.authenticate()
        client = await self._get_client()

        try:
            response = await client.post(
                f"/v2/{endpoint}",
                data={
                    "devKey": self._dev_key,
                    "sessionId": session_id,
                    "data": jsonlib.dumps(payload),
                },
            )
        except httpx.RequestError as e:
            if retry_count < self._max_retries:
                await asyncio.sleep(2**retry_count)  # Exponential backoff
                return await self._call(endpoint, payload, retry_count + 1, reauthenticated)
            raise BillcomAPIError(f"Request to {endpoint} failed: {e}") from e

        if response.status_code >= 500 and retry_count < self._max_retries:
            await asyncio.sleep(2**retry_count)
            return await self._call(endpoint, payload, retry_count + 1, reauthenticated)
        if response.status_code >= 400:
            raise BillcomAPIError(
                f"Bill.com API error: {response.status_code}",
                status_code=response.status_code,
                details={"raw": response.text[:500]},
            )

        data = self._decode(response)
        if data.get("response_status") == 0:
            return data.get("response_data")

        error = data.get("response_data") or {}
        error_code = error.get("error_code")
        if error_code in _SESSION_ERROR_CODES:
            if reauthenticated:
                raise SessionExpiredError(
                    "Bill.com session rejected after re-login", error_code=error_code
                )
            logger.info("billcom_session_expired", endpoint=endpoint)
            self.invalidate_session()
            return await self._call(endpoint, payload, retry_count, reauthenticated=True)

        raise BillcomAPIError(
            f"Bill.com API error: {error.get('error_message', 'Unknown error')}",
            error_code=error_code,
            details=error,
        )

    # === Invoices & Customers ===

    async def list_invoices(
        self,
        offset: int,
        page_size: int = MAX_PAGE_SIZE,
        sort_field: str = "createdTime",
        ascending: bool = False,
    ) -> list[dict[str, Any]]:
        """Fetch one page of invoices (newest first by default)."""
        page_size = min(max(page_size, 1), MAX_PAGE_SIZE)
        result = await self._call(
            "List/Invoice.json",
            {
                "start": offset,
                "max": page_size,
                "sort": [{"field": sort_field, "asc": ascending}],
            },
        )
        if result is None:
            return []
        if not isinstance(result, list):
            raise BillcomAPIError("Unexpected invoice list format", details=result)
        return result

    async def get_customer(self, customer_id: str) -> dict[str, Any]:
        """Read a single customer record by id."""
        result = await self._call("Crud/Read/Customer.json", {"id": customer_id})
        if not isinstance(result, dict):
            raise BillcomAPIError(
                f"Customer {customer_id} not returned", details=result
            )
        return result
