"""Tests for the Bill.com client."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from county_tax.clients.billcom import (
    AuthenticationError,
    BillcomAPIError,
    BillcomClient,
    SessionExpiredError,
)
from county_tax.config import Settings


@pytest.fixture
def client():
    """Create a BillcomClient instance."""
    return BillcomClient(
        api_url="https://api.bill.test/api/",
        dev_key="dev-key",
        username="test@example.com",
        password="testpassword",
        org_id="org-1",
    )


def _response(body, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    response.text = json.dumps(body)
    return response


def _ok(data):
    return _response({"response_status": 0, "response_message": "Success", "response_data": data})


def _bdc_error(code, message="Error"):
    return _response(
        {
            "response_status": 1,
            "response_message": "Error",
            "response_data": {"error_code": code, "error_message": message},
        }
    )


class TestBillcomClientInit:
    """Tests for BillcomClient initialization."""

    def test_init_with_explicit_params(self, client):
        assert client.api_url == "https://api.bill.test/api"
        assert client._username == "test@example.com"
        assert client._org_id == "org-1"
        assert client.session_valid is False

    def test_init_from_settings(self):
        client = BillcomClient()

        assert client._dev_key == "dev-key-test"
        assert client._password == "testpassword"

    @pytest.mark.asyncio
    async def test_login_refused_without_credentials(self, monkeypatch):
        for name in ("BILLCOM_DEV_KEY", "BILLCOM_USERNAME", "BILLCOM_PASSWORD", "BILLCOM_ORG_ID"):
            monkeypatch.delenv(name, raising=False)
        client = BillcomClient(settings=Settings(_env_file=None))

        with patch.object(client, "_get_client") as mock_get:
            with pytest.raises(AuthenticationError, match="BILLCOM_DEV_KEY, BILLCOM_USERNAME"):
                await client.authenticate()

        mock_get.assert_not_called()


class TestAuthentication:
    """Tests for session login and reuse."""

    @pytest.mark.asyncio
    async def test_login_success(self, client, billcom_login_response):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=_response(billcom_login_response))
            mock_get.return_value = mock_http

            session_id = await client.authenticate()

        assert session_id == "session-123"
        assert client.session_valid is True
        call = mock_http.post.call_args
        assert call.args[0] == "/v2/Login.json"
        assert call.kwargs["data"]["orgId"] == "org-1"
        assert call.kwargs["data"]["devKey"] == "dev-key"

    @pytest.mark.asyncio
    async def test_session_is_reused_until_expiry(self, client, billcom_login_response):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=_response(billcom_login_response))
            mock_get.return_value = mock_http

            await client.authenticate()
            await client.authenticate()
            assert mock_http.post.await_count == 1

            client._session_expires_at = datetime.now(UTC) - timedelta(seconds=1)
            await client.authenticate()
            assert mock_http.post.await_count == 2

    @pytest.mark.asyncio
    async def test_login_rejected(self, client):
        body = {
            "response_status": 1,
            "response_data": {"error_code": "BDC_1102", "error_message": "Wrong password"},
        }
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=_response(body))
            mock_get.return_value = mock_http

            with pytest.raises(AuthenticationError) as exc_info:
                await client.authenticate()

        assert "Wrong password" in str(exc_info.value)
        assert exc_info.value.error_code == "BDC_1102"
        assert client.session_valid is False

    @pytest.mark.asyncio
    async def test_login_http_error(self, client):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=_response({}, status_code=401))
            mock_get.return_value = mock_http

            with pytest.raises(AuthenticationError) as exc_info:
                await client.authenticate()

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_context_manager_authenticates(self, client, billcom_login_response):
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=_response(billcom_login_response))
            mock_get.return_value = mock_http

            async with client as c:
                assert c.session_valid is True


class TestListInvoices:
    """Tests for invoice paging."""

    @pytest.mark.asyncio
    async def test_list_invoices_payload(self, client, billcom_login_response):
        invoices = [{"id": "00e01", "invoiceNumber": "1001"}]
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(
                side_effect=[_response(billcom_login_response), _ok(invoices)]
            )
            mock_get.return_value = mock_http

            result = await client.list_invoices(offset=999)

        assert result == invoices
        call = mock_http.post.call_args
        assert call.args[0] == "/v2/List/Invoice.json"
        assert call.kwargs["data"]["sessionId"] == "session-123"
        payload = json.loads(call.kwargs["data"]["data"])
        assert payload["start"] == 999
        assert payload["max"] == 999
        assert payload["sort"] == [{"field": "createdTime", "asc": False}]

    @pytest.mark.asyncio
    async def test_page_size_capped(self, client):
        client._session_id = "session-123"
        client._session_expires_at = datetime.now(UTC) + timedelta(minutes=5)
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=_ok([]))
            mock_get.return_value = mock_http

            await client.list_invoices(offset=0, page_size=5000)

        payload = json.loads(mock_http.post.call_args.kwargs["data"]["data"])
        assert payload["max"] == 999

    @pytest.mark.asyncio
    async def test_null_page_is_empty(self, client):
        client._session_id = "session-123"
        client._session_expires_at = datetime.now(UTC) + timedelta(minutes=5)
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=_ok(None))
            mock_get.return_value = mock_http

            assert await client.list_invoices(offset=0) == []

    @pytest.mark.asyncio
    async def test_expired_session_relogs_once(self, client, billcom_login_response):
        """Test that a session error triggers one re-login and retry."""
        client._session_id = "stale-session"
        client._session_expires_at = datetime.now(UTC) + timedelta(minutes=5)
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(
                side_effect=[
                    _bdc_error("BDC_1109", "Session is invalid"),
                    _response(billcom_login_response),
                    _ok([{"id": "00e01"}]),
                ]
            )
            mock_get.return_value = mock_http

            result = await client.list_invoices(offset=0)

        assert result == [{"id": "00e01"}]
        assert client._session_id == "session-123"

    @pytest.mark.asyncio
    async def test_session_rejected_after_relogin(self, client, billcom_login_response):
        client._session_id = "stale-session"
        client._session_expires_at = datetime.now(UTC) + timedelta(minutes=5)
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(
                side_effect=[
                    _bdc_error("BDC_1109"),
                    _response(billcom_login_response),
                    _bdc_error("BDC_1109"),
                ]
            )
            mock_get.return_value = mock_http

            with pytest.raises(SessionExpiredError):
                await client.list_invoices(offset=0)

    @pytest.mark.asyncio
    async def test_api_error(self, client):
        client._session_id = "session-123"
        client._session_expires_at = datetime.now(UTC) + timedelta(minutes=5)
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=_bdc_error("BDC_1001", "Bad request"))
            mock_get.return_value = mock_http

            with pytest.raises(BillcomAPIError) as exc_info:
                await client.list_invoices(offset=0)

        assert exc_info.value.error_code == "BDC_1001"

    @pytest.mark.asyncio
    async def test_network_error_retried(self, client):
        client._session_id = "session-123"
        client._session_expires_at = datetime.now(UTC) + timedelta(minutes=5)
        with (
            patch.object(client, "_get_client") as mock_get,
            patch("county_tax.clients.billcom.asyncio.sleep", new=AsyncMock()) as mock_sleep,
        ):
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(
                side_effect=[httpx.ConnectError("refused"), _ok([{"id": "00e01"}])]
            )
            mock_get.return_value = mock_http

            result = await client.list_invoices(offset=0)

        assert result == [{"id": "00e01"}]
        mock_sleep.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_network_error_exhausts_retries(self, client):
        client._session_id = "session-123"
        client._session_expires_at = datetime.now(UTC) + timedelta(minutes=5)
        with (
            patch.object(client, "_get_client") as mock_get,
            patch("county_tax.clients.billcom.asyncio.sleep", new=AsyncMock()),
        ):
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(side_effect=httpx.ConnectError("refused"))
            mock_get.return_value = mock_http

            with pytest.raises(BillcomAPIError):
                await client.list_invoices(offset=0)

        # One attempt plus the configured three retries
        assert mock_http.post.await_count == 4


class TestGetCustomer:
    """Tests for customer reads."""

    @pytest.mark.asyncio
    async def test_get_customer(self, client):
        client._session_id = "session-123"
        client._session_expires_at = datetime.now(UTC) + timedelta(minutes=5)
        customer = {"id": "0cu01", "name": "Blue Ridge Dental", "billAddressCity": "Asheville"}
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=_ok(customer))
            mock_get.return_value = mock_http

            result = await client.get_customer("0cu01")

        assert result == customer
        assert mock_http.post.call_args.args[0] == "/v2/Crud/Read/Customer.json"

    @pytest.mark.asyncio
    async def test_get_customer_missing(self, client):
        client._session_id = "session-123"
        client._session_expires_at = datetime.now(UTC) + timedelta(minutes=5)
        with patch.object(client, "_get_client") as mock_get:
            mock_http = AsyncMock()
            mock_http.post = AsyncMock(return_value=_ok(None))
            mock_get.return_value = mock_http

            with pytest.raises(BillcomAPIError):
                await client.get_customer("0cu404")

    @pytest.mark.asyncio
    async def test_close(self, client):
        """Test closing the client."""
        mock_http = AsyncMock()
        client._client = mock_http

        await client.close()

        mock_http.aclose.assert_awaited_once()
        assert client._client is None
