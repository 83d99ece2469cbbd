from datetime import datetime, timezone

import httpx
import pytest

from pesapal_service.errors import AuthError, GatewayError
from pesapal_service.services.pesapal import (
    PesapalClient,
    get_api_url,
    interpret_status,
    parse_expiry,
    status_label,
)


def test_parse_expiry_handles_seven_fraction_digits():
    parsed = parse_expiry("2021-08-26T12:29:30.5177702Z")
    assert parsed == datetime(2021, 8, 26, 12, 29, 30, 517770, tzinfo=timezone.utc)


def test_parse_expiry_assumes_utc_without_offset():
    assert parse_expiry("2021-08-26T12:29:30").tzinfo == timezone.utc


@pytest.mark.parametrize("code, state", [(1, "completed"), (2, "failed"), (3, "failed"), (0, "pending"), (7, "pending"), (None, "pending")])
def test_interpret_status_never_guesses_completed(code, state):
    assert interpret_status(code) == state


def test_status_label_and_urls():
    assert status_label(1) == "COMPLETED"
    assert status_label(42) == "UNKNOWN"
    assert get_api_url("auth", "production").startswith("https://pay.pesapal.com/v3/")
    assert "cybqa" in get_api_url("getStatus", "anything-else")


@pytest.mark.asyncio
async def test_get_status_parses_response(fake_pesapal):
    client = fake_pesapal.client()
    status = await client.get_status("TRK-1", "tok")

    assert status.is_completed
    assert status.status_label == "COMPLETED"
    assert status.amount == 500.0
    assert status.payment_method == "M-Pesa"
    assert status.raw["confirmation_code"] == "QK12ABC"


@pytest.mark.asyncio
async def test_get_status_sends_bearer_token_and_tracking_id():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["tracking"] = request.url.params["orderTrackingId"]
        return httpx.Response(200, json={"status_code": 0})

    client = PesapalClient("k", "s", transport=httpx.MockTransport(handler))
    status = await client.get_status("TRK-9", "abc")

    assert seen == {"auth": "Bearer abc", "tracking": "TRK-9"}
    assert status.state == "pending"
    assert status.amount is None


@pytest.mark.asyncio
async def test_get_status_transport_failure_is_gateway_error(fake_pesapal):
    fake_pesapal.raise_on_status = httpx.ConnectTimeout("timed out")
    with pytest.raises(GatewayError):
        await fake_pesapal.client().get_status("TRK-1", "tok")


@pytest.mark.asyncio
async def test_get_status_http_error_is_gateway_error(fake_pesapal):
    fake_pesapal.status_http_code = 500
    with pytest.raises(GatewayError):
        await fake_pesapal.client().get_status("TRK-1", "tok")


@pytest.mark.asyncio
async def test_get_status_without_status_code_is_gateway_error(fake_pesapal):
    fake_pesapal.status = {"error": {"code": "invalid_tracking", "message": "Unknown tracking id"}}
    with pytest.raises(GatewayError, match="Unknown tracking id"):
        await fake_pesapal.client().get_status("TRK-1", "tok")


@pytest.mark.asyncio
async def test_request_token_returns_token_and_expiry(fake_pesapal):
    token, expiry = await fake_pesapal.client().request_token()
    assert token == "token-1"
    assert expiry.year == 2099


@pytest.mark.asyncio
async def test_request_token_without_token_is_auth_error():
    def handler(request):
        return httpx.Response(200, json={"token": None, "error": {"message": "invalid consumer key"}})

    client = PesapalClient("k", "s", transport=httpx.MockTransport(handler))
    with pytest.raises(AuthError, match="invalid consumer key"):
        await client.request_token()


@pytest.mark.asyncio
async def test_request_token_requires_credentials():
    with pytest.raises(AuthError):
        await PesapalClient("", "").request_token()
