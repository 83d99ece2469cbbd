import logging
import re
from datetime import datetime, timezone
from typing import Optional, Tuple

import httpx

from ..errors import AuthError, GatewayError
from ..schemas import GatewayStatus

logger = logging.getLogger(__name__)

API_URLS = {
    "sandbox": {
        "auth": "https://cybqa.pesapal.com/pesapalv3/api/Auth/RequestToken",
        "getStatus": "https://cybqa.pesapal.com/pesapalv3/api/Transactions/GetTransactionStatus",
    },
    "production": {
        "auth": "https://pay.pesapal.com/v3/api/Auth/RequestToken",
        "getStatus": "https://pay.pesapal.com/v3/api/Transactions/GetTransactionStatus",
    },
}

STATUS_COMPLETED = 1

# pesapal status_code -> label
PAYMENT_STATUS = {
    0: "INVALID",
    1: "COMPLETED",
    2: "FAILED",
    3: "REVERSED",
}

_FAILED_CODES = {2, 3}

_FRACTION = re.compile(r"\.(\d+)")


def get_api_url(endpoint: str, env: str = "sandbox") -> str:
    env = "production" if env == "production" else "sandbox"
    return API_URLS[env][endpoint]


def status_label(status_code: Optional[int]) -> str:
    return PAYMENT_STATUS.get(status_code, "UNKNOWN")


def interpret_status(status_code: Optional[int]) -> str:
    """Map a gateway code onto completed / failed / pending. Unknown codes are pending."""
    if status_code == STATUS_COMPLETED:
        return "completed"
    if status_code in _FAILED_CODES:
        return "failed"
    return "pending"


def parse_expiry(value: str) -> datetime:
    """Parse pesapal's expiryDate, e.g. ``2021-08-26T12:29:30.5177702Z``."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # fromisoformat accepts at most microseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def as_float(value) -> Optional[float]:
    try:
        return float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _error_message(data: dict, default: str) -> str:
    error = data.get("error")
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or default
    return default


class PesapalClient:
    """Thin async client for the two Pesapal v3 calls verification needs."""

    def __init__(self,
                 consumer_key: str,
                 consumer_secret: str,
                 env: str = "sandbox",
                 timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.env = env
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def request_token(self) -> Tuple[str, datetime]:
        if not self.consumer_key or not self.consumer_secret:
            raise AuthError("Pesapal credentials not configured")

        payload = {
            "consumer_key": self.consumer_key,
            "consumer_secret": self.consumer_secret,
        }
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        try:
            async with self._client() as client:
                resp = await client.post(get_api_url("auth", self.env), json=payload, headers=headers)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Pesapal auth request failed: %s", e)
            raise AuthError(f"Failed to authenticate with Pesapal: {e}") from e

        token = data.get("token")
        if not token:
            raise AuthError(_error_message(data, "Failed to authenticate with Pesapal"))
        try:
            expiry = parse_expiry(data.get("expiryDate") or "")
        except ValueError as e:
            raise AuthError(f"Unreadable token expiry: {data.get('expiryDate')!r}") from e
        return token, expiry

    async def get_status(self, tracking_id: str, token: str) -> GatewayStatus:
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            async with self._client() as client:
                resp = await client.get(
                    get_api_url("getStatus", self.env),
                    params={"orderTrackingId": tracking_id},
                    headers=headers,
                )
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Pesapal status request failed for %s: %s", tracking_id, e)
            raise GatewayError(f"Failed to get payment status: {e}") from e

        status_code = data.get("status_code")
        if status_code is None:
            raise GatewayError(_error_message(data, "Failed to get payment status"))
        try:
            status_code = int(status_code)
        except (TypeError, ValueError) as e:
            raise GatewayError(f"Unreadable status_code {status_code!r}") from e

        return GatewayStatus(
            status_code=status_code,
            status_label=status_label(status_code),
            state=interpret_status(status_code),
            amount=as_float(data.get("amount")),
            currency=data.get("currency"),
            payment_method=data.get("payment_method"),
            confirmation_code=data.get("confirmation_code"),
            merchant_reference=data.get("merchant_reference"),
            payment_account=data.get("payment_account"),
            payment_status_description=data.get("payment_status_description"),
            description=data.get("description"),
            message=data.get("message"),
            raw=data,
        )
