import os

# settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PESAPAL_CONSUMER_KEY", "test-key")
os.environ.setdefault("PESAPAL_CONSUMER_SECRET", "test-secret")
os.environ.setdefault("PAYMENT_SIGNING_SECRET", "signing-secret")
os.environ.setdefault("SERVICE_API_KEY", "service-key")
os.environ.setdefault("ADMIN_API_KEY", "admin-key")

import httpx
import pytest
import pytest_asyncio

from pesapal_service.db import init_db, make_engine, make_session_factory
from pesapal_service.models import PendingPayment
from pesapal_service.services.fulfillment import FulfillmentDispatcher
from pesapal_service.services.pesapal import PesapalClient
from pesapal_service.services.signing import sign_metadata
from pesapal_service.services.store import PaymentStore
from pesapal_service.services.token_cache import GatewayAuthCache
from pesapal_service.services.verification import VerificationOrchestrator

SECRET = "signing-secret"


class FakePesapal:
    """Answers the auth and status endpoints through httpx.MockTransport."""

    def __init__(self):
        self.status = {
            "status_code": 1,
            "amount": 500,
            "currency": "KES",
            "payment_method": "M-Pesa",
            "confirmation_code": "QK12ABC",
        }
        self.status_http_code = 200
        self.auth_calls = 0
        self.status_calls = 0
        self.raise_on_status = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/Auth/RequestToken"):
            self.auth_calls += 1
            return httpx.Response(200, json={
                "token": f"token-{self.auth_calls}",
                "expiryDate": "2099-01-01T00:00:00.0000000Z",
                "error": None,
                "status": "200",
            })
        if request.url.path.endswith("/Transactions/GetTransactionStatus"):
            self.status_calls += 1
            if self.raise_on_status is not None:
                raise self.raise_on_status
            return httpx.Response(self.status_http_code, json=self.status)
        return httpx.Response(404)

    def client(self) -> PesapalClient:
        return PesapalClient("test-key", "test-secret", transport=httpx.MockTransport(self.handler))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path}/payments.db")
    await init_db(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return PaymentStore(session_factory)


@pytest.fixture
def add_payment(session_factory):
    async def _add(order_id="RC-1001", metadata=None, tracking_id="TRK-1001", signature=None, **fields):
        if metadata is None:
            metadata = {"type": "credit_purchase", "agentId": "A1", "credits": 50, "amount": 500}
        payment = PendingPayment(
            order_id=order_id,
            order_tracking_id=tracking_id,
            payment_metadata=metadata,
            signature=signature if signature is not None else sign_metadata(metadata, SECRET),
            **fields,
        )
        async with session_factory() as session:
            session.add(payment)
            await session.commit()
        return payment
    return _add


@pytest.fixture
def fake_pesapal():
    return FakePesapal()


@pytest.fixture
def dispatcher():
    return FulfillmentDispatcher()


@pytest.fixture
def orchestrator(store, fake_pesapal, dispatcher):
    client = fake_pesapal.client()
    return VerificationOrchestrator(
        store=store,
        auth=GatewayAuthCache(client),
        gateway=client,
        dispatcher=dispatcher,
        signing_secret=SECRET,
        amount_tolerance=0.01,
    )
