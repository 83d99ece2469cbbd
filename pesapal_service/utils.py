from functools import lru_cache
from fastapi import Header, HTTPException
from typing import Optional
from .config import settings
from .db import async_session
from .services.fulfillment import FulfillmentDispatcher
from .services.pesapal import PesapalClient
from .services.store import PaymentStore
from .services.token_cache import GatewayAuthCache
from .services.verification import VerificationOrchestrator


def require_service_api_key(x_api_key: Optional[str] = Header(default=None)):
    if not settings.service_api_key or x_api_key != settings.service_api_key:
        raise HTTPException(status_code=401, detail="Invalid X-API-KEY")
    return True


def require_admin_key(authorization: Optional[str] = Header(default=None)):
    if not settings.admin_api_key or authorization != f"Bearer {settings.admin_api_key}":
        raise HTTPException(status_code=401, detail="Unauthorized")
    return True


@lru_cache
def get_pesapal_client() -> PesapalClient:
    return PesapalClient(
        consumer_key=settings.pesapal_consumer_key,
        consumer_secret=settings.pesapal_consumer_secret,
        env=settings.pesapal_env,
        timeout=settings.gateway_timeout,
    )


@lru_cache
def get_auth_cache() -> GatewayAuthCache:
    # one token cache per process
    return GatewayAuthCache(get_pesapal_client(), refresh_margin=settings.token_refresh_margin)


@lru_cache
def get_store() -> PaymentStore:
    return PaymentStore(async_session)


@lru_cache
def get_orchestrator() -> VerificationOrchestrator:
    return VerificationOrchestrator(
        store=get_store(),
        auth=get_auth_cache(),
        gateway=get_pesapal_client(),
        dispatcher=FulfillmentDispatcher(),
        signing_secret=settings.signing_secret,
        amount_tolerance=settings.amount_tolerance,
    )
