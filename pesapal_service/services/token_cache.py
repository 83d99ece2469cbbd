import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from ..models import utc_now
from .pesapal import PesapalClient

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class TokenCache:
    """Process-local holder for one bearer token and its expiry."""

    def __init__(self):
        self._value: Optional[Tuple[str, datetime]] = None

    def get(self) -> Optional[Tuple[str, datetime]]:
        return self._value

    def set(self, token: str, expiry: datetime) -> None:
        self._value = (token, expiry)

    def clear(self) -> None:
        self._value = None


class GatewayAuthCache:
    """
    Hands out a Pesapal bearer token, reusing the cached one while it has more
    than ``refresh_margin`` seconds left. Concurrent refreshes may both hit the
    auth endpoint; the last one to finish wins the cache, which is harmless.
    """

    def __init__(self,
                 client: PesapalClient,
                 cache: Optional[TokenCache] = None,
                 clock: Clock = utc_now,
                 refresh_margin: int = 60,
                 ):
        self.client = client
        self.cache = cache if cache is not None else TokenCache()
        self.clock = clock
        self.refresh_margin = timedelta(seconds=refresh_margin)

    async def get_valid_token(self) -> str:
        cached = self.cache.get()
        if cached:
            token, expiry = cached
            if expiry - self.clock() > self.refresh_margin:
                return token

        # AuthError propagates and nothing is cached
        token, expiry = await self.client.request_token()
        self.cache.set(token, expiry)
        logger.info("Fetched new Pesapal token, expires %s", expiry.isoformat())
        return token

    def invalidate(self) -> None:
        self.cache.clear()
