"""
Access token broker for the Daraja API.

Tokens live for roughly an hour. The broker caches the current token in an
injected cache, refreshes it shortly before expiry, and coalesces concurrent
refreshes so a cold cache costs a single outbound request no matter how many
callers are waiting.
"""
import asyncio
import json
import time
from dataclasses import dataclass
from typing import Optional, Protocol

import redis.asyncio as aioredis
import structlog

from mpesa_settlement.config import Settings, get_settings
from mpesa_settlement.integrations.daraja_client import AuthError, DarajaClient
from mpesa_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 3599


@dataclass(frozen=True)
class AccessToken:
    """A bearer token and the epoch second after which it must not be used."""

    value: str
    expires_at: float

    def is_valid(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) < self.expires_at


class TokenCache(Protocol):
    """Storage for the current access token."""

    async def get(self) -> Optional[AccessToken]:
        ...

    async def set(self, token: AccessToken) -> None:
        ...

    async def clear(self) -> None:
        ...


class InMemoryTokenCache:
    """Process-local token cache."""

    def __init__(self) -> None:
        self._token: Optional[AccessToken] = None

    async def get(self) -> Optional[AccessToken]:
        return self._token

    async def set(self, token: AccessToken) -> None:
        self._token = token

    async def clear(self) -> None:
        self._token = None


class RedisTokenCache:
    """
    Token cache shared between service instances.

    The Redis key expires together with the token, so a stale token
    is never served after a restart.
    """

    def __init__(
        self,
        redis_client: Optional[aioredis.Redis] = None,
        key: str = "mpesa:access_token",
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.redis_client = redis_client
        self.key = key

    def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    async def get(self) -> Optional[AccessToken]:
        try:
            raw = await self._ensure_redis().get(self.key)
        except Exception as e:
            # A cache outage costs an extra token request, not a failed payment
            logger.warning("token_cache_read_error", error=str(e))
            return None
        if not raw:
            return None
        data = json.loads(raw)
        return AccessToken(value=data["value"], expires_at=float(data["expires_at"]))

    async def set(self, token: AccessToken) -> None:
        ttl = int(token.expires_at - time.time())
        if ttl <= 0:
            return
        try:
            await self._ensure_redis().setex(
                self.key,
                ttl,
                json.dumps({"value": token.value, "expires_at": token.expires_at}),
            )
        except Exception as e:
            logger.warning("token_cache_write_error", error=str(e))

    async def clear(self) -> None:
        try:
            await self._ensure_redis().delete(self.key)
        except Exception as e:
            logger.warning("token_cache_clear_error", error=str(e))

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()


class CredentialBroker:
    """
    Hands out a valid Daraja access token.

    Features:
    - Fails with AuthError before any network call when credentials are unset
    - Refreshes ``refresh_skew`` seconds ahead of the gateway-reported expiry
    - Single-flight refresh: concurrent callers share one in-flight request
      and all receive its token or its exception
    - A failed refresh is not cached; the next call tries again
    """

    def __init__(
        self,
        client: Optional[DarajaClient] = None,
        cache: Optional[TokenCache] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.client = client or DarajaClient(self.settings)
        self.cache: TokenCache = cache or InMemoryTokenCache()
        self.refresh_skew = self.settings.mpesa_token_refresh_skew_seconds
        self._refresh_task: Optional[asyncio.Task] = None

    async def get_access_token(self) -> str:
        """
        Return a valid access token, refreshing it if needed.

        Raises:
            AuthError: If credentials are missing or rejected
            DarajaError: If the token endpoint cannot be reached
        """
        if not self.settings.has_consumer_credentials:
            logger.error("mpesa_consumer_credentials_missing")
            raise AuthError("M-Pesa consumer key or secret is not configured")

        if self._refresh_task is None:
            token = await self.cache.get()
            if token is not None and token.is_valid():
                return token.value

        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._refresh())
            self._refresh_task.add_done_callback(self._clear_refresh_task)

        # shield: a cancelled waiter must not cancel the refresh for the others
        return await asyncio.shield(self._refresh_task)

    def _clear_refresh_task(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None
        if not task.cancelled():
            # Mark the exception retrieved even when every waiter was cancelled
            task.exception()

    async def _refresh(self) -> str:
        # Another caller may have stored a token while our cache read was in flight
        token = await self.cache.get()
        if token is not None and token.is_valid():
            return token.value

        logger.info("access_token_refresh_started")
        try:
            body = await self.client.fetch_access_token(
                self.settings.mpesa_consumer_key,
                self.settings.mpesa_consumer_secret,
            )
        except Exception as e:
            metrics.record_token_refresh("failed")
            logger.error("access_token_refresh_failed", error=str(e), error_type=type(e).__name__)
            raise

        try:
            lifetime = int(body.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS))
        except (TypeError, ValueError):
            lifetime = DEFAULT_TOKEN_LIFETIME_SECONDS

        token = AccessToken(
            value=body["access_token"],
            expires_at=time.time() + max(lifetime - self.refresh_skew, 0),
        )
        await self.cache.set(token)
        metrics.record_token_refresh("success")
        logger.info("access_token_refreshed", expires_in=lifetime)
        return token.value

    async def invalidate(self) -> None:
        """Drop the cached token, e.g. after the gateway answered 401."""
        await self.cache.clear()
        logger.info("access_token_invalidated")


def build_token_cache(settings: Optional[Settings] = None) -> TokenCache:
    """Create the token cache selected by ``token_cache_backend``."""
    settings = settings or get_settings()
    if settings.token_cache_backend == "redis":
        return RedisTokenCache(settings=settings)
    return InMemoryTokenCache()
