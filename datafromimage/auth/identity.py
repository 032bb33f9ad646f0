"""
Access token verification against the hosted identity provider.

The provider owns sign-in (magic-link email) and issues access tokens. This
service never sees passwords or sessions; it asks the provider who a token
belongs to and caches the answer for a few minutes.
"""

import hashlib
import logging
from dataclasses import dataclass

import httpx
from cachetools import TTLCache

from datafromimage.config import IdentityConfig
from datafromimage.observability.metrics import (
    track_identity_cache_hit,
    track_identity_cache_miss,
)

logger = logging.getLogger(__name__)


class IdentityUnavailable(Exception):
    """The identity provider could not be reached or answered with a server error."""

    pass


@dataclass(frozen=True)
class Identity:
    """A verified user as reported by the identity provider."""

    user_id: str
    email: str | None = None


class IdentityClient:
    """
    Verifies bearer access tokens with GET {url}/auth/v1/user.

    Only positive answers are cached, keyed by a hash of the token so raw
    tokens are never held in memory longer than the request.
    """

    def __init__(self, config: IdentityConfig, http_client: httpx.AsyncClient | None = None):
        self.config = config
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._cache: TTLCache = TTLCache(
            maxsize=config.cache_max_size, ttl=max(config.cache_ttl_seconds, 1)
        )

    @staticmethod
    def _cache_key(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    async def verify_token(self, token: str) -> Identity | None:
        """
        Resolve an access token to an identity.

        Returns:
            Identity, or None if the provider rejects the token

        Raises:
            IdentityUnavailable: Provider unconfigured, unreachable or failing
        """
        key = self._cache_key(token)
        cached = self._cache.get(key)
        if cached is not None:
            track_identity_cache_hit()
            return cached
        track_identity_cache_miss()

        if not self.config.url:
            raise IdentityUnavailable("Identity provider not configured")

        try:
            response = await self.http_client.get(
                self.config.user_endpoint,
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": self.config.anon_key,
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Identity provider request failed: {e}")
            raise IdentityUnavailable(f"Identity provider unreachable: {e}") from e

        if response.status_code in (401, 403):
            return None
        if response.status_code >= 500:
            raise IdentityUnavailable(f"Identity provider returned {response.status_code}")
        if response.status_code != 200:
            logger.warning(f"Unexpected identity provider status: {response.status_code}")
            return None

        try:
            body = response.json()
        except ValueError as e:
            raise IdentityUnavailable("Identity provider returned invalid JSON") from e

        user_id = body.get("id") if isinstance(body, dict) else None
        if not user_id:
            return None

        identity = Identity(user_id=user_id, email=body.get("email"))
        if self.config.cache_ttl_seconds > 0:
            self._cache[key] = identity
        return identity

    def invalidate(self, token: str) -> None:
        self._cache.pop(self._cache_key(token), None)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()
