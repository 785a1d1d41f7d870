"""
JWKS Client - async key-set client for the identity provider.

Keys are fetched with httpx, indexed by kid, and cached process-wide with a
TTL. A token signed with a kid we have not seen triggers an on-demand refresh
so that key rotation at the provider never locks users out.
"""

import time
import logging
from typing import Optional, Dict, Any

import httpx
from jwt import PyJWK

from .errors import KeySetUnavailable

logger = logging.getLogger(__name__)


class JwksClient:
    """
    Async JWT key client with TTL caching and refresh on unknown kid.

    Compatible in spirit with PyJWKClient, but never blocks the event loop.
    Concurrent refreshes are tolerated rather than serialized.
    """

    def __init__(
        self,
        jwks_url: str,
        headers: Optional[Dict[str, str]] = None,
        cache_ttl_seconds: int = 600,
        min_refresh_interval_seconds: int = 30,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        """
        Args:
            jwks_url: The provider's well-known JWKS endpoint
            headers: Extra request headers (e.g. Supabase apikey)
            cache_ttl_seconds: How long a fetched key set is trusted
            min_refresh_interval_seconds: Minimum gap between unknown-kid refreshes
            client: Optional AsyncClient (tests inject a MockTransport)
            timeout: Request timeout when this client creates its own AsyncClient
        """
        self.jwks_url = jwks_url
        self.headers = headers or {}
        self.cache_ttl_seconds = cache_ttl_seconds
        self.min_refresh_interval_seconds = min_refresh_interval_seconds
        self._client = client
        self._timeout = timeout
        self._keys: Dict[str, PyJWK] = {}
        self._fetched_at: Optional[float] = None
        self._failed_at: Optional[float] = None

    def _is_stale(self) -> bool:
        if self._fetched_at is None:
            return True
        return time.time() - self._fetched_at > self.cache_ttl_seconds

    def _can_refresh(self) -> bool:
        if self._fetched_at is None:
            return True
        return time.time() - self._fetched_at >= self.min_refresh_interval_seconds

    def _in_backoff(self) -> bool:
        """True shortly after a failed refresh; min_refresh_interval_seconds doubles as the backoff."""
        if self._failed_at is None:
            return False
        return time.time() - self._failed_at < self.min_refresh_interval_seconds

    @staticmethod
    def _load_keys(jwks_data: Dict[str, Any]) -> Dict[str, PyJWK]:
        """Load and index all usable keys by kid."""
        keys: Dict[str, PyJWK] = {}
        for key_data in jwks_data.get("keys", []):
            kid = key_data.get("kid")
            if not kid:
                continue
            if key_data.get("use", "sig") != "sig":
                continue
            try:
                keys[kid] = PyJWK.from_dict(key_data)
                logger.debug(f"Loaded key: {kid}")
            except Exception as e:
                logger.warning(f"Failed to load key {kid}: {e}")
        return keys

    async def _fetch(self) -> Dict[str, Any]:
        try:
            if self._client is not None:
                response = await self._client.get(self.jwks_url, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self.jwks_url, headers=self.headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise KeySetUnavailable(
                f"JWKS endpoint returned {e.response.status_code} (URL: {self.jwks_url})"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise KeySetUnavailable(f"Failed to fetch JWKS from {self.jwks_url}: {e}") from e

    async def refresh(self) -> Dict[str, PyJWK]:
        """
        Fetch the key set now.

        Falls back to the previously cached keys if the fetch fails and any
        are available.

        Raises:
            KeySetUnavailable: If no keys can be obtained at all
        """
        try:
            jwks_data = await self._fetch()
        except KeySetUnavailable:
            self._failed_at = time.time()
            if self._keys:
                logger.warning(f"JWKS refresh failed, serving {len(self._keys)} cached keys: {self.jwks_url}")
                return self._keys
            raise

        keys = self._load_keys(jwks_data)
        if not keys:
            self._failed_at = time.time()
            if self._keys:
                logger.warning(f"JWKS from {self.jwks_url} had no usable keys, keeping cached keys")
                return self._keys
            raise KeySetUnavailable(f"JWKS from {self.jwks_url} contains no usable signing keys")

        self._keys = keys
        self._fetched_at = time.time()
        self._failed_at = None
        logger.info(f"✓ Loaded {len(keys)} signing keys from {self.jwks_url}")
        return keys

    async def get_signing_key(self, kid: str) -> Optional[PyJWK]:
        """
        Get the signing key for a key ID.

        Returns:
            PyJWK, or None if the kid is unknown even after a refresh

        Raises:
            KeySetUnavailable: If the key set cannot be fetched
        """
        keys = self._keys
        if self._is_stale():
            if not self._in_backoff():
                keys = await self.refresh()
            elif not keys:
                raise KeySetUnavailable(f"JWKS fetch from {self.jwks_url} failed recently, waiting before retrying")

        if kid in keys:
            return keys[kid]

        if self._can_refresh() and not self._in_backoff():
            logger.info(f"Unknown kid '{kid}', refreshing JWKS")
            keys = await self.refresh()
            if kid in keys:
                return keys[kid]

        logger.warning(f"Key '{kid}' not found in JWKS. Available keys: {list(keys.keys())}")
        return None

    def get_stats(self) -> Dict[str, Any]:
        return {
            "jwks_url": self.jwks_url,
            "key_count": len(self._keys),
            "fetched_at": self._fetched_at,
            "stale": self._is_stale(),
            "failed_at": self._failed_at,
        }


# JWKS client cache (module-level, one client per URL)
_jwks_clients: Dict[str, JwksClient] = {}


def get_jwks_client(jwks_url: str, **kwargs) -> JwksClient:
    """Get or create the process-wide JWKS client for a URL."""
    client = _jwks_clients.get(jwks_url)
    if client is None:
        client = JwksClient(jwks_url, **kwargs)
        _jwks_clients[jwks_url] = client
        logger.info(f"JWKS client initialized: {jwks_url}")
    return client


def reset_jwks_clients() -> None:
    """Forget all process-wide JWKS clients (mainly for testing)."""
    _jwks_clients.clear()
