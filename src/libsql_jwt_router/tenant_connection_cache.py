"""
Tenant Connection Cache Module

Provides in-memory caching of open tenant connections so that Active tenants
are served without a registry round trip on every request.
"""

import time
import threading
from typing import Optional, Dict, Any, TYPE_CHECKING
from dataclasses import dataclass
import logging

if TYPE_CHECKING:
    from .resolver import TenantConnection

logger = logging.getLogger(__name__)


@dataclass
class CachedConnection:
    """A cached tenant connection and the descriptor it was opened with"""
    connection: "TenantConnection"
    db_url: str
    db_token: str
    cached_at: float = None

    def __post_init__(self):
        if self.cached_at is None:
            self.cached_at = time.time()


class TenantConnectionCache:
    """
    Thread-safe in-memory cache of TenantConnections keyed by tenant identifier.

    Features:
    - TTL support, expired entries are dropped on access
    - An entry is only reused while its URL/credential match the registry
    - No lock is held across any await
    """

    def __init__(self, ttl_seconds: int = 300):
        """
        Args:
            ttl_seconds: Time-to-live for cache entries (default: 5 minutes)
        """
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[str, CachedConnection] = {}
        self._lock = threading.RLock()
        logger.info(f"TenantConnectionCache initialized with TTL={ttl_seconds}s")

    def _is_expired(self, entry: CachedConnection) -> bool:
        return time.time() - entry.cached_at > self.ttl_seconds

    def get(self, tenant_id: str) -> Optional["TenantConnection"]:
        """
        Get the cached connection for a tenant.

        Returns:
            TenantConnection if cached and not expired, None otherwise
        """
        with self._lock:
            entry = self._cache.get(tenant_id)

            if entry is None:
                logger.debug(f"Cache miss for tenant: {tenant_id}")
                return None

            if self._is_expired(entry):
                logger.debug(f"Cache expired for tenant: {tenant_id}")
                del self._cache[tenant_id]
                return None

            return entry.connection

    def put(self, connection: "TenantConnection") -> "TenantConnection":
        """
        Store a connection for its tenant.

        If a live entry with the same URL and credential already exists, that
        entry wins and is returned; an entry opened with a different
        credential is replaced.

        Returns:
            The connection now held by the cache
        """
        record = connection.record
        with self._lock:
            existing = self._cache.get(record.tenant_id)
            if existing is not None and not self._is_expired(existing):
                if existing.db_url == record.db_url and existing.db_token == record.db_token:
                    return existing.connection
                logger.info(f"Credential changed for tenant {record.tenant_id}, replacing cached connection")

            self._cache[record.tenant_id] = CachedConnection(
                connection=connection,
                db_url=record.db_url,
                db_token=record.db_token,
            )
            logger.debug(f"Cached connection for tenant: {record.tenant_id} -> {record.db_name}")
            return connection

    def invalidate(self, tenant_id: str) -> bool:
        """
        Remove a specific entry from the cache.

        Returns:
            True if entry was removed, False if not found
        """
        with self._lock:
            if tenant_id in self._cache:
                del self._cache[tenant_id]
                logger.debug(f"Invalidated cache entry for tenant: {tenant_id}")
                return True
            return False

    def clear_all(self) -> int:
        """
        Clear all entries from the cache.

        Returns:
            Number of entries that were removed
        """
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            logger.info(f"Cleared all cache entries ({count} removed)")
            return count

    def cleanup_expired_entries(self) -> int:
        """
        Drop expired entries.

        Returns:
            Number of entries that were removed
        """
        with self._lock:
            expired = [key for key, entry in self._cache.items() if self._is_expired(entry)]
            for key in expired:
                del self._cache[key]
            if expired:
                logger.debug(f"Cleaned up {len(expired)} expired cache entries")
            return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            total_entries = len(self._cache)
            expired_count = sum(1 for entry in self._cache.values() if self._is_expired(entry))

            return {
                "total_entries": total_entries,
                "expired_entries": expired_count,
                "valid_entries": total_entries - expired_count,
                "ttl_seconds": self.ttl_seconds,
            }
