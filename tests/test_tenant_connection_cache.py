"""
Unit tests for TenantConnectionCache
"""

import time

import pytest

from libsql_jwt_router.dal import create_dal
from libsql_jwt_router.registry_service import TenantRecord
from libsql_jwt_router.resolver import TenantConnection
from libsql_jwt_router.tenant_connection_cache import TenantConnectionCache


def make_connection(tenant_id="u1", token="token-1") -> TenantConnection:
    record = TenantRecord(
        tenant_id=tenant_id,
        email="a@b.com",
        db_name=f"user-{tenant_id}",
        db_url=f"libsql://user-{tenant_id}-acme.turso.io",
        db_token=token,
    )
    return TenantConnection(record, create_dal(record.db_url, token, backend="memory"))


class TestTenantConnectionCache:
    """Test TenantConnectionCache functionality."""

    @pytest.fixture
    def cache(self):
        return TenantConnectionCache(ttl_seconds=60)

    def test_miss(self, cache):
        assert cache.get("u1") is None

    def test_put_and_get(self, cache):
        connection = make_connection()

        assert cache.put(connection) is connection
        assert cache.get("u1") is connection

    def test_keyed_by_tenant(self, cache):
        first = cache.put(make_connection("u1"))
        second = cache.put(make_connection("u2"))

        assert cache.get("u1") is first
        assert cache.get("u2") is second
        assert cache.get("u1").tenant_id == "u1"

    def test_same_credential_keeps_existing(self, cache):
        first = cache.put(make_connection(token="token-1"))

        result = cache.put(make_connection(token="token-1"))

        assert result is first

    def test_rotated_credential_replaces(self, cache):
        cache.put(make_connection(token="token-1"))
        rotated = make_connection(token="token-2")

        result = cache.put(rotated)

        assert result is rotated
        assert cache.get("u1").record.db_token == "token-2"

    def test_expiry(self):
        cache = TenantConnectionCache(ttl_seconds=1)
        cache.put(make_connection())
        cache._cache["u1"].cached_at = time.time() - 2

        assert cache.get("u1") is None
        assert cache.get_stats()["total_entries"] == 0

    def test_expired_entry_is_replaced(self):
        cache = TenantConnectionCache(ttl_seconds=1)
        cache.put(make_connection())
        cache._cache["u1"].cached_at = time.time() - 2

        fresh = make_connection()
        assert cache.put(fresh) is fresh

    def test_invalidate(self, cache):
        cache.put(make_connection())

        assert cache.invalidate("u1") is True
        assert cache.invalidate("u1") is False
        assert cache.get("u1") is None

    def test_clear_all(self, cache):
        cache.put(make_connection("u1"))
        cache.put(make_connection("u2"))

        assert cache.clear_all() == 2
        assert cache.get_stats()["total_entries"] == 0

    def test_cleanup_expired_entries(self):
        cache = TenantConnectionCache(ttl_seconds=1)
        cache.put(make_connection("u1"))
        cache.put(make_connection("u2"))
        cache._cache["u1"].cached_at = time.time() - 2

        assert cache.cleanup_expired_entries() == 1
        stats = cache.get_stats()
        assert stats["total_entries"] == 1
        assert stats["valid_entries"] == 1
        assert stats["ttl_seconds"] == 1
