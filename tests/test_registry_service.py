"""
Tests for RegistryStore
"""

import asyncio

import pytest
import pytest_asyncio

from libsql_jwt_router.dal import create_dal
from libsql_jwt_router.errors import ConflictError, ConnectivityError, NotFoundError
from libsql_jwt_router.registry_service import RegistryStore, TenantRecord, utc_now

from conftest import REGISTRY_URL


def make_record(tenant_id="u1", email="a@b.com", token="db-token-1") -> TenantRecord:
    now = utc_now()
    return TenantRecord(
        tenant_id=tenant_id,
        email=email,
        db_name=f"user-{tenant_id}",
        db_url=f"libsql://user-{tenant_id}-acme.turso.io",
        db_token=token,
        storage_used_bytes=0,
        created_at=now,
        updated_at=now,
    )


@pytest_asyncio.fixture
async def registry():
    store = RegistryStore(create_dal(REGISTRY_URL, "registry-token"))
    await store.ensure_schema()
    return store


class TestRegistryStore:
    """find / insert / bump_usage and the administrative queries."""

    @pytest.mark.asyncio
    async def test_find_missing(self, registry):
        assert await registry.find("nobody") is None

    @pytest.mark.asyncio
    async def test_insert_then_find(self, registry):
        record = make_record()
        await registry.insert(record)

        found = await registry.find("u1")

        assert found == record

    @pytest.mark.asyncio
    async def test_duplicate_insert_conflicts(self, registry):
        await registry.insert(make_record(token="first"))

        with pytest.raises(ConflictError):
            await registry.insert(make_record(token="second"))

        # Credential is write-once
        assert (await registry.find("u1")).db_token == "first"

    @pytest.mark.asyncio
    async def test_concurrent_inserts_one_winner(self, registry):
        records = [make_record(token=f"token-{i}") for i in range(5)]

        results = await asyncio.gather(
            *(registry.insert(r) for r in records), return_exceptions=True
        )

        assert sum(1 for r in results if r is None) == 1
        assert sum(1 for r in results if isinstance(r, ConflictError)) == 4
        assert await registry.count() == 1

    @pytest.mark.asyncio
    async def test_bump_usage(self, registry):
        await registry.insert(make_record())
        before = (await registry.find("u1")).updated_at

        assert await registry.bump_usage("u1", 1024) == 1024
        assert await registry.bump_usage("u1", 512) == 1536

        found = await registry.find("u1")
        assert found.storage_used_bytes == 1536
        assert found.updated_at >= before

    @pytest.mark.asyncio
    async def test_bump_usage_clamps_at_zero(self, registry):
        await registry.insert(make_record())
        await registry.bump_usage("u1", 100)

        assert await registry.bump_usage("u1", -500) == 0

        assert (await registry.find("u1")).storage_used_bytes == 0

    @pytest.mark.asyncio
    async def test_bump_usage_unknown_tenant(self, registry):
        with pytest.raises(NotFoundError):
            await registry.bump_usage("nobody", 1)

    @pytest.mark.asyncio
    async def test_ensure_schema_is_idempotent(self, registry):
        await registry.insert(make_record())

        await asyncio.gather(registry.ensure_schema(), registry.ensure_schema())

        assert await registry.count() == 1

    @pytest.mark.asyncio
    async def test_find_by_email(self, registry):
        await registry.insert(make_record("u1", "shared@b.com"))
        await registry.insert(make_record("u2", "shared@b.com"))
        await registry.insert(make_record("u3", "other@b.com"))

        found = await registry.find_by_email("shared@b.com")

        assert sorted(r.tenant_id for r in found) == ["u1", "u2"]

    @pytest.mark.asyncio
    async def test_listing(self, registry):
        await registry.insert(make_record("u1"))
        await registry.insert(make_record("u2"))

        assert sorted(await registry.list_database_names()) == ["user-u1", "user-u2"]
        assert len(await registry.list_records()) == 2
        assert await registry.count() == 2

    @pytest.mark.asyncio
    async def test_health_check_propagates_connectivity(self, registry):
        async def unreachable(sql, args=()):
            raise ConnectivityError("Cannot reach database")

        registry.dal.execute = unreachable

        with pytest.raises(ConnectivityError):
            await registry.health_check()


def test_public_dict_hides_credential():
    data = make_record().public_dict()

    assert "db_token" not in data
    assert data["tenant_id"] == "u1"
    assert data["storage_used_bytes"] == 0
