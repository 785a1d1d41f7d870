"""
Unit tests for ReconciliationService
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from libsql_jwt_router.dal import create_dal
from libsql_jwt_router.errors import ExternalApiError
from libsql_jwt_router.provisioning_service import TenantProvisioningService
from libsql_jwt_router.reconciliation_service import ReconciliationService
from libsql_jwt_router.registry_service import RegistryStore
from libsql_jwt_router.resolver import ConnectionResolver

from conftest import API_URL, ORG, REGISTRY_URL


@pytest_asyncio.fixture
async def registry():
    store = RegistryStore(create_dal(REGISTRY_URL, "registry-token"))
    await store.ensure_schema()
    return store


@pytest.fixture
def provisioner(hosting_api):
    return TenantProvisioningService("platform-token", ORG, api_url=API_URL, client=hosting_api.client())


class TestReconcile:
    """Test orphan detection and deletion."""

    @pytest.mark.asyncio
    async def test_reports_orphans_without_deleting(self, registry, provisioner, hosting_api):
        resolver = ConnectionResolver(registry, provisioner)
        await resolver.resolve("u1", "a@b.com")
        hosting_api.add_database("user-orphan-12345678")
        hosting_api.add_database("analytics")  # not a tenant database
        service = ReconciliationService(registry, provisioner)

        result = await service.reconcile()

        assert result["orphans"] == ["user-orphan-12345678"]
        assert result["deleted"] == []
        assert result["success"] is True
        assert "user-orphan-12345678" in hosting_api.databases
        await resolver.close()

    @pytest.mark.asyncio
    async def test_deletes_orphans_when_enabled(self, registry, provisioner, hosting_api):
        resolver = ConnectionResolver(registry, provisioner)
        connection = await resolver.resolve("u1", "a@b.com")
        hosting_api.add_database("user-orphan-12345678")
        service = ReconciliationService(registry, provisioner, delete_orphans=True)

        result = await service.reconcile()

        assert result["deleted"] == ["user-orphan-12345678"]
        assert sorted(hosting_api.databases) == [connection.record.db_name]
        await resolver.close()

    @pytest.mark.asyncio
    async def test_override_per_run(self, registry, provisioner, hosting_api):
        hosting_api.add_database("user-orphan-12345678")
        service = ReconciliationService(registry, provisioner, delete_orphans=False)

        result = await service.reconcile(delete_orphans=True)

        assert result["deleted"] == ["user-orphan-12345678"]

    @pytest.mark.asyncio
    async def test_skips_in_flight_databases(self, registry, provisioner, hosting_api):
        name = provisioner.database_name("u1")
        hosting_api.add_database(name)
        resolver = MagicMock()
        resolver.in_flight_database_names.return_value = [name]
        service = ReconciliationService(registry, provisioner, resolver=resolver, delete_orphans=True)

        result = await service.reconcile()

        assert result["orphans"] == []
        assert name in hosting_api.databases

    @pytest.mark.asyncio
    async def test_delete_errors_are_collected(self, registry, hosting_api):
        hosting_api.add_database("user-a-11111111")
        hosting_api.add_database("user-b-22222222")
        provisioner = MagicMock()
        provisioner.db_prefix = "user"
        provisioner.list_databases = AsyncMock(return_value=list(hosting_api.databases.values()))
        provisioner.delete_database = AsyncMock(side_effect=[None, ExternalApiError("boom", 500)])
        service = ReconciliationService(registry, provisioner, delete_orphans=True)

        result = await service.reconcile()

        assert result["deleted"] == ["user-a-11111111"]
        assert len(result["errors"]) == 1
        assert result["success"] is False

    @pytest.mark.asyncio
    async def test_listing_failure(self, registry):
        provisioner = MagicMock()
        provisioner.db_prefix = "user"
        provisioner.list_databases = AsyncMock(side_effect=ExternalApiError("unavailable", 503))
        service = ReconciliationService(registry, provisioner)

        result = await service.reconcile()

        assert result["success"] is False
        assert result["orphans"] == []
        assert "unavailable" in result["errors"][0]


class TestPeriodic:
    """start_periodic / stop_periodic."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, registry, provisioner):
        service = ReconciliationService(registry, provisioner, interval_hours=1)

        service.start_periodic()
        assert service._task is not None
        service.start_periodic()  # second start is ignored

        await service.stop_periodic()
        assert service._task is None

    @pytest.mark.asyncio
    async def test_disabled_interval(self, registry, provisioner):
        service = ReconciliationService(registry, provisioner, interval_hours=0)

        service.start_periodic()

        assert service._task is None
        await service.stop_periodic()

    @pytest.mark.asyncio
    async def test_loop_runs_reconcile(self, registry, provisioner, monkeypatch):
        service = ReconciliationService(registry, provisioner, interval_hours=1)
        service.reconcile = AsyncMock(return_value={"orphans": [], "deleted": [], "errors": [], "success": True})

        real_sleep = asyncio.sleep

        async def fast_sleep(seconds):
            await real_sleep(0)

        monkeypatch.setattr(asyncio, "sleep", fast_sleep)
        service.start_periodic()
        for _ in range(10):
            await real_sleep(0)
        await service.stop_periodic()

        assert service.reconcile.await_count >= 1
