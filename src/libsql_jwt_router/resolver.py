"""
Connection Resolver

Entry point for tenant data access: given a verified tenant identifier,
returns a live connection to that tenant's database, provisioning it on first
use.

States per tenant: Unprovisioned (no registry record) -> Provisioning (an
in-flight task in this process, never persisted) -> Active (record present,
schema applied). A record is only inserted after the tenant schema has been
applied, so any reader that finds a record may use the database directly.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, List, Sequence

import httpx

from .dal import LibsqlDAL, ResultSet, Statement, create_dal
from .errors import (
    ConflictError,
    ProvisionError,
    ResolveError,
    SchemaError,
    StoreError,
)
from .provisioning_service import TenantProvisioningService
from .registry_service import RegistryStore, TenantRecord
from .schema import SchemaVersion, get_schema_version, init_tenant_schema
from .tenant_connection_cache import TenantConnectionCache
from .token_verifier import IdentityClaims

logger = logging.getLogger(__name__)


class TenantConnection:
    """Handle to one tenant's database. Bound to a single tenant for its lifetime."""

    def __init__(self, record: TenantRecord, dal: LibsqlDAL):
        self.record = record
        self._dal = dal

    @property
    def tenant_id(self) -> str:
        return self.record.tenant_id

    @property
    def url(self) -> str:
        return self.record.db_url

    async def execute(self, sql: str, args: Sequence[Any] = ()) -> ResultSet:
        return await self._dal.execute(sql, args)

    async def batch(self, statements: Sequence[Statement]) -> List[ResultSet]:
        return await self._dal.batch(statements)

    async def schema_version(self) -> Optional[SchemaVersion]:
        return await get_schema_version(self._dal)

    async def close(self):
        await self._dal.close()

    def __repr__(self):
        return f"TenantConnection(tenant_id={self.tenant_id!r}, db_name={self.record.db_name!r})"


class ConnectionResolver:
    """
    Resolves tenants to connections.

    The registry and provisioning service are injected; the resolver owns the
    HTTP client shared by all tenant connections (unless one is passed in)
    and the connection cache.
    """

    def __init__(
        self,
        registry: RegistryStore,
        provisioner: TenantProvisioningService,
        cache: Optional[TenantConnectionCache] = None,
        client: Optional[httpx.AsyncClient] = None,
        backend: Optional[str] = None,
    ):
        """
        Args:
            registry: Registry store (arbiter of who provisioned first)
            provisioner: Hosting API client
            cache: Tenant connection cache (default: 5 minute TTL)
            client: Shared AsyncClient for tenant connections
            backend: DAL backend for tenant connections, None for auto-detection
        """
        self.registry = registry
        self.provisioner = provisioner
        self.cache = cache or TenantConnectionCache()
        self.backend = backend
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30.0)
        self._inflight: Dict[str, asyncio.Task] = {}

    def _connect(self, record: TenantRecord) -> TenantConnection:
        """Open (or reuse the cached) connection for a committed record."""
        dal = create_dal(record.db_url, record.db_token, backend=self.backend, client=self._client)
        return self.cache.put(TenantConnection(record, dal))

    async def resolve(self, tenant_id: str, email: Optional[str] = None) -> TenantConnection:
        """
        Return a connection to the tenant's database, provisioning it if needed.

        Args:
            tenant_id: Verified tenant identifier (never taken from an unverified source)
            email: Informational, stored on first provisioning

        Raises:
            ResolveError: Wrapping the store, provisioning or schema failure
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        cached = self.cache.get(tenant_id)
        if cached is not None:
            return cached

        try:
            record = await self.registry.find(tenant_id)
        except StoreError as e:
            logger.error(f"❌ Registry lookup failed for tenant {tenant_id}: {e}")
            raise ResolveError(tenant_id, e) from e

        if record is not None:
            return self._connect(record)

        task = self._inflight.get(tenant_id)
        if task is None:
            task = asyncio.ensure_future(self._provision(tenant_id, email))
            self._inflight[tenant_id] = task
            task.add_done_callback(lambda t, key=tenant_id: self._provision_done(key, t))
        else:
            logger.debug(f"Joining in-flight provisioning for tenant {tenant_id}")

        # Cancelling the caller must not cancel a provisioning that has started
        return await asyncio.shield(task)

    def _provision_done(self, tenant_id: str, task: asyncio.Task):
        if self._inflight.get(tenant_id) is task:
            del self._inflight[tenant_id]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Provisioning task for tenant {tenant_id} failed: {task.exception()}")

    async def _provision(self, tenant_id: str, email: Optional[str]) -> TenantConnection:
        logger.info(f"Tenant {tenant_id} not in registry, provisioning")

        try:
            record = await self.provisioner.provision(tenant_id, email)
        except ProvisionError as e:
            logger.error(f"❌ Provisioning failed for tenant {tenant_id}: {e}")
            raise ResolveError(tenant_id, e) from e

        dal = create_dal(record.db_url, record.db_token, backend=self.backend, client=self._client)
        connection = TenantConnection(record, dal)

        try:
            await init_tenant_schema(dal)
        except (SchemaError, StoreError) as e:
            logger.error(f"❌ Schema initialization failed for tenant {tenant_id}: {e}")
            raise ResolveError(tenant_id, e) from e

        try:
            await self.registry.insert(record)
        except ConflictError:
            # Another resolver committed first; its record is authoritative
            logger.warning(f"⚠️ Lost provisioning race for tenant {tenant_id}, using committed record")
            try:
                existing = await self.registry.find(tenant_id)
            except StoreError as e:
                raise ResolveError(tenant_id, e) from e
            if existing is None:
                raise ResolveError(tenant_id, ConflictError(f"Record for {tenant_id} conflicted but is missing"))
            return self._connect(existing)
        except StoreError as e:
            logger.error(f"❌ Failed to register database for tenant {tenant_id}: {e}")
            raise ResolveError(tenant_id, e) from e

        logger.info(f"✅ Tenant {tenant_id} is active on {record.db_name}")
        return self.cache.put(connection)

    async def resolve_claims(self, claims: IdentityClaims) -> TenantConnection:
        return await self.resolve(claims.tenant_id, claims.email)

    async def record_usage(self, tenant_id: str, delta_bytes: int) -> int:
        """
        Add delta_bytes to the tenant's storage counter.

        Returns:
            The committed storage_used_bytes

        Raises:
            NotFoundError: The tenant has no record
        """
        used = await self.registry.bump_usage(tenant_id, delta_bytes)
        cached = self.cache.get(tenant_id)
        if cached is not None:
            cached.record.storage_used_bytes = used
        return used

    def invalidate(self, tenant_id: str) -> bool:
        """Forget the cached connection, forcing a registry read on next resolve."""
        return self.cache.invalidate(tenant_id)

    def in_flight_database_names(self) -> List[str]:
        """Names of databases currently being provisioned by this process."""
        return [self.provisioner.database_name(tenant_id) for tenant_id in list(self._inflight)]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "in_flight": len(self._inflight),
            "cache": self.cache.get_stats(),
        }

    async def close(self):
        """Let in-flight provisioning finish, then release connections."""
        if self._inflight:
            logger.info(f"Waiting for {len(self._inflight)} in-flight provisioning task(s)")
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)
        self.cache.clear_all()
        if self._owns_client:
            await self._client.aclose()
