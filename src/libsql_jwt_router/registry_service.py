"""
Registry Store

The central database mapping each tenant identifier to its own database
(URL + credential) and usage metadata. One row per tenant; the primary key
on tenant_id is what arbitrates concurrent first-time provisioning.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

from .dal import LibsqlDAL, is_unique_violation
from .errors import ConflictError, NotFoundError, StatementError
from .schema import REGISTRY_TABLE, init_registry_schema

logger = logging.getLogger(__name__)

_COLUMNS = (
    "tenant_id", "email", "db_name", "db_url", "db_token",
    "storage_used_bytes", "created_at", "updated_at",
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TenantRecord:
    """Persisted descriptor of one tenant's database."""
    tenant_id: str
    email: str
    db_name: str
    db_url: str
    db_token: str  # Write-once credential
    storage_used_bytes: int = 0
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TenantRecord":
        return cls(
            tenant_id=row["tenant_id"],
            email=row["email"] or "",
            db_name=row["db_name"],
            db_url=row["db_url"],
            db_token=row["db_token"],
            storage_used_bytes=int(row.get("storage_used_bytes") or 0),
            created_at=row.get("created_at") or "",
            updated_at=row.get("updated_at") or "",
        )

    def public_dict(self) -> Dict[str, Any]:
        """Record without its credential, safe to return to clients."""
        data = asdict(self)
        data.pop("db_token")
        return data


class RegistryStore:
    """
    Access to the tenant registry table.

    The DAL is injected and owned by the caller (no module-level handle).
    """

    def __init__(self, dal: LibsqlDAL):
        """
        Args:
            dal: Connection to the registry database
        """
        self.dal = dal
        logger.info(f"RegistryStore initialized for database: {dal.url}")

    async def ensure_schema(self):
        """Create the registry table and email index if absent. Idempotent."""
        await init_registry_schema(self.dal)
        logger.info(f"✓ Registry schema ready ({REGISTRY_TABLE})")

    async def find(self, tenant_id: str) -> Optional[TenantRecord]:
        """
        Look up a tenant's record.

        Returns:
            TenantRecord, or None if the tenant was never provisioned
        """
        result = await self.dal.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM {REGISTRY_TABLE} WHERE tenant_id = ?",
            (tenant_id,),
        )
        row = result.first()
        if row is None:
            logger.debug(f"Tenant not found in registry: {tenant_id}")
            return None
        return TenantRecord.from_row(row)

    async def insert(self, record: TenantRecord):
        """
        Insert a new record.

        Plain INSERT, never INSERT OR REPLACE: an existing row (and its
        credential) is never overwritten.

        Raises:
            ConflictError: A record for this tenant already exists
        """
        try:
            await self.dal.execute(
                f"INSERT INTO {REGISTRY_TABLE} ({', '.join(_COLUMNS)}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.tenant_id,
                    record.email,
                    record.db_name,
                    record.db_url,
                    record.db_token,
                    record.storage_used_bytes,
                    record.created_at,
                    record.updated_at,
                ),
            )
        except StatementError as e:
            if is_unique_violation(e):
                logger.info(f"Registry insert conflict for tenant {record.tenant_id}")
                raise ConflictError(f"Tenant {record.tenant_id} already registered") from e
            raise
        logger.info(f"Registered database {record.db_name} for tenant {record.tenant_id}")

    async def bump_usage(self, tenant_id: str, delta_bytes: int) -> int:
        """
        Add delta_bytes (may be negative) to the usage counter, clamped at zero.

        Returns:
            The new storage_used_bytes

        Raises:
            NotFoundError: No record for this tenant
        """
        result = await self.dal.execute(
            f"UPDATE {REGISTRY_TABLE} "
            f"SET storage_used_bytes = MAX(0, storage_used_bytes + ?), updated_at = ? "
            f"WHERE tenant_id = ? "
            f"RETURNING storage_used_bytes",
            (int(delta_bytes), utc_now(), tenant_id),
        )
        if not result.rows:
            raise NotFoundError(f"Tenant {tenant_id} not found in registry")
        return int(result.rows[0][0])

    async def find_by_email(self, email: str) -> List[TenantRecord]:
        """Administrative lookup by email (served by the email index)."""
        result = await self.dal.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM {REGISTRY_TABLE} WHERE email = ? ORDER BY created_at",
            (email,),
        )
        return [TenantRecord.from_row(row) for row in result.as_dicts()]

    async def list_records(self) -> List[TenantRecord]:
        result = await self.dal.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM {REGISTRY_TABLE} ORDER BY created_at"
        )
        return [TenantRecord.from_row(row) for row in result.as_dicts()]

    async def list_database_names(self) -> List[str]:
        result = await self.dal.execute(f"SELECT db_name FROM {REGISTRY_TABLE}")
        return [row[0] for row in result.rows]

    async def count(self) -> int:
        result = await self.dal.execute(f"SELECT COUNT(*) FROM {REGISTRY_TABLE}")
        return int(result.rows[0][0]) if result.rows else 0

    async def health_check(self):
        """Raises StoreError if the registry cannot answer a trivial query."""
        await self.dal.execute("SELECT 1")
