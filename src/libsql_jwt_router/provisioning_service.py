"""
Tenant Provisioning Service

Creates an isolated database per tenant through the Turso Platform API and
mints a database-scoped credential for it. Returns a TenantRecord but does not
persist it: schema setup and registration are orchestrated by the resolver.
"""

import re
import hashlib
import logging
from typing import Optional, Dict, Any, List

import httpx

from .errors import ExternalApiError, QuotaExceeded
from .registry_service import TenantRecord, utc_now

logger = logging.getLogger(__name__)

_QUOTA_MARKERS = (
    "quota",
    "database limit",
    "databases limit",
    "limit of databases",
    "maximum number of databases",
    "upgrade your plan",
)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
        if isinstance(payload, dict) and payload.get("error"):
            return str(payload["error"])
    except ValueError:
        pass
    return response.text or f"HTTP {response.status_code}"


def _json_object(response: httpx.Response, action: str) -> Dict[str, Any]:
    """Parse a success body, which must be a JSON object."""
    try:
        payload = response.json()
    except ValueError as e:
        logger.error(f"❌ Hosting API returned a non-JSON body while trying to {action}: {response.text[:200]}")
        raise ExternalApiError(f"Failed to {action}: response is not JSON", status_code=response.status_code) from e
    if not isinstance(payload, dict):
        logger.error(f"❌ Hosting API returned {type(payload).__name__} while trying to {action}")
        raise ExternalApiError(f"Failed to {action}: unexpected response shape", status_code=response.status_code)
    return payload


class TenantProvisioningService:
    """Client for the database hosting API."""

    def __init__(
        self,
        api_token: str,
        org: str,
        api_url: str = "https://api.turso.tech",
        group: str = "default",
        token_expiration: str = "never",
        db_prefix: str = "user",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        """
        Args:
            api_token: Long-lived management credential (bearer)
            org: Organization identifier used in API paths
            api_url: API base URL
            group: Placement group for new databases
            token_expiration: Expiration for minted database credentials
            db_prefix: Prefix for tenant database names
            client: Optional AsyncClient (tests inject a MockTransport)
            timeout: Request timeout when this service creates its own client
        """
        self.api_url = api_url.rstrip("/")
        self.org = org
        self.group = group
        self.token_expiration = token_expiration
        self.db_prefix = db_prefix
        self.auth_headers = {"Authorization": f"Bearer {api_token}"}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        logger.info(f"TenantProvisioningService initialized for organization: {org}")

    @classmethod
    def from_config(cls, config, client: Optional[httpx.AsyncClient] = None) -> "TenantProvisioningService":
        return cls(
            api_token=config.turso_api_token,
            org=config.turso_org,
            api_url=config.turso_api_url,
            group=config.turso_group,
            token_expiration=config.tenant_token_expiration,
            db_prefix=config.tenant_db_prefix,
            client=client,
        )

    @property
    def _org_url(self) -> str:
        return f"{self.api_url}/v1/organizations/{self.org}"

    def database_name(self, tenant_id: str) -> str:
        """
        Deterministic, unique database name for a tenant.

        Hosting names allow lowercase letters, digits and dashes only, so the
        identifier is reduced to that alphabet and suffixed with a hash of the
        original to keep distinct identifiers distinct.
        """
        slug = re.sub(r"[^a-z0-9-]+", "-", tenant_id.lower()).strip("-")[:40].strip("-")
        digest = hashlib.sha256(tenant_id.encode("utf-8")).hexdigest()[:8]
        if slug:
            return f"{self.db_prefix}-{slug}-{digest}"
        return f"{self.db_prefix}-{digest}"

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self._org_url}{path}"
        try:
            return await self._client.request(method, url, headers=self.auth_headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"❌ Hosting API request failed: {method} {path}: {e}")
            raise ExternalApiError(f"Hosting API request failed: {e}", retryable=True) from e

    @staticmethod
    def _raise_for_response(response: httpx.Response, action: str):
        """Map a non-success response onto QuotaExceeded / ExternalApiError."""
        if response.is_success:
            return

        status = response.status_code
        message = _error_message(response)
        lowered = message.lower()

        if status == 402 or (status in (400, 403, 422) and any(m in lowered for m in _QUOTA_MARKERS)):
            logger.error(f"❌ Hosting API quota exceeded while trying to {action}: {message}")
            raise QuotaExceeded(f"Failed to {action}: {message}", status_code=status)

        retryable = status == 429 or status >= 500
        logger.error(f"❌ Failed to {action}: {status} {message}")
        raise ExternalApiError(f"Failed to {action}: {status} {message}", status_code=status, retryable=retryable)

    async def create_database(self, name: str) -> Dict[str, Any]:
        """
        Create a database, adopting it if it already exists.

        Returns:
            Database info dict (Name, Hostname, ...)
        """
        response = await self._request("POST", "/databases", json={"name": name, "group": self.group})

        if response.status_code == 409 or (
            not response.is_success and "already exists" in _error_message(response).lower()
        ):
            logger.info(f"Database {name} already exists, adopting it")
            return await self.get_database(name)

        self._raise_for_response(response, f"create database {name}")
        database = _json_object(response, f"create database {name}").get("database") or {}
        logger.info(f"✅ Created database {name} ({database.get('Hostname')})")
        return database

    async def get_database(self, name: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/databases/{name}")
        self._raise_for_response(response, f"get database {name}")
        return _json_object(response, f"get database {name}").get("database") or {}

    async def create_credential(self, name: str, expiration: Optional[str] = None) -> str:
        """
        Mint a full-access credential scoped to one database.

        Returns:
            The credential (a JWT issued by the hosting provider)
        """
        response = await self._request(
            "POST",
            f"/databases/{name}/auth/tokens",
            params={
                "expiration": expiration or self.token_expiration,
                "authorization": "full-access",
            },
        )
        self._raise_for_response(response, f"create credential for {name}")
        token = _json_object(response, f"create credential for {name}").get("jwt")
        if not token:
            raise ExternalApiError(f"Credential response for {name} had no token", retryable=True)
        return token

    async def list_databases(self) -> List[Dict[str, Any]]:
        response = await self._request("GET", "/databases")
        self._raise_for_response(response, "list databases")
        return _json_object(response, "list databases").get("databases") or []

    async def delete_database(self, name: str):
        response = await self._request("DELETE", f"/databases/{name}")
        if response.status_code == 404:
            logger.info(f"Database {name} already gone")
            return
        self._raise_for_response(response, f"delete database {name}")
        logger.info(f"Deleted database {name}")

    async def provision(self, tenant_id: str, email: Optional[str]) -> TenantRecord:
        """
        Create the tenant's database and credential.

        Returns:
            Fully populated TenantRecord (usage 0, timestamps now), not persisted

        Raises:
            ExternalApiError: Network/HTTP failure, see .retryable
            QuotaExceeded: The organization cannot hold more databases
        """
        db_name = self.database_name(tenant_id)
        logger.info(f"Provisioning database {db_name} for tenant {tenant_id}")

        database = await self.create_database(db_name)
        hostname = (database.get("Hostname") or database.get("hostname")) if isinstance(database, dict) else None
        if not hostname:
            raise ExternalApiError(f"Hosting API returned no hostname for {db_name}", retryable=True)

        token = await self.create_credential(db_name)

        now = utc_now()
        return TenantRecord(
            tenant_id=tenant_id,
            email=email or "",
            db_name=db_name,
            db_url=f"libsql://{hostname}",
            db_token=token,
            storage_used_bytes=0,
            created_at=now,
            updated_at=now,
        )

    async def close(self):
        if self._owns_client:
            await self._client.aclose()
