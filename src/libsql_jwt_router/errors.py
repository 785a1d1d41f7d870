"""
Error taxonomy for tenant resolution.

Library code raises these; only the HTTP layer (main.py) turns them into
responses.
"""

from typing import Optional


class TenantRouterError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(ValueError, TenantRouterError):
    """Startup configuration is missing or invalid."""


# Authentication

class AuthError(TenantRouterError):
    """Token could not be trusted. Never fall back to any identity."""

    reason = "auth_error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.reason)
        if reason:
            self.reason = reason


class InvalidSignature(AuthError):
    reason = "invalid_signature"


class Expired(AuthError):
    reason = "token_expired"


class MalformedToken(AuthError):
    reason = "malformed_token"


class KeySetUnavailable(AuthError):
    reason = "jwks_unavailable"


class InvalidClaims(AuthError):
    """Signature is valid but issuer/audience/nbf are not acceptable."""

    reason = "invalid_claims"


# Provisioning

class ProvisionError(TenantRouterError):
    retryable = False


class ExternalApiError(ProvisionError):
    """Hosting API call failed (network or HTTP)."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class QuotaExceeded(ProvisionError):
    """Hosting API refused to create more databases. Not retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


# Storage

class StoreError(TenantRouterError):
    pass


class ConflictError(StoreError):
    """A record for this tenant already exists."""


class NotFoundError(StoreError):
    pass


class ConnectivityError(StoreError):
    """Database unreachable, or it rejected our credential."""


class StatementError(StoreError):
    """The database rejected a SQL statement."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class SchemaError(TenantRouterError):
    """Schema could not be applied or does not validate."""


# Resolution

class ResolveError(TenantRouterError):
    """Resolution failed; carries the tenant and the originating error."""

    def __init__(self, tenant_id: str, cause: Exception):
        super().__init__(f"Failed to resolve database for tenant {tenant_id}: {cause}")
        self.tenant_id = tenant_id
        self.cause = cause

    @property
    def retryable(self) -> bool:
        if isinstance(self.cause, ConnectivityError):
            return True
        return bool(getattr(self.cause, "retryable", False))
