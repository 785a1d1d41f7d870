import os
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Header, Request, Body, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from .core.config import Config, setup_logging
from .dal import LibsqlDAL, create_dal
from .errors import (
    AuthError,
    ConnectivityError,
    NotFoundError,
    QuotaExceeded,
    ResolveError,
    SchemaError,
    StoreError,
)
from .provisioning_service import TenantProvisioningService
from .reconciliation_service import ReconciliationService
from .registry_service import RegistryStore
from .resolver import ConnectionResolver, TenantConnection
from .schema import CURRENT_SCHEMA_VERSION, sync_tenant_schema, validate_tenant_schema
from .tenant_connection_cache import TenantConnectionCache
from .token_verifier import IdentityClaims, TokenVerifier

logger = logging.getLogger(__name__)

SERVICE_NAME = "libsql-jwt-router"
SERVICE_VERSION = "1.0.0"


@dataclass
class Services:
    """Everything the HTTP layer needs, built once per process."""
    registry: RegistryStore
    verifier: TokenVerifier
    provisioner: TenantProvisioningService
    resolver: ConnectionResolver
    reconciliation: ReconciliationService
    registry_dal: Optional[LibsqlDAL] = None
    config: Optional[Config] = None

    async def close(self):
        await self.reconciliation.stop_periodic()
        await self.resolver.close()
        await self.provisioner.close()
        if self.registry_dal is not None:
            await self.registry_dal.close()


def build_services(config: Config) -> Services:
    """Wire the services from configuration."""
    registry_dal = create_dal(config.registry_db_url, config.registry_db_token)
    registry = RegistryStore(registry_dal)
    provisioner = TenantProvisioningService.from_config(config)
    resolver = ConnectionResolver(
        registry,
        provisioner,
        cache=TenantConnectionCache(ttl_seconds=config.tenant_connection_cache_ttl_seconds),
    )
    reconciliation = ReconciliationService(
        registry,
        provisioner,
        resolver=resolver,
        delete_orphans=config.reconcile_delete_orphans,
        interval_hours=config.reconcile_interval_hours,
    )
    return Services(
        registry=registry,
        verifier=TokenVerifier.from_config(config),
        provisioner=provisioner,
        resolver=resolver,
        reconciliation=reconciliation,
        registry_dal=registry_dal,
        config=config,
    )


def _rate_limit_enabled_from_env() -> bool:
    return os.getenv("RATE_LIMIT_ENABLED", "true").strip().lower() in ("1", "true", "yes", "on")


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_claims(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> IdentityClaims:
    """Verified identity of the caller. Raises AuthError (401) on any failure."""
    services = get_services(request)
    return await services.verifier.verify_bearer(authorization)


async def get_tenant_connection(
    request: Request,
    claims: IdentityClaims = Depends(get_claims),
) -> TenantConnection:
    """For routes without a rate limit. Limited routes resolve in their body, after the limit check."""
    services = get_services(request)
    return await services.resolver.resolve_claims(claims)


def _resolve_error_status(exc: ResolveError) -> int:
    if isinstance(exc.cause, QuotaExceeded):
        return 403
    if exc.retryable:
        return 503
    return 502


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Pre-built services (tests); when None, the lifespan loads
            Config.from_env() and builds them.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for FastAPI application"""
        owned = app.state.services is None
        if owned:
            config = Config.from_env()
            setup_logging(config.log_level)
            app.state.services = build_services(config)
            app.state.limiter.enabled = config.rate_limit_enabled
            logger.info(f"Starting {SERVICE_NAME} on {config.host}:{config.port}")
            logger.info(f"  Registry: {config.registry_db_url}")
            logger.info(f"  JWKS URL: {config.jwks_url}")
            logger.info(f"  Issuer: {config.jwt_issuer}")

        current = app.state.services

        # Registry schema is required before serving any request
        await current.registry.ensure_schema()

        current.reconciliation.start_periodic()

        yield

        logger.info(f"Shutting down {SERVICE_NAME}")
        if owned:
            await current.close()
            app.state.services = None
        else:
            await current.reconciliation.stop_periodic()

    app = FastAPI(
        title="libSQL JWT Router",
        description="Per-tenant libSQL database resolution and provisioning",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    # Rate Limiting on provisioning endpoints, one Limiter per app
    limiter = Limiter(key_func=get_remote_address, enabled=_rate_limit_enabled_from_env())
    app.state.limiter = limiter

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    cors_origins = [origin.strip() for origin in cors_origins if origin.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["accept", "authorization", "content-type", "origin"],
    )

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        """Handle rate limit exceeded errors"""
        logger.warning(f"Rate limit exceeded for {request.client.host}: {exc.detail}")
        return JSONResponse(
            status_code=429,
            content={
                "detail": "Too many requests. Please try again later.",
                "error": "rate_limit_exceeded",
            },
        )

    @app.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError):
        logger.warning(f"Authentication failed: {exc.reason} - {exc}")
        return JSONResponse(
            status_code=401,
            content={"error": exc.reason},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(ResolveError)
    async def resolve_error_handler(request: Request, exc: ResolveError):
        status_code = _resolve_error_status(exc)
        logger.error(f"Resolution failed for tenant {exc.tenant_id} ({status_code}): {exc.cause}")
        return JSONResponse(
            status_code=status_code,
            content={
                "error": "quota_exceeded" if status_code == 403 else "tenant_unavailable",
                "retryable": exc.retryable,
            },
        )

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError):
        if isinstance(exc, NotFoundError):
            return JSONResponse(status_code=404, content={"error": "tenant_not_found"})
        status_code = 503 if isinstance(exc, ConnectivityError) else 500
        logger.error(f"Store error ({status_code}): {exc}")
        return JSONResponse(status_code=status_code, content={"error": "store_error"})

    @app.exception_handler(SchemaError)
    async def schema_error_handler(request: Request, exc: SchemaError):
        logger.error(f"Schema error: {exc}")
        return JSONResponse(status_code=500, content={"error": "schema_error"})

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "name": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "endpoints": {
                "health": "/health",
                "database": "/tenant/database",
                "schema_version": "/tenant/schema-version",
                "schema_sync": "/tenant/schema/sync",
                "usage": "/tenant/usage",
            },
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint - queries the registry to verify it's alive"""
        services = get_services(request)
        try:
            await services.registry.health_check()
            return {
                "status": "ok",
                "service": SERVICE_NAME,
                "registry": "connected",
                "resolver": services.resolver.get_stats(),
            }
        except StoreError as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "error",
                "service": SERVICE_NAME,
                "registry": "unavailable",
            }

    @app.post("/tenant/database")
    @limiter.limit("10/minute")
    async def tenant_database(
        request: Request,
        claims: IdentityClaims = Depends(get_claims),
    ):
        """
        Resolve the caller's database, provisioning it on first use.

        Returns:
            The tenant record without its credential
        """
        connection = await get_services(request).resolver.resolve_claims(claims)
        return {
            "tenant_id": connection.tenant_id,
            "database": connection.record.public_dict(),
        }

    @app.get("/tenant/schema-version")
    async def tenant_schema_version(
        request: Request,
        connection: TenantConnection = Depends(get_tenant_connection),
    ):
        version = await connection.schema_version()
        return {
            "tenant_id": connection.tenant_id,
            "version": version.version if version else None,
            "expected_version": CURRENT_SCHEMA_VERSION,
            "up_to_date": version is not None and version.version == CURRENT_SCHEMA_VERSION,
        }

    @app.post("/tenant/schema/sync")
    @limiter.limit("5/minute")
    async def tenant_schema_sync(
        request: Request,
        claims: IdentityClaims = Depends(get_claims),
    ):
        connection = await get_services(request).resolver.resolve_claims(claims)
        changed = await sync_tenant_schema(connection)
        problems = await validate_tenant_schema(connection)
        version = await connection.schema_version()
        return {
            "tenant_id": connection.tenant_id,
            "changed": changed,
            "version": version.version if version else None,
            "problems": problems,
        }

    @app.post("/tenant/usage")
    async def tenant_usage(
        request: Request,
        request_data: Dict[str, Any] = Body(...),
        connection: TenantConnection = Depends(get_tenant_connection),
    ):
        delta = request_data.get("delta_bytes")
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise HTTPException(status_code=400, detail="delta_bytes must be an integer")

        services = get_services(request)
        used = await services.resolver.record_usage(connection.tenant_id, delta)
        return {
            "tenant_id": connection.tenant_id,
            "storage_used_bytes": used,
        }

    return app


app = create_app()
