"""
Process-wide configuration loaded once at startup from environment variables.
"""
import os
import logging
from dataclasses import dataclass
from typing import List, Optional

from dotenv import load_dotenv

from ..errors import ConfigurationError

load_dotenv()


def _env_int(name: str, default: int, invalid: List[str]) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        invalid.append(name)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Config:
    """Centralized configuration. Build with Config.from_env()."""

    # Registry database
    registry_db_url: str
    registry_db_token: str

    # Database hosting API
    turso_api_token: str
    turso_org: str
    turso_api_url: str = "https://api.turso.tech"
    turso_group: str = "default"
    tenant_token_expiration: str = "never"
    tenant_db_prefix: str = "user"

    # Identity provider
    jwks_url: str = ""
    jwt_issuer: str = ""
    jwt_audience: Optional[str] = "authenticated"
    jwt_leeway_seconds: int = 30
    supabase_anon_key: Optional[str] = None
    jwks_cache_ttl_seconds: int = 600
    jwks_min_refresh_interval_seconds: int = 30

    # Resolver / background work
    tenant_connection_cache_ttl_seconds: int = 300
    reconcile_interval_hours: int = 24
    reconcile_delete_orphans: bool = False

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"
    rate_limit_enabled: bool = True

    @classmethod
    def from_env(cls) -> "Config":
        """
        Build configuration from the environment.

        Raises:
            ConfigurationError: listing every missing or unparsable variable
        """
        missing_vars = []
        invalid_vars: List[str] = []

        registry_db_url = os.getenv("REGISTRY_DB_URL")
        registry_db_token = os.getenv("REGISTRY_DB_TOKEN")
        turso_api_token = os.getenv("TURSO_API_TOKEN")
        turso_org = os.getenv("TURSO_ORG")
        supabase_url = os.getenv("SUPABASE_URL")
        jwks_url = os.getenv("JWKS_URL")
        jwt_issuer = os.getenv("JWT_ISSUER")

        if not registry_db_url:
            missing_vars.append("REGISTRY_DB_URL")
        if not registry_db_token:
            missing_vars.append("REGISTRY_DB_TOKEN")
        if not turso_api_token:
            missing_vars.append("TURSO_API_TOKEN")
        if not turso_org:
            missing_vars.append("TURSO_ORG")

        if supabase_url:
            supabase_url = supabase_url.rstrip("/")
            jwks_url = jwks_url or f"{supabase_url}/auth/v1/.well-known/jwks.json"
            jwt_issuer = jwt_issuer or f"{supabase_url}/auth/v1"
        else:
            if not jwks_url:
                missing_vars.append("SUPABASE_URL (or JWKS_URL)")
            if not jwt_issuer:
                missing_vars.append("SUPABASE_URL (or JWT_ISSUER)")

        config_kwargs = dict(
            jwt_leeway_seconds=_env_int("JWT_LEEWAY_SECONDS", 30, invalid_vars),
            jwks_cache_ttl_seconds=_env_int("JWKS_CACHE_TTL_SECONDS", 600, invalid_vars),
            jwks_min_refresh_interval_seconds=_env_int("JWKS_MIN_REFRESH_INTERVAL_SECONDS", 30, invalid_vars),
            tenant_connection_cache_ttl_seconds=_env_int("TENANT_CONNECTION_CACHE_TTL_SECONDS", 300, invalid_vars),
            reconcile_interval_hours=_env_int("RECONCILE_INTERVAL_HOURS", 24, invalid_vars),
            port=_env_int("PORT", 8000, invalid_vars),
        )

        if missing_vars or invalid_vars:
            problems = []
            if missing_vars:
                problems.append(f"Missing required environment variables: {', '.join(missing_vars)}")
            if invalid_vars:
                problems.append(f"Environment variables must be integers: {', '.join(invalid_vars)}")
            raise ConfigurationError(". ".join(problems) + ". Configure these in your .env file.")

        audience = os.getenv("JWT_AUDIENCE", "authenticated")

        return cls(
            registry_db_url=registry_db_url,
            registry_db_token=registry_db_token,
            turso_api_token=turso_api_token,
            turso_org=turso_org,
            turso_api_url=os.getenv("TURSO_API_URL", "https://api.turso.tech").rstrip("/"),
            turso_group=os.getenv("TURSO_GROUP", "default"),
            tenant_token_expiration=os.getenv("TENANT_TOKEN_EXPIRATION", "never"),
            tenant_db_prefix=os.getenv("TENANT_DB_PREFIX", "user"),
            jwks_url=jwks_url,
            jwt_issuer=jwt_issuer.rstrip("/"),
            jwt_audience=audience or None,
            supabase_anon_key=os.getenv("SUPABASE_ANON_KEY") or None,
            reconcile_delete_orphans=_env_bool("RECONCILE_DELETE_ORPHANS", False),
            host=os.getenv("HOST", "127.0.0.1"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
            **config_kwargs,
        )

    def jwks_headers(self) -> dict:
        """Headers for key-set fetches (Supabase accepts the anon key)."""
        if not self.supabase_anon_key:
            return {}
        return {
            "apikey": self.supabase_anon_key,
            "Authorization": f"Bearer {self.supabase_anon_key}",
        }


def setup_logging(level: str = "INFO"):
    """Configure logging based on LOG_LEVEL."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(relativeCreated)5dms %(name)s:%(levelname)s:%(message)s'
    )
    # Reduce httpx logging verbosity
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger(__name__)
