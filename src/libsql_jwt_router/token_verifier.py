"""
Token Verifier

The only trust boundary for tenant identity: turns a bearer token issued by
the identity provider into IdentityClaims, or raises an AuthError. There is
no fallback identity on any failure path.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List

import jwt

from .core.auth import extract_bearer_token, decode_token_unsafe, get_token_preview
from .errors import (
    Expired,
    InvalidClaims,
    InvalidSignature,
    MalformedToken,
)
from .jwks_client import JwksClient, get_jwks_client

logger = logging.getLogger(__name__)

# Asymmetric algorithms only; HS* tokens would need a shared secret
ALLOWED_ALGORITHMS = ["RS256", "ES256"]


@dataclass
class IdentityClaims:
    """Verified identity attributes. Derived per request, never persisted."""
    tenant_id: str  # Provider-issued subject (sub claim)
    email: Optional[str]
    expires_at: datetime
    issuer: str
    role: Optional[str] = None
    audience: Any = None
    issued_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "IdentityClaims":
        iat = payload.get("iat")
        return cls(
            tenant_id=payload["sub"],
            email=payload.get("email") or None,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            issuer=payload.get("iss", ""),
            role=payload.get("role"),
            audience=payload.get("aud"),
            issued_at=datetime.fromtimestamp(iat, tz=timezone.utc) if isinstance(iat, (int, float)) else None,
            raw=payload,
        )


class TokenVerifier:
    """Verifies provider-issued JWTs against the provider's rotating key set."""

    def __init__(
        self,
        jwks_client: JwksClient,
        issuer: str,
        audience: Optional[str] = "authenticated",
        leeway_seconds: int = 30,
        algorithms: Optional[List[str]] = None,
    ):
        """
        Args:
            jwks_client: Key-set client for the provider
            issuer: Expected iss claim
            audience: Expected aud claim, or None to skip audience checks
            leeway_seconds: Allowed clock skew for nbf/iat (exp is always strict)
            algorithms: Accepted signing algorithms
        """
        self.jwks_client = jwks_client
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self.algorithms = algorithms or list(ALLOWED_ALGORITHMS)

    @classmethod
    def from_config(cls, config) -> "TokenVerifier":
        jwks_client = get_jwks_client(
            config.jwks_url,
            headers=config.jwks_headers(),
            cache_ttl_seconds=config.jwks_cache_ttl_seconds,
            min_refresh_interval_seconds=config.jwks_min_refresh_interval_seconds,
        )
        return cls(
            jwks_client,
            issuer=config.jwt_issuer,
            audience=config.jwt_audience,
            leeway_seconds=config.jwt_leeway_seconds,
        )

    async def verify(self, token: str) -> IdentityClaims:
        """
        Verify a token and extract its claims.

        Raises:
            MalformedToken: Token cannot be parsed, lacks kid/sub/exp, or uses a
                disallowed algorithm
            InvalidSignature: No key matches, or the signature does not verify
            Expired: exp has passed
            InvalidClaims: Issuer, audience or nbf not acceptable
            KeySetUnavailable: The key set cannot be fetched
        """
        if not token or not isinstance(token, str):
            raise MalformedToken("Token is empty")

        try:
            header = jwt.get_unverified_header(token)
        except jwt.DecodeError as e:
            raise MalformedToken(f"Failed to decode header: {e}") from e

        alg = header.get("alg")
        if alg not in self.algorithms:
            raise MalformedToken(f"Unsupported signing algorithm: {alg}")

        kid = header.get("kid")
        if not kid:
            raise MalformedToken("Missing kid in header")

        signing_key = await self.jwks_client.get_signing_key(kid)
        if signing_key is None:
            raise InvalidSignature(f"Key with kid {kid} not found")

        key_alg = getattr(signing_key, "algorithm_name", None) or alg
        if key_alg != alg:
            raise InvalidSignature(f"Token algorithm {alg} does not match key {kid} ({key_alg})")

        try:
            payload = jwt.decode(
                token,
                signing_key.key,
                algorithms=[alg],
                issuer=self.issuer,
                audience=self.audience,
                leeway=self.leeway_seconds,
                options={
                    "require": ["exp", "sub"],
                    "verify_aud": bool(self.audience),
                    "verify_iss": True,
                    "verify_exp": False,
                },
            )
        except jwt.InvalidSignatureError as e:
            unverified = decode_token_unsafe(token) or {}
            logger.warning(f"JWT signature verification failed: {get_token_preview(token)} (sub={unverified.get('sub', 'N/A')})")
            raise InvalidSignature(str(e)) from e
        except jwt.MissingRequiredClaimError as e:
            raise MalformedToken(str(e)) from e
        except (jwt.InvalidIssuerError, jwt.InvalidAudienceError,
                jwt.ImmatureSignatureError, jwt.InvalidIssuedAtError) as e:
            logger.warning(f"Invalid JWT claims: {type(e).__name__} - {e}")
            raise InvalidClaims(str(e)) from e
        except jwt.DecodeError as e:
            raise MalformedToken(str(e)) from e
        except jwt.InvalidTokenError as e:
            raise InvalidClaims(f"{type(e).__name__}: {e}") from e

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub.strip():
            raise MalformedToken("Empty sub claim")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise MalformedToken("Non-numeric exp claim")

        # No leeway on expiry
        if exp <= time.time():
            logger.warning(f"JWT token expired: {get_token_preview(token)} (exp={exp})")
            raise Expired("Signature has expired")

        claims = IdentityClaims.from_payload(payload)
        logger.debug(f"JWT validated for tenant {claims.tenant_id}")
        return claims

    async def verify_bearer(self, authorization: Optional[str]) -> IdentityClaims:
        """Verify the token carried in an Authorization header value."""
        token = extract_bearer_token(authorization)
        if not token:
            raise MalformedToken("Authorization header missing or not a Bearer token", reason="missing_token")
        return await self.verify(token)
