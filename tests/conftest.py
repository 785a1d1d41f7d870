"""
Pytest configuration for libsql-jwt-router tests.

This file ensures that the src directory is in the Python path
so that tests can import from libsql_jwt_router, enables the memory DAL
for all tests, and provides fakes for the identity provider's key set and
the database hosting API.
"""
import sys
import os
import json
import time
import asyncio
from pathlib import Path

import pytest

# Force memory DAL backend for all tests
os.environ["DAL_BACKEND"] = "memory"
os.environ["RATE_LIMIT_ENABLED"] = "false"

# Add src directory to Python path
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa

from libsql_jwt_router.dal import reset_memory_databases
from libsql_jwt_router.jwks_client import reset_jwks_clients

SUPABASE_URL = "https://project-ref.supabase.co"
ISSUER = f"{SUPABASE_URL}/auth/v1"
JWKS_URL = f"{ISSUER}/.well-known/jwks.json"
REGISTRY_URL = "libsql://registry-acme.turso.io"
ORG = "acme"
API_URL = "https://api.turso.test"


@pytest.fixture(autouse=True)
def reset_state():
    """Fresh in-memory databases and JWKS clients for every test."""
    reset_memory_databases()
    reset_jwks_clients()
    yield
    reset_memory_databases()
    reset_jwks_clients()


# ============ Identity provider ============

@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def public_jwk(private_key, kid: str) -> dict:
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return jwk


def make_token(private_key, kid: str = "key-1", **claims) -> str:
    """Sign a Supabase-style access token. A claim set to None is omitted."""
    now = int(time.time())
    payload = {
        "sub": "u1",
        "email": "a@b.com",
        "iss": ISSUER,
        "aud": "authenticated",
        "role": "authenticated",
        "iat": now,
        "exp": now + 3600,
    }
    payload.update(claims)
    payload = {k: v for k, v in payload.items() if v is not None}
    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


class FakeJwksEndpoint:
    """Serves a mutable key set and counts fetches."""

    def __init__(self, keys=None, status_code: int = 200):
        self.keys = list(keys or [])
        self.status_code = status_code
        self.fetch_count = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.fetch_count += 1
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "unavailable"})
        return httpx.Response(200, json={"keys": self.keys})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def jwks_endpoint(rsa_private_key):
    return FakeJwksEndpoint([public_jwk(rsa_private_key, "key-1")])


# ============ Database hosting API ============

class FakeHostingApi:
    """
    In-process stand-in for the Turso Platform API.

    Each handler call yields to the event loop (delay) so concurrent callers
    interleave the way they would against the real service.
    """

    def __init__(self, org: str = ORG, delay: float = 0.01):
        self.org = org
        self.delay = delay
        self.databases = {}
        self.calls = []
        self.tokens_issued = 0
        self.create_response = None  # (status, body) to force a create failure
        self.token_response = None

    @property
    def prefix(self) -> str:
        return f"/v1/organizations/{self.org}/databases"

    def add_database(self, name: str) -> dict:
        database = {"Name": name, "DbId": f"id-{name}", "Hostname": f"{name}-{self.org}.turso.io"}
        self.databases[name] = database
        return database

    def count(self, method: str, suffix: str = "") -> int:
        return sum(1 for m, p in self.calls if m == method and p == self.prefix + suffix)

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if self.delay:
            await asyncio.sleep(self.delay)
        path = request.url.path
        self.calls.append((request.method, path))

        if path == self.prefix:
            if request.method == "GET":
                return httpx.Response(200, json={"databases": list(self.databases.values())})
            if request.method == "POST":
                if self.create_response:
                    status, body = self.create_response
                    return httpx.Response(status, json=body)
                name = json.loads(request.content)["name"]
                if name in self.databases:
                    return httpx.Response(409, json={"error": f"database {name} already exists"})
                return httpx.Response(200, json={"database": self.add_database(name)})

        if path.startswith(self.prefix + "/"):
            rest = path[len(self.prefix) + 1:]
            if rest.endswith("/auth/tokens") and request.method == "POST":
                name = rest[: -len("/auth/tokens")]
                if self.token_response:
                    status, body = self.token_response
                    return httpx.Response(status, json=body)
                if name not in self.databases:
                    return httpx.Response(404, json={"error": "database not found"})
                self.tokens_issued += 1
                return httpx.Response(200, json={"jwt": f"db-token-{name}-{self.tokens_issued}"})
            if request.method == "GET":
                if rest not in self.databases:
                    return httpx.Response(404, json={"error": "database not found"})
                return httpx.Response(200, json={"database": self.databases[rest]})
            if request.method == "DELETE":
                if self.databases.pop(rest, None) is None:
                    return httpx.Response(404, json={"error": "database not found"})
                return httpx.Response(200, json={"database": rest})

        return httpx.Response(404, json={"error": "not found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def hosting_api():
    return FakeHostingApi()


@pytest.fixture
def config_env(monkeypatch):
    """A complete, valid environment for Config.from_env()."""
    values = {
        "REGISTRY_DB_URL": REGISTRY_URL,
        "REGISTRY_DB_TOKEN": "registry-token",
        "TURSO_API_TOKEN": "platform-token",
        "TURSO_ORG": ORG,
        "TURSO_API_URL": API_URL,
        "SUPABASE_URL": SUPABASE_URL,
    }
    for key, value in values.items():
        monkeypatch.setenv(key, value)
    for key in ("JWKS_URL", "JWT_ISSUER", "JWT_AUDIENCE", "SUPABASE_ANON_KEY", "PORT",
                "JWT_LEEWAY_SECONDS", "RECONCILE_INTERVAL_HOURS", "RECONCILE_DELETE_ORPHANS"):
        monkeypatch.delenv(key, raising=False)
    return values
