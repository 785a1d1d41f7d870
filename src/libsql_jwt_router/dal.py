"""
libSQL Data Access Layer (DAL) with Memory Fallback

Provides a unified statement interface for one libSQL database with automatic
backend selection:
- HranaBackend: real access over the libSQL "Hrana over HTTP" v2 pipeline API
- MemoryBackend: process-local SQLite emulation for test isolation

Auto-detects test environment and switches to memory backend for unit tests.
The registry database and every tenant database go through this layer.
"""

import os
import sys
import json
import base64
import sqlite3
import asyncio
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, Sequence, Tuple
from urllib.parse import urlparse
import httpx
import logging

from .errors import ConnectivityError, StatementError

logger = logging.getLogger(__name__)

Statement = Tuple[str, Sequence[Any]]


def _is_test_env() -> bool:
    """Auto-detect if we're running in a test environment."""
    return "pytest" in sys.modules or os.getenv("DAL_BACKEND") == "memory"


def is_unique_violation(error: Exception) -> bool:
    """True if the error is a primary key / unique constraint violation."""
    if not isinstance(error, StatementError):
        return False
    code = (error.code or "").upper()
    if code in ("SQLITE_CONSTRAINT_PRIMARYKEY", "SQLITE_CONSTRAINT_UNIQUE"):
        return True
    return "UNIQUE constraint failed" in str(error)


def to_http_url(url: str) -> str:
    """Map a libsql:// (or ws) database URL onto the HTTP endpoint it serves."""
    parsed = urlparse(url)
    scheme = {"libsql": "https", "wss": "https", "ws": "http"}.get(parsed.scheme, parsed.scheme)
    if scheme not in ("http", "https"):
        raise ValueError(f"Unsupported database URL scheme: {parsed.scheme}")
    return f"{scheme}://{parsed.netloc}{parsed.path}".rstrip("/")


@dataclass
class ResultSet:
    """Rows and metadata returned by one statement."""
    columns: List[str] = field(default_factory=list)
    rows: List[Tuple[Any, ...]] = field(default_factory=list)
    rows_affected: int = 0
    last_insert_rowid: Optional[int] = None

    def first(self) -> Optional[Dict[str, Any]]:
        """First row as a dict, or None."""
        if not self.rows:
            return None
        return dict(zip(self.columns, self.rows[0]))

    def as_dicts(self) -> List[Dict[str, Any]]:
        return [dict(zip(self.columns, row)) for row in self.rows]


class BaseBackend(ABC):
    """Abstract base class for DAL backends."""

    @abstractmethod
    async def execute(self, sql: str, args: Sequence[Any] = ()) -> ResultSet:
        """
        Execute one SQL statement.

        Args:
            sql: Statement text with positional ``?`` placeholders
            args: Positional arguments

        Returns:
            ResultSet with rows (if any) and affected row count

        Raises:
            StatementError: If the database rejects the statement
            ConnectivityError: If the database cannot be reached
        """
        pass

    @abstractmethod
    async def batch(self, statements: Sequence[Statement]) -> List[ResultSet]:
        """
        Execute statements in order, stopping at the first failure.

        Raises:
            StatementError: For the first failing statement
        """
        pass

    async def close(self):
        pass


# In-memory databases shared across connections, keyed by URL host
_memory_databases: Dict[str, sqlite3.Connection] = {}
_memory_lock = threading.RLock()


def _memory_key(url: str) -> str:
    parsed = urlparse(url)
    return (parsed.netloc or parsed.path or url).lower()


def reset_memory_databases() -> None:
    """Drop every in-memory database (mainly for testing)."""
    with _memory_lock:
        for conn in _memory_databases.values():
            conn.close()
        _memory_databases.clear()


def memory_database_names() -> List[str]:
    with _memory_lock:
        return sorted(_memory_databases.keys())


class MemoryBackend(BaseBackend):
    """In-memory libSQL emulator for testing, backed by SQLite."""

    def __init__(self, url: str):
        self.key = _memory_key(url)
        with _memory_lock:
            conn = _memory_databases.get(self.key)
            if conn is None:
                # Autocommit, like a remote libSQL statement
                conn = sqlite3.connect(":memory:", check_same_thread=False, isolation_level=None)
                _memory_databases[self.key] = conn
                logger.debug(f"MemoryBackend: created database {self.key}")
        self._conn = conn

    def _run(self, sql: str, args: Sequence[Any]) -> ResultSet:
        try:
            cursor = self._conn.execute(sql, tuple(args))
            rows = cursor.fetchall()
            columns = [d[0] for d in cursor.description] if cursor.description else []
            return ResultSet(
                columns=columns,
                rows=[tuple(r) for r in rows],
                rows_affected=max(cursor.rowcount, 0),
                last_insert_rowid=cursor.lastrowid,
            )
        except sqlite3.IntegrityError as e:
            raise StatementError(str(e), getattr(e, "sqlite_errorname", "SQLITE_CONSTRAINT")) from e
        except sqlite3.Error as e:
            raise StatementError(str(e), getattr(e, "sqlite_errorname", "SQLITE_ERROR")) from e

    async def execute(self, sql: str, args: Sequence[Any] = ()) -> ResultSet:
        # Yield like a network round trip would
        await asyncio.sleep(0)
        with _memory_lock:
            return self._run(sql, args)

    async def batch(self, statements: Sequence[Statement]) -> List[ResultSet]:
        await asyncio.sleep(0)
        results = []
        with _memory_lock:
            for sql, args in statements:
                results.append(self._run(sql, args))
        return results


def _encode_value(value: Any) -> Dict[str, Any]:
    """Encode a Python value as a Hrana value."""
    if value is None:
        return {"type": "null"}
    if isinstance(value, bool):
        return {"type": "integer", "value": str(int(value))}
    if isinstance(value, int):
        return {"type": "integer", "value": str(value)}
    if isinstance(value, float):
        return {"type": "float", "value": value}
    if isinstance(value, (bytes, bytearray)):
        return {"type": "blob", "base64": base64.b64encode(bytes(value)).decode().rstrip("=")}
    return {"type": "text", "value": str(value)}


def _decode_value(value: Dict[str, Any]) -> Any:
    """Decode a Hrana value into a Python value."""
    kind = value.get("type")
    if kind == "null":
        return None
    if kind == "integer":
        return int(value["value"])
    if kind == "float":
        return float(value["value"])
    if kind == "blob":
        data = value.get("base64", "")
        return base64.b64decode(data + "=" * (-len(data) % 4))
    return value.get("value")


def _decode_result(result: Dict[str, Any]) -> ResultSet:
    rowid = result.get("last_insert_rowid")
    return ResultSet(
        columns=[col.get("name") or "" for col in result.get("cols", [])],
        rows=[tuple(_decode_value(v) for v in row) for row in result.get("rows", [])],
        rows_affected=int(result.get("affected_row_count") or 0),
        last_insert_rowid=int(rowid) if rowid is not None else None,
    )


def _statement_error(error: Dict[str, Any]) -> StatementError:
    return StatementError(error.get("message", "statement failed"), error.get("code"))


class HranaBackend(BaseBackend):
    """Real libSQL backend over the Hrana HTTP pipeline."""

    def __init__(self, url: str, auth_token: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        """
        Args:
            url: Database URL (libsql://, https:// or http://)
            auth_token: Database credential, sent as a bearer token
            client: Shared AsyncClient; if given, it is not closed by this backend
            timeout: Request timeout in seconds when this backend owns its client
        """
        self.base_url = to_http_url(url)
        self.headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _pipeline(self, requests: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/v2/pipeline"
        body = {"baton": None, "requests": requests + [{"type": "close"}]}

        try:
            response = await self._client.post(url, json=body, headers=self.headers)
        except httpx.HTTPError as e:
            raise ConnectivityError(f"Cannot reach database at {self.base_url}: {e}") from e

        if response.status_code in (401, 403):
            raise ConnectivityError(f"Database at {self.base_url} rejected credential ({response.status_code})")
        if response.status_code == 404:
            raise ConnectivityError(f"Database not found at {self.base_url}")
        if response.status_code >= 500:
            raise ConnectivityError(f"Database at {self.base_url} unavailable ({response.status_code})")
        if response.status_code != 200:
            raise StatementError(f"Pipeline request failed: {response.status_code} {response.text}")

        try:
            payload = response.json()
        except json.JSONDecodeError as e:
            raise ConnectivityError(f"Database returned non-JSON response: {e}") from e

        return payload.get("results", [])[:len(requests)]

    async def execute(self, sql: str, args: Sequence[Any] = ()) -> ResultSet:
        stmt = {"sql": sql, "args": [_encode_value(a) for a in args], "want_rows": True}
        results = await self._pipeline([{"type": "execute", "stmt": stmt}])
        if not results:
            raise ConnectivityError("Database returned an empty pipeline response")

        result = results[0]
        if result.get("type") == "error":
            raise _statement_error(result.get("error", {}))
        return _decode_result(result["response"]["result"])

    async def batch(self, statements: Sequence[Statement]) -> List[ResultSet]:
        steps = []
        for i, (sql, args) in enumerate(statements):
            step = {"stmt": {"sql": sql, "args": [_encode_value(a) for a in args], "want_rows": True}}
            if i > 0:
                # Run each step only if the previous one succeeded
                step["condition"] = {"type": "ok", "step": i - 1}
            steps.append(step)

        results = await self._pipeline([{"type": "batch", "batch": {"steps": steps}}])
        if not results:
            raise ConnectivityError("Database returned an empty pipeline response")
        if results[0].get("type") == "error":
            raise _statement_error(results[0].get("error", {}))

        batch_result = results[0]["response"]["result"]
        step_results = batch_result.get("step_results", [])
        step_errors = batch_result.get("step_errors", [])
        for error in step_errors:
            if error:
                raise _statement_error(error)
        return [_decode_result(r) for r in step_results if r is not None]

    async def close(self):
        """Close the async client if we own it."""
        if self._owns_client:
            await self._client.aclose()


class LibsqlDAL:
    """Main Data Access Layer with automatic backend selection."""

    def __init__(self, url: str, auth_token: Optional[str] = None, backend: Optional[str] = None,
                 client: Optional[httpx.AsyncClient] = None):
        """
        Initialize the DAL for one database.

        Args:
            url: Database URL
            auth_token: Database credential
            backend: 'hrana', 'memory', or None for auto-detection
            client: Optional shared AsyncClient for the hrana backend
        """
        if backend is None:
            backend = "memory" if _is_test_env() else "hrana"

        self.url = url
        self.backend = self._get_backend(backend, url, auth_token, client)

    def _get_backend(self, backend: str, url: str, auth_token: Optional[str],
                     client: Optional[httpx.AsyncClient]) -> BaseBackend:
        """Create and return the appropriate backend instance."""
        if backend == "memory":
            return MemoryBackend(url)
        elif backend == "hrana":
            return HranaBackend(url, auth_token, client=client)
        else:
            raise ValueError(f"Unknown backend: {backend}")

    async def execute(self, sql: str, args: Sequence[Any] = ()) -> ResultSet:
        return await self.backend.execute(sql, args)

    async def batch(self, statements: Sequence[Statement]) -> List[ResultSet]:
        return await self.backend.batch(statements)

    async def close(self):
        """Close backend resources if needed."""
        await self.backend.close()


# Convenience factory function
def create_dal(url: str, auth_token: Optional[str] = None, backend: Optional[str] = None,
               client: Optional[httpx.AsyncClient] = None) -> LibsqlDAL:
    """Create a LibsqlDAL instance with an optional backend override."""
    return LibsqlDAL(url, auth_token, backend=backend, client=client)
