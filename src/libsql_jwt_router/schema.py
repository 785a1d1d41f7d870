"""
Schema Initializer

Declares the tenant application schema and applies it (and the registry
schema) with statements that are safe to re-run. A crash between provisioning
and schema completion is recovered by running initialization again.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .errors import SchemaError, StatementError, ConnectivityError

logger = logging.getLogger(__name__)

REGISTRY_TABLE = "tenant_databases"
SCHEMA_VERSION_TABLE = "schema_version"


@dataclass
class SchemaVersion:
    version: str
    description: str
    created_at: str


@dataclass
class ColumnInfo:
    name: str
    data_type: str
    is_nullable: bool = True
    default_value: Optional[str] = None
    is_primary_key: bool = False


@dataclass
class IndexInfo:
    name: str
    table_name: str
    columns: List[str]
    is_unique: bool = False


@dataclass
class TriggerInfo:
    name: str
    table_name: str
    event: str
    timing: str
    action: str


@dataclass
class TableSchema:
    name: str
    columns: List[ColumnInfo]
    indexes: List[IndexInfo] = field(default_factory=list)
    triggers: List[TriggerInfo] = field(default_factory=list)


# Current schema version (increment this when the tenant schema changes)
CURRENT_SCHEMA_VERSION = "0.0.1"
CURRENT_SCHEMA_DESCRIPTION = "Initial cron jobs schema with version tracking"


def get_current_schema_version() -> SchemaVersion:
    return SchemaVersion(
        version=CURRENT_SCHEMA_VERSION,
        description=CURRENT_SCHEMA_DESCRIPTION,
        created_at=datetime.now(timezone.utc).isoformat(),
    )


def get_expected_schema() -> List[TableSchema]:
    """Tenant application tables, the source of truth for every tenant database."""
    return [
        TableSchema(
            name="cron_jobs",
            columns=[
                ColumnInfo("id", "TEXT", is_nullable=False, is_primary_key=True),
                ColumnInfo("user_id", "TEXT", is_nullable=False),
                ColumnInfo("name", "TEXT", is_nullable=False),
                ColumnInfo("schedule", "TEXT", is_nullable=False),
                ColumnInfo("command", "TEXT", is_nullable=False),
                ColumnInfo("enabled", "BOOLEAN", is_nullable=False, default_value="1"),
                ColumnInfo("created_at", "TIMESTAMP", is_nullable=False, default_value="CURRENT_TIMESTAMP"),
                ColumnInfo("updated_at", "TIMESTAMP", is_nullable=False, default_value="CURRENT_TIMESTAMP"),
            ],
            indexes=[
                IndexInfo("idx_cron_jobs_user_id", "cron_jobs", ["user_id"]),
                IndexInfo("idx_cron_jobs_enabled", "cron_jobs", ["enabled"]),
            ],
            triggers=[
                TriggerInfo(
                    name="update_cron_jobs_timestamp",
                    table_name="cron_jobs",
                    event="UPDATE",
                    timing="AFTER",
                    action="UPDATE cron_jobs SET updated_at = CURRENT_TIMESTAMP WHERE id = NEW.id",
                ),
            ],
        ),
    ]


def create_table_sql(table: TableSchema) -> str:
    """Build an idempotent CREATE TABLE statement for a table definition."""
    primary_keys = [c.name for c in table.columns if c.is_primary_key]

    column_definitions = []
    for col in table.columns:
        definition = f"{col.name} {col.data_type}"
        if col.is_primary_key and len(primary_keys) == 1:
            if "INTEGER" in col.data_type.upper():
                definition += " PRIMARY KEY AUTOINCREMENT"
            else:
                definition += " PRIMARY KEY"
        elif not col.is_nullable:
            definition += " NOT NULL"
        if col.default_value is not None:
            definition += f" DEFAULT {col.default_value}"
        column_definitions.append(definition)

    if len(primary_keys) > 1:
        column_definitions.append(f"PRIMARY KEY ({', '.join(primary_keys)})")

    return f"CREATE TABLE IF NOT EXISTS {table.name} ({', '.join(column_definitions)})"


def create_index_sql(index: IndexInfo) -> str:
    unique = "UNIQUE " if index.is_unique else ""
    return (
        f"CREATE {unique}INDEX IF NOT EXISTS {index.name} "
        f"ON {index.table_name} ({', '.join(index.columns)})"
    )


def create_trigger_sql(trigger: TriggerInfo) -> str:
    return (
        f"CREATE TRIGGER IF NOT EXISTS {trigger.name} {trigger.timing} {trigger.event} "
        f"ON {trigger.table_name} FOR EACH ROW BEGIN {trigger.action}; END"
    )


def _add_column_sql(table_name: str, col: ColumnInfo) -> str:
    """ALTER TABLE ADD COLUMN with a default that NOT NULL columns require."""
    sql = f"ALTER TABLE {table_name} ADD COLUMN {col.name} {col.data_type}"
    if not col.is_nullable:
        default = col.default_value
        if default is None:
            default = {
                "INTEGER": "0",
                "REAL": "0.0",
                "DECIMAL": "0.0",
                "BOOLEAN": "0",
                "TIMESTAMP": "CURRENT_TIMESTAMP",
            }.get(col.data_type.upper(), "''")
        if default == "CURRENT_TIMESTAMP":
            # SQLite rejects non-constant defaults in ADD COLUMN
            default = "'1970-01-01 00:00:00'"
        sql += f" NOT NULL DEFAULT {default}"
    elif col.default_value is not None:
        sql += f" DEFAULT {col.default_value}"
    return sql


async def _run(conn, sql: str, what: str):
    try:
        return await conn.execute(sql)
    except (StatementError, ConnectivityError) as e:
        raise SchemaError(f"Failed to {what}: {e}") from e


async def get_current_tables(conn) -> List[str]:
    result = await conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%'"
    )
    return [row[0] for row in result.rows]


async def get_table_columns(conn, table_name: str) -> List[ColumnInfo]:
    result = await conn.execute(f"PRAGMA table_info({table_name})")
    columns = []
    for row in result.as_dicts():
        columns.append(ColumnInfo(
            name=row["name"],
            data_type=row["type"],
            is_nullable=row["notnull"] == 0,
            default_value=row["dflt_value"],
            is_primary_key=row["pk"] > 0,
        ))
    return columns


async def _get_index_names(conn) -> List[str]:
    result = await conn.execute("SELECT name FROM sqlite_master WHERE type='index'")
    return [row[0] for row in result.rows]


async def _get_trigger_names(conn) -> List[str]:
    result = await conn.execute("SELECT name FROM sqlite_master WHERE type='trigger'")
    return [row[0] for row in result.rows]


async def initialize_schema_version_table(conn):
    await _run(
        conn,
        f"""
        CREATE TABLE IF NOT EXISTS {SCHEMA_VERSION_TABLE} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            version TEXT NOT NULL,
            description TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
        """,
        "create schema_version table",
    )


async def get_schema_version(conn) -> Optional[SchemaVersion]:
    """Latest recorded schema version, or None for an uninitialized database."""
    tables = await get_current_tables(conn)
    if SCHEMA_VERSION_TABLE not in tables:
        return None

    result = await conn.execute(
        f"SELECT version, description, created_at FROM {SCHEMA_VERSION_TABLE} ORDER BY id DESC LIMIT 1"
    )
    row = result.first()
    if row is None:
        return None
    return SchemaVersion(**row)


async def update_schema_version(conn, version: SchemaVersion) -> bool:
    """Record a version unless it is already the latest. Returns True if written."""
    # Atomic check-and-insert
    try:
        result = await conn.execute(
            f"INSERT INTO {SCHEMA_VERSION_TABLE} (version, description, created_at) "
            f"SELECT ?, ?, ? WHERE NOT EXISTS ("
            f"SELECT 1 FROM {SCHEMA_VERSION_TABLE} "
            f"WHERE id = (SELECT MAX(id) FROM {SCHEMA_VERSION_TABLE}) AND version = ?)",
            (version.version, version.description, version.created_at, version.version),
        )
    except (StatementError, ConnectivityError) as e:
        raise SchemaError(f"Failed to update schema version: {e}") from e
    return result.rows_affected > 0


async def ensure_indexes(conn, table: TableSchema):
    for index in table.indexes:
        await _run(conn, create_index_sql(index), f"create index {index.name}")


async def ensure_triggers(conn, table: TableSchema):
    for trigger in table.triggers:
        await _run(conn, create_trigger_sql(trigger), f"create trigger {trigger.name}")


async def init_tenant_schema(conn):
    """
    Apply the tenant schema to a (possibly fresh) tenant database.

    Idempotent: every statement uses IF NOT EXISTS, and the version row is
    only written when it changes.

    Raises:
        SchemaError: If any statement fails
    """
    logger.info(f"Initializing tenant schema for database: {getattr(conn, 'url', conn)}")

    await initialize_schema_version_table(conn)

    for table in get_expected_schema():
        await _run(conn, create_table_sql(table), f"create table {table.name}")
        await ensure_indexes(conn, table)
        await ensure_triggers(conn, table)

    await update_schema_version(conn, get_current_schema_version())
    logger.info("Tenant schema initialized successfully")


async def init_registry_schema(conn):
    """
    Create the registry table and its email index if absent, and add columns
    that older registries lack. Safe to call concurrently and repeatedly.

    Raises:
        SchemaError: If any statement fails
    """
    await _run(
        conn,
        f"""
        CREATE TABLE IF NOT EXISTS {REGISTRY_TABLE} (
            tenant_id TEXT PRIMARY KEY,
            email TEXT NOT NULL,
            db_name TEXT NOT NULL,
            db_url TEXT NOT NULL,
            db_token TEXT NOT NULL,
            storage_used_bytes INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """,
        f"create {REGISTRY_TABLE} table",
    )

    # Migration for registries created before usage tracking
    try:
        columns = [c.name for c in await get_table_columns(conn, REGISTRY_TABLE)]
    except (StatementError, ConnectivityError) as e:
        raise SchemaError(f"Failed to inspect {REGISTRY_TABLE}: {e}") from e
    if "storage_used_bytes" not in columns:
        try:
            await conn.execute(
                f"ALTER TABLE {REGISTRY_TABLE} ADD COLUMN storage_used_bytes INTEGER NOT NULL DEFAULT 0"
            )
            logger.info(f"Added storage_used_bytes column to {REGISTRY_TABLE}")
        except StatementError as e:
            # Another process added it between our check and the ALTER
            if "duplicate column" not in str(e).lower():
                raise SchemaError(f"Failed to add storage_used_bytes: {e}") from e

    await _run(
        conn,
        f"CREATE INDEX IF NOT EXISTS idx_{REGISTRY_TABLE}_email ON {REGISTRY_TABLE}(email)",
        "create email index",
    )


async def validate_tenant_schema(conn) -> List[str]:
    """
    Compare a tenant database with the expected schema.

    Returns:
        List of human-readable problems; empty when the database is ready
    """
    problems = []
    try:
        tables = await get_current_tables(conn)
        index_names = await _get_index_names(conn)
        trigger_names = await _get_trigger_names(conn)

        if SCHEMA_VERSION_TABLE not in tables:
            problems.append(f"missing table {SCHEMA_VERSION_TABLE}")

        for table in get_expected_schema():
            if table.name not in tables:
                problems.append(f"missing table {table.name}")
                continue
            existing = {c.name for c in await get_table_columns(conn, table.name)}
            for col in table.columns:
                if col.name not in existing:
                    problems.append(f"missing column {table.name}.{col.name}")
            for index in table.indexes:
                if index.name not in index_names:
                    problems.append(f"missing index {index.name}")
            for trigger in table.triggers:
                if trigger.name not in trigger_names:
                    problems.append(f"missing trigger {trigger.name}")
    except (StatementError, ConnectivityError) as e:
        raise SchemaError(f"Failed to validate schema: {e}") from e

    return problems


async def sync_tenant_schema(conn) -> bool:
    """
    Bring an existing tenant database up to the current schema.

    Additive only: creates missing tables, adds missing columns, ensures
    indexes and triggers. Columns and tables outside the expected schema are
    left in place.

    Returns:
        True if the recorded schema version changed
    """
    logger.info("Starting schema synchronization")

    current_version = await get_schema_version(conn)
    expected_version = get_current_schema_version()

    if current_version is not None and current_version.version == expected_version.version:
        if not await validate_tenant_schema(conn):
            logger.info("Schema is up to date")
            return False

    if current_version is None:
        logger.info("No schema version found, initializing with current schema")
    else:
        logger.info(
            f"Schema version mismatch: current={current_version.version}, expected={expected_version.version}"
        )

    await initialize_schema_version_table(conn)
    tables = await get_current_tables(conn)

    for table in get_expected_schema():
        if table.name not in tables:
            await _run(conn, create_table_sql(table), f"create table {table.name}")
        else:
            existing = {c.name for c in await get_table_columns(conn, table.name)}
            for col in table.columns:
                if col.name not in existing:
                    logger.info(f"Adding column {table.name}.{col.name}")
                    await _run(conn, _add_column_sql(table.name, col), f"add column {col.name}")
        await ensure_indexes(conn, table)
        await ensure_triggers(conn, table)

    changed = await update_schema_version(conn, expected_version)
    logger.info("Schema synchronized successfully")
    return changed
