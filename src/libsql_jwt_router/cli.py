#!/usr/bin/env python3
"""
libSQL JWT Router CLI - Bootstrap and management commands

Usage:
    python -m libsql_jwt_router.cli init               # Create the registry schema
    python -m libsql_jwt_router.cli status             # Check registry status
    python -m libsql_jwt_router.cli reconcile          # Report orphaned tenant databases
    python -m libsql_jwt_router.cli reconcile --delete # ...and delete them
    python -m libsql_jwt_router.cli serve              # Run the HTTP server
"""

import asyncio
import argparse
import sys

from .core.config import Config, setup_logging
from .errors import ConfigurationError, SchemaError, StoreError
from .main import build_services


def load_config() -> Config:
    try:
        return Config.from_env()
    except ConfigurationError as e:
        print(f"✗ {e}")
        sys.exit(1)


async def cmd_init(config: Config) -> bool:
    """Create the registry table and index if absent"""
    print("=" * 60)
    print("Registry Initialization")
    print("=" * 60)
    print(f"Registry URL: {config.registry_db_url}")
    print()

    services = build_services(config)
    try:
        await services.registry.ensure_schema()
        print("  ✓ Registry schema ready")
        return True
    except SchemaError as e:
        print(f"  ✗ Failed to initialize registry schema: {e}")
        return False
    finally:
        await services.close()


async def cmd_status(config: Config) -> bool:
    """Check registry health and tenant count"""
    print("=" * 60)
    print("Registry Status")
    print("=" * 60)
    print(f"Registry URL: {config.registry_db_url}")
    print(f"Organization: {config.turso_org} (group: {config.turso_group})")
    print()

    services = build_services(config)
    try:
        await services.registry.health_check()
        print("Registry: ✓ connected")
        print(f"Tenants: {await services.registry.count()}")
        return True
    except StoreError as e:
        print(f"Registry: ✗ Cannot query ({e})")
        return False
    finally:
        await services.close()


async def cmd_reconcile(config: Config, delete: bool) -> bool:
    """Compare hosted databases against the registry"""
    print("=" * 60)
    print("Orphan Reconciliation" + (" (delete)" if delete else " (report only)"))
    print("=" * 60)

    services = build_services(config)
    try:
        result = await services.reconciliation.reconcile(delete_orphans=delete)
    finally:
        await services.close()

    if result["orphans"]:
        print("Orphaned databases:")
        for name in result["orphans"]:
            marker = "deleted" if name in result["deleted"] else "kept"
            print(f"  - {name} ({marker})")
    else:
        print("  ✓ No orphaned databases")

    for error in result["errors"]:
        print(f"  ✗ {error}")
    return result["success"]


def cmd_serve(config: Config):
    """Run the HTTP server with uvicorn"""
    import uvicorn

    print(f"Starting uvicorn server on {config.host}:{config.port}")
    uvicorn.run(
        "libsql_jwt_router.main:app",
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="libSQL JWT Router CLI - Bootstrap and management commands",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m libsql_jwt_router.cli init                Create the registry schema
  python -m libsql_jwt_router.cli status              Check current status
  python -m libsql_jwt_router.cli reconcile --delete  Delete orphaned databases
        """
    )
    parser.add_argument(
        "command",
        choices=["init", "status", "reconcile", "serve"],
        help="Command to run"
    )
    parser.add_argument(
        "--delete",
        action="store_true",
        help="With reconcile: delete orphaned databases instead of only listing them"
    )

    args = parser.parse_args(argv)
    config = load_config()
    setup_logging(config.log_level)

    if args.command == "init":
        ok = asyncio.run(cmd_init(config))
    elif args.command == "status":
        ok = asyncio.run(cmd_status(config))
    elif args.command == "reconcile":
        ok = asyncio.run(cmd_reconcile(config, args.delete))
    else:
        cmd_serve(config)
        ok = True

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
