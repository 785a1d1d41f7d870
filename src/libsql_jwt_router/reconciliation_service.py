"""
Reconciliation Service Module

Finds tenant databases that exist at the hosting provider but are referenced
by no registry record (left behind by a provisioning that failed after the
database was created). Reports them, and deletes them only when configured to.
"""

import logging
from typing import Dict, Any, Optional
import asyncio

from .provisioning_service import TenantProvisioningService
from .registry_service import RegistryStore

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Compares hosting-provider databases against the registry."""

    def __init__(
        self,
        registry: RegistryStore,
        provisioner: TenantProvisioningService,
        resolver=None,
        delete_orphans: bool = False,
        interval_hours: int = 24,
    ):
        """
        Args:
            registry: Registry store
            provisioner: Hosting API client (list/delete)
            resolver: Optional ConnectionResolver; its in-flight databases are skipped
            delete_orphans: Delete orphans instead of only reporting them
            interval_hours: How often the periodic sweep runs (default 24 hours)
        """
        self.registry = registry
        self.provisioner = provisioner
        self.resolver = resolver
        self.delete_orphans = delete_orphans
        self.interval_hours = interval_hours
        self._task = None

    async def reconcile(self, delete_orphans: Optional[bool] = None) -> Dict[str, Any]:
        """
        Run one sweep.

        Args:
            delete_orphans: Override the configured deletion policy for this run

        Returns:
            Dict with sweep stats: {orphans, deleted, errors, success}
        """
        delete = self.delete_orphans if delete_orphans is None else delete_orphans
        prefix = f"{self.provisioner.db_prefix}-"
        orphans = []
        deleted = []
        errors = []

        try:
            databases = await self.provisioner.list_databases()
            registered = set(await self.registry.list_database_names())
            busy = set(self.resolver.in_flight_database_names()) if self.resolver else set()

            for database in databases:
                name = database.get("Name") or database.get("name")
                if not name or not name.startswith(prefix):
                    continue
                if name in registered or name in busy:
                    continue
                orphans.append(name)

            logger.info(
                f"[Reconciliation] {len(databases)} hosted databases, "
                f"{len(registered)} registered, {len(orphans)} orphaned"
            )

            if delete:
                for name in orphans:
                    # A record may have been committed since the listing
                    if name in set(await self.registry.list_database_names()):
                        logger.info(f"[Reconciliation] {name} was registered during the sweep, keeping it")
                        continue
                    try:
                        await self.provisioner.delete_database(name)
                        deleted.append(name)
                        logger.info(f"[Reconciliation] Deleted orphaned database: {name}")
                    except Exception as e:
                        error_msg = f"Failed to delete {name}: {e}"
                        errors.append(error_msg)
                        logger.warning(f"[Reconciliation] {error_msg}")
            elif orphans:
                logger.warning(f"[Reconciliation] Orphaned databases (report only): {', '.join(orphans)}")

            if errors:
                logger.warning(f"[Reconciliation] Sweep had {len(errors)} errors")

            return {
                "orphans": orphans,
                "deleted": deleted,
                "errors": errors,
                "success": len(errors) == 0,
            }

        except Exception as e:
            logger.error(f"[Reconciliation] Sweep failed: {e}", exc_info=True)
            return {
                "orphans": orphans,
                "deleted": deleted,
                "errors": [str(e)],
                "success": False,
            }

    def start_periodic(self):
        """
        Start the periodic sweep (runs in background).

        This should be called during application startup.
        """
        if self._task:
            logger.warning("[Reconciliation] Sweep task already running")
            return
        if self.interval_hours <= 0:
            logger.info("[Reconciliation] Periodic sweep disabled")
            return

        async def reconcile_loop():
            interval_seconds = self.interval_hours * 3600

            while True:
                # First sweep runs one interval after startup
                await asyncio.sleep(interval_seconds)
                try:
                    result = await self.reconcile()
                    logger.info(f"[Reconciliation] Sweep result: {result}")
                except Exception as e:
                    logger.error(f"[Reconciliation] Sweep loop error: {e}", exc_info=True)

        self._task = asyncio.create_task(reconcile_loop())
        logger.info(f"[Reconciliation] Started periodic sweep (interval: {self.interval_hours}h)")

    async def stop_periodic(self):
        """Stop the periodic sweep task."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("[Reconciliation] Stopped periodic sweep")
