"""
PostgreSQL Resource Controller for Kubernetes

This controller keeps PostgreSQL engines in line with custom resources:
engine configurations, databases, user roles and publications.

Features:
- Idempotent create/rename/grant of roles, databases, schemas and extensions
- Logical replication publications and slots with conflict detection
- Managed login rotation with connection-aware draining of old logins
- Generated connection secrets that heal themselves
- Finalizer-based deletion with linked resource protection
- Exponential backoff retry logic
- Structured logging with severity levels
- Prometheus metrics exposure
"""

import os
import sys
import time
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .config import Config, BLUE, GREEN, WHITE, RESET, configure_logging
from .database import DatabaseReconciler
from .engine_identity import EngineIdentityReconciler
from .errors import PatchConflictError, ValidationError
from .kube import KubernetesStore
from .metrics import CycleStats, Metrics, serve_metrics
from .pools import EngineConnectionRegistry
from .postgres import EngineFactory
from .publication import PublicationReconciler
from .reconcile import ReconcileResult, Reconciler
from .user_role import UserRoleReconciler

logger = logging.getLogger("postgres-controller")


@dataclass
class ScheduleEntry:
    """Dispatch bookkeeping for one record"""
    generation: int
    deleting: bool
    last_run: float = 0.0
    next_run: Optional[float] = None
    attempts: int = 0
    waiting_for_change: bool = False


class PostgresController:
    """Main controller orchestrating the reconcilers"""

    def __init__(self, store=None, registry: EngineConnectionRegistry = None, engines=None,
                 metrics: Metrics = None, clock=None, monotonic=time.monotonic):
        self.store = store or KubernetesStore()
        self.registry = registry or EngineConnectionRegistry()
        self.engines = engines or EngineFactory(self.registry)
        self.metrics = metrics or Metrics()
        self.monotonic = monotonic

        args = (self.store, self.engines, self.metrics, clock)
        self.reconcilers: List[Reconciler] = [
            EngineIdentityReconciler(*args),
            DatabaseReconciler(*args),
            UserRoleReconciler(*args),
            PublicationReconciler(*args),
        ]
        self.executor = ThreadPoolExecutor(max_workers=Config.MAX_WORKERS, thread_name_prefix="reconcile")
        self._lock = threading.Lock()
        self._schedule: Dict[Tuple[str, str, str], ScheduleEntry] = {}
        self._inflight: Dict[Tuple[str, str, str], Future] = {}
        self._stopping = threading.Event()

    # ------------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------------

    def _is_due(self, entry: Optional[ScheduleEntry], record, now: float) -> bool:
        if entry is None:
            return True
        if entry.generation != record.metadata.generation or entry.deleting != record.deleting:
            return True
        if now - entry.last_run >= Config.RESYNC_INTERVAL:
            return True
        if entry.waiting_for_change:
            return False
        return entry.next_run is not None and now >= entry.next_run

    def _record_result(self, key, result: ReconcileResult, now: float):
        with self._lock:
            entry = self._schedule.get(key)
            if entry is None:
                return
            entry.last_run = now
            entry.waiting_for_change = False
            error = result.error
            if error is None:
                entry.attempts = 0
                entry.next_run = None if result.requeue_after is None else now + result.requeue_after
            elif isinstance(error, PatchConflictError):
                entry.next_run = now
            elif isinstance(error, ValidationError):
                entry.waiting_for_change = True
                entry.next_run = None
            else:
                entry.attempts += 1
                delay = min(Config.RETRY_BACKOFF_BASE ** entry.attempts, Config.MAX_BACKOFF_SECONDS)
                entry.next_run = now + delay
                logger.info(f"{BLUE}Retrying {key[0]} {key[1]}/{key[2]} in {delay:.0f}s{RESET}")

    def _run(self, reconciler: Reconciler, key) -> ReconcileResult:
        try:
            result = reconciler.reconcile(key[1], key[2])
        except Exception as e:
            logger.error(f"Unexpected error reconciling {key[0]} {key[1]}/{key[2]}: {e}", exc_info=True)
            result = ReconcileResult(error=e)
        self._record_result(key, result, self.monotonic())
        return result

    def run_cycle(self, stats: CycleStats, wait: bool = False) -> List[Future]:
        """
        Dispatch every record that is due

        Args:
            stats: Statistics object to update
            wait: Block until the dispatched reconciles finish

        Returns:
            Futures of the dispatched reconciles
        """
        now = self.monotonic()
        futures = []
        seen = set()
        for reconciler in self.reconcilers:
            kind = reconciler.resource_class
            for record in self.store.list(kind, Config.NAMESPACE or None):
                key = (kind.KIND, record.namespace, record.name)
                seen.add(key)
                stats.records_seen += 1
                with self._lock:
                    inflight = self._inflight.get(key)
                    if inflight is not None and not inflight.done():
                        stats.deferred += 1
                        continue
                    entry = self._schedule.get(key)
                    if not self._is_due(entry, record, now):
                        continue
                    if entry is None:
                        entry = self._schedule[key] = ScheduleEntry(record.metadata.generation, record.deleting)
                    if entry.generation != record.metadata.generation or entry.deleting != record.deleting:
                        entry.attempts = 0
                    entry.generation = record.metadata.generation
                    entry.deleting = record.deleting
                    future = self.executor.submit(self._run, reconciler, key)
                    self._inflight[key] = future
                stats.reconciles_started += 1
                futures.append(future)

        with self._lock:
            for key in set(self._schedule) - seen:
                del self._schedule[key]

        if wait:
            for future in futures:
                if future.result().error is None:
                    stats.reconciles_succeeded += 1
                else:
                    stats.reconciles_failed += 1
        return futures

    # ------------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------------

    def run_reconciliation_loop(self):
        """
        Main control loop that runs until stop() is called
        """
        logger.info(f"{GREEN}Controller started (namespace={Config.NAMESPACE or '*'}){RESET}")
        logger.info(f"Sync interval: {Config.SYNC_INTERVAL}s")

        while not self._stopping.is_set():
            stats = CycleStats(start_time=datetime.now())
            try:
                self.run_cycle(stats, wait=True)
            except Exception as e:
                logger.error(f"Unexpected error in reconciliation loop: {e}", exc_info=True)
            stats.end_time = datetime.now()
            self.metrics.record_cycle(stats)

            if stats.reconciles_started:
                logger.info("=" * 60)
                logger.info(f"{WHITE}Reconciliation Summary:{RESET}")
                logger.info(f"  • Records seen: {stats.records_seen}")
                logger.info(f"  • Reconciles: {stats.reconciles_started}")
                logger.info(f"  • Succeeded: {stats.reconciles_succeeded}")
                logger.info(f"  • Failed: {stats.reconciles_failed}")
                logger.info(f"  • Deferred: {stats.deferred}")
                logger.info(f"  • Duration: {stats.duration_seconds():.2f}s")
                logger.info("=" * 60)

            self._stopping.wait(Config.SYNC_INTERVAL)

    def stop(self):
        self._stopping.set()

    def cleanup(self):
        """Cleanup resources"""
        logger.info("Shutting down controller...")
        self.executor.shutdown(wait=True)
        for reconciler in self.reconcilers:
            reconciler.close()
        self.registry.close_everything()


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

def main():
    """Main entry point"""
    configure_logging()
    config_file = os.getenv("CONFIG_FILE")
    if config_file:
        Config.load_file(config_file)
        configure_logging()

    controller = None
    try:
        controller = PostgresController()
        serve_metrics(controller.metrics, Config.METRICS_PORT)
        controller.run_reconciliation_loop()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        if controller:
            controller.cleanup()


if __name__ == "__main__":
    main()
