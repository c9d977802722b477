"""
Generic per-record reconcile loop shared by every kind.

A pass fetches the record, runs the deletion branch when the record is being
deleted, otherwise persists defaults and the finalizer, then calls the kind's
apply and writes the outcome to status. This is the only place that decides
phase, message, events and failure counters.
"""

import copy
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Type

from .config import Config, GREEN, RED, RESET
from .errors import (
    ControllerError,
    NotFoundError,
    PatchConflictError,
    PeerNotReadyError,
    ReconcileTimeoutError,
)
from .links import LinkGuard, PeerResolver
from .models import Resource, transition
from .utils import utcnow

logger = logging.getLogger("postgres-controller.reconcile")

STATUS_PATCH_ATTEMPTS = 3


@dataclass
class ReconcileResult:
    """Outcome of one pass, read by the dispatcher"""
    requeue_after: Optional[float] = None
    error: Optional[Exception] = None


class Reconciler:
    """
    Base class of the kind reconcilers

    Subclasses set resource_class and controller_name and implement apply()
    and delete(). apply() mutates record.status in place and returns an
    optional requeue hint in seconds.
    """

    resource_class: Type[Resource] = Resource
    controller_name = ""
    # Seconds the caller waits for apply before reporting a timeout; None runs inline
    timeout: Optional[float] = None

    def __init__(self, store, engines, metrics, clock=None):
        self.store = store
        self.engines = engines
        self.metrics = metrics
        self.clock = clock or utcnow
        self.peers = PeerResolver(store, engines)
        self.links = LinkGuard(store)
        self._detached: Dict[Tuple[str, str], Future] = {}
        self._detached_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------------
    # hooks
    # ------------------------------------------------------------------------

    def should_skip(self, record: Resource) -> Optional[float]:
        """Return a requeue delay to skip the engine entirely, None to run apply"""
        return None

    def apply(self, record: Resource) -> Optional[float]:
        raise NotImplementedError

    def delete(self, record: Resource):
        raise NotImplementedError

    # ------------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------------

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        key = (namespace, name)
        if Config.DEFER_WHILE_DETACHED and self._detached_running(key):
            logger.info(f"Deferring {self.controller_name} {namespace}/{name}, a previous apply is still running")
            return ReconcileResult(requeue_after=Config.DETACHED_RECHECK_SECONDS)

        self.metrics.record_reconcile(self.controller_name)
        try:
            record = self.store.get(self.resource_class, namespace, name)
        except NotFoundError:
            logger.debug(f"{self.controller_name} {namespace}/{name} is gone")
            return ReconcileResult()
        except ControllerError as e:
            return ReconcileResult(error=e)

        if record.deleting:
            return self._handle_deletion(record)

        try:
            if self._prepare(record):
                return ReconcileResult(requeue_after=0)
        except ControllerError as e:
            return ReconcileResult(error=e)

        skip = self.should_skip(record)
        if skip is not None:
            return ReconcileResult(requeue_after=skip)

        if self.timeout is not None:
            return self._race(record)
        return self._apply_and_report(record)

    def _prepare(self, record: Resource) -> bool:
        """Persist defaults and the finalizer. Returns True if the record was updated."""
        mutated = record.apply_defaults()
        if Config.FINALIZER not in record.metadata.finalizers:
            record.metadata.finalizers.append(Config.FINALIZER)
            mutated = True
        if mutated:
            self.store.update(record)
            logger.info(f"Initialized {self.controller_name} {record.namespace}/{record.name}")
        return mutated

    def _apply_and_report(self, record: Resource) -> ReconcileResult:
        try:
            requeue_after = self.apply(record)
        except PeerNotReadyError as e:
            if record.status.phase.value == "":
                logger.info(f"{self.controller_name} {record.namespace}/{record.name} waiting: {e}")
                return ReconcileResult(requeue_after=Config.NOT_READY_REQUEUE_SECONDS)
            return self.manage_error(record, e)
        except ControllerError as e:
            return self.manage_error(record, e)
        return self.manage_success(record, requeue_after)

    # ------------------------------------------------------------------------
    # timeout race
    # ------------------------------------------------------------------------

    def _detached_running(self, key) -> bool:
        with self._detached_lock:
            future = self._detached.get(key)
            return future is not None and not future.done()

    def _forget(self, key, future: Future):
        with self._detached_lock:
            if self._detached.get(key) is future:
                del self._detached[key]

    def _race(self, record: Resource) -> ReconcileResult:
        """
        Run apply detached and wait for it at most self.timeout seconds.

        On timeout the failure is reported right away but the detached apply
        is left running; it writes its own final status when it finishes.
        """
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=Config.MAX_WORKERS,
                                                thread_name_prefix=f"{self.controller_name}-apply")
        future = self._executor.submit(self._apply_and_report, copy.deepcopy(record))
        with self._detached_lock:
            self._detached[record.key] = future
        future.add_done_callback(lambda f, key=record.key: self._forget(key, f))

        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            error = ReconcileTimeoutError(f"reconcile did not finish within {self.timeout:g}s, still running")
            return self.manage_error(copy.deepcopy(record), error)

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------------
    # outcome
    # ------------------------------------------------------------------------

    def manage_success(self, record: Resource, requeue_after: Optional[float]) -> ReconcileResult:
        status = record.status
        status.phase = transition(status.phase, record.SUCCESS_PHASE)
        status.message = ""
        status.ready = True
        try:
            self._patch_status(record)
        except ControllerError as e:
            return ReconcileResult(error=e)
        logger.info(f"{GREEN}{self.controller_name} {record.namespace}/{record.name} reconciled{RESET}")
        return ReconcileResult(requeue_after=requeue_after)

    def manage_error(self, record: Resource, error: ControllerError) -> ReconcileResult:
        logger.error(f"{RED}{self.controller_name} {record.namespace}/{record.name} failed: {error}{RESET}")
        try:
            self.store.emit_event(record, "Warning", "ProcessingError", str(error))
        except ControllerError as e:
            logger.warning(f"Cannot emit event on {record.namespace}/{record.name}: {e}")
        self.metrics.record_failure(self.controller_name, record.namespace, record.name)

        status = record.status
        status.phase = transition(status.phase, type(status.phase)("Failed"))
        status.message = str(error)
        status.ready = False
        try:
            self._patch_status(record)
        except ControllerError as e:
            logger.warning(f"Cannot write failure status on {record.namespace}/{record.name}: {e}")
        return ReconcileResult(error=error)

    def _patch_status(self, record: Resource):
        """Patch status, re-reading the latest resourceVersion on conflict"""
        for attempt in range(STATUS_PATCH_ATTEMPTS):
            try:
                updated = self.store.patch_status(record)
                record.metadata.resource_version = updated.metadata.resource_version
                return
            except PatchConflictError:
                if attempt == STATUS_PATCH_ATTEMPTS - 1:
                    raise
                latest = self.store.get(self.resource_class, record.namespace, record.name)
                record.metadata.resource_version = latest.metadata.resource_version

    # ------------------------------------------------------------------------
    # deletion
    # ------------------------------------------------------------------------

    def _handle_deletion(self, record: Resource) -> ReconcileResult:
        if Config.FINALIZER not in record.metadata.finalizers:
            return ReconcileResult()

        try:
            self.delete(record)
        except ControllerError as e:
            return self.manage_error(record, e)

        record.metadata.finalizers.remove(Config.FINALIZER)
        try:
            self.store.update(record)
        except NotFoundError:
            pass
        except ControllerError as e:
            return ReconcileResult(error=e)
        logger.info(f"{GREEN}{self.controller_name} {record.namespace}/{record.name} deleted{RESET}")
        return ReconcileResult()
