"""Reconciler for PostgresEngineConfiguration records."""

import logging
from typing import Optional

from .config import YELLOW, RESET
from .errors import ValidationError
from .models import EngineIdentity, EnginePhase
from .reconcile import Reconciler
from .utils import format_time, parse_duration, parse_time

logger = logging.getLogger("postgres-controller.engines")


class EngineIdentityReconciler(Reconciler):
    """
    Validates connectivity to an engine and re-validates every checkInterval.

    Re-validation is skipped when nothing relevant changed since the last
    successful check and the interval has not elapsed. A changed spec closes
    every pool cached for the engine before reconnecting.
    """

    resource_class = EngineIdentity
    controller_name = "postgresengineconfiguration"

    def should_skip(self, record: EngineIdentity) -> Optional[float]:
        status = record.status
        if status.phase != EnginePhase.VALIDATED or status.hash != record.content_hash():
            return None
        last = parse_time(status.last_validated_time)
        if last is None:
            return None
        # Parsing errors are reported by apply
        try:
            interval = parse_duration(record.spec.check_interval)
        except ValidationError:
            return None
        remaining = interval - (self.clock() - last)
        if remaining.total_seconds() <= 0:
            return None
        return remaining.total_seconds()

    def apply(self, record: EngineIdentity) -> Optional[float]:
        interval = parse_duration(record.spec.check_interval)

        content_hash = record.content_hash()
        if record.status.hash and record.status.hash != content_hash:
            logger.info(f"{YELLOW}Engine configuration {record.namespace}/{record.name} changed, "
                        f"closing its connections{RESET}")
            self.engines.close_all(f"{record.namespace}/{record.name}")

        engine = self.peers.engine_for(record)
        engine.ping()

        record.status.hash = content_hash
        record.status.last_validated_time = format_time(self.clock())
        return interval.total_seconds()

    def delete(self, record: EngineIdentity):
        if record.spec.wait_linked_resources_deletion:
            self.links.check_engine_identity(record)
        self.engines.close_all(f"{record.namespace}/{record.name}")
