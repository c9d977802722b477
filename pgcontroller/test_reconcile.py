"""
Tests for the shared reconcile loop: status writes racing other writers
"""

from unittest.mock import patch

from pgcontroller.engine_identity import EngineIdentityReconciler
from pgcontroller.errors import PatchConflictError
from pgcontroller.models import EngineIdentity
from pgcontroller.reconcile import STATUS_PATCH_ATTEMPTS
from pgcontroller.testing import World, settle


def test_status_conflict_is_retried_with_latest_version():
    print("🧪 Testing status patch conflicts...")

    world = World()
    reconciler = world.reconciler(EngineIdentityReconciler)
    ping = world.engine.ping

    def ping_while_someone_else_writes():
        ping()
        # A metadata-only write by another client moves the resourceVersion
        world.store.update(world.store.get(EngineIdentity, "default", "engine"))

    world.engine.ping = ping_while_someone_else_writes
    with patch.object(world.store, "patch_status", wraps=world.store.patch_status) as patch_status:
        result = settle(reconciler, "engine")

    assert result.error is None, "The conflict is absorbed by a re-read"
    assert patch_status.call_count == 2
    assert world.status(EngineIdentity, "engine")["phase"] == "Validated"
    assert world.store.events == []

    print("✅ Status patch conflict tests passed!")


def test_status_conflict_gives_up_after_retries():
    world = World()
    reconciler = world.reconciler(EngineIdentityReconciler)
    assert reconciler.reconcile("default", "engine").requeue_after == 0

    with patch.object(world.store, "patch_status",
                      side_effect=PatchConflictError("stale resourceVersion")) as patch_status:
        result = reconciler.reconcile("default", "engine")

    assert isinstance(result.error, PatchConflictError)
    assert patch_status.call_count == STATUS_PATCH_ATTEMPTS
    assert world.status(EngineIdentity, "engine").get("phase", "") == "", "Nothing was written"
    assert world.store.events == [], "Losing the race is not reported as a failure"


if __name__ == "__main__":
    test_status_conflict_is_retried_with_latest_version()
    test_status_conflict_gives_up_after_retries()
    print("\n✅ Reconcile tests passed")
