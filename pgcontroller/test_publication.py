"""
Tests for publication and replication slot reconciliation
"""

import threading

from pgcontroller.config import Config
from pgcontroller.database import DatabaseReconciler
from pgcontroller.engine_identity import EngineIdentityReconciler
from pgcontroller.models import AllTables, Publication, ReplicationSlotInfo, TablesInSchema
from pgcontroller.publication import PublicationReconciler
from pgcontroller.testing import World, settle

SETUP = """
apiVersion: postgresql.gitops.io/v1alpha1
kind: PostgresDatabase
metadata:
  name: orders
  namespace: default
spec:
  database: orders
  engineConfiguration:
    name: engine
---
apiVersion: postgresql.gitops.io/v1alpha1
kind: PostgresPublication
metadata:
  name: pub
  namespace: default
spec:
  database:
    name: orders
  name: p1
  tablesInSchema:
    - public
  dropOnDelete: true
"""


def _world() -> World:
    world = World()
    world.store.add_manifests(SETUP)
    settle(world.reconciler(EngineIdentityReconciler), "engine")
    settle(world.reconciler(DatabaseReconciler), "orders")
    return world


def test_publication_and_slot_are_created():
    print("🧪 Testing publication creation...")

    world = _world()
    result = settle(world.reconciler(PublicationReconciler), "pub")
    assert result.error is None

    publication = world.engine.publications[("orders", "p1")]
    assert publication["owner"] == "orders-owner", "Publications belong to the database owner role"
    assert publication["selection"] == TablesInSchema(("public",))

    slot = world.engine.slots["p1"]
    assert (slot.database, slot.plugin) == ("orders", "pgoutput")

    status = world.status(Publication, "pub")
    assert status["phase"] == "Created"
    assert status["name"] == "p1"
    assert status["allTables"] is False
    assert status["hash"]
    assert status["replicationSlotName"] == "p1"
    assert status["replicationSlotPlugin"] == "pgoutput"

    print("✅ Publication creation tests passed!")


def test_unchanged_spec_issues_no_update():
    world = _world()
    reconciler = world.reconciler(PublicationReconciler)
    settle(reconciler, "pub")

    world.engine.reset_calls()
    assert reconciler.reconcile("default", "pub").error is None
    assert world.engine.mutations == []


def test_rename_keeps_replication_slot():
    print("\n🧪 Testing publication rename...")

    world = _world()
    reconciler = world.reconciler(PublicationReconciler)
    settle(reconciler, "pub")

    spec = world.store.raw(Publication, "default", "pub")["spec"]
    assert spec["replicationSlotName"] == "p1", "Slot defaults are written back to the record"
    assert spec["replicationSlotPlugin"] == "pgoutput"

    world.store.edit_spec(Publication, "default", "pub", name="p2", withParameters={"publish": "insert"})
    assert reconciler.reconcile("default", "pub").error is None

    engine = world.engine
    assert ("orders", "p1") not in engine.publications
    assert engine.publications[("orders", "p2")]["with"].publish == "insert"
    assert ("update_publication", ("orders", "p1", "p2")) in engine.calls
    assert set(engine.slots) == {"p1"}, "Consumers keep their slot and WAL position"
    assert not any(name == "drop_replication_slot" for name, _ in engine.calls)

    status = world.status(Publication, "pub")
    assert status["name"] == "p2"
    assert status["replicationSlotName"] == "p1"

    print("✅ Publication rename tests passed!")


def test_explicit_slot_name_is_kept():
    world = World()
    world.store.add_manifests(SETUP.replace("  dropOnDelete: true", "  replicationSlotName: cdc\n  dropOnDelete: true"))
    settle(world.reconciler(EngineIdentityReconciler), "engine")
    settle(world.reconciler(DatabaseReconciler), "orders")
    settle(world.reconciler(PublicationReconciler), "pub")

    assert set(world.engine.slots) == {"cdc"}
    assert world.status(Publication, "pub")["replicationSlotName"] == "cdc"


def test_all_tables_flag_is_locked():
    print("\n🧪 Testing all tables lock...")

    world = _world()
    reconciler = world.reconciler(PublicationReconciler)
    settle(reconciler, "pub")
    world.engine.reset_calls()

    world.store.edit_spec(Publication, "default", "pub", allTables=True, tablesInSchema=[])
    result = reconciler.reconcile("default", "pub")

    assert result.error is not None
    status = world.status(Publication, "pub")
    assert status["phase"] == "Failed"
    assert status["message"] == "cannot change all tables flag on an upgrade"
    assert status["name"] == "p1", "Applied state is kept on failure"
    assert world.engine.publications[("orders", "p1")]["selection"] == TablesInSchema(("public",))
    assert world.engine.mutations == []

    print("✅ All tables lock tests passed!")


def test_out_of_sync_all_tables_is_a_conflict():
    world = _world()
    reconciler = world.reconciler(PublicationReconciler)
    settle(reconciler, "pub")

    # Someone recreated the publication by hand with FOR ALL TABLES
    world.engine.publications[("orders", "p1")]["selection"] = AllTables()
    world.store.edit_spec(Publication, "default", "pub", tablesInSchema=["public", "sales"])
    reconciler.reconcile("default", "pub")

    assert world.status(Publication, "pub")["message"] == (
        "publication in database and spec are out of sync for 'for all tables' "
        "and values must be aligned to continue"
    )


def test_slot_owned_by_another_database_is_a_conflict():
    print("\n🧪 Testing replication slot conflicts...")

    world = _world()
    world.engine.slots["p1"] = ReplicationSlotInfo(name="p1", database="other", plugin="pgoutput")
    result = settle(world.reconciler(PublicationReconciler), "pub")

    assert result.error is not None
    status = world.status(Publication, "pub")
    assert status["phase"] == "Failed"
    assert status["message"] == "replication slot with the same name already exists for another database"
    assert status["name"] == ""
    assert status["hash"] == ""
    assert world.engine.slots["p1"].database == "other", "Foreign slot is left alone"

    print("✅ Replication slot conflict tests passed!")


def test_slot_with_another_plugin_is_a_conflict():
    world = _world()
    world.engine.slots["p1"] = ReplicationSlotInfo(name="p1", database="orders", plugin="wal2json")
    settle(world.reconciler(PublicationReconciler), "pub")
    assert world.status(Publication, "pub")["message"] == (
        "replication slot with the same name already exists with another plugin"
    )


def test_invalid_selection_fails_without_engine_calls():
    world = _world()
    world.store.edit_spec(Publication, "default", "pub", tables=[{"tableName": "orders"}])
    world.engine.reset_calls()
    settle(world.reconciler(PublicationReconciler), "pub")

    assert world.status(Publication, "pub")["message"] == (
        "only one of all tables, tables in schema or tables can be selected"
    )
    assert world.engine.calls == []


def test_waits_for_database():
    world = World()
    world.store.add_manifests(SETUP)
    settle(world.reconciler(EngineIdentityReconciler), "engine")
    result = settle(world.reconciler(PublicationReconciler), "pub")
    assert result.requeue_after == Config.NOT_READY_REQUEUE_SECONDS
    assert world.status(Publication, "pub").get("phase", "") == "", "Not failed while the database is pending"


def test_slow_apply_reports_timeout_and_finishes_detached():
    """A slow engine fails the pass right away while the apply completes in the background"""
    print("\n🧪 Testing detached apply...")

    world = _world()
    reconciler = world.reconciler(PublicationReconciler)
    assert reconciler.reconcile("default", "pub").requeue_after == 0

    release = threading.Event()
    original = world.engine.get_publication

    def slow_get_publication(database, name):
        release.wait(5)
        return original(database, name)

    world.engine.get_publication = slow_get_publication
    reconciler.timeout = 0.05

    result = reconciler.reconcile("default", "pub")
    assert result.error is not None
    assert "still running" in str(result.error)
    assert world.status(Publication, "pub")["phase"] == "Failed"

    detached = reconciler._detached[("default", "pub")]
    deferred = reconciler.reconcile("default", "pub")
    assert deferred.error is None
    assert deferred.requeue_after == Config.DETACHED_RECHECK_SECONDS, "No second apply while one is running"

    release.set()
    assert detached.result(timeout=5).error is None
    status = world.status(Publication, "pub")
    assert status["phase"] == "Created", "The detached apply writes the final status"
    assert status["name"] == "p1"
    reconciler.close()

    print("✅ Detached apply tests passed!")


def test_deletion_drops_publication_and_slot():
    world = _world()
    reconciler = world.reconciler(PublicationReconciler)
    settle(reconciler, "pub")

    world.store.delete(Publication, "default", "pub")
    assert reconciler.reconcile("default", "pub").error is None
    assert world.store.raw(Publication, "default", "pub") is None
    assert world.engine.publications == {}
    assert world.engine.slots == {}


if __name__ == "__main__":
    test_publication_and_slot_are_created()
    test_all_tables_flag_is_locked()
    test_slot_owned_by_another_database_is_a_conflict()
    print("\n✅ Publication tests passed")
