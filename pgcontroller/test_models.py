"""
Tests for record models, phase transitions and small helpers
"""

from datetime import timedelta

import pytest

from pgcontroller.errors import ValidationError
from pgcontroller.models import (
    AllTables,
    Database,
    DatabasePhase,
    EngineIdentity,
    EnginePhase,
    Publication,
    TableList,
    TablesInSchema,
    UserRole,
    parse_table_selection,
    transition,
)
from pgcontroller.utils import format_time, parse_duration, parse_time, spec_hash


def test_phase_transitions():
    """Phases move between success and failure but never back to none"""
    print("🧪 Testing phase transitions...")

    assert transition(DatabasePhase.NONE, DatabasePhase.CREATED) == DatabasePhase.CREATED
    assert transition(DatabasePhase.NONE, DatabasePhase.FAILED) == DatabasePhase.FAILED
    assert transition(DatabasePhase.CREATED, DatabasePhase.FAILED) == DatabasePhase.FAILED
    assert transition(DatabasePhase.FAILED, DatabasePhase.CREATED) == DatabasePhase.CREATED
    assert transition(EnginePhase.VALIDATED, EnginePhase.VALIDATED) == EnginePhase.VALIDATED

    with pytest.raises(ValueError):
        transition(DatabasePhase.CREATED, DatabasePhase.NONE)
    with pytest.raises(ValueError):
        transition(DatabasePhase.FAILED, DatabasePhase.NONE)
    with pytest.raises(ValueError):
        transition(DatabasePhase.NONE, EnginePhase.VALIDATED)

    print("✅ Phase transition tests passed!")


def test_table_selection_variants():
    """Exactly one selection mode is parsed into its variant"""
    assert isinstance(parse_table_selection({"allTables": True}), AllTables)

    schemas = parse_table_selection({"tablesInSchema": ["public", "sales"]})
    assert isinstance(schemas, TablesInSchema)
    assert schemas.schemas == ("public", "sales")
    assert not schemas.all_tables

    tables = parse_table_selection({"tables": [
        {"tableName": "orders", "columns": ["id", "total"], "additionalWhere": "total > 0"},
        {"tableName": "sales.items"},
    ]})
    assert isinstance(tables, TableList)
    assert tables.tables[0].columns == ["id", "total"]
    assert tables.tables[1].additional_where is None


@pytest.mark.parametrize("selection, message", [
    ({}, "nothing is selected for publication (no all tables, no tables in schema, no tables)"),
    ({"allTables": False, "tablesInSchema": [], "tables": []},
     "nothing is selected for publication (no all tables, no tables in schema, no tables)"),
    ({"allTables": True, "tablesInSchema": ["public"]}, "all tables cannot be set with tables in schema or tables"),
    ({"allTables": True, "tables": [{"tableName": "t"}]}, "all tables cannot be set with tables in schema or tables"),
    ({"tablesInSchema": ["public"], "tables": [{"tableName": "t", "columns": ["a"]}]},
     "tables cannot have a columns list with a table schema list enabled"),
    ({"tablesInSchema": ["public"], "tables": [{"tableName": "t"}]},
     "only one of all tables, tables in schema or tables can be selected"),
    ({"tablesInSchema": ["public", ""]}, "tables in schema cannot have empty schema listed"),
    ({"tables": [{"tableName": ""}]},
     "tables cannot have an empty name, an empty column name or an empty additional where"),
    ({"tables": [{"tableName": "t", "columns": []}]},
     "tables cannot have an empty name, an empty column name or an empty additional where"),
    ({"tables": [{"tableName": "t", "additionalWhere": "  "}]},
     "tables cannot have an empty name, an empty column name or an empty additional where"),
])
def test_table_selection_rejections(selection, message):
    with pytest.raises(ValidationError) as excinfo:
        parse_table_selection(selection)
    assert str(excinfo.value) == message


def test_publication_name_required():
    publication = Publication.from_dict({
        "metadata": {"name": "pub", "namespace": "default"},
        "spec": {"database": {"name": "orders"}, "allTables": True},
    })
    with pytest.raises(ValidationError) as excinfo:
        publication.spec.selection()
    assert str(excinfo.value) == "name must have a value"


def test_publication_hash_tracks_only_relevant_fields():
    """The content hash ignores fields that do not describe the publication itself"""
    base = {"database": {"name": "orders"}, "name": "p1", "allTables": True}

    def hash_of(**extra):
        spec = dict(base, **extra)
        return Publication.from_dict({"metadata": {"name": "pub", "namespace": "default"},
                                      "spec": spec}).spec.content_hash()

    assert hash_of() == hash_of(dropOnDelete=True)
    assert hash_of() == hash_of(replicationSlotName="other")
    assert hash_of() != hash_of(name="p2")
    assert hash_of() != hash_of(withParameters={"publish": "insert"})


def test_references_default_to_own_namespace():
    user_role = UserRole.from_dict({
        "metadata": {"name": "app", "namespace": "team-a"},
        "spec": {
            "mode": "MANAGED",
            "rolePrefix": "app",
            "privileges": [
                {"database": {"name": "orders"}, "privilege": "WRITER", "generatedSecretName": "s1"},
                {"database": {"name": "billing", "namespace": "team-b"}, "privilege": "READER",
                 "generatedSecretName": "s2"},
            ],
        },
    })
    assert user_role.spec.privileges[0].database.key == ("team-a", "orders")
    assert user_role.spec.privileges[1].database.key == ("team-b", "billing")


def test_unknown_enum_value_is_a_validation_error():
    with pytest.raises(ValidationError):
        UserRole.from_dict({"metadata": {"name": "x", "namespace": "d"}, "spec": {"mode": "AUTO"}})


def test_engine_identity_defaults():
    """Defaults are filled once and reported as a change"""
    identity = EngineIdentity.from_dict({
        "metadata": {"name": "engine", "namespace": "default"},
        "spec": {"host": "db", "uriArgs": "sslmode=require", "secretName": "admin"},
    })
    assert identity.apply_defaults() is True
    assert identity.spec.port == 5432
    assert identity.spec.default_database == "postgres"
    assert identity.spec.check_interval == "30s"
    assert identity.spec.primary_connection.host == "db"
    assert identity.spec.primary_connection.uri_args == "sslmode=require"
    assert identity.apply_defaults() is False


def test_user_role_work_secret_default():
    user_role = UserRole.from_dict({"metadata": {"name": "app", "namespace": "default"},
                                    "spec": {"mode": "PROVIDED", "importSecretName": "imported"}})
    assert user_role.apply_defaults() is True
    name = user_role.spec.work_generated_secret_name
    assert name.startswith("pgcreds-work-")
    assert len(name) == len("pgcreds-work-") + 20
    assert name == name.lower()
    assert user_role.apply_defaults() is False


def test_publication_slot_defaults_are_pinned():
    publication = Publication.from_dict({"metadata": {"name": "pub", "namespace": "default"},
                                         "spec": {"database": {"name": "orders"}, "name": "p1",
                                                  "allTables": True}})
    assert publication.apply_defaults() is True
    assert publication.spec.replication_slot_name == "p1"
    assert publication.spec.replication_slot_plugin == "pgoutput"
    assert publication.apply_defaults() is False

    publication.spec.name = "p2"
    assert publication.apply_defaults() is False
    assert publication.spec.slot_name == "p1", "Renaming keeps the pinned slot"


def test_engine_hash_covers_user_connections():
    def identity(bouncer_host):
        return EngineIdentity.from_dict({
            "metadata": {"name": "engine", "namespace": "default"},
            "spec": {"host": "db", "secretName": "admin",
                     "userConnections": {"bouncerConnection": {"host": bouncer_host}}},
        })

    assert identity("bouncer-a").content_hash() != identity("bouncer-b").content_hash()


def test_database_round_trip_keeps_unknown_fields():
    raw = {
        "apiVersion": "postgresql.gitops.io/v1alpha1",
        "kind": "PostgresDatabase",
        "metadata": {"name": "orders", "namespace": "default", "annotations": {"a": "b"}},
        "spec": {"database": "orders", "engineConfiguration": {"name": "engine"}, "futureField": 1},
    }
    database = Database.from_dict(raw)
    assert database.spec.owner_role == "orders-owner"
    assert database.spec.schemas.items == ["public"]

    data = database.to_dict()
    assert data["apiVersion"] == raw["apiVersion"]
    assert data["metadata"]["annotations"] == {"a": "b"}
    assert data["spec"]["futureField"] == 1
    assert data["status"]["phase"] == ""


def test_durations():
    assert parse_duration("5s") == timedelta(seconds=5)
    assert parse_duration("1h30m") == timedelta(hours=1, minutes=30)
    assert parse_duration("1.5h") == timedelta(minutes=90)
    assert parse_duration("250ms") == timedelta(milliseconds=250)
    for bad in ("", "5", "5x", "s5", "5s garbage"):
        with pytest.raises(ValidationError):
            parse_duration(bad)


def test_timestamps_and_hash():
    value = parse_time("2024-03-01T10:20:30Z")
    assert format_time(value) == "2024-03-01T10:20:30Z"
    assert parse_time("") is None
    assert spec_hash({"a": 1, "b": [1, 2]}) == spec_hash({"b": [1, 2], "a": 1})


if __name__ == "__main__":
    test_phase_transitions()
    test_table_selection_variants()
    test_engine_identity_defaults()
    print("\n✅ Model tests passed")
