"""Reconciler for PostgresPublication records."""

import logging
from typing import Optional

from .config import Config, YELLOW, RESET
from .errors import ConflictError, NotFoundError, ValidationError
from .models import Publication
from .publication_builder import PublicationCreateBuilder, PublicationUpdateBuilder
from .reconcile import Reconciler

logger = logging.getLogger("postgres-controller.publications")


class PublicationReconciler(Reconciler):
    """
    Keeps a publication and its logical replication slot in line with the spec.

    The table selection kind (all tables or not) is fixed once applied. A slot
    with the desired name is only accepted if it already belongs to the same
    database and plugin.
    """

    resource_class = Publication
    controller_name = "postgrespublication"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.timeout = Config.RECONCILE_TIMEOUT

    def apply(self, record: Publication) -> Optional[float]:
        spec, status = record.spec, record.status
        selection = spec.selection()
        if status.name and status.all_tables != selection.all_tables:
            raise ValidationError("cannot change all tables flag on an upgrade")
        content_hash = spec.content_hash()

        database = self.peers.ready_database(spec.database)
        identity = self.peers.ready_engine_identity(database.spec.engine_configuration)
        engine = self.peers.engine_for(identity)
        db_name = database.status.database

        search_name = status.name or spec.name
        existing = engine.get_publication(db_name, search_name)
        if existing is None:
            engine.create_publication(db_name, PublicationCreateBuilder(spec.name, selection, spec.with_parameters))
            engine.change_publication_owner(db_name, spec.name, database.status.roles.owner)
        elif content_hash != status.hash:
            if existing.all_tables != selection.all_tables:
                raise ConflictError("publication in database and spec are out of sync for 'for all tables' "
                                    "and values must be aligned to continue")
            engine.update_publication(db_name, PublicationUpdateBuilder(
                search_name, selection, spec.with_parameters, new_name=spec.name, current=existing
            ))

        self._sync_slot(record, engine, db_name)

        status.name = spec.name
        status.hash = content_hash
        status.all_tables = selection.all_tables
        status.replication_slot_name = spec.slot_name
        status.replication_slot_plugin = spec.slot_plugin
        return None

    def _sync_slot(self, record: Publication, engine, db_name: str):
        spec = record.spec
        slot = engine.get_replication_slot(spec.slot_name)
        if slot is None:
            engine.create_replication_slot(db_name, spec.slot_name, spec.slot_plugin)
            logger.info(f"{YELLOW}Replication slot {spec.slot_name} created in {db_name}{RESET}")
        elif slot.database != db_name:
            raise ConflictError("replication slot with the same name already exists for another database")
        elif slot.plugin != spec.slot_plugin:
            raise ConflictError("replication slot with the same name already exists with another plugin")

    def delete(self, record: Publication):
        spec, status = record.spec, record.status
        if not spec.drop_on_delete:
            return

        try:
            database = self.peers.database(spec.database)
            identity = self.peers.engine_identity(database.spec.engine_configuration)
            engine = self.peers.engine_for(identity)
        except NotFoundError as e:
            logger.warning(f"Cannot clean up {record.namespace}/{record.name}: {e}")
            return
        db_name = database.status.database
        if not db_name or not engine.database_exists(db_name):
            return

        name = status.name or spec.name
        if engine.get_publication(db_name, name) is not None:
            engine.drop_publication(db_name, name)

        slot_name = status.replication_slot_name or spec.slot_name
        slot = engine.get_replication_slot(slot_name)
        if slot is not None and slot.database == db_name:
            engine.drop_replication_slot(slot_name)
