"""Reconciler for PostgresDatabase records."""

import logging
from typing import Optional

from .config import YELLOW, RESET
from .errors import NotFoundError
from .models import Database
from .reconcile import Reconciler
from .roles import RoleCoordinator, check_identifiers
from .schemas import SchemaExtensionSync

logger = logging.getLogger("postgres-controller.databases")


class DatabaseReconciler(Reconciler):
    """
    Creates the database, its owner/reader/writer group roles, schemas and
    extensions. Renames of the database or of the owner role are applied in
    place so grants and ownership survive.
    """

    resource_class = Database
    controller_name = "postgresdatabase"

    def apply(self, record: Database) -> Optional[float]:
        spec, status = record.spec, record.status
        check_identifiers(spec.database, spec.owner_role, spec.reader_role, spec.writer_role)

        identity = self.peers.ready_engine_identity(spec.engine_configuration)
        engine = self.peers.engine_for(identity)
        key = f"{identity.namespace}/{identity.name}"

        roles = RoleCoordinator(engine, identity.spec.allow_grant_admin_option)
        status.roles.owner = roles.ensure_role(spec.owner_role, status.roles.owner)
        status.roles.reader = roles.ensure_role(spec.reader_role, status.roles.reader)
        status.roles.writer = roles.ensure_role(spec.writer_role, status.roles.writer)

        status.database = roles.ensure_database(
            spec.database, status.database, status.roles.owner,
            close_database=lambda name: self.engines.close_database(key, name),
        )

        sync = SchemaExtensionSync(engine, status.database, status.roles)
        status.extensions = sync.sync_extensions(spec.extensions, list(status.extensions))
        status.schemas = sync.sync_schemas(spec.schemas, list(status.schemas))
        return None

    def delete(self, record: Database):
        spec, status = record.spec, record.status
        if spec.wait_linked_resources_deletion:
            self.links.check_database(record)

        try:
            identity = self.peers.engine_identity(spec.engine_configuration)
        except NotFoundError:
            logger.warning(f"Engine configuration of {record.namespace}/{record.name} not found, "
                           f"nothing to clean up")
            return
        key = f"{identity.namespace}/{identity.name}"

        if not status.database:
            return
        if not spec.drop_on_delete:
            self.engines.close_database(key, status.database)
            return

        try:
            engine = self.peers.engine_for(identity)
        except NotFoundError as e:
            logger.warning(f"Cannot drop database of {record.namespace}/{record.name}: {e}")
            self.engines.close_database(key, status.database)
            return
        for role in (status.roles.owner, status.roles.writer, status.roles.reader):
            if not role or not engine.role_exists(role):
                continue
            if engine.database_exists(status.database):
                engine.change_and_drop_owned_by(role, engine.user, status.database)
            engine.drop_role(role)

        self.engines.close_database(key, status.database)
        engine.drop_database(status.database)
        logger.info(f"{YELLOW}Database {status.database} dropped for {record.namespace}/{record.name}{RESET}")
