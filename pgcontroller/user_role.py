"""Reconciler for PostgresUserRole records."""

import logging
from typing import Dict, List, Optional

from .config import Config
from .credentials import CredentialRotator, EngineTarget, login_names
from .errors import DrainPendingError, NotFoundError, ValidationError
from .models import UserRole, UserRoleMode
from .reconcile import Reconciler
from .roles import check_identifiers
from .secret_projection import SecretProjection, project

logger = logging.getLogger("postgres-controller.userroles")


class UserRoleReconciler(Reconciler):
    """
    Maintains the login of a user role on every engine its privileges touch,
    the group memberships and on-connect roles those privileges ask for, and
    one generated secret per privilege.
    """

    resource_class = UserRole
    controller_name = "postgresuserrole"

    def __init__(self, store, engines, metrics, clock=None, api_version: str = None):
        super().__init__(store, engines, metrics, clock)
        api_version = api_version or f"{Config.CRD_GROUP}/{Config.CRD_VERSION}"
        self.projection = SecretProjection(store, api_version)
        self.rotator = CredentialRotator(store, self.projection, clock=self.clock)

    # ------------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------------

    def validate(self, record: UserRole):
        spec = record.spec
        if spec.mode == UserRoleMode.MANAGED:
            if not spec.role_prefix:
                raise ValidationError("role prefix must have a value in managed mode")
            check_identifiers(*login_names(spec.role_prefix))
        elif not spec.import_secret_name:
            raise ValidationError("import secret name must have a value in provided mode")

        if not spec.privileges:
            raise ValidationError("privileges must contain at least one entry")

        seen = set()
        for privilege in spec.privileges:
            if not privilege.generated_secret_name:
                raise ValidationError(f"generated secret name must have a value for database "
                                      f"{privilege.database.namespace}/{privilege.database.name}")
            if privilege.database.key in seen:
                raise ValidationError(f"privilege database {privilege.database.namespace}/"
                                      f"{privilege.database.name} is listed more than once")
            seen.add(privilege.database.key)

        if spec.mode == UserRoleMode.MANAGED:
            for other in self.store.list(UserRole):
                if other.key != record.key and other.spec.mode == UserRoleMode.MANAGED \
                        and other.spec.role_prefix == spec.role_prefix:
                    raise ValidationError(f"role prefix {spec.role_prefix} is already used by user role "
                                          f"{other.namespace}/{other.name}")

    # ------------------------------------------------------------------------
    # targets
    # ------------------------------------------------------------------------

    def _targets(self, record: UserRole, tolerate_missing: bool = False) -> List[EngineTarget]:
        """Group privileges by engine, resolving databases and engines on the way"""
        targets: Dict[str, EngineTarget] = {}
        for privilege in record.spec.privileges:
            try:
                if tolerate_missing:
                    database = self.peers.database(privilege.database)
                    identity = self.peers.engine_identity(database.spec.engine_configuration)
                else:
                    database = self.peers.ready_database(privilege.database)
                    identity = self.peers.ready_engine_identity(database.spec.engine_configuration)
                key = f"{identity.namespace}/{identity.name}"
                if key not in targets:
                    targets[key] = EngineTarget(engine=self.peers.engine_for(identity), identity=identity)
            except NotFoundError as e:
                if not tolerate_missing:
                    raise
                logger.warning(f"Skipping privilege of {record.namespace}/{record.name}: {e}")
                continue

            targets[key].grants.append((privilege, database))
        return list(targets.values())

    # ------------------------------------------------------------------------
    # apply / delete
    # ------------------------------------------------------------------------

    def apply(self, record: UserRole) -> Optional[float]:
        self.validate(record)
        status = record.status
        first_pass = status.phase != UserRole.SUCCESS_PHASE
        targets = self._targets(record)

        self.rotator.drain(record, targets)
        credentials = self.rotator.resolve(record)

        for target in targets:
            self.rotator.ensure_login(target, credentials, force_password=first_pass)
            self.rotator.sync_rights(target, credentials.login)

        keep = [record.spec.work_generated_secret_name]
        for target in targets:
            for privilege, database in target.grants:
                data = project(privilege, credentials.login, credentials.password, database, target.identity)
                self.projection.sync(record, privilege.generated_secret_name, data)
                keep.append(privilege.generated_secret_name)
        self.projection.clean_orphans(record, keep)

        if status.old_postgres_roles:
            return Config.DRAIN_RECHECK_SECONDS
        return self.rotator.rotation_requeue(record)

    def delete(self, record: UserRole):
        status = record.status
        if status.postgres_role and status.postgres_role not in status.old_postgres_roles:
            status.old_postgres_roles.append(status.postgres_role)

        remaining = self.rotator.drain(record, self._targets(record, tolerate_missing=True))
        if remaining:
            raise DrainPendingError(f"old postgres roles still present: {', '.join(remaining)}")
