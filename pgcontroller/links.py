"""
Cross-record lookups.

PeerResolver follows references from one record to the records it depends on
(engine configuration, database) and builds engines from them. LinkGuard does
the reverse scan before a deletion.
"""

import logging
from typing import Tuple

from .errors import LinkedResourceError, NotFoundError, PeerNotReadyError, ValidationError
from .models import Database, DatabasePhase, EngineIdentity, EnginePhase, Publication, ResourceRef, UserRole

logger = logging.getLogger("postgres-controller.links")

SECRET_USER_KEY = "user"
SECRET_PASSWORD_KEY = "password"


class PeerResolver:
    """Resolves referenced records and the engines behind them"""

    def __init__(self, store, engines):
        self.store = store
        self.engines = engines

    def engine_identity(self, ref: ResourceRef) -> EngineIdentity:
        return self.store.get(EngineIdentity, ref.namespace, ref.name)

    def ready_engine_identity(self, ref: ResourceRef) -> EngineIdentity:
        identity = self.engine_identity(ref)
        if identity.status.phase != EnginePhase.VALIDATED:
            raise PeerNotReadyError(f"engine configuration {ref.namespace}/{ref.name} is not validated")
        return identity

    def database(self, ref: ResourceRef) -> Database:
        return self.store.get(Database, ref.namespace, ref.name)

    def ready_database(self, ref: ResourceRef) -> Database:
        database = self.database(ref)
        if database.status.phase != DatabasePhase.CREATED or not database.status.database:
            raise PeerNotReadyError(f"database {ref.namespace}/{ref.name} is not created")
        return database

    def credentials(self, identity: EngineIdentity) -> Tuple[str, str]:
        """Operator user and password from the secret of an engine configuration"""
        secret = self.store.get_secret(identity.namespace, identity.spec.secret_name)
        if secret is None:
            raise NotFoundError(f"secret {identity.spec.secret_name} not found in namespace {identity.namespace}")
        user = secret.data.get(SECRET_USER_KEY, "")
        password = secret.data.get(SECRET_PASSWORD_KEY, "")
        if not user or not password:
            raise ValidationError(f'secret {identity.spec.secret_name} must contain "user" and "password" values')
        return user, password

    def engine_for(self, identity: EngineIdentity):
        user, password = self.credentials(identity)
        return self.engines.for_identity(identity, user, password)


def _linked(kind: str, record) -> LinkedResourceError:
    return LinkedResourceError(
        f"cannot remove resource because found {kind} {record.name} in namespace {record.namespace} "
        f"linked to this resource and wait for deletion flag is enabled"
    )


class LinkGuard:
    """Refuses deletions while other records still reference the target"""

    def __init__(self, store):
        self.store = store

    def check_engine_identity(self, identity: EngineIdentity):
        for database in self.store.list(Database):
            if database.spec.engine_configuration.key == identity.key:
                raise _linked("database", database)

    def check_database(self, database: Database):
        for user_role in self.store.list(UserRole):
            if any(p.database.key == database.key for p in user_role.spec.privileges):
                raise _linked("user role", user_role)
        for publication in self.store.list(Publication):
            if publication.spec.database.key == database.key:
                raise _linked("publication", publication)
