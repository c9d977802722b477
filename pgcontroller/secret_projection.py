"""
Generated connection secrets.

The content of every generated secret is a pure function of status: the login,
its password and the connection variant selected by the privilege. Secrets are
rewritten whenever the live content diverges from that projection.
"""

import logging
from typing import Dict, Iterable

from .config import WHITE, RESET
from .errors import ValidationError
from .models import (
    ConnectionInfo,
    ConnectionType,
    Database,
    EngineIdentity,
    PrivilegeSpec,
    Resource,
    Secret,
    owner_reference,
)
from .utils import postgres_url

logger = logging.getLogger("postgres-controller.secrets")

LOGIN_KEY = "LOGIN"
PASSWORD_KEY = "PASSWORD"
DATABASE_KEY = "DATABASE"
HOST_KEY = "HOST"
PORT_KEY = "PORT"
ARGS_KEY = "ARGS"
URL_KEY = "POSTGRES_URL"
URL_ARGS_KEY = "POSTGRES_URL_ARGS"


def project(privilege: PrivilegeSpec, login: str, password: str, database: Database,
            identity: EngineIdentity) -> Dict[str, str]:
    """
    Compute the content of the secret generated for one privilege

    Args:
        privilege: Privilege entry of the user role
        login: Current login role
        password: Current password
        database: Database record the privilege points at
        identity: Engine configuration of that database

    Returns:
        Secret data keyed by LOGIN, PASSWORD, DATABASE, HOST, PORT, ARGS,
        POSTGRES_URL and POSTGRES_URL_ARGS
    """
    if privilege.connection_type == ConnectionType.BOUNCER:
        connection = identity.spec.bouncer_connection
        if connection is None:
            raise ValidationError(
                f"bouncer connection asked for database {privilege.database.name} but engine configuration "
                f"{identity.namespace}/{identity.name} has none"
            )
    else:
        connection = identity.spec.primary_connection or ConnectionInfo(
            host=identity.spec.host, port=identity.spec.port, uri_args=identity.spec.uri_args
        )

    db_name = database.status.database
    url = postgres_url(login, password, connection.host, connection.port, db_name)
    return {
        LOGIN_KEY: login,
        PASSWORD_KEY: password,
        DATABASE_KEY: db_name,
        HOST_KEY: connection.host,
        PORT_KEY: str(connection.port),
        ARGS_KEY: connection.uri_args,
        URL_KEY: url,
        URL_ARGS_KEY: f"{url}?{connection.uri_args}",
    }


class SecretProjection:
    """Writes secrets owned by a record and removes the ones it no longer names"""

    def __init__(self, store, api_version: str):
        self.store = store
        self.api_version = api_version

    def sync(self, owner: Resource, name: str, data: Dict[str, str]) -> bool:
        """
        Create or overwrite a secret if its content differs from data

        Returns:
            True if the secret was written
        """
        desired = Secret(
            name=name,
            namespace=owner.namespace,
            data=dict(data),
            labels={"app": owner.name},
            owner_references=[owner_reference(owner, self.api_version)],
        )
        current = self.store.get_secret(owner.namespace, name)
        if current is None:
            self.store.create_secret(desired)
            logger.info(f"{WHITE}Created secret {owner.namespace}/{name}{RESET}")
            return True
        if current.data != desired.data or current.labels.get("app") != owner.name \
                or not current.owned_by(owner.metadata.uid):
            self.store.replace_secret(desired)
            logger.info(f"{WHITE}Rewrote secret {owner.namespace}/{name}{RESET}")
            return True
        return False

    def clean_orphans(self, owner: Resource, keep: Iterable[str]):
        """Delete secrets owned by owner that are not in keep"""
        keep = set(keep)
        for secret in self.store.list_secrets(owner.namespace):
            if secret.owned_by(owner.metadata.uid) and secret.name not in keep:
                self.store.delete_secret(owner.namespace, secret.name)
                logger.info(f"Deleted orphaned secret {owner.namespace}/{secret.name}")
