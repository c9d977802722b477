"""
Login credentials of user roles.

Managed user roles get a login named <rolePrefix>-A or <rolePrefix>-B. On every
rotation the suffix flips, a new password is generated, and the previous login
is put on the drain list. A login on the drain list is dropped once the engine
reports no session for it; until then both logins stay valid. A rotation that
comes due while the drain list is not empty is refused, so no more than two
logins ever exist per user role.

Provided user roles take login and password from an import secret written by
someone else and re-read it on every pass.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from .config import GREEN, YELLOW, RESET
from .errors import NotFoundError, RotationBlockedError, ValidationError
from .models import Database, EngineIdentity, PrivilegeSpec, UserRole, UserRoleMode
from .roles import check_identifiers
from .utils import format_time, parse_duration, parse_time, random_string, utcnow

logger = logging.getLogger("postgres-controller.credentials")

USERNAME_KEY = "USERNAME"
PASSWORD_KEY = "PASSWORD"
PASSWORD_LENGTH = 15
SUFFIXES = ("A", "B")


@dataclass
class Credentials:
    login: str
    password: str
    changed: bool = False


@dataclass
class EngineTarget:
    """One engine touched by a user role, with the privileges pointing at it"""
    engine: object
    identity: EngineIdentity
    grants: List[Tuple[PrivilegeSpec, Database]] = field(default_factory=list)

    def databases(self) -> List[Database]:
        seen, result = set(), []
        for _, database in self.grants:
            if database.key not in seen:
                seen.add(database.key)
                result.append(database)
        return result


def login_names(prefix: str) -> Tuple[str, str]:
    return tuple(f"{prefix}-{suffix}" for suffix in SUFFIXES)


def _other(login: str, prefix: str) -> str:
    first, second = login_names(prefix)
    return second if login == first else first


class CredentialRotator:
    """Resolves, rotates and drains the logins of user roles"""

    def __init__(self, store, projection, clock=None):
        self.store = store
        self.projection = projection
        self.clock = clock

    def _now(self) -> datetime:
        return self.clock() if self.clock else utcnow()

    # ------------------------------------------------------------------------
    # credentials
    # ------------------------------------------------------------------------

    def resolve(self, user_role: UserRole) -> Credentials:
        """
        Work out the current login and password and record them in status

        Any login that stops being current is appended to the drain list.
        The work secret is rewritten when the credentials change.

        Raises:
            RotationBlockedError: a rotation is due while logins are draining
        """
        if user_role.spec.mode == UserRoleMode.MANAGED:
            credentials = self._resolve_managed(user_role)
        else:
            credentials = self._resolve_provided(user_role)

        status = user_role.status
        if status.postgres_role and status.postgres_role != credentials.login \
                and status.postgres_role not in status.old_postgres_roles:
            logger.info(f"{YELLOW}Login {status.postgres_role} of {user_role.namespace}/{user_role.name} "
                        f"will be drained{RESET}")
            status.old_postgres_roles.append(status.postgres_role)

        self.projection.sync(user_role, user_role.spec.work_generated_secret_name,
                             {USERNAME_KEY: credentials.login, PASSWORD_KEY: credentials.password})

        status.postgres_role = credentials.login
        status.role_prefix = user_role.spec.role_prefix
        if credentials.changed or not status.last_password_changed_time:
            status.last_password_changed_time = format_time(self._now())
        return credentials

    def _rotation_due(self, user_role: UserRole) -> bool:
        duration = user_role.spec.user_password_rotation_duration
        last = parse_time(user_role.status.last_password_changed_time)
        if not duration or last is None:
            return False
        return self._now() - last >= parse_duration(duration)

    def _resolve_managed(self, user_role: UserRole) -> Credentials:
        prefix = user_role.spec.role_prefix
        candidates = login_names(prefix)
        current = user_role.status.postgres_role

        work = self.store.get_secret(user_role.namespace, user_role.spec.work_generated_secret_name)
        login = work.data.get(USERNAME_KEY, "") if work else ""
        password = work.data.get(PASSWORD_KEY, "") if work else ""

        credentials = Credentials(login=login, password=password)
        if login not in candidates:
            credentials.login = current if current in candidates else candidates[0]
            credentials.changed = True

        if not password:
            credentials.password = random_string(PASSWORD_LENGTH)
            credentials.changed = True
        elif self._rotation_due(user_role):
            pending = user_role.status.old_postgres_roles
            if pending:
                raise RotationBlockedError(
                    f"password rotation blocked, old postgres roles {', '.join(pending)} are still present"
                )
            credentials.login = _other(credentials.login, prefix)
            credentials.password = random_string(PASSWORD_LENGTH)
            credentials.changed = True
            logger.info(f"{GREEN}Rotating {user_role.namespace}/{user_role.name} to {credentials.login}{RESET}")

        return credentials

    def _resolve_provided(self, user_role: UserRole) -> Credentials:
        name = user_role.spec.import_secret_name
        secret = self.store.get_secret(user_role.namespace, name)
        if secret is None:
            raise NotFoundError(f"import secret {name} not found in namespace {user_role.namespace}")

        login = secret.data.get(USERNAME_KEY, "")
        password = secret.data.get(PASSWORD_KEY, "")
        if not login or not password:
            raise ValidationError(f"import secret {name} must contain {USERNAME_KEY} and {PASSWORD_KEY} values")
        check_identifiers(login)

        work = self.store.get_secret(user_role.namespace, user_role.spec.work_generated_secret_name)
        changed = work is None or work.data.get(USERNAME_KEY) != login or work.data.get(PASSWORD_KEY) != password
        return Credentials(login=login, password=password, changed=changed)

    # ------------------------------------------------------------------------
    # engine side
    # ------------------------------------------------------------------------

    def ensure_login(self, target: EngineTarget, credentials: Credentials, force_password: bool = False):
        engine = target.engine
        if not engine.role_exists(credentials.login):
            engine.create_user_role(credentials.login, credentials.password)
        elif credentials.changed or force_password:
            engine.update_password(credentials.login, credentials.password)

    def sync_rights(self, target: EngineTarget, login: str):
        """
        Grant the group role of every privilege and set it as the on-connect
        role of its database; revoke memberships and settings nothing asks for
        """
        engine = target.engine
        desired_groups = set()
        desired_settings = {}
        for privilege, database in target.grants:
            group = database.status.roles.for_privilege(privilege.privilege)
            desired_groups.add(group)
            desired_settings[database.status.database] = group

        current_groups = set(engine.get_role_membership(login))
        for group in sorted(desired_groups - current_groups):
            engine.grant_role(group, login)
        for group in sorted(current_groups - desired_groups):
            engine.revoke_role(group, login)

        settings = engine.get_set_role_on_database_settings(login)
        for db_name, group in desired_settings.items():
            if settings.get(db_name) != group:
                engine.alter_default_login_role_on_database(login, group, db_name)
        for db_name in sorted(set(settings) - set(desired_settings)):
            engine.revoke_user_set_role_on_database(login, db_name)

    def drain(self, user_role: UserRole, targets: List[EngineTarget]) -> List[str]:
        """
        Drop every login on the drain list that has no active session

        Returns:
            The logins still present somewhere, also stored back in status
        """
        status = user_role.status
        remaining = []
        for old in status.old_postgres_roles:
            if old == status.postgres_role and not user_role.deleting:
                continue
            if not self._drain_login(old, targets) and old not in remaining:
                remaining.append(old)
        status.old_postgres_roles = remaining
        return remaining

    def _drain_login(self, old: str, targets: List[EngineTarget]) -> bool:
        drained = True
        for target in targets:
            engine = target.engine
            if not engine.role_exists(old):
                continue
            sessions = engine.count_active_sessions(old)
            if sessions:
                logger.info(f"Login {old} still has {sessions} active session(s) on {engine.key}")
                drained = False
                continue

            if not engine.is_member_of(old, engine.user):
                engine.grant_role(old, engine.user)
            for database in target.databases():
                engine.change_and_drop_owned_by(old, database.status.roles.owner, database.status.database)
            engine.drop_role(old)
            logger.info(f"{GREEN}Drained login {old} on {engine.key}{RESET}")
        return drained

    def rotation_requeue(self, user_role: UserRole) -> Optional[float]:
        """Seconds until the next rotation is due, None when rotation is off"""
        duration = user_role.spec.user_password_rotation_duration
        last = parse_time(user_role.status.last_password_changed_time)
        if user_role.spec.mode != UserRoleMode.MANAGED or not duration or last is None:
            return None
        remaining = parse_duration(duration) - (self._now() - last)
        return max(remaining.total_seconds(), 1.0)
