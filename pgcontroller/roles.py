"""Idempotent create-or-rename-or-grant of roles and databases."""

import logging
from typing import Optional

from .config import YELLOW, RESET
from .errors import ValidationError
from .utils import MAX_IDENTIFIER_LENGTH, identifier_too_long

logger = logging.getLogger("postgres-controller.roles")


def check_identifiers(*names: str):
    """
    Fail before any mutation if a generated name exceeds the identifier limit

    Raises:
        ValidationError: naming the first offending identifier
    """
    for name in names:
        if identifier_too_long(name):
            raise ValidationError(
                f"identifier too long, must be <= {MAX_IDENTIFIER_LENGTH}, {name} is "
                f"{len(name.encode('utf-8'))} character, must reduce master role or database name length"
            )


class RoleCoordinator:
    """Keeps group roles and databases in line with their desired names"""

    def __init__(self, engine, allow_grant_admin_option: bool = False):
        self.engine = engine
        self.allow_grant_admin_option = allow_grant_admin_option

    def ensure_role(self, desired: str, applied: Optional[str] = None) -> str:
        """
        Rename, create and grant a group role as needed

        Args:
            desired: Name the role should have
            applied: Name recorded in status by a previous pass, if any

        Returns:
            The applied role name
        """
        engine = self.engine
        if applied and applied != desired and engine.role_exists(applied):
            logger.info(f"{YELLOW}Role {applied} renamed to {desired}{RESET}")
            engine.rename_role(applied, desired)

        if not engine.role_exists(desired):
            engine.create_group_role(desired)

        if not engine.is_member_of(desired, engine.user):
            engine.grant_role(desired, engine.user, with_admin_option=self.allow_grant_admin_option)

        return desired

    def ensure_database(self, desired: str, applied: Optional[str], owner: str, close_database) -> str:
        """
        Rename or create a database and make sure owner owns it

        Args:
            desired: Name the database should have
            applied: Name recorded in status by a previous pass, if any
            owner: Owner role
            close_database: Callable closing pools cached under a database name

        Returns:
            The applied database name
        """
        engine = self.engine
        if applied and applied != desired and engine.database_exists(applied):
            # No connection may stay open on a database being renamed
            close_database(applied)
            engine.rename_database(applied, desired)
            close_database(applied)

        if not engine.database_exists(desired):
            engine.create_database(desired, owner)
        elif engine.get_database_owner(desired) != owner:
            engine.change_database_owner(desired, owner)

        return desired
