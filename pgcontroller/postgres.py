"""
PostgreSQL engine facade.

All SQL issued by the controller lives here. Statements are composed with
psycopg2.sql so identifiers are always quoted; every psycopg2 failure is
logged and re-raised as EngineError.
"""

import logging
from typing import Dict, List, Optional, Tuple

import psycopg2
from psycopg2 import sql

from .config import WHITE, RESET
from .errors import EngineError
from .models import PublicationInfo, ReplicationSlotInfo
from .pools import ConnectionParams, EngineConnectionRegistry
from .publication_builder import PublicationCreateBuilder, PublicationUpdateBuilder

logger = logging.getLogger("postgres-controller.engine")

READER_PRIVILEGES = ["SELECT"]
WRITER_PRIVILEGES = ["SELECT", "INSERT", "DELETE", "UPDATE"]

_TYPES_IN_SCHEMA = """
    SELECT t.typname, pg_get_userbyid(t.typowner)
    FROM pg_type t
    LEFT JOIN pg_catalog.pg_namespace n ON n.oid = t.typnamespace
    WHERE (t.typrelid = 0 OR (SELECT c.relkind = 'c' FROM pg_catalog.pg_class c WHERE c.oid = t.typrelid))
    AND NOT EXISTS (SELECT 1 FROM pg_catalog.pg_type el WHERE el.oid = t.typelem AND el.typarray = t.oid)
    AND n.nspname = %s;
"""

_SCHEMA_PRIVILEGES_GRANTED = """
    SELECT has_schema_privilege(%(role)s, %(schema)s, 'USAGE')
    AND NOT EXISTS (
        SELECT 1 FROM pg_tables t, unnest(%(privileges)s::text[]) p
        WHERE t.schemaname = %(schema)s
        AND NOT has_table_privilege(%(role)s, format('%%I.%%I', t.schemaname, t.tablename), p)
    )
    AND EXISTS (
        SELECT 1 FROM pg_default_acl d
        JOIN pg_namespace n ON n.oid = d.defaclnamespace
        JOIN pg_roles o ON o.oid = d.defaclrole
        WHERE n.nspname = %(schema)s AND o.rolname = %(owner)s AND d.defaclobjtype = 'r'
        AND EXISTS (
            SELECT 1 FROM aclexplode(d.defaclacl) a
            JOIN pg_roles g ON g.oid = a.grantee
            WHERE g.rolname = %(role)s
        )
    );
"""


def _cascade(cascade: bool) -> sql.SQL:
    return sql.SQL("CASCADE" if cascade else "RESTRICT")


class PostgresEngine:
    """Handles all PostgreSQL interactions for one engine identity"""

    def __init__(self, registry: EngineConnectionRegistry, params: ConnectionParams):
        self.registry = registry
        self.params = params

    @property
    def key(self) -> str:
        return self.params.key

    @property
    def user(self) -> str:
        """Role the controller connects as"""
        return self.params.user

    # ------------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------------

    def _execute(self, statement, args=None, database: str = None, action: str = ""):
        try:
            with self.registry.acquire(self.params, database) as conn:
                with conn.cursor() as cur:
                    cur.execute(statement, args)
        except psycopg2.Error as e:
            logger.error(f"Error {action} on {self.key}: {e}")
            raise EngineError(f"{action}: {e}") from e

    def _fetch(self, query, args=None, database: str = None, action: str = "") -> List[tuple]:
        try:
            with self.registry.acquire(self.params, database) as conn:
                with conn.cursor() as cur:
                    cur.execute(query, args)
                    return cur.fetchall()
        except psycopg2.Error as e:
            logger.error(f"Error {action} on {self.key}: {e}")
            raise EngineError(f"{action}: {e}") from e

    def _exists(self, query, args=None, database: str = None, action: str = "") -> bool:
        return bool(self._fetch(query, args, database, action))

    def ping(self):
        self._fetch("SELECT 1;", action="pinging engine")

    # ------------------------------------------------------------------------
    # roles
    # ------------------------------------------------------------------------

    def role_exists(self, role: str) -> bool:
        return self._exists("SELECT 1 FROM pg_roles WHERE rolname = %s;", (role,),
                            action=f"checking role {role}")

    def create_group_role(self, role: str):
        self._execute(sql.SQL("CREATE ROLE {};").format(sql.Identifier(role)),
                      action=f"creating role {role}")
        logger.info(f"{WHITE}Created role: {role}{RESET}")

    def create_user_role(self, role: str, password: str):
        self._execute(sql.SQL("CREATE ROLE {} WITH LOGIN PASSWORD %s;").format(sql.Identifier(role)),
                      (password,), action=f"creating login role {role}")
        logger.info(f"{WHITE}Created login role: {role}{RESET}")

    def update_password(self, role: str, password: str):
        self._execute(sql.SQL("ALTER ROLE {} WITH PASSWORD %s;").format(sql.Identifier(role)),
                      (password,), action=f"updating password of {role}")
        logger.info(f"Updated password of {role}")

    def rename_role(self, old: str, new: str):
        self._execute(sql.SQL("ALTER ROLE {} RENAME TO {};").format(sql.Identifier(old), sql.Identifier(new)),
                      action=f"renaming role {old} to {new}")
        logger.info(f"{WHITE}Renamed role: {old} -> {new}{RESET}")

    def is_member_of(self, role: str, member: str) -> bool:
        """Whether member has been granted role directly"""
        return self._exists("""
            SELECT 1
            FROM pg_auth_members m
            JOIN pg_roles r ON r.oid = m.roleid
            JOIN pg_roles u ON u.oid = m.member
            WHERE r.rolname = %s AND u.rolname = %s;
        """, (role, member), action=f"checking membership of {member} in {role}")

    def grant_role(self, role: str, grantee: str, with_admin_option: bool = False):
        statement = sql.SQL("GRANT {} TO {}").format(sql.Identifier(role), sql.Identifier(grantee))
        if with_admin_option:
            statement = statement + sql.SQL(" WITH ADMIN OPTION")
        self._execute(statement, action=f"granting {role} to {grantee}")
        logger.info(f"  ↳ Granted role {role} to {grantee}")

    def revoke_role(self, role: str, grantee: str):
        self._execute(sql.SQL("REVOKE {} FROM {};").format(sql.Identifier(role), sql.Identifier(grantee)),
                      action=f"revoking {role} from {grantee}")
        logger.info(f"  ↳ Revoked role {role} from {grantee}")

    def get_role_membership(self, role: str) -> List[str]:
        """Roles granted to role"""
        rows = self._fetch("""
            SELECT r.rolname
            FROM pg_roles r
            JOIN pg_auth_members m ON r.oid = m.roleid
            JOIN pg_roles u ON u.oid = m.member
            WHERE u.rolname = %s;
        """, (role,), action=f"fetching memberships of {role}")
        return [r[0] for r in rows]

    def get_set_role_on_database_settings(self, role: str) -> Dict[str, str]:
        """Per-database 'SET role' defaults of a login, as {database: group role}"""
        rows = self._fetch("""
            SELECT d.datname, s.setconfig
            FROM pg_db_role_setting s
            JOIN pg_roles r ON r.oid = s.setrole
            JOIN pg_database d ON d.oid = s.setdatabase
            WHERE r.rolname = %s;
        """, (role,), action=f"fetching settings of {role}")
        settings = {}
        for database, config in rows:
            for entry in config or []:
                name, _, value = entry.partition("=")
                if name == "role":
                    settings[database] = value
        return settings

    def alter_default_login_role_on_database(self, role: str, group_role: str, database: str):
        self._execute(sql.SQL("ALTER ROLE {} IN DATABASE {} SET role TO {};").format(
            sql.Identifier(role), sql.Identifier(database), sql.Identifier(group_role)
        ), action=f"setting default role of {role} on {database}")
        logger.info(f"  ↳ {role} connects to {database} as {group_role}")

    def revoke_user_set_role_on_database(self, role: str, database: str):
        self._execute(sql.SQL("ALTER ROLE {} IN DATABASE {} RESET role;").format(
            sql.Identifier(role), sql.Identifier(database)
        ), action=f"resetting default role of {role} on {database}")

    def count_active_sessions(self, role: str) -> int:
        rows = self._fetch("SELECT count(*) FROM pg_stat_activity WHERE usename = %s;", (role,),
                           action=f"counting sessions of {role}")
        return int(rows[0][0])

    def change_and_drop_owned_by(self, old_owner: str, new_owner: str, database: str):
        """Reassign then drop everything old_owner owns in database"""
        self._execute(sql.SQL("REASSIGN OWNED BY {} TO {}; DROP OWNED BY {};").format(
            sql.Identifier(old_owner), sql.Identifier(new_owner), sql.Identifier(old_owner)
        ), database=database, action=f"reassigning objects of {old_owner} in {database}")

    def drop_role(self, role: str):
        self._execute(sql.SQL("DROP ROLE IF EXISTS {};").format(sql.Identifier(role)),
                      action=f"dropping role {role}")
        logger.info(f"{WHITE}Dropped role: {role}{RESET}")

    # ------------------------------------------------------------------------
    # databases
    # ------------------------------------------------------------------------

    def database_exists(self, database: str) -> bool:
        return self._exists("SELECT 1 FROM pg_database WHERE datname = %s;", (database,),
                            action=f"checking database {database}")

    def get_database_owner(self, database: str) -> Optional[str]:
        rows = self._fetch("SELECT pg_get_userbyid(datdba) FROM pg_database WHERE datname = %s;",
                           (database,), action=f"fetching owner of {database}")
        return rows[0][0] if rows else None

    def create_database(self, database: str, owner: str):
        self._execute(sql.SQL("CREATE DATABASE {} WITH OWNER {};").format(
            sql.Identifier(database), sql.Identifier(owner)
        ), action=f"creating database {database}")
        logger.info(f"{WHITE}Created database: {database} (owner {owner}){RESET}")

    def change_database_owner(self, database: str, owner: str):
        self._execute(sql.SQL("ALTER DATABASE {} OWNER TO {};").format(
            sql.Identifier(database), sql.Identifier(owner)
        ), action=f"changing owner of {database}")

    def rename_database(self, old: str, new: str):
        self._execute(sql.SQL("ALTER DATABASE {} RENAME TO {};").format(
            sql.Identifier(old), sql.Identifier(new)
        ), action=f"renaming database {old} to {new}")
        logger.info(f"{WHITE}Renamed database: {old} -> {new}{RESET}")

    def drop_database(self, database: str):
        self._execute(sql.SQL("DROP DATABASE IF EXISTS {};").format(sql.Identifier(database)),
                      action=f"dropping database {database}")
        logger.info(f"{WHITE}Dropped database: {database}{RESET}")

    # ------------------------------------------------------------------------
    # schemas and extensions
    # ------------------------------------------------------------------------

    def schema_exists(self, database: str, schema: str) -> bool:
        return self._exists("SELECT 1 FROM information_schema.schemata WHERE schema_name = %s;", (schema,),
                            database=database, action=f"checking schema {schema}")

    def create_schema(self, database: str, schema: str, owner: str):
        self._execute(sql.SQL("CREATE SCHEMA IF NOT EXISTS {} AUTHORIZATION {};").format(
            sql.Identifier(schema), sql.Identifier(owner)
        ), database=database, action=f"creating schema {schema}")
        logger.info(f"  ↳ Created schema {schema} in {database}")

    def drop_schema(self, database: str, schema: str, cascade: bool):
        self._execute(sql.SQL("DROP SCHEMA IF EXISTS {} {};").format(sql.Identifier(schema), _cascade(cascade)),
                      database=database, action=f"dropping schema {schema}")
        logger.info(f"  ↳ Dropped schema {schema} in {database}")

    def extension_exists(self, database: str, extension: str) -> bool:
        return self._exists("SELECT 1 FROM pg_extension WHERE extname = %s;", (extension,),
                            database=database, action=f"checking extension {extension}")

    def create_extension(self, database: str, extension: str):
        self._execute(sql.SQL("CREATE EXTENSION IF NOT EXISTS {};").format(sql.Identifier(extension)),
                      database=database, action=f"creating extension {extension}")
        logger.info(f"  ↳ Created extension {extension} in {database}")

    def drop_extension(self, database: str, extension: str, cascade: bool):
        self._execute(sql.SQL("DROP EXTENSION IF EXISTS {} {};").format(
            sql.Identifier(extension), _cascade(cascade)
        ), database=database, action=f"dropping extension {extension}")
        logger.info(f"  ↳ Dropped extension {extension} in {database}")

    def schema_privileges_granted(self, database: str, schema: str, owner: str, role: str,
                                  privileges: List[str]) -> bool:
        rows = self._fetch(_SCHEMA_PRIVILEGES_GRANTED, {
            "role": role, "schema": schema, "owner": owner, "privileges": privileges,
        }, database=database, action=f"checking privileges of {role} on {schema}")
        return bool(rows and rows[0][0])

    def set_schema_privileges(self, database: str, owner: str, role: str, schema: str,
                              privileges: List[str]):
        """Grant usage, privileges on existing tables and default privileges for new ones"""
        privs = sql.SQL(", ").join(sql.SQL(p) for p in privileges)
        schema_id, role_id = sql.Identifier(schema), sql.Identifier(role)
        self._execute(sql.SQL(
            "GRANT USAGE ON SCHEMA {schema} TO {role}; "
            "GRANT {privs} ON ALL TABLES IN SCHEMA {schema} TO {role}; "
            "ALTER DEFAULT PRIVILEGES FOR ROLE {owner} IN SCHEMA {schema} GRANT {privs} ON TABLES TO {role};"
        ).format(schema=schema_id, role=role_id, privs=privs, owner=sql.Identifier(owner)),
            database=database, action=f"granting {', '.join(privileges)} on {schema} to {role}")
        logger.info(f"  ↳ Granted {', '.join(privileges)} on {schema} to {role}")

    def get_tables_in_schema(self, database: str, schema: str) -> List[Tuple[str, str]]:
        """(table, owner) pairs"""
        return [tuple(r) for r in self._fetch(
            "SELECT tablename, tableowner FROM pg_tables WHERE schemaname = %s;", (schema,),
            database=database, action=f"listing tables of {schema}")]

    def change_table_owner(self, database: str, schema: str, table: str, owner: str):
        self._execute(sql.SQL("ALTER TABLE {} OWNER TO {};").format(
            sql.Identifier(schema, table), sql.Identifier(owner)
        ), database=database, action=f"changing owner of table {schema}.{table}")

    def get_types_in_schema(self, database: str, schema: str) -> List[Tuple[str, str]]:
        """(type, owner) pairs for user-defined types"""
        return [tuple(r) for r in self._fetch(_TYPES_IN_SCHEMA, (schema,), database=database,
                                              action=f"listing types of {schema}")]

    def change_type_owner(self, database: str, schema: str, type_name: str, owner: str):
        self._execute(sql.SQL("ALTER TYPE {} OWNER TO {};").format(
            sql.Identifier(schema, type_name), sql.Identifier(owner)
        ), database=database, action=f"changing owner of type {schema}.{type_name}")

    # ------------------------------------------------------------------------
    # publications and replication slots
    # ------------------------------------------------------------------------

    def get_publication(self, database: str, name: str) -> Optional[PublicationInfo]:
        rows = self._fetch("""
            SELECT p.pubname, pg_get_userbyid(p.pubowner), p.puballtables, p.pubinsert,
                   p.pubupdate, p.pubdelete, p.pubtruncate, p.pubviaroot
            FROM pg_publication p
            WHERE p.pubname = %s;
        """, (name,), database=database, action=f"fetching publication {name}")
        if not rows:
            return None
        return PublicationInfo(*rows[0])

    def create_publication(self, database: str, builder: PublicationCreateBuilder):
        self._execute(builder.build(), database=database, action=f"creating publication {builder.name}")
        logger.info(f"{WHITE}Created publication: {builder.name} in {database}{RESET}")

    def update_publication(self, database: str, builder: PublicationUpdateBuilder):
        """Run every ALTER of the builder in one transaction"""
        try:
            with self.registry.acquire(self.params, database) as conn:
                conn.autocommit = False
                try:
                    with conn.cursor() as cur:
                        for statement in builder.build():
                            cur.execute(statement)
                    conn.commit()
                except psycopg2.Error:
                    conn.rollback()
                    raise
                finally:
                    conn.autocommit = True
        except psycopg2.Error as e:
            logger.error(f"Error updating publication {builder.name} on {self.key}: {e}")
            raise EngineError(f"updating publication {builder.name}: {e}") from e
        logger.info(f"{WHITE}Updated publication: {builder.new_name or builder.name} in {database}{RESET}")

    def change_publication_owner(self, database: str, name: str, owner: str):
        self._execute(sql.SQL("ALTER PUBLICATION {} OWNER TO {};").format(
            sql.Identifier(name), sql.Identifier(owner)
        ), database=database, action=f"changing owner of publication {name}")

    def drop_publication(self, database: str, name: str):
        self._execute(sql.SQL("DROP PUBLICATION IF EXISTS {};").format(sql.Identifier(name)),
                      database=database, action=f"dropping publication {name}")
        logger.info(f"{WHITE}Dropped publication: {name} in {database}{RESET}")

    def get_replication_slot(self, name: str) -> Optional[ReplicationSlotInfo]:
        rows = self._fetch("SELECT slot_name, database, plugin FROM pg_replication_slots WHERE slot_name = %s;",
                           (name,), action=f"fetching replication slot {name}")
        if not rows:
            return None
        return ReplicationSlotInfo(*rows[0])

    def create_replication_slot(self, database: str, name: str, plugin: str):
        self._fetch("SELECT pg_create_logical_replication_slot(%s, %s);", (name, plugin),
                    database=database, action=f"creating replication slot {name}")
        logger.info(f"{WHITE}Created replication slot: {name} ({plugin}) in {database}{RESET}")

    def drop_replication_slot(self, name: str):
        self._fetch("SELECT pg_drop_replication_slot(%s);", (name,), action=f"dropping replication slot {name}")
        logger.info(f"{WHITE}Dropped replication slot: {name}{RESET}")


class EngineFactory:
    """Builds engines bound to the shared connection registry"""

    def __init__(self, registry: EngineConnectionRegistry):
        self.registry = registry

    def for_identity(self, identity, user: str, password: str) -> PostgresEngine:
        params = ConnectionParams(
            key=f"{identity.namespace}/{identity.name}",
            host=identity.spec.host,
            port=identity.spec.port,
            user=user,
            password=password,
            uri_args=identity.spec.uri_args,
            default_database=identity.spec.default_database,
        )
        return PostgresEngine(self.registry, params)

    def close_all(self, key: str):
        self.registry.close_all(key)

    def close_database(self, key: str, database: str):
        self.registry.close_database(key, database)
