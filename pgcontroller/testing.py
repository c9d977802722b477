"""
In-memory stand-ins for the Kubernetes store and PostgreSQL engines.

FakeStore follows the store contract the reconcilers rely on: resourceVersion
checks on update and status patch, generation bumps on spec changes, and hard
deletion once a record being deleted has no finalizer left. FakeEngine keeps a
small model of the engine catalogs and logs every call so tests can tell
existence checks from mutations.
"""

import copy
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import yaml

from .errors import EngineError, NotFoundError, PatchConflictError, StoreError
from .metrics import Metrics
from .models import PublicationInfo, ReplicationSlotInfo, RESOURCE_KINDS, Secret
from .publication_builder import PublicationCreateBuilder, PublicationUpdateBuilder

KINDS_BY_NAME = {kind.KIND: kind for kind in RESOURCE_KINDS}


def load_manifests(text: str) -> List[dict]:
    """Parse a multi-document YAML string into objects"""
    return [doc for doc in yaml.safe_load_all(text) if doc]


class FakeClock:
    """Injectable clock returning an aware UTC datetime"""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


# ============================================================================
# STORE
# ============================================================================

class FakeStore:
    """Thread-safe in-memory object store"""

    def __init__(self):
        self._lock = threading.RLock()
        self._objects: Dict[Tuple[str, str, str], dict] = {}
        self._secrets: Dict[Tuple[str, str], Secret] = {}
        self._version = 0
        self._uid = 0
        self.events: List[Tuple[str, str, str, str, str, str]] = []
        self.secret_writes = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    # ------------------------------------------------------------------------
    # test helpers
    # ------------------------------------------------------------------------

    def add(self, obj: dict) -> dict:
        """Create an object from a manifest dict, like kubectl apply of a new object"""
        with self._lock:
            obj = copy.deepcopy(obj)
            kind = KINDS_BY_NAME[obj["kind"]]
            meta = obj.setdefault("metadata", {})
            meta.setdefault("namespace", "default")
            self._uid += 1
            meta.setdefault("uid", f"uid-{self._uid}")
            meta["generation"] = 1
            meta["resourceVersion"] = self._next_version()
            obj.setdefault("spec", {})
            obj.setdefault("status", {})
            self._objects[(kind.PLURAL, meta["namespace"], meta["name"])] = obj
            return copy.deepcopy(obj)

    def add_manifests(self, text: str):
        for obj in load_manifests(text):
            if obj.get("kind") == "Secret":
                meta = obj["metadata"]
                self._secrets[(meta.get("namespace", "default"), meta["name"])] = Secret(
                    name=meta["name"], namespace=meta.get("namespace", "default"),
                    data={k: str(v) for k, v in (obj.get("stringData") or {}).items()},
                )
            else:
                self.add(obj)

    def raw(self, kind, namespace: str, name: str) -> Optional[dict]:
        with self._lock:
            obj = self._objects.get((kind.PLURAL, namespace, name))
            return copy.deepcopy(obj) if obj else None

    def edit_spec(self, kind, namespace: str, record_name: str, **changes):
        """Change spec fields the way a user edit would"""
        with self._lock:
            obj = self._objects[(kind.PLURAL, namespace, record_name)]
            obj["spec"].update(copy.deepcopy(changes))
            obj["metadata"]["generation"] += 1
            obj["metadata"]["resourceVersion"] = self._next_version()

    def delete(self, kind, namespace: str, name: str):
        """Request deletion: mark while finalizers remain, remove otherwise"""
        with self._lock:
            key = (kind.PLURAL, namespace, name)
            obj = self._objects.get(key)
            if obj is None:
                return
            if obj["metadata"].get("finalizers"):
                obj["metadata"].setdefault("deletionTimestamp", "2024-01-01T00:00:00Z")
                obj["metadata"]["resourceVersion"] = self._next_version()
            else:
                del self._objects[key]

    def put_secret(self, namespace: str, name: str, data: Dict[str, str]):
        with self._lock:
            self._secrets[(namespace, name)] = Secret(name=name, namespace=namespace, data=dict(data))

    # ------------------------------------------------------------------------
    # store contract
    # ------------------------------------------------------------------------

    def get(self, kind, namespace: str, name: str):
        with self._lock:
            obj = self._objects.get((kind.PLURAL, namespace, name))
            if obj is None:
                raise NotFoundError(f"fetching {kind.KIND} {namespace}/{name}: not found")
            return kind.from_dict(copy.deepcopy(obj))

    def list(self, kind, namespace: str = None):
        with self._lock:
            return [kind.from_dict(copy.deepcopy(obj))
                    for (plural, ns, _), obj in sorted(self._objects.items())
                    if plural == kind.PLURAL and (namespace is None or ns == namespace)]

    def update(self, resource):
        with self._lock:
            key = (resource.PLURAL, resource.namespace, resource.name)
            stored = self._objects.get(key)
            if stored is None:
                raise NotFoundError(f"updating {resource.KIND} {resource.namespace}/{resource.name}: not found")
            if stored["metadata"]["resourceVersion"] != resource.metadata.resource_version:
                raise PatchConflictError(f"updating {resource.namespace}/{resource.name}: stale resourceVersion")

            body = resource.to_dict()
            meta = stored["metadata"]
            meta["finalizers"] = body["metadata"].get("finalizers", [])
            meta["labels"] = body["metadata"].get("labels", {})
            if body["spec"] != stored["spec"]:
                stored["spec"] = body["spec"]
                meta["generation"] += 1
            meta["resourceVersion"] = self._next_version()

            if meta.get("deletionTimestamp") and not meta["finalizers"]:
                del self._objects[key]
            return type(resource).from_dict(copy.deepcopy(stored))

    def patch_status(self, resource):
        with self._lock:
            key = (resource.PLURAL, resource.namespace, resource.name)
            stored = self._objects.get(key)
            if stored is None:
                raise NotFoundError(f"patching {resource.namespace}/{resource.name}: not found")
            if stored["metadata"]["resourceVersion"] != resource.metadata.resource_version:
                raise PatchConflictError(f"patching {resource.namespace}/{resource.name}: stale resourceVersion")
            stored["status"] = resource.status.to_dict()
            stored["metadata"]["resourceVersion"] = self._next_version()
            return type(resource).from_dict(copy.deepcopy(stored))

    def get_secret(self, namespace: str, name: str) -> Optional[Secret]:
        with self._lock:
            secret = self._secrets.get((namespace, name))
            return copy.deepcopy(secret)

    def list_secrets(self, namespace: str, label_selector: str = None) -> List[Secret]:
        with self._lock:
            return [copy.deepcopy(s) for (ns, _), s in sorted(self._secrets.items()) if ns == namespace]

    def create_secret(self, secret: Secret):
        with self._lock:
            if (secret.namespace, secret.name) in self._secrets:
                raise StoreError(f"secret {secret.namespace}/{secret.name} already exists")
            self._secrets[(secret.namespace, secret.name)] = copy.deepcopy(secret)
            self.secret_writes += 1

    def replace_secret(self, secret: Secret):
        with self._lock:
            if (secret.namespace, secret.name) not in self._secrets:
                raise NotFoundError(f"replacing secret {secret.namespace}/{secret.name}: not found")
            self._secrets[(secret.namespace, secret.name)] = copy.deepcopy(secret)
            self.secret_writes += 1

    def delete_secret(self, namespace: str, name: str):
        with self._lock:
            self._secrets.pop((namespace, name), None)

    def emit_event(self, resource, event_type: str, reason: str, message: str):
        with self._lock:
            self.events.append((resource.KIND, resource.namespace, resource.name, event_type, reason, message))


# ============================================================================
# ENGINE
# ============================================================================

MUTATIONS = {
    "create_group_role", "create_user_role", "update_password", "rename_role", "grant_role",
    "revoke_role", "alter_default_login_role_on_database", "revoke_user_set_role_on_database",
    "change_and_drop_owned_by", "drop_role", "create_database", "change_database_owner",
    "rename_database", "drop_database", "create_schema", "drop_schema", "create_extension",
    "drop_extension", "set_schema_privileges", "change_table_owner", "change_type_owner",
    "create_publication", "update_publication", "change_publication_owner", "drop_publication",
    "create_replication_slot", "drop_replication_slot",
}


class FakeEngine:
    """In-memory PostgreSQL catalog with a call log"""

    def __init__(self, key: str = "default/engine", user: str = "postgres"):
        self.key = key
        self.user = user
        self._lock = threading.RLock()
        self.calls: List[Tuple[str, tuple]] = []
        self.fail_on: Dict[str, Exception] = {}
        self.roles: Dict[str, Optional[str]] = {user: None}
        self.memberships: set = set()
        self.settings: Dict[Tuple[str, str], str] = {}
        self.sessions: Dict[str, int] = {}
        self.databases: Dict[str, str] = {"postgres": user}
        self.schemas: Dict[str, set] = {"postgres": {"public"}}
        self.extensions: Dict[str, set] = {"postgres": set()}
        self.privileges: set = set()
        self.tables: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.types: Dict[Tuple[str, str], Dict[str, str]] = {}
        self.publications: Dict[Tuple[str, str], dict] = {}
        self.slots: Dict[str, ReplicationSlotInfo] = {}

    def _call(self, name: str, *args):
        with self._lock:
            self.calls.append((name, args))
            if name in self.fail_on:
                raise self.fail_on[name]

    @property
    def mutations(self) -> List[Tuple[str, tuple]]:
        return [c for c in self.calls if c[0] in MUTATIONS]

    def reset_calls(self):
        self.calls = []

    def ping(self):
        self._call("ping")

    # roles

    def role_exists(self, role):
        self._call("role_exists", role)
        return role in self.roles

    def create_group_role(self, role):
        self._call("create_group_role", role)
        self.roles[role] = None

    def create_user_role(self, role, password):
        self._call("create_user_role", role, password)
        self.roles[role] = password

    def update_password(self, role, password):
        self._call("update_password", role, password)
        self.roles[role] = password

    def rename_role(self, old, new):
        self._call("rename_role", old, new)
        self.roles[new] = self.roles.pop(old)
        self.databases = {db: new if owner == old else owner for db, owner in self.databases.items()}
        self.memberships = {(new if r == old else r, new if m == old else m) for r, m in self.memberships}

    def is_member_of(self, role, member):
        self._call("is_member_of", role, member)
        return (role, member) in self.memberships

    def grant_role(self, role, grantee, with_admin_option=False):
        self._call("grant_role", role, grantee, with_admin_option)
        self.memberships.add((role, grantee))

    def revoke_role(self, role, grantee):
        self._call("revoke_role", role, grantee)
        self.memberships.discard((role, grantee))

    def get_role_membership(self, role):
        self._call("get_role_membership", role)
        return sorted(r for r, m in self.memberships if m == role)

    def get_set_role_on_database_settings(self, role):
        self._call("get_set_role_on_database_settings", role)
        return {db: group for (r, db), group in self.settings.items() if r == role}

    def alter_default_login_role_on_database(self, role, group_role, database):
        self._call("alter_default_login_role_on_database", role, group_role, database)
        self.settings[(role, database)] = group_role

    def revoke_user_set_role_on_database(self, role, database):
        self._call("revoke_user_set_role_on_database", role, database)
        self.settings.pop((role, database), None)

    def count_active_sessions(self, role):
        self._call("count_active_sessions", role)
        return self.sessions.get(role, 0)

    def change_and_drop_owned_by(self, old_owner, new_owner, database):
        self._call("change_and_drop_owned_by", old_owner, new_owner, database)
        for db, owner in list(self.databases.items()):
            if owner == old_owner:
                self.databases[db] = new_owner

    def drop_role(self, role):
        self._call("drop_role", role)
        if role in self.databases.values():
            raise EngineError(f"role {role} cannot be dropped because some objects depend on it")
        self.roles.pop(role, None)
        self.memberships = {(r, m) for r, m in self.memberships if role not in (r, m)}
        self.settings = {k: v for k, v in self.settings.items() if k[0] != role}

    # databases

    def database_exists(self, database):
        self._call("database_exists", database)
        return database in self.databases

    def get_database_owner(self, database):
        self._call("get_database_owner", database)
        return self.databases.get(database)

    def create_database(self, database, owner):
        self._call("create_database", database, owner)
        self.databases[database] = owner
        self.schemas[database] = {"public"}
        self.extensions[database] = set()

    def change_database_owner(self, database, owner):
        self._call("change_database_owner", database, owner)
        self.databases[database] = owner

    def rename_database(self, old, new):
        self._call("rename_database", old, new)
        self.databases[new] = self.databases.pop(old)
        self.schemas[new] = self.schemas.pop(old, set())
        self.extensions[new] = self.extensions.pop(old, set())

    def drop_database(self, database):
        self._call("drop_database", database)
        self.databases.pop(database, None)
        self.schemas.pop(database, None)
        self.extensions.pop(database, None)

    # schemas and extensions

    def schema_exists(self, database, schema):
        self._call("schema_exists", database, schema)
        return schema in self.schemas.get(database, set())

    def create_schema(self, database, schema, owner):
        self._call("create_schema", database, schema, owner)
        self.schemas.setdefault(database, set()).add(schema)

    def drop_schema(self, database, schema, cascade):
        self._call("drop_schema", database, schema, cascade)
        self.schemas.get(database, set()).discard(schema)

    def extension_exists(self, database, extension):
        self._call("extension_exists", database, extension)
        return extension in self.extensions.get(database, set())

    def create_extension(self, database, extension):
        self._call("create_extension", database, extension)
        self.extensions.setdefault(database, set()).add(extension)

    def drop_extension(self, database, extension, cascade):
        self._call("drop_extension", database, extension, cascade)
        self.extensions.get(database, set()).discard(extension)

    def schema_privileges_granted(self, database, schema, owner, role, privileges):
        self._call("schema_privileges_granted", database, schema, owner, role, tuple(privileges))
        return (database, schema, role, tuple(privileges)) in self.privileges

    def set_schema_privileges(self, database, owner, role, schema, privileges):
        self._call("set_schema_privileges", database, owner, role, schema, tuple(privileges))
        self.privileges.add((database, schema, role, tuple(privileges)))

    def get_tables_in_schema(self, database, schema):
        self._call("get_tables_in_schema", database, schema)
        return sorted(self.tables.get((database, schema), {}).items())

    def change_table_owner(self, database, schema, table, owner):
        self._call("change_table_owner", database, schema, table, owner)
        self.tables[(database, schema)][table] = owner

    def get_types_in_schema(self, database, schema):
        self._call("get_types_in_schema", database, schema)
        return sorted(self.types.get((database, schema), {}).items())

    def change_type_owner(self, database, schema, type_name, owner):
        self._call("change_type_owner", database, schema, type_name, owner)
        self.types[(database, schema)][type_name] = owner

    # publications and slots

    def get_publication(self, database, name):
        self._call("get_publication", database, name)
        pub = self.publications.get((database, name))
        if pub is None:
            return None
        return PublicationInfo(name=name, owner=pub["owner"], all_tables=pub["selection"].all_tables)

    def create_publication(self, database, builder: PublicationCreateBuilder):
        self._call("create_publication", database, builder.name)
        self.publications[(database, builder.name)] = {
            "owner": self.user, "selection": builder.selection, "with": builder.with_parameters,
        }

    def update_publication(self, database, builder: PublicationUpdateBuilder):
        self._call("update_publication", database, builder.name, builder.new_name)
        pub = self.publications.pop((database, builder.name))
        pub["selection"] = builder.selection
        pub["with"] = builder.with_parameters
        self.publications[(database, builder.new_name or builder.name)] = pub

    def change_publication_owner(self, database, name, owner):
        self._call("change_publication_owner", database, name, owner)
        self.publications[(database, name)]["owner"] = owner

    def drop_publication(self, database, name):
        self._call("drop_publication", database, name)
        self.publications.pop((database, name), None)

    def get_replication_slot(self, name):
        self._call("get_replication_slot", name)
        return self.slots.get(name)

    def create_replication_slot(self, database, name, plugin):
        self._call("create_replication_slot", database, name, plugin)
        self.slots[name] = ReplicationSlotInfo(name=name, database=database, plugin=plugin)

    def drop_replication_slot(self, name):
        self._call("drop_replication_slot", name)
        self.slots.pop(name, None)


class FakeEngineFactory:
    """Hands out one FakeEngine per engine identity and records pool closes"""

    def __init__(self, engine: FakeEngine = None):
        self.engines: Dict[str, FakeEngine] = {}
        self.default = engine
        self.closed: List[Tuple[str, Optional[str]]] = []
        self.credentials: Dict[str, Tuple[str, str]] = {}

    def for_identity(self, identity, user: str, password: str) -> FakeEngine:
        key = f"{identity.namespace}/{identity.name}"
        self.credentials[key] = (user, password)
        if key not in self.engines:
            if self.default is not None:
                self.default.key = key
                self.default.user = user
                self.engines[key] = self.default
            else:
                self.engines[key] = FakeEngine(key=key, user=user)
        return self.engines[key]

    def close_all(self, key: str):
        self.closed.append((key, None))

    def close_database(self, key: str, database: str):
        self.closed.append((key, database))


# ============================================================================
# WORLDS
# ============================================================================

BASE_MANIFESTS = """
apiVersion: v1
kind: Secret
metadata:
  name: pg-admin
  namespace: default
stringData:
  user: postgres
  password: admin-pass
---
apiVersion: postgresql.gitops.io/v1alpha1
kind: PostgresEngineConfiguration
metadata:
  name: engine
  namespace: default
spec:
  host: db.example.internal
  uriArgs: sslmode=disable
  secretName: pg-admin
  userConnections:
    bouncerConnection:
      host: bouncer.example.internal
"""


class World:
    """A fake store, engine factory and clock wired together"""

    def __init__(self, manifests: str = BASE_MANIFESTS):
        self.store = FakeStore()
        self.store.add_manifests(manifests)
        self.engine = FakeEngine()
        self.engines = FakeEngineFactory(self.engine)
        self.clock = FakeClock()
        self.metrics = Metrics()

    def reconciler(self, reconciler_class):
        return reconciler_class(self.store, self.engines, self.metrics, clock=self.clock)

    def status(self, kind, name: str, namespace: str = "default") -> dict:
        return self.store.raw(kind, namespace, name)["status"]


def settle(reconciler, name: str, namespace: str = "default", passes: int = 5):
    """Reconcile until the record stops asking for an immediate requeue"""
    result = None
    for _ in range(passes):
        result = reconciler.reconcile(namespace, name)
        if result.error is not None or result.requeue_after != 0:
            return result
    return result
