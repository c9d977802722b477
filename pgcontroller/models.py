"""
Record models for the custom resources managed by the controller.

Each kind is a Kubernetes custom object with a metadata block, a desired-state
spec and an observed-state status. Objects are parsed into dataclasses at the
store boundary and serialized back with camelCase keys; fields the controller
does not know about are preserved from the raw object.
"""

import copy
import string
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

from .errors import ValidationError
from .utils import random_string, spec_hash

DEFAULT_PORT = 5432
DEFAULT_BOUNCER_PORT = 6432
DEFAULT_DATABASE = "postgres"
DEFAULT_CHECK_INTERVAL = "30s"
DEFAULT_SCHEMAS = ["public"]
DEFAULT_SLOT_PLUGIN = "pgoutput"


# ============================================================================
# PHASES
# ============================================================================

class Phase(str, Enum):
    """Base for the per-kind phase enums. Every kind has NONE and FAILED."""


class EnginePhase(Phase):
    NONE = ""
    VALIDATED = "Validated"
    FAILED = "Failed"


class DatabasePhase(Phase):
    NONE = ""
    CREATED = "Created"
    FAILED = "Failed"


class UserRolePhase(Phase):
    NONE = ""
    CREATED = "Created"
    FAILED = "Failed"


class PublicationPhase(Phase):
    NONE = ""
    CREATED = "Created"
    FAILED = "Failed"


# (from, to) pairs, expressed on the role of the phase rather than its value
_TRANSITIONS = {
    ("none", "success"),
    ("none", "failed"),
    ("success", "failed"),
    ("success", "success"),
    ("failed", "success"),
    ("failed", "failed"),
}


def _phase_role(phase: Phase) -> str:
    if phase.value == "":
        return "none"
    if phase.value == "Failed":
        return "failed"
    return "success"


def transition(current: Phase, target: Phase) -> Phase:
    """Return target if moving from current to target is allowed"""
    if type(current) is not type(target):
        raise ValueError(f"cannot move from {current!r} to {target!r}")
    if (_phase_role(current), _phase_role(target)) not in _TRANSITIONS:
        raise ValueError(f"illegal phase transition {current.value!r} -> {target.value!r}")
    return target


class UserRoleMode(str, Enum):
    PROVIDED = "PROVIDED"
    MANAGED = "MANAGED"


class Privilege(str, Enum):
    OWNER = "OWNER"
    READER = "READER"
    WRITER = "WRITER"


class ConnectionType(str, Enum):
    PRIMARY = "PRIMARY"
    BOUNCER = "BOUNCER"


def _enum(enum_class, value, default):
    if value in (None, ""):
        return default
    try:
        return enum_class(value)
    except ValueError:
        raise ValidationError(f"unsupported value {value!r}, must be one of "
                              f"{', '.join(e.value for e in enum_class if e.value)}")


# ============================================================================
# METADATA
# ============================================================================

@dataclass
class ObjectMeta:
    name: str
    namespace: str
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    deletion_timestamp: Optional[str] = None
    finalizers: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ObjectMeta":
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            uid=data.get("uid", ""),
            resource_version=str(data.get("resourceVersion", "") or ""),
            generation=int(data.get("generation", 0) or 0),
            deletion_timestamp=data.get("deletionTimestamp"),
            finalizers=list(data.get("finalizers") or []),
            labels=dict(data.get("labels") or {}),
        )

    def merge_into(self, raw: dict) -> dict:
        raw = dict(raw)
        raw.update({
            "name": self.name,
            "namespace": self.namespace,
            "finalizers": list(self.finalizers),
            "labels": dict(self.labels),
        })
        if self.resource_version:
            raw["resourceVersion"] = self.resource_version
        return raw


@dataclass
class ResourceRef:
    """Reference to a peer record; the namespace defaults to the referencing record's own"""
    name: str
    namespace: str = ""

    @classmethod
    def from_dict(cls, data: Optional[dict], default_namespace: str) -> "ResourceRef":
        data = data or {}
        return cls(name=data.get("name", ""), namespace=data.get("namespace") or default_namespace)

    def to_dict(self) -> dict:
        return {"name": self.name, "namespace": self.namespace}

    @property
    def key(self) -> Tuple[str, str]:
        return (self.namespace, self.name)


# ============================================================================
# ENGINE IDENTITY (PostgresEngineConfiguration)
# ============================================================================

@dataclass
class ConnectionInfo:
    host: str = ""
    port: int = DEFAULT_PORT
    uri_args: str = ""

    @classmethod
    def from_dict(cls, data: Optional[dict], default_port: int = DEFAULT_PORT) -> Optional["ConnectionInfo"]:
        if not data:
            return None
        return cls(host=data.get("host", ""), port=int(data.get("port") or default_port),
                   uri_args=data.get("uriArgs", ""))

    def to_dict(self) -> dict:
        return {"host": self.host, "port": self.port, "uriArgs": self.uri_args}


@dataclass
class EngineIdentitySpec:
    host: str = ""
    port: int = 0
    uri_args: str = ""
    default_database: str = ""
    check_interval: str = ""
    allow_grant_admin_option: bool = False
    wait_linked_resources_deletion: bool = False
    secret_name: str = ""
    primary_connection: Optional[ConnectionInfo] = None
    bouncer_connection: Optional[ConnectionInfo] = None

    @classmethod
    def from_dict(cls, data: dict, namespace: str) -> "EngineIdentitySpec":
        connections = data.get("userConnections") or {}
        return cls(
            host=data.get("host", ""),
            port=int(data.get("port") or 0),
            uri_args=data.get("uriArgs", ""),
            default_database=data.get("defaultDatabase", ""),
            check_interval=data.get("checkInterval", ""),
            allow_grant_admin_option=bool(data.get("allowGrantAdminOption", False)),
            wait_linked_resources_deletion=bool(data.get("waitLinkedResourcesDeletion", False)),
            secret_name=data.get("secretName", ""),
            primary_connection=ConnectionInfo.from_dict(connections.get("primaryConnection")),
            bouncer_connection=ConnectionInfo.from_dict(connections.get("bouncerConnection"),
                                                        DEFAULT_BOUNCER_PORT),
        )

    def to_dict(self) -> dict:
        connections = {}
        if self.primary_connection:
            connections["primaryConnection"] = self.primary_connection.to_dict()
        if self.bouncer_connection:
            connections["bouncerConnection"] = self.bouncer_connection.to_dict()
        data = {
            "host": self.host,
            "port": self.port,
            "uriArgs": self.uri_args,
            "defaultDatabase": self.default_database,
            "checkInterval": self.check_interval,
            "allowGrantAdminOption": self.allow_grant_admin_option,
            "waitLinkedResourcesDeletion": self.wait_linked_resources_deletion,
            "secretName": self.secret_name,
        }
        if connections:
            data["userConnections"] = connections
        return data


@dataclass
class EngineIdentityStatus:
    phase: EnginePhase = EnginePhase.NONE
    message: str = ""
    ready: bool = False
    last_validated_time: str = ""
    hash: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "EngineIdentityStatus":
        return cls(
            phase=EnginePhase(data.get("phase", "")),
            message=data.get("message", ""),
            ready=bool(data.get("ready", False)),
            last_validated_time=data.get("lastValidatedTime", ""),
            hash=data.get("hash", ""),
        )

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "ready": self.ready,
            "lastValidatedTime": self.last_validated_time,
            "hash": self.hash,
        }


# ============================================================================
# DATABASE (PostgresDatabase)
# ============================================================================

@dataclass
class ItemList:
    """Schema or extension list with its removal behaviour"""
    items: List[str] = field(default_factory=list)
    drop_on_delete: bool = False
    delete_with_cascade: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict], default: Optional[List[str]] = None) -> "ItemList":
        data = data or {}
        items = data.get("list")
        return cls(
            items=list(items) if items is not None else list(default or []),
            drop_on_delete=bool(data.get("dropOnDelete", False)),
            delete_with_cascade=bool(data.get("deleteWithCascade", False)),
        )

    def to_dict(self) -> dict:
        return {"list": list(self.items), "dropOnDelete": self.drop_on_delete,
                "deleteWithCascade": self.delete_with_cascade}


@dataclass
class DatabaseSpec:
    database: str
    engine_configuration: ResourceRef
    master_role: str = ""
    schemas: ItemList = field(default_factory=ItemList)
    extensions: ItemList = field(default_factory=ItemList)
    wait_linked_resources_deletion: bool = False
    drop_on_delete: bool = False

    @classmethod
    def from_dict(cls, data: dict, namespace: str) -> "DatabaseSpec":
        return cls(
            database=data.get("database", ""),
            engine_configuration=ResourceRef.from_dict(data.get("engineConfiguration"), namespace),
            master_role=data.get("masterRole", ""),
            schemas=ItemList.from_dict(data.get("schemas"), DEFAULT_SCHEMAS),
            extensions=ItemList.from_dict(data.get("extensions")),
            wait_linked_resources_deletion=bool(data.get("waitLinkedResourcesDeletion", False)),
            drop_on_delete=bool(data.get("dropOnDelete", False)),
        )

    def to_dict(self) -> dict:
        return {
            "database": self.database,
            "engineConfiguration": self.engine_configuration.to_dict(),
            "masterRole": self.master_role,
            "schemas": self.schemas.to_dict(),
            "extensions": self.extensions.to_dict(),
            "waitLinkedResourcesDeletion": self.wait_linked_resources_deletion,
            "dropOnDelete": self.drop_on_delete,
        }

    @property
    def owner_role(self) -> str:
        return self.master_role or f"{self.database}-owner"

    @property
    def reader_role(self) -> str:
        return f"{self.database}-reader"

    @property
    def writer_role(self) -> str:
        return f"{self.database}-writer"


@dataclass
class DatabaseRoles:
    owner: str = ""
    reader: str = ""
    writer: str = ""

    def for_privilege(self, privilege: Privilege) -> str:
        return {
            Privilege.OWNER: self.owner,
            Privilege.READER: self.reader,
            Privilege.WRITER: self.writer,
        }[privilege]

    def to_dict(self) -> dict:
        return {"owner": self.owner, "reader": self.reader, "writer": self.writer}


@dataclass
class DatabaseStatus:
    phase: DatabasePhase = DatabasePhase.NONE
    message: str = ""
    ready: bool = False
    database: str = ""
    roles: DatabaseRoles = field(default_factory=DatabaseRoles)
    schemas: List[str] = field(default_factory=list)
    extensions: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "DatabaseStatus":
        roles = data.get("roles") or {}
        return cls(
            phase=DatabasePhase(data.get("phase", "")),
            message=data.get("message", ""),
            ready=bool(data.get("ready", False)),
            database=data.get("database", ""),
            roles=DatabaseRoles(owner=roles.get("owner", ""), reader=roles.get("reader", ""),
                                writer=roles.get("writer", "")),
            schemas=list(data.get("schemas") or []),
            extensions=list(data.get("extensions") or []),
        )

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "ready": self.ready,
            "database": self.database,
            "roles": self.roles.to_dict(),
            "schemas": list(self.schemas),
            "extensions": list(self.extensions),
        }


# ============================================================================
# USER ROLE (PostgresUserRole)
# ============================================================================

@dataclass
class PrivilegeSpec:
    database: ResourceRef
    privilege: Privilege
    generated_secret_name: str
    connection_type: ConnectionType = ConnectionType.PRIMARY

    @classmethod
    def from_dict(cls, data: dict, namespace: str) -> "PrivilegeSpec":
        return cls(
            database=ResourceRef.from_dict(data.get("database"), namespace),
            privilege=_enum(Privilege, data.get("privilege"), Privilege.READER),
            generated_secret_name=data.get("generatedSecretName", ""),
            connection_type=_enum(ConnectionType, data.get("connectionType"), ConnectionType.PRIMARY),
        )

    def to_dict(self) -> dict:
        return {
            "database": self.database.to_dict(),
            "privilege": self.privilege.value,
            "generatedSecretName": self.generated_secret_name,
            "connectionType": self.connection_type.value,
        }


@dataclass
class UserRoleSpec:
    mode: UserRoleMode
    privileges: List[PrivilegeSpec] = field(default_factory=list)
    work_generated_secret_name: str = ""
    role_prefix: str = ""
    user_password_rotation_duration: str = ""
    import_secret_name: str = ""

    @classmethod
    def from_dict(cls, data: dict, namespace: str) -> "UserRoleSpec":
        return cls(
            mode=_enum(UserRoleMode, data.get("mode"), UserRoleMode.PROVIDED),
            privileges=[PrivilegeSpec.from_dict(p, namespace) for p in data.get("privileges") or []],
            work_generated_secret_name=data.get("workGeneratedSecretName", ""),
            role_prefix=data.get("rolePrefix", ""),
            user_password_rotation_duration=data.get("userPasswordRotationDuration", ""),
            import_secret_name=data.get("importSecretName", ""),
        )

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "privileges": [p.to_dict() for p in self.privileges],
            "workGeneratedSecretName": self.work_generated_secret_name,
            "rolePrefix": self.role_prefix,
            "userPasswordRotationDuration": self.user_password_rotation_duration,
            "importSecretName": self.import_secret_name,
        }


@dataclass
class UserRoleStatus:
    phase: UserRolePhase = UserRolePhase.NONE
    message: str = ""
    ready: bool = False
    postgres_role: str = ""
    role_prefix: str = ""
    old_postgres_roles: List[str] = field(default_factory=list)
    last_password_changed_time: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "UserRoleStatus":
        return cls(
            phase=UserRolePhase(data.get("phase", "")),
            message=data.get("message", ""),
            ready=bool(data.get("ready", False)),
            postgres_role=data.get("postgresRole", ""),
            role_prefix=data.get("rolePrefix", ""),
            old_postgres_roles=list(data.get("oldPostgresRoles") or []),
            last_password_changed_time=data.get("lastPasswordChangedTime", ""),
        )

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "ready": self.ready,
            "postgresRole": self.postgres_role,
            "rolePrefix": self.role_prefix,
            "oldPostgresRoles": list(self.old_postgres_roles),
            "lastPasswordChangedTime": self.last_password_changed_time,
        }


# ============================================================================
# PUBLICATION (PostgresPublication)
# ============================================================================

@dataclass
class PublicationTable:
    table_name: str
    columns: Optional[List[str]] = None
    additional_where: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"tableName": self.table_name}
        if self.columns is not None:
            data["columns"] = list(self.columns)
        if self.additional_where is not None:
            data["additionalWhere"] = self.additional_where
        return data


@dataclass(frozen=True)
class AllTables:
    all_tables: ClassVar[bool] = True

    def to_dict(self) -> dict:
        return {"allTables": True}


@dataclass(frozen=True)
class TablesInSchema:
    schemas: Tuple[str, ...]
    all_tables: ClassVar[bool] = False

    def to_dict(self) -> dict:
        return {"tablesInSchema": list(self.schemas)}


@dataclass(frozen=True)
class TableList:
    tables: Tuple[PublicationTable, ...]
    all_tables: ClassVar[bool] = False

    def to_dict(self) -> dict:
        return {"tables": [t.to_dict() for t in self.tables]}


TableSelection = Union[AllTables, TablesInSchema, TableList]


def parse_table_selection(data: dict) -> TableSelection:
    """
    Turn the three optional selection fields into exactly one variant

    Raises:
        ValidationError: when none or more than one mode is selected, or when
            the selected mode carries empty values
    """
    all_tables = bool(data.get("allTables", False))
    schemas = data.get("tablesInSchema") or []
    tables = data.get("tables") or []

    if not all_tables and not schemas and not tables:
        raise ValidationError("nothing is selected for publication (no all tables, no tables in schema, no tables)")
    if all_tables and (schemas or tables):
        raise ValidationError("all tables cannot be set with tables in schema or tables")
    if schemas and tables:
        if any(t.get("columns") is not None for t in tables):
            raise ValidationError("tables cannot have a columns list with a table schema list enabled")
        raise ValidationError("only one of all tables, tables in schema or tables can be selected")

    if all_tables:
        return AllTables()

    if schemas:
        if any(not s for s in schemas):
            raise ValidationError("tables in schema cannot have empty schema listed")
        return TablesInSchema(tuple(schemas))

    parsed = []
    for item in tables:
        columns = item.get("columns")
        where = item.get("additionalWhere")
        if (not item.get("tableName")
                or (columns is not None and (not columns or any(not c for c in columns)))
                or (where is not None and not where.strip())):
            raise ValidationError("tables cannot have an empty name, an empty column name or an empty additional where")
        parsed.append(PublicationTable(table_name=item["tableName"],
                                       columns=list(columns) if columns is not None else None,
                                       additional_where=where))
    return TableList(tuple(parsed))


@dataclass
class PublicationWithParameters:
    publish: str = ""
    publish_via_partition_root: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "PublicationWithParameters":
        data = data or {}
        return cls(publish=data.get("publish", ""),
                   publish_via_partition_root=data.get("publishViaPartitionRoot"))

    def to_dict(self) -> dict:
        data = {}
        if self.publish:
            data["publish"] = self.publish
        if self.publish_via_partition_root is not None:
            data["publishViaPartitionRoot"] = self.publish_via_partition_root
        return data


@dataclass
class PublicationSpec:
    database: ResourceRef
    name: str
    raw_selection: Dict[str, Any] = field(default_factory=dict)
    with_parameters: PublicationWithParameters = field(default_factory=PublicationWithParameters)
    replication_slot_name: str = ""
    replication_slot_plugin: str = ""
    drop_on_delete: bool = False

    @classmethod
    def from_dict(cls, data: dict, namespace: str) -> "PublicationSpec":
        return cls(
            database=ResourceRef.from_dict(data.get("database"), namespace),
            name=data.get("name", ""),
            raw_selection={k: copy.deepcopy(data[k]) for k in ("allTables", "tablesInSchema", "tables")
                           if k in data},
            with_parameters=PublicationWithParameters.from_dict(data.get("withParameters")),
            replication_slot_name=data.get("replicationSlotName", ""),
            replication_slot_plugin=data.get("replicationSlotPlugin", ""),
            drop_on_delete=bool(data.get("dropOnDelete", False)),
        )

    def to_dict(self) -> dict:
        data = {
            "database": self.database.to_dict(),
            "name": self.name,
            "withParameters": self.with_parameters.to_dict(),
            "replicationSlotName": self.replication_slot_name,
            "replicationSlotPlugin": self.replication_slot_plugin,
            "dropOnDelete": self.drop_on_delete,
        }
        data.update(copy.deepcopy(self.raw_selection))
        return data

    def selection(self) -> TableSelection:
        if not self.name:
            raise ValidationError("name must have a value")
        return parse_table_selection(self.raw_selection)

    def content_hash(self) -> str:
        return spec_hash({
            "name": self.name,
            "selection": self.selection().to_dict(),
            "with": self.with_parameters.to_dict(),
        })

    @property
    def slot_name(self) -> str:
        return self.replication_slot_name or self.name

    @property
    def slot_plugin(self) -> str:
        return self.replication_slot_plugin or DEFAULT_SLOT_PLUGIN


@dataclass
class PublicationStatus:
    phase: PublicationPhase = PublicationPhase.NONE
    message: str = ""
    ready: bool = False
    name: str = ""
    all_tables: bool = False
    hash: str = ""
    replication_slot_name: str = ""
    replication_slot_plugin: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "PublicationStatus":
        return cls(
            phase=PublicationPhase(data.get("phase", "")),
            message=data.get("message", ""),
            ready=bool(data.get("ready", False)),
            name=data.get("name", ""),
            all_tables=bool(data.get("allTables", False)),
            hash=data.get("hash", ""),
            replication_slot_name=data.get("replicationSlotName", ""),
            replication_slot_plugin=data.get("replicationSlotPlugin", ""),
        )

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "message": self.message,
            "ready": self.ready,
            "name": self.name,
            "allTables": self.all_tables,
            "hash": self.hash,
            "replicationSlotName": self.replication_slot_name,
            "replicationSlotPlugin": self.replication_slot_plugin,
        }


# ============================================================================
# RESOURCES
# ============================================================================

@dataclass
class Resource:
    """A custom object: metadata, typed spec and typed status"""
    KIND: ClassVar[str] = ""
    PLURAL: ClassVar[str] = ""
    SUCCESS_PHASE: ClassVar[Phase]
    spec_class: ClassVar[Type]
    status_class: ClassVar[Type]

    metadata: ObjectMeta
    spec: Any
    status: Any
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict):
        metadata = ObjectMeta.from_dict(data.get("metadata") or {})
        return cls(
            metadata=metadata,
            spec=cls.spec_class.from_dict(data.get("spec") or {}, metadata.namespace),
            status=cls.status_class.from_dict(data.get("status") or {}),
            raw=copy.deepcopy(data),
        )

    def to_dict(self) -> dict:
        data = copy.deepcopy(self.raw)
        data.setdefault("kind", self.KIND)
        data["metadata"] = self.metadata.merge_into(data.get("metadata") or {})
        data["spec"] = {**(data.get("spec") or {}), **self.spec.to_dict()}
        data["status"] = self.status.to_dict()
        return data

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def key(self) -> Tuple[str, str]:
        return (self.metadata.namespace, self.metadata.name)

    @property
    def deleting(self) -> bool:
        return bool(self.metadata.deletion_timestamp)

    def apply_defaults(self) -> bool:
        """Fill defaulted spec fields. Returns True if anything changed."""
        return False


class EngineIdentity(Resource):
    KIND = "PostgresEngineConfiguration"
    PLURAL = "postgresengineconfigurations"
    SUCCESS_PHASE = EnginePhase.VALIDATED
    spec_class = EngineIdentitySpec
    status_class = EngineIdentityStatus

    def apply_defaults(self) -> bool:
        spec = self.spec
        before = spec.to_dict()
        spec.port = spec.port or DEFAULT_PORT
        spec.default_database = spec.default_database or DEFAULT_DATABASE
        spec.check_interval = spec.check_interval or DEFAULT_CHECK_INTERVAL
        if spec.primary_connection is None:
            spec.primary_connection = ConnectionInfo(host=spec.host, port=spec.port, uri_args=spec.uri_args)
        return spec.to_dict() != before

    def content_hash(self) -> str:
        return spec_hash({
            "host": self.spec.host,
            "port": self.spec.port,
            "uriArgs": self.spec.uri_args,
            "defaultDatabase": self.spec.default_database,
            "checkInterval": self.spec.check_interval,
            "allowGrantAdminOption": self.spec.allow_grant_admin_option,
            "secretName": self.spec.secret_name,
            "userConnections": {
                "primary": self.spec.primary_connection.to_dict() if self.spec.primary_connection else None,
                "bouncer": self.spec.bouncer_connection.to_dict() if self.spec.bouncer_connection else None,
            },
        })


class Database(Resource):
    KIND = "PostgresDatabase"
    PLURAL = "postgresdatabases"
    SUCCESS_PHASE = DatabasePhase.CREATED
    spec_class = DatabaseSpec
    status_class = DatabaseStatus


class UserRole(Resource):
    KIND = "PostgresUserRole"
    PLURAL = "postgresuserroles"
    SUCCESS_PHASE = UserRolePhase.CREATED
    spec_class = UserRoleSpec
    status_class = UserRoleStatus

    WORK_SECRET_PREFIX: ClassVar[str] = "pgcreds-work-"

    def apply_defaults(self) -> bool:
        if self.spec.work_generated_secret_name:
            return False
        self.spec.work_generated_secret_name = self.WORK_SECRET_PREFIX + random_string(20, string.ascii_lowercase)
        return True


class Publication(Resource):
    KIND = "PostgresPublication"
    PLURAL = "postgrespublications"
    SUCCESS_PHASE = PublicationPhase.CREATED
    spec_class = PublicationSpec
    status_class = PublicationStatus

    def apply_defaults(self) -> bool:
        """Pin the slot name and plugin so a later rename keeps the same slot"""
        spec = self.spec
        before = (spec.replication_slot_name, spec.replication_slot_plugin)
        spec.replication_slot_name = spec.slot_name
        spec.replication_slot_plugin = spec.slot_plugin
        return (spec.replication_slot_name, spec.replication_slot_plugin) != before


RESOURCE_KINDS = (EngineIdentity, Database, UserRole, Publication)


# ============================================================================
# PHYSICAL OBJECTS AND SECRETS
# ============================================================================

@dataclass
class PublicationInfo:
    """A publication as reported by pg_publication"""
    name: str
    owner: str
    all_tables: bool
    insert: bool = True
    update: bool = True
    delete: bool = True
    truncate: bool = True
    publish_via_partition_root: bool = False


@dataclass
class ReplicationSlotInfo:
    name: str
    database: str
    plugin: str


@dataclass
class Secret:
    """A Kubernetes secret with decoded string values"""
    name: str
    namespace: str
    data: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    owner_references: List[Dict[str, Any]] = field(default_factory=list)

    def owned_by(self, uid: str) -> bool:
        return any(ref.get("uid") == uid for ref in self.owner_references)


def owner_reference(resource: Resource, api_version: str) -> Dict[str, Any]:
    return {
        "apiVersion": api_version,
        "kind": resource.KIND,
        "name": resource.name,
        "uid": resource.metadata.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }
