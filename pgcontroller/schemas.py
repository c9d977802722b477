"""Schema and extension synchronization inside one database."""

import logging
from typing import List

from .models import DatabaseRoles, ItemList
from .postgres import READER_PRIVILEGES, WRITER_PRIVILEGES

logger = logging.getLogger("postgres-controller.schemas")


class SchemaExtensionSync:
    """Diffs desired schemas and extensions against the tracked lists and applies the difference"""

    def __init__(self, engine, database: str, roles: DatabaseRoles):
        self.engine = engine
        self.database = database
        self.roles = roles

    def _untrack_removed(self, desired: ItemList, tracked: List[str], drop) -> List[str]:
        kept = []
        for item in tracked:
            if item in desired.items:
                kept.append(item)
            elif desired.drop_on_delete:
                drop(self.database, item, desired.delete_with_cascade)
            else:
                logger.info(f"{item} removed from {self.database} spec, leaving it in place")
        return kept

    def sync_extensions(self, desired: ItemList, tracked: List[str]) -> List[str]:
        """Returns the new tracked list"""
        tracked = self._untrack_removed(desired, tracked, self.engine.drop_extension)
        for extension in desired.items:
            if not self.engine.extension_exists(self.database, extension):
                self.engine.create_extension(self.database, extension)
            if extension not in tracked:
                tracked.append(extension)
        return tracked

    def sync_schemas(self, desired: ItemList, tracked: List[str]) -> List[str]:
        """Returns the new tracked list"""
        engine, database, owner = self.engine, self.database, self.roles.owner
        tracked = self._untrack_removed(desired, tracked, engine.drop_schema)

        for schema in desired.items:
            if not engine.schema_exists(database, schema):
                engine.create_schema(database, schema, owner)

            for role, privileges in ((self.roles.reader, READER_PRIVILEGES),
                                     (self.roles.writer, WRITER_PRIVILEGES)):
                if not engine.schema_privileges_granted(database, schema, owner, role, privileges):
                    engine.set_schema_privileges(database, owner, role, schema, privileges)

            # Objects created by other principals are pulled back under the owner role
            for table, table_owner in engine.get_tables_in_schema(database, schema):
                if table_owner != owner:
                    engine.change_table_owner(database, schema, table, owner)
            for type_name, type_owner in engine.get_types_in_schema(database, schema):
                if type_owner != owner:
                    engine.change_type_owner(database, schema, type_name, owner)

            if schema not in tracked:
                tracked.append(schema)
        return tracked
