"""
CREATE / ALTER PUBLICATION statement composition.

Builders keep the structured attributes they were given so callers (and the
in-memory engine used in tests) can inspect what a statement will do without
rendering it against a live connection.
"""

from typing import List, Optional

from psycopg2 import sql

from .models import (
    AllTables,
    PublicationInfo,
    PublicationTable,
    PublicationWithParameters,
    TableList,
    TableSelection,
    TablesInSchema,
)

DEFAULT_PUBLISH = "insert, update, delete, truncate"
PUBLISH_OPERATIONS = ("insert", "update", "delete", "truncate")


def _table_identifier(name: str) -> sql.Identifier:
    schema, dot, table = name.partition(".")
    if dot:
        return sql.Identifier(schema, table)
    return sql.Identifier(name)


def _table_clause(table: PublicationTable) -> sql.Composed:
    parts = [_table_identifier(table.table_name)]
    if table.columns:
        parts.append(sql.SQL(" ({})").format(sql.SQL(", ").join(sql.Identifier(c) for c in table.columns)))
    if table.additional_where:
        # Row filters are expressions written by the resource author
        parts.append(sql.SQL(" WHERE ({})").format(sql.SQL(table.additional_where)))
    return sql.Composed(parts)


def _selection_clause(selection: TableSelection) -> sql.Composable:
    if isinstance(selection, AllTables):
        return sql.SQL("ALL TABLES")
    if isinstance(selection, TablesInSchema):
        return sql.SQL("TABLES IN SCHEMA {}").format(
            sql.SQL(", ").join(sql.Identifier(s) for s in selection.schemas)
        )
    if isinstance(selection, TableList):
        return sql.SQL("TABLE {}").format(sql.SQL(", ").join(_table_clause(t) for t in selection.tables))
    raise TypeError(f"unknown table selection {selection!r}")


def _bool(value: bool) -> sql.SQL:
    return sql.SQL("true" if value else "false")


class PublicationCreateBuilder:
    """Builds CREATE PUBLICATION name FOR ... [WITH (...)]"""

    def __init__(self, name: str, selection: TableSelection,
                 with_parameters: Optional[PublicationWithParameters] = None):
        self.name = name
        self.selection = selection
        self.with_parameters = with_parameters or PublicationWithParameters()

    def build(self) -> sql.Composed:
        statement = sql.SQL("CREATE PUBLICATION {} FOR {}").format(
            sql.Identifier(self.name), _selection_clause(self.selection)
        )
        options = []
        if self.with_parameters.publish:
            options.append(sql.SQL("publish = {}").format(sql.Literal(self.with_parameters.publish)))
        if self.with_parameters.publish_via_partition_root is not None:
            options.append(sql.SQL("publish_via_partition_root = {}").format(
                _bool(self.with_parameters.publish_via_partition_root)
            ))
        if options:
            statement = statement + sql.SQL(" WITH ({})").format(sql.SQL(", ").join(options))
        return statement


class PublicationUpdateBuilder:
    """
    Builds the ALTER PUBLICATION statements bringing an existing publication in
    line with a spec: parameters first, then the table set, then the rename.
    Unset parameters fall back to the PostgreSQL defaults. When the current
    publication is known, parameters are only set if they differ from it.
    """

    def __init__(self, name: str, selection: TableSelection,
                 with_parameters: Optional[PublicationWithParameters] = None,
                 new_name: Optional[str] = None,
                 current: Optional[PublicationInfo] = None):
        self.name = name
        self.selection = selection
        self.with_parameters = with_parameters or PublicationWithParameters()
        self.new_name = new_name if new_name and new_name != name else None
        self.current = current

    @property
    def publish(self) -> str:
        return self.with_parameters.publish or DEFAULT_PUBLISH

    @property
    def publish_via_partition_root(self) -> bool:
        return bool(self.with_parameters.publish_via_partition_root)

    def parameters_changed(self) -> bool:
        if self.current is None:
            return True
        wanted = {op.strip().lower() for op in self.publish.split(",") if op.strip()}
        published = {op for op in PUBLISH_OPERATIONS if getattr(self.current, op)}
        return (wanted != published
                or self.publish_via_partition_root != self.current.publish_via_partition_root)

    def build(self) -> List[sql.Composed]:
        name = sql.Identifier(self.name)
        statements = []
        if self.parameters_changed():
            statements.append(
                sql.SQL("ALTER PUBLICATION {} SET (publish = {}, publish_via_partition_root = {})").format(
                    name, sql.Literal(self.publish), _bool(self.publish_via_partition_root)
                )
            )
        if not self.selection.all_tables:
            statements.append(sql.SQL("ALTER PUBLICATION {} SET {}").format(
                name, _selection_clause(self.selection)
            ))
        if self.new_name:
            statements.append(sql.SQL("ALTER PUBLICATION {} RENAME TO {}").format(
                name, sql.Identifier(self.new_name)
            ))
        return statements
