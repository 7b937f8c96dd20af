from typing import Callable, Dict, List, Mapping, Optional, Sequence
import logging

from schema_sync.domain.entities.dialect import Dialect, capabilities_for
from schema_sync.domain.entities.evolution import ChangeType, PlannedStatement, SchemaChange
from schema_sync.domain.entities.schema import (
    ColumnSchema, ConstraintKind, ConstraintSchema, IndexSchema, TableSchema
)
from schema_sync.domain.entities.rules import truncate_identifier
from schema_sync.domain.exceptions import UnsupportedOperation
from schema_sync.domain.services.type_mapper import TypeMapper

logger = logging.getLogger(__name__)

# Capability flag that must be set for a change to be rendered as a direct ALTER.
_REQUIRED_CAPABILITY = {
    ChangeType.ADD_COLUMN: "add_column",
    ChangeType.DROP_COLUMN: "drop_column",
    ChangeType.RENAME_COLUMN: "rename_column",
    ChangeType.RENAME_TABLE: "rename_table",
    ChangeType.ALTER_COLUMN_TYPE: "alter_column_type",
    ChangeType.ALTER_COLUMN_NULLABILITY: "alter_column_nullability",
    ChangeType.ADD_CONSTRAINT: "add_constraint",
    ChangeType.DROP_CONSTRAINT: "drop_constraint",
}


class MigrationBuilder:
    """
    Generates dialect-specific SQL DDL from schema changes.
    Single Responsibility: SQL generation only.
    """

    def __init__(self, type_mapper: TypeMapper, dialect="postgres", type_overrides: Optional[Mapping[str, str]] = None):
        self._types = type_mapper
        self._dialect = Dialect.parse(dialect)
        self._caps = capabilities_for(self._dialect)
        self._overrides = dict(type_overrides or {})
        self._generators: Dict[ChangeType, Callable[[SchemaChange], List[PlannedStatement]]] = {
            ChangeType.ADD_TABLE: self._gen_create_table,
            ChangeType.DROP_TABLE: self._gen_drop_table,
            ChangeType.RENAME_TABLE: self._gen_rename_table,
            ChangeType.ADD_COLUMN: self._gen_add_column,
            ChangeType.DROP_COLUMN: self._gen_drop_column,
            ChangeType.RENAME_COLUMN: self._gen_rename_column,
            ChangeType.ALTER_COLUMN_TYPE: self._gen_alter_type,
            ChangeType.ALTER_COLUMN_NULLABILITY: self._gen_alter_nullability,
            ChangeType.ADD_INDEX: self._gen_add_index,
            ChangeType.DROP_INDEX: self._gen_drop_index,
            ChangeType.ADD_CONSTRAINT: self._gen_add_constraint,
            ChangeType.DROP_CONSTRAINT: self._gen_drop_constraint,
        }

    @property
    def dialect(self) -> Dialect:
        return self._dialect

    def supports_directly(self, change: SchemaChange) -> bool:
        """Whether the dialect can express ``change`` without a table rebuild."""
        capability = _REQUIRED_CAPABILITY.get(change.change_type)
        if capability is not None and not self._caps.supports(capability):
            return False
        if change.change_type is ChangeType.ADD_COLUMN and not change.column.nullable \
                and change.column.default is None:
            return self._caps.add_required_column
        return True

    def render(self, change: SchemaChange) -> List[PlannedStatement]:
        """Render one change as one or more statements."""
        if not self.supports_directly(change):
            raise UnsupportedOperation(
                f"{self._dialect.value} cannot express {change.describe()} directly",
                table=change.table,
            )
        statements = self._generators[change.change_type](change)
        for statement in statements:
            logger.debug(f"[MigrationBuilder] Generated SQL: {statement.sql}")
        return statements

    # ------------------------------ fragments ------------------------------

    def quote(self, identifier: str) -> str:
        return self._caps.quote(identifier)

    def column_type(self, column: ColumnSchema) -> str:
        return self._types.map(column.field_type, self._dialect, self._overrides)

    def column_definition(self, column: ColumnSchema) -> str:
        parts = [self.quote(column.name), self.column_type(column)]
        if not column.nullable:
            parts.append("NOT NULL")
        if column.default is not None:
            parts.append(f"DEFAULT {column.default}")
        return " ".join(parts)

    def constraint_body(self, table: str, constraint: ConstraintSchema) -> str:
        columns = self._column_list(getattr(constraint, "columns", ()))
        kind = constraint.kind
        if kind is ConstraintKind.PRIMARY_KEY:
            body = f"PRIMARY KEY ({columns})"
        elif kind is ConstraintKind.UNIQUE:
            body = f"UNIQUE ({columns})"
        elif kind is ConstraintKind.FOREIGN_KEY:
            body = (
                f"FOREIGN KEY ({columns}) REFERENCES {self.quote(constraint.referenced_table)} "
                f"({self._column_list(constraint.referenced_columns)})"
            )
            if constraint.on_delete != "NO ACTION":
                body += f" ON DELETE {constraint.on_delete}"
        else:
            body = f"CHECK ({constraint.expression})"
        if constraint.name:
            return f"CONSTRAINT {self.quote(constraint.name)} {body}"
        return body

    def create_table_sql(
        self,
        table: TableSchema,
        name: Optional[str] = None,
        skip_constraints: Sequence[ConstraintSchema] = (),
    ) -> str:
        lines = [self.column_definition(c) for c in table.ordered_columns()]
        lines.extend(
            self.constraint_body(table.name, c) for c in table.constraints if c not in skip_constraints
        )
        body = ",\n    ".join(lines)
        return f"CREATE TABLE {self.quote(name or table.name)} (\n    {body}\n)"

    def create_index_sql(self, table: str, index: IndexSchema) -> str:
        unique = "UNIQUE " if index.unique else ""
        return f"CREATE {unique}INDEX {self.quote(index.name)} ON {self.quote(table)} ({self._column_list(index.columns)})"

    def rename_table_sql(self, old: str, new: str) -> str:
        if self._dialect is Dialect.MYSQL:
            return f"RENAME TABLE {self.quote(old)} TO {self.quote(new)}"
        return f"ALTER TABLE {self.quote(old)} RENAME TO {self.quote(new)}"

    def _column_list(self, columns: Sequence[str]) -> str:
        return ", ".join(self.quote(c) for c in columns)

    def _statement(self, sql: str, change: SchemaChange, **flags) -> PlannedStatement:
        flags.setdefault("destructive", change.destructive)
        flags.setdefault("reversible", not change.destructive)
        return PlannedStatement(sql=sql, dialect=self._dialect, description=change.describe(), **flags)

    # ------------------------------ generators ------------------------------

    def _gen_create_table(self, change, skip_constraints: Sequence[ConstraintSchema] = ()) -> List[PlannedStatement]:
        sql = self.create_table_sql(change.schema, skip_constraints=skip_constraints)
        return [self._statement(sql, change)]

    def create_table_without(self, change, deferred: Sequence[ConstraintSchema]) -> List[PlannedStatement]:
        """CREATE TABLE leaving out ``deferred`` constraints (added later)."""
        return self._gen_create_table(change, skip_constraints=deferred)

    def _gen_drop_table(self, change) -> List[PlannedStatement]:
        return [self._statement(f"DROP TABLE {self.quote(change.table)}", change)]

    def _gen_rename_table(self, change) -> List[PlannedStatement]:
        return [self._statement(self.rename_table_sql(change.table, change.new_name), change)]

    def _gen_add_column(self, change) -> List[PlannedStatement]:
        sql = f"ALTER TABLE {self.quote(change.table)} ADD COLUMN {self.column_definition(change.column)}"
        return [self._statement(sql, change)]

    def _gen_drop_column(self, change) -> List[PlannedStatement]:
        sql = f"ALTER TABLE {self.quote(change.table)} DROP COLUMN {self.quote(change.column.name)}"
        return [self._statement(sql, change)]

    def _gen_rename_column(self, change) -> List[PlannedStatement]:
        sql = (
            f"ALTER TABLE {self.quote(change.table)} RENAME COLUMN "
            f"{self.quote(change.old_name)} TO {self.quote(change.new_name)}"
        )
        return [self._statement(sql, change)]

    def _gen_alter_type(self, change) -> List[PlannedStatement]:
        table, column = self.quote(change.table), change.column
        if self._dialect is Dialect.MYSQL:
            sql = f"ALTER TABLE {table} MODIFY COLUMN {self.column_definition(column)}"
        else:
            new_type = self.column_type(column)
            name = self.quote(column.name)
            sql = f"ALTER TABLE {table} ALTER COLUMN {name} TYPE {new_type} USING {name}::{new_type}"
        return [self._statement(sql, change, heavy=True)]

    def _gen_alter_nullability(self, change) -> List[PlannedStatement]:
        table, column = self.quote(change.table), change.column
        name = self.quote(column.name)
        statements = []
        if not column.nullable and column.default is not None:
            backfill = f"UPDATE {table} SET {name} = {column.default} WHERE {name} IS NULL"
            statements.append(self._statement(backfill, change))
        if self._dialect is Dialect.MYSQL:
            sql = f"ALTER TABLE {table} MODIFY COLUMN {self.column_definition(column)}"
        else:
            action = "DROP NOT NULL" if column.nullable else "SET NOT NULL"
            sql = f"ALTER TABLE {table} ALTER COLUMN {name} {action}"
        statements.append(self._statement(sql, change))
        return statements

    def _gen_add_index(self, change) -> List[PlannedStatement]:
        return [self._statement(self.create_index_sql(change.table, change.index), change)]

    def _gen_drop_index(self, change) -> List[PlannedStatement]:
        sql = f"DROP INDEX {self.quote(change.index.name)}"
        if self._caps.drop_index_on_table:
            sql += f" ON {self.quote(change.table)}"
        return [self._statement(sql, change)]

    def _gen_add_constraint(self, change) -> List[PlannedStatement]:
        body = self.constraint_body(change.table, change.constraint)
        return [self._statement(f"ALTER TABLE {self.quote(change.table)} ADD {body}", change)]

    def _gen_drop_constraint(self, change) -> List[PlannedStatement]:
        constraint, table = change.constraint, self.quote(change.table)
        if self._dialect is Dialect.MYSQL:
            if constraint.kind is ConstraintKind.PRIMARY_KEY:
                return [self._statement(f"ALTER TABLE {table} DROP PRIMARY KEY", change)]
            clause = {
                ConstraintKind.FOREIGN_KEY: "DROP FOREIGN KEY",
                ConstraintKind.UNIQUE: "DROP INDEX",
                ConstraintKind.CHECK: "DROP CHECK",
            }[constraint.kind]
        else:
            clause = "DROP CONSTRAINT"
        if not constraint.name:
            raise UnsupportedOperation(
                f"Cannot drop unnamed {constraint.kind.value} constraint on '{change.table}'",
                table=change.table,
            )
        return [self._statement(f"ALTER TABLE {table} {clause} {self.quote(constraint.name)}", change)]

    # ------------------------------ rebuild ------------------------------

    def shadow_name(self, table: str) -> str:
        return truncate_identifier(f"{table}__shadow", self._caps.max_identifier_length)

    def rebuild_table(
        self,
        source: TableSchema,
        target: TableSchema,
        renames: Mapping[str, str],
        description: str,
    ) -> List[PlannedStatement]:
        """
        Recreate ``source`` in the shape of ``target`` through a shadow table.

        ``renames`` maps old column names to new ones. Changed types are
        cast during the copy and tightened columns are coalesced with their
        default.
        """
        shadow = self.shadow_name(target.name)
        reverse = {new: old for old, new in renames.items()}

        dropped = [c for c in source.columns if c not in renames and c not in target.columns]
        targets, selects, retyped = [], [], False
        for column in target.ordered_columns():
            origin = source.column(reverse.get(column.name, column.name))
            if origin is None:
                continue
            expr = self.quote(origin.name)
            if not self._types.same_type(column.field_type, origin.field_type, self._dialect, self._overrides):
                expr = f"CAST({expr} AS {self.column_type(column)})"
                retyped = True
            if origin.nullable and not column.nullable and column.default is not None:
                expr = f"COALESCE({expr}, {column.default})"
            targets.append(self.quote(column.name))
            selects.append(expr)

        lossy = bool(dropped) or retyped
        flags = dict(dialect=self._dialect, heavy=True, reversible=not lossy, description=description)

        statements = [
            PlannedStatement(sql=self.create_table_sql(target, name=shadow), **flags, destructive=False),
        ]
        if targets:
            statements.append(PlannedStatement(
                sql=(
                    f"INSERT INTO {self.quote(shadow)} ({', '.join(targets)}) "
                    f"SELECT {', '.join(selects)} FROM {self.quote(source.name)}"
                ),
                destructive=False,
                **flags,
            ))
        statements.append(PlannedStatement(sql=f"DROP TABLE {self.quote(source.name)}", destructive=lossy, **flags))
        statements.append(PlannedStatement(sql=self.rename_table_sql(shadow, target.name), destructive=False, **flags))
        for index in sorted(target.indexes, key=lambda i: i.name):
            statements.append(PlannedStatement(
                sql=self.create_index_sql(target.name, index), destructive=False, **flags
            ))
        logger.debug(f"[MigrationBuilder] Rebuild of {target.name}: {len(statements)} statements")
        return statements
