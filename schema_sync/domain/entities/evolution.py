from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Optional, Tuple

from schema_sync.domain.entities.dialect import Dialect
from schema_sync.domain.entities.schema import (
    ColumnSchema, ConstraintSchema, FieldType, IndexSchema, TableSchema
)


class ChangeType(Enum):
    """Types of schema changes."""
    ADD_TABLE = "add_table"
    DROP_TABLE = "drop_table"
    RENAME_TABLE = "rename_table"
    ADD_COLUMN = "add_column"
    DROP_COLUMN = "drop_column"
    RENAME_COLUMN = "rename_column"
    ALTER_COLUMN_TYPE = "alter_column_type"
    ALTER_COLUMN_NULLABILITY = "alter_column_nullability"
    ADD_INDEX = "add_index"
    DROP_INDEX = "drop_index"
    ADD_CONSTRAINT = "add_constraint"
    DROP_CONSTRAINT = "drop_constraint"


DESTRUCTIVE_CHANGES = frozenset({
    ChangeType.DROP_TABLE,
    ChangeType.DROP_COLUMN,
    ChangeType.ALTER_COLUMN_TYPE,
})


class SchemaChange:
    """
    One atomic structural difference between desired and actual schema.

    The set of concrete changes is closed: every ChangeType has exactly one
    dataclass below. Changes against an existing table carry the table's
    ``source`` (actual) and ``target`` (desired) shapes so that a planner can
    fall back to rebuilding the table.
    """
    change_type: ClassVar[ChangeType]
    table: str

    @property
    def destructive(self) -> bool:
        return self.change_type in DESTRUCTIVE_CHANGES

    def describe(self) -> str:
        return f"{self.change_type.value} {self.table}"


@dataclass(frozen=True)
class AddTable(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.ADD_TABLE
    table: str
    schema: TableSchema = field(repr=False)


@dataclass(frozen=True)
class DropTable(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.DROP_TABLE
    table: str
    schema: TableSchema = field(repr=False)


@dataclass(frozen=True)
class RenameTable(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.RENAME_TABLE
    table: str
    new_name: str

    def describe(self) -> str:
        return f"rename_table {self.table} -> {self.new_name}"


@dataclass(frozen=True)
class AddColumn(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.ADD_COLUMN
    table: str
    column: ColumnSchema
    source: Optional[TableSchema] = field(default=None, repr=False, compare=False)
    target: Optional[TableSchema] = field(default=None, repr=False, compare=False)

    def describe(self) -> str:
        return f"add_column {self.table}.{self.column.name}"


@dataclass(frozen=True)
class DropColumn(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.DROP_COLUMN
    table: str
    column: ColumnSchema
    source: Optional[TableSchema] = field(default=None, repr=False, compare=False)
    target: Optional[TableSchema] = field(default=None, repr=False, compare=False)

    def describe(self) -> str:
        return f"drop_column {self.table}.{self.column.name}"


@dataclass(frozen=True)
class RenameColumn(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.RENAME_COLUMN
    table: str
    old_name: str
    new_name: str
    source: Optional[TableSchema] = field(default=None, repr=False, compare=False)
    target: Optional[TableSchema] = field(default=None, repr=False, compare=False)

    def describe(self) -> str:
        return f"rename_column {self.table}.{self.old_name} -> {self.new_name}"


@dataclass(frozen=True)
class AlterColumnType(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.ALTER_COLUMN_TYPE
    table: str
    column: ColumnSchema
    from_type: FieldType
    source: Optional[TableSchema] = field(default=None, repr=False, compare=False)
    target: Optional[TableSchema] = field(default=None, repr=False, compare=False)

    @property
    def to_type(self) -> FieldType:
        return self.column.field_type

    def describe(self) -> str:
        return f"alter_column_type {self.table}.{self.column.name} {self.from_type.key()} -> {self.to_type.key()}"


@dataclass(frozen=True)
class AlterColumnNullability(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.ALTER_COLUMN_NULLABILITY
    table: str
    column: ColumnSchema
    source: Optional[TableSchema] = field(default=None, repr=False, compare=False)
    target: Optional[TableSchema] = field(default=None, repr=False, compare=False)

    @property
    def nullable(self) -> bool:
        return self.column.nullable

    def describe(self) -> str:
        state = "NULL" if self.nullable else "NOT NULL"
        return f"alter_column_nullability {self.table}.{self.column.name} {state}"


@dataclass(frozen=True)
class AddIndex(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.ADD_INDEX
    table: str
    index: IndexSchema
    source: Optional[TableSchema] = field(default=None, repr=False, compare=False)
    target: Optional[TableSchema] = field(default=None, repr=False, compare=False)

    def describe(self) -> str:
        return f"add_index {self.table}.{self.index.name}"


@dataclass(frozen=True)
class DropIndex(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.DROP_INDEX
    table: str
    index: IndexSchema
    source: Optional[TableSchema] = field(default=None, repr=False, compare=False)
    target: Optional[TableSchema] = field(default=None, repr=False, compare=False)

    def describe(self) -> str:
        return f"drop_index {self.table}.{self.index.name}"


@dataclass(frozen=True)
class AddConstraint(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.ADD_CONSTRAINT
    table: str
    constraint: ConstraintSchema
    source: Optional[TableSchema] = field(default=None, repr=False, compare=False)
    target: Optional[TableSchema] = field(default=None, repr=False, compare=False)

    def describe(self) -> str:
        return f"add_constraint {self.table}.{self.constraint.name or self.constraint.kind.value}"


@dataclass(frozen=True)
class DropConstraint(SchemaChange):
    change_type: ClassVar[ChangeType] = ChangeType.DROP_CONSTRAINT
    table: str
    constraint: ConstraintSchema
    source: Optional[TableSchema] = field(default=None, repr=False, compare=False)
    target: Optional[TableSchema] = field(default=None, repr=False, compare=False)

    def describe(self) -> str:
        return f"drop_constraint {self.table}.{self.constraint.name or self.constraint.kind.value}"


@dataclass(frozen=True)
class PlannedStatement:
    """A single rendered DDL statement."""
    sql: str
    dialect: Dialect
    reversible: bool = True
    heavy: bool = False
    destructive: bool = False
    description: str = ""


@dataclass(frozen=True)
class MigrationPlan:
    """Ordered, dialect-rendered statement sequence."""
    dialect: Dialect
    statements: Tuple[PlannedStatement, ...] = ()
    warnings: Tuple[str, ...] = ()
    description: str = "Automatically generated migration plan"
    # ledger record reserved for this plan; retries resume that record
    record_id: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "statements", tuple(self.statements))
        object.__setattr__(self, "warnings", tuple(self.warnings))

    @property
    def irreversible(self) -> bool:
        return any(not s.reversible for s in self.statements)

    @property
    def heavy(self) -> bool:
        return any(s.heavy for s in self.statements)

    @property
    def destructive(self) -> bool:
        return any(s.destructive for s in self.statements)

    @property
    def is_empty(self) -> bool:
        return not self.statements

    def sql_statements(self) -> Tuple[str, ...]:
        return tuple(s.sql for s in self.statements)
