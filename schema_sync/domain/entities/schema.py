import re
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import ClassVar, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

from schema_sync.domain.exceptions import ModelError


class DataType(Enum):
    """Normalized field types shared by desired and introspected schemas."""
    INTEGER = "integer"
    TEXT = "text"
    BOOLEAN = "boolean"
    TIMESTAMP = "timestamp"
    DATE = "date"
    FLOAT = "float"
    BINARY = "binary"
    DECIMAL = "decimal"
    JSON = "json"
    UUID = "uuid"
    CUSTOM = "custom"


_INTEGER_KEYS = {16: "smallint", 32: "integer", 64: "bigint"}
_KEY_PATTERN = re.compile(r"^\s*([a-z_]+)\s*(?:\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\))?\s*$")


@dataclass(frozen=True)
class FieldType:
    """A normalized type tag plus its parameters and an optional override."""
    data_type: DataType
    width: Optional[int] = None
    length: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    timezone: bool = False
    override: Optional[str] = None

    def __post_init__(self):
        if self.data_type is DataType.INTEGER and self.width not in (None, 16, 32, 64):
            raise ModelError(f"Unsupported integer width {self.width}")
        if self.data_type is DataType.FLOAT and self.width not in (None, 32, 64):
            raise ModelError(f"Unsupported float width {self.width}")
        if self.data_type is DataType.DECIMAL and self.scale is not None:
            if self.precision is None or self.scale > self.precision:
                raise ModelError(f"Decimal scale {self.scale} exceeds precision {self.precision}")
        if self.data_type is DataType.CUSTOM and not self.override:
            raise ModelError("Custom field types need an override naming the column type")

    def key(self) -> str:
        """Normalized lookup key, e.g. ``bigint``, ``text(320)``, ``decimal(10,2)``."""
        dt = self.data_type
        if dt is DataType.INTEGER:
            return _INTEGER_KEYS[self.width or 32]
        if dt is DataType.TEXT:
            return f"text({self.length})" if self.length else "text"
        if dt is DataType.DECIMAL:
            if self.precision is None:
                return "decimal"
            return f"decimal({self.precision},{self.scale or 0})"
        if dt is DataType.TIMESTAMP:
            return "timestamptz" if self.timezone else "timestamp"
        if dt is DataType.FLOAT:
            return "real" if self.width == 32 else "double"
        if dt is DataType.CUSTOM:
            return " ".join(self.override.lower().split())
        return dt.value

    @classmethod
    def from_key(cls, key: str, override: Optional[str] = None) -> "FieldType":
        """Inverse of :meth:`key`; also accepts a few common aliases."""
        match = _KEY_PATTERN.match(key.lower())
        if not match:
            raise ModelError(f"Unrecognized field type '{key}'")
        name, first, second = match.group(1), match.group(2), match.group(3)
        first = int(first) if first else None
        second = int(second) if second else None

        if name in ("smallint", "integer", "int", "bigint"):
            width = {"smallint": 16, "bigint": 64}.get(name, 32)
            return cls(DataType.INTEGER, width=width, override=override)
        if name in ("text", "string", "varchar"):
            return cls(DataType.TEXT, length=first, override=override)
        if name in ("decimal", "numeric"):
            return cls(DataType.DECIMAL, precision=first, scale=second if first else None, override=override)
        if name == "timestamptz":
            return cls(DataType.TIMESTAMP, timezone=True, override=override)
        if name in ("real", "double", "float"):
            return cls(DataType.FLOAT, width=32 if name == "real" else 64, override=override)
        if name in ("bool",):
            return cls(DataType.BOOLEAN, override=override)
        if name in ("bytes", "blob"):
            return cls(DataType.BINARY, override=override)
        try:
            data_type = DataType(name)
        except ValueError:
            raise ModelError(f"Unrecognized field type '{key}'")
        if data_type is DataType.CUSTOM:
            raise ModelError("Custom field types must be declared through an override")
        return cls(data_type, override=override)


@dataclass(frozen=True)
class ColumnSchema:
    """Represents a table column."""
    name: str
    field_type: FieldType
    nullable: bool = True
    default: Optional[str] = None
    comment: Optional[str] = None
    position: Optional[int] = None
    renamed_from: Optional[str] = field(default=None, compare=False)


@dataclass(frozen=True)
class IndexSchema:
    """Represents a (non-constraint) index."""
    name: str
    columns: Tuple[str, ...]
    unique: bool = False

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))
        if not self.columns:
            raise ModelError(f"Index '{self.name}' has no columns")

    def signature(self) -> tuple:
        return (self.name, self.columns, self.unique)


class ConstraintKind(Enum):
    PRIMARY_KEY = "primary_key"
    UNIQUE = "unique"
    FOREIGN_KEY = "foreign_key"
    CHECK = "check"


class ConstraintSchema:
    """Tagged constraint variant. Concrete kinds are the dataclasses below."""
    kind: ClassVar[ConstraintKind]

    def signature(self) -> tuple:
        raise NotImplementedError

    def with_name(self, name: Optional[str]) -> "ConstraintSchema":
        return replace(self, name=name)

    def renamed_columns(self, mapping: Mapping[str, str]) -> "ConstraintSchema":
        return replace(self, columns=tuple(mapping.get(c, c) for c in self.columns))


@dataclass(frozen=True)
class PrimaryKey(ConstraintSchema):
    kind: ClassVar[ConstraintKind] = ConstraintKind.PRIMARY_KEY
    columns: Tuple[str, ...]
    name: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))

    def signature(self) -> tuple:
        return (self.kind.value, self.columns)


@dataclass(frozen=True)
class UniqueConstraint(ConstraintSchema):
    kind: ClassVar[ConstraintKind] = ConstraintKind.UNIQUE
    columns: Tuple[str, ...]
    name: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))

    def signature(self) -> tuple:
        return (self.kind.value, self.columns)


@dataclass(frozen=True)
class ForeignKey(ConstraintSchema):
    kind: ClassVar[ConstraintKind] = ConstraintKind.FOREIGN_KEY
    columns: Tuple[str, ...]
    referenced_table: str
    referenced_columns: Tuple[str, ...]
    on_delete: str = "NO ACTION"
    name: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))
        object.__setattr__(self, "referenced_columns", tuple(self.referenced_columns))
        object.__setattr__(self, "on_delete", " ".join(self.on_delete.upper().split()))

    def signature(self) -> tuple:
        return (self.kind.value, self.columns, self.referenced_table, self.referenced_columns, self.on_delete)


@dataclass(frozen=True)
class CheckConstraint(ConstraintSchema):
    kind: ClassVar[ConstraintKind] = ConstraintKind.CHECK
    expression: str
    columns: Tuple[str, ...] = field(default=(), compare=False)
    name: Optional[str] = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "columns", tuple(self.columns))

    def normalized_expression(self) -> str:
        # Backends re-print checks with extra parentheses and casts.
        text = re.sub(r"::[a-z_ ]+", "", self.expression.lower())
        return re.sub(r"[\s()]", "", text)

    def signature(self) -> tuple:
        return (self.kind.value, self.normalized_expression())


def _as_column_mapping(columns) -> Dict[str, ColumnSchema]:
    if isinstance(columns, Mapping):
        return dict(columns)
    mapping: Dict[str, ColumnSchema] = {}
    for column in columns:
        if column.name in mapping:
            raise ModelError(f"Duplicate column '{column.name}'", column=column.name)
        mapping[column.name] = column
    return mapping


@dataclass(frozen=True)
class TableSchema:
    """Represents a database table."""
    name: str
    columns: Mapping[str, ColumnSchema] = field(default_factory=dict)
    indexes: Tuple[IndexSchema, ...] = ()
    constraints: Tuple[ConstraintSchema, ...] = ()
    comment: Optional[str] = None
    renamed_from: Optional[str] = field(default=None, compare=False)
    row_count: Optional[int] = field(default=None, compare=False)

    def __post_init__(self):
        mapping = _as_column_mapping(self.columns)
        object.__setattr__(self, "columns", MappingProxyType(mapping))
        object.__setattr__(self, "indexes", tuple(self.indexes))
        object.__setattr__(self, "constraints", tuple(self.constraints))

        index_names = [i.name for i in self.indexes]
        duplicates = sorted({n for n in index_names if index_names.count(n) > 1})
        if duplicates:
            raise ModelError(f"Duplicate index names in '{self.name}': {duplicates}", table=self.name)
        signatures = [c.signature() for c in self.constraints]
        if len(set(signatures)) != len(signatures):
            raise ModelError(f"Duplicate constraint definitions in '{self.name}'", table=self.name)
        if sum(1 for c in self.constraints if c.kind is ConstraintKind.PRIMARY_KEY) > 1:
            raise ModelError(f"Table '{self.name}' declares more than one primary key", table=self.name)

    def ordered_columns(self) -> List[ColumnSchema]:
        """Columns by position hint, unhinted ones after in declaration order."""
        indexed = list(enumerate(self.columns.values()))
        indexed.sort(key=lambda item: (item[1].position is None, item[1].position or 0, item[0]))
        return [column for _, column in indexed]

    def column(self, name: str) -> Optional[ColumnSchema]:
        return self.columns.get(name)

    def primary_key(self) -> Optional[PrimaryKey]:
        for constraint in self.constraints:
            if constraint.kind is ConstraintKind.PRIMARY_KEY:
                return constraint
        return None

    def foreign_keys(self) -> List[ForeignKey]:
        return [c for c in self.constraints if c.kind is ConstraintKind.FOREIGN_KEY]

    def index(self, name: str) -> Optional[IndexSchema]:
        for index in self.indexes:
            if index.name == name:
                return index
        return None


@dataclass(frozen=True)
class SchemaSnapshot:
    """Complete normalized schema; immutable once built."""
    tables: Mapping[str, TableSchema] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "tables", MappingProxyType(dict(self.tables)))

    @classmethod
    def from_tables(cls, tables: Iterable[TableSchema]) -> "SchemaSnapshot":
        mapping: Dict[str, TableSchema] = {}
        for table in tables:
            if table.name in mapping:
                raise ModelError(f"Duplicate table '{table.name}'", table=table.name)
            mapping[table.name] = table
        return cls(tables=mapping)

    def table_names(self) -> List[str]:
        return sorted(self.tables)

    def get(self, name: str) -> Optional[TableSchema]:
        return self.tables.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self.tables

    def __iter__(self) -> Iterator[TableSchema]:
        for name in self.table_names():
            yield self.tables[name]

    def __len__(self) -> int:
        return len(self.tables)


Constraint = Union[PrimaryKey, UniqueConstraint, ForeignKey, CheckConstraint]
