import logging
import re
from typing import Dict, List, Mapping, Optional, Pattern, Tuple

from schema_sync.domain.entities.dialect import Dialect
from schema_sync.domain.entities.schema import DataType, FieldType
from schema_sync.domain.exceptions import UnmappedType

logger = logging.getLogger(__name__)

# Per-dialect column types. "text(n)" and "decimal(p,s)" are the parametric
# families; every other key is a FieldType.key().
DEFAULT_TYPE_MAP: Dict[Dialect, Dict[str, str]] = {
    Dialect.POSTGRES: {
        "smallint": "SMALLINT",
        "integer": "INTEGER",
        "bigint": "BIGINT",
        "text": "TEXT",
        "text(n)": "VARCHAR({length})",
        "boolean": "BOOLEAN",
        "timestamp": "TIMESTAMP",
        "timestamptz": "TIMESTAMPTZ",
        "date": "DATE",
        "real": "REAL",
        "double": "DOUBLE PRECISION",
        "binary": "BYTEA",
        "decimal": "NUMERIC",
        "decimal(p,s)": "NUMERIC({precision},{scale})",
        "json": "JSONB",
        "uuid": "UUID",
    },
    Dialect.MYSQL: {
        "smallint": "SMALLINT",
        "integer": "INT",
        "bigint": "BIGINT",
        "text": "TEXT",
        "text(n)": "VARCHAR({length})",
        "boolean": "TINYINT(1)",
        "timestamp": "DATETIME",
        "timestamptz": "TIMESTAMP",
        "date": "DATE",
        "real": "FLOAT",
        "double": "DOUBLE",
        "binary": "BLOB",
        "decimal": "DECIMAL",
        "decimal(p,s)": "DECIMAL({precision},{scale})",
        "json": "JSON",
        "uuid": "CHAR(36)",
    },
    Dialect.SQLITE: {
        "smallint": "SMALLINT",
        "integer": "INTEGER",
        "bigint": "BIGINT",
        "text": "TEXT",
        "text(n)": "VARCHAR({length})",
        "boolean": "BOOLEAN",
        "timestamp": "TIMESTAMP",
        "timestamptz": "TIMESTAMPTZ",
        "date": "DATE",
        "real": "REAL",
        "double": "DOUBLE",
        "binary": "BLOB",
        "decimal": "NUMERIC",
        "decimal(p,s)": "NUMERIC({precision},{scale})",
        "json": "JSON",
        "uuid": "UUID",
    },
}

# Spellings the backends report that differ from what we render.
_ALIASES: Dict[Dialect, List[Tuple[str, str]]] = {
    Dialect.POSTGRES: [
        (r"^character varying", "varchar"),
        (r"^character\(", "char("),
        (r"^timestamp(\(\d+\))? without time zone$", "timestamp"),
        (r"^timestamp(\(\d+\))? with time zone$", "timestamptz"),
        (r"^int4$|^int$|^serial$", "integer"),
        (r"^int8$|^bigserial$", "bigint"),
        (r"^int2$|^smallserial$", "smallint"),
        (r"^bool$", "boolean"),
        (r"^float8$", "double precision"),
        (r"^float4$", "real"),
        (r"^decimal", "numeric"),
    ],
    Dialect.MYSQL: [
        (r"^int\(\d+\)$|^integer$", "int"),
        (r"^bigint\(\d+\)$", "bigint"),
        (r"^smallint\(\d+\)$", "smallint"),
        (r"^bool(ean)?$", "tinyint(1)"),
        (r"^numeric", "decimal"),
    ],
    Dialect.SQLITE: [
        (r"^int$", "integer"),
        (r"^bool$", "boolean"),
        (r"^decimal", "numeric"),
    ],
}

_INTEGER_DIGITS = {16: 5, 32: 10, 64: 19}


class TypeMapper:
    """
    Maps normalized field types to backend column types and back.
    Single Responsibility: type translation only.
    """

    def __init__(self, type_map: Optional[Mapping[Dialect, Mapping[str, str]]] = None):
        self._type_map = type_map if type_map is not None else DEFAULT_TYPE_MAP
        self._reverse: Dict[Dialect, List[Tuple[Pattern, str]]] = {}

    def map(self, field_type: FieldType, dialect, overrides: Optional[Mapping[str, str]] = None) -> str:
        """
        Resolve the column type for ``field_type`` on ``dialect``.

        Precedence: the field's own override, then ``overrides`` keyed by
        ``"<dialect>:<key>"`` or ``"<key>"``, then the built-in table.
        """
        dialect = Dialect.parse(dialect)
        if field_type.override:
            return field_type.override

        key = field_type.key()
        overrides = overrides or {}
        for candidate in (f"{dialect.value}:{key}", key):
            if candidate in overrides:
                return overrides[candidate]

        table = self._type_map.get(dialect, {})
        family = self._family(field_type)
        template = table.get(family)
        if template is None:
            raise UnmappedType(key, dialect.value)
        return template.format(
            length=field_type.length,
            precision=field_type.precision,
            scale=field_type.scale or 0,
        )

    def normalize(self, db_type: str, dialect) -> str:
        """Canonical spelling used to compare column types."""
        dialect = Dialect.parse(dialect)
        text = " ".join(db_type.strip().lower().split())
        text = re.sub(r"\s*([(),])\s*", r"\1", text)
        for pattern, replacement in _ALIASES.get(dialect, []):
            text = re.sub(pattern, replacement, text)
        return text

    def same_type(self, desired: FieldType, actual: FieldType, dialect,
                  overrides: Optional[Mapping[str, str]] = None) -> bool:
        """Whether two field types render to the same column type."""
        return (
            self.normalize(self.map(desired, dialect, overrides), dialect)
            == self.normalize(self.map(actual, dialect), dialect)
        )

    def parse(self, db_type: str, dialect) -> FieldType:
        """Reverse mapping used by introspection. Unknown types become CUSTOM."""
        dialect = Dialect.parse(dialect)
        normalized = self.normalize(db_type, dialect)
        for pattern, family in self._reverse_table(dialect):
            match = pattern.match(normalized)
            if not match:
                continue
            params = {k: int(v) for k, v in match.groupdict().items()}
            if family == "text(n)":
                return FieldType(DataType.TEXT, length=params["length"])
            if family == "decimal(p,s)":
                return FieldType(DataType.DECIMAL, precision=params["precision"], scale=params["scale"])
            return FieldType.from_key(family)
        logger.debug(f"[TypeMapper] Unrecognized {dialect.value} type '{db_type}', keeping as custom")
        return FieldType(DataType.CUSTOM, override=db_type.strip())

    def is_widening(self, from_type: FieldType, to_type: FieldType) -> bool:
        """True when every value of ``from_type`` survives conversion to ``to_type``."""
        if from_type.key() == to_type.key():
            return True
        src, dst = from_type.data_type, to_type.data_type

        if dst is DataType.TEXT:
            if src is DataType.TEXT:
                return to_type.length is None or (from_type.length is not None and to_type.length >= from_type.length)
            return to_type.length is None and src is not DataType.BINARY
        if src is DataType.INTEGER and dst is DataType.INTEGER:
            return (to_type.width or 32) >= (from_type.width or 32)
        if src is DataType.FLOAT and dst is DataType.FLOAT:
            return (to_type.width or 64) >= (from_type.width or 64)
        if dst is DataType.DECIMAL:
            if to_type.precision is None:
                return src in (DataType.INTEGER, DataType.DECIMAL)
            dst_digits = to_type.precision - (to_type.scale or 0)
            if src is DataType.INTEGER:
                return dst_digits >= _INTEGER_DIGITS[from_type.width or 32]
            if src is DataType.DECIMAL and from_type.precision is not None:
                src_digits = from_type.precision - (from_type.scale or 0)
                return dst_digits >= src_digits and (to_type.scale or 0) >= (from_type.scale or 0)
            return False
        if src is DataType.DATE and dst is DataType.TIMESTAMP:
            return True
        if src is DataType.TIMESTAMP and dst is DataType.TIMESTAMP:
            return to_type.timezone
        return False

    @staticmethod
    def _family(field_type: FieldType) -> str:
        if field_type.data_type is DataType.TEXT and field_type.length:
            return "text(n)"
        if field_type.data_type is DataType.DECIMAL and field_type.precision is not None:
            return "decimal(p,s)"
        return field_type.key()

    def _reverse_table(self, dialect: Dialect) -> List[Tuple[Pattern, str]]:
        if dialect not in self._reverse:
            entries = []
            for family, template in self._type_map.get(dialect, {}).items():
                entries.append((self._template_pattern(template, dialect), family))
            # Parametric families last so exact spellings win.
            entries.sort(key=lambda e: e[1] in ("text(n)", "decimal(p,s)"))
            self._reverse[dialect] = entries
        return self._reverse[dialect]

    def _template_pattern(self, template: str, dialect: Dialect) -> Pattern:
        parts = re.split(r"({\w+})", template)
        regex = ""
        for part in parts:
            placeholder = re.fullmatch(r"{(\w+)}", part)
            if placeholder:
                regex += rf"(?P<{placeholder.group(1)}>\d+)"
            else:
                regex += re.escape(self.normalize(part, dialect) if part.strip() else part)
        return re.compile(f"^{regex}$")
