import hashlib
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from schema_sync.domain.entities.dialect import Dialect
from schema_sync.domain.entities.schema import ConstraintKind, FieldType
from schema_sync.domain.exceptions import ConfigurationError, ModelError

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_STYLES = ("snake_case", "camel_case", "pascal_case", "preserve")
_KIND_PREFIX = {
    ConstraintKind.PRIMARY_KEY: "pk",
    ConstraintKind.UNIQUE: "uq",
    ConstraintKind.FOREIGN_KEY: "fk",
    ConstraintKind.CHECK: "ck",
}


def _snake(name: str) -> str:
    # Convert PascalCase / camelCase to snake_case
    name = re.sub(r"([A-Z]+)([A-Z][a-z])", r"\1_\2", name)
    name = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", name)
    return re.sub(r"[\s\-]+", "_", name).lower()


def apply_style(name: str, style: str) -> str:
    if style == "snake_case":
        return _snake(name)
    parts = [p for p in _snake(name).split("_") if p]
    if style == "camel_case":
        return parts[0] + "".join(p.capitalize() for p in parts[1:]) if parts else name
    if style == "pascal_case":
        return "".join(p.capitalize() for p in parts)
    return name


def pluralize(word: str) -> str:
    """Simple English pluralization for table names."""
    if re.search(r"(s|x|z|ch|sh)$", word):
        return word + "es"
    if re.search(r"[^aeiou]y$", word):
        return word[:-1] + "ies"
    return word + "s"


def truncate_identifier(name: str, max_length: Optional[int]) -> str:
    """Shorten an identifier to the backend limit, keeping it unique via an md5 suffix."""
    if not max_length or len(name) <= max_length:
        return name
    digest = hashlib.md5(name.encode("utf-8")).hexdigest()[:8]
    return f"{name[:max_length - 9]}_{digest}"


@dataclass(frozen=True)
class NamingConvention:
    """Naming convention rules."""
    table_style: str = "snake_case"
    column_style: str = "snake_case"
    pluralize_tables: bool = True
    index_pattern: str = "idx_{table}_{columns}"
    constraint_pattern: str = "{kind}_{table}_{column}"

    def table_name(self, model_name: str) -> str:
        """Convert a model name to a table name (styled, optionally plural)."""
        name = apply_style(model_name, self.table_style)
        return pluralize(name) if self.pluralize_tables else name

    def column_name(self, field_name: str) -> str:
        return apply_style(field_name, self.column_style)

    def index_name(self, table: str, columns: Sequence[str], max_length: Optional[int] = None) -> str:
        name = self.index_pattern.format(table=table, columns="_".join(columns))
        return truncate_identifier(name, max_length)

    def constraint_name(
        self,
        kind: ConstraintKind,
        table: str,
        columns: Sequence[str],
        max_length: Optional[int] = None,
    ) -> str:
        name = self.constraint_pattern.format(
            kind=_KIND_PREFIX[kind], table=table, column="_".join(columns) or kind.value
        )
        return truncate_identifier(name, max_length)


@dataclass(frozen=True)
class DiffPolicy:
    """Gates on destructive changes."""
    allow_column_removal: bool = False
    allow_table_removal: bool = False
    strict_mode: bool = False
    detect_renames: bool = True


@dataclass(frozen=True)
class SyncConfig:
    """Every option the synchronization core consumes."""
    dialect: str = "sqlite"
    database_url: Optional[str] = None
    strict_mode: bool = False
    allow_column_removal: bool = False
    allow_table_removal: bool = False
    detect_renames: bool = True
    default_nullable: bool = False
    index_foreign_keys: bool = False
    add_created_at_column: bool = False
    add_updated_at_column: bool = False
    table_style: str = "snake_case"
    column_style: str = "snake_case"
    pluralize_tables: bool = True
    index_pattern: str = "idx_{table}_{columns}"
    constraint_pattern: str = "{kind}_{table}_{column}"
    type_overrides: Dict[str, str] = field(default_factory=dict, hash=False)
    transaction_per_migration: bool = True
    dry_run: bool = False
    backup_before_migrate: bool = False
    backup_directory: str = "./backups"
    history_table: str = "schema_sync_history"
    lock_timeout_seconds: int = 600
    log_level: str = "INFO"

    @property
    def target_dialect(self) -> Dialect:
        return Dialect.parse(self.dialect)

    @property
    def policy(self) -> DiffPolicy:
        return DiffPolicy(
            allow_column_removal=self.allow_column_removal,
            allow_table_removal=self.allow_table_removal,
            strict_mode=self.strict_mode,
            detect_renames=self.detect_renames,
        )

    @property
    def model_options(self) -> Dict[str, bool]:
        """Keyword options for the models provider."""
        return {
            "default_nullable": self.default_nullable,
            "index_foreign_keys": self.index_foreign_keys,
            "add_created_at_column": self.add_created_at_column,
            "add_updated_at_column": self.add_updated_at_column,
        }

    @property
    def naming(self) -> NamingConvention:
        return NamingConvention(
            table_style=self.table_style,
            column_style=self.column_style,
            pluralize_tables=self.pluralize_tables,
            index_pattern=self.index_pattern,
            constraint_pattern=self.constraint_pattern,
        )

    def validate(self) -> "SyncConfig":
        """Raise ConfigurationError listing every invalid option."""
        problems: List[str] = []

        try:
            Dialect.parse(self.dialect)
        except ValueError:
            problems.append(f"unknown dialect '{self.dialect}'")

        for option, style in (("table_style", self.table_style), ("column_style", self.column_style)):
            if style not in _STYLES:
                problems.append(f"{option} must be one of {list(_STYLES)}, got '{style}'")

        problems.extend(self._check_pattern("index_pattern", self.index_pattern, {"table", "columns"}, {"table"}))
        problems.extend(self._check_pattern(
            "constraint_pattern", self.constraint_pattern, {"table", "column", "kind"}, {"table", "kind"}
        ))

        if not _IDENTIFIER.match(self.history_table or ""):
            problems.append(f"history_table '{self.history_table}' is not a valid identifier")
        if self.lock_timeout_seconds <= 0:
            problems.append("lock_timeout_seconds must be positive")
        if self.dry_run and self.backup_before_migrate:
            problems.append("backup_before_migrate has no effect with dry_run; disable one of them")
        if str(self.log_level).upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            problems.append(f"unknown log_level '{self.log_level}'")

        for key, value in self.type_overrides.items():
            problems.extend(self._check_override(key, value))

        if problems:
            raise ConfigurationError("Invalid configuration: " + "; ".join(problems))
        return self

    @staticmethod
    def _check_pattern(option: str, pattern: str, allowed: set, required: set) -> List[str]:
        found = set(re.findall(r"{(\w*)}", pattern))
        problems = []
        unknown = found - allowed
        if unknown:
            problems.append(f"{option} uses unknown placeholders {sorted(unknown)}")
        missing = required - found
        if missing:
            problems.append(f"{option} must contain {sorted('{' + m + '}' for m in missing)}")
        return problems

    @staticmethod
    def _check_override(key: str, value: str) -> List[str]:
        problems = []
        type_key = key
        if ":" in key:
            dialect, type_key = key.split(":", 1)
            try:
                Dialect.parse(dialect)
            except ValueError:
                problems.append(f"type override '{key}' names unknown dialect '{dialect}'")
        try:
            FieldType.from_key(type_key)
        except ModelError:
            problems.append(f"type override '{key}' does not name a known field type")
        if not str(value).strip():
            problems.append(f"type override '{key}' maps to an empty column type")
        return problems
