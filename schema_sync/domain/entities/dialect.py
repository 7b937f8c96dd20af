from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class Dialect(str, Enum):
    """Supported database backends."""
    POSTGRES = "postgres"
    MYSQL = "mysql"
    SQLITE = "sqlite"

    @classmethod
    def parse(cls, value) -> "Dialect":
        if isinstance(value, Dialect):
            return value
        aliases = {"postgresql": "postgres", "pg": "postgres", "sqlite3": "sqlite", "mariadb": "mysql"}
        normalized = str(value).strip().lower()
        return cls(aliases.get(normalized, normalized))


@dataclass(frozen=True)
class DialectCapabilities:
    """Static DDL facts about one backend."""
    dialect: Dialect
    identifier_quote: str
    transactional_ddl: bool
    alter_column_type: bool
    alter_column_nullability: bool
    add_constraint: bool
    drop_constraint: bool
    add_column: bool = True
    drop_column: bool = True
    rename_column: bool = True
    rename_table: bool = True
    # ADD COLUMN accepts NOT NULL without a default (on an empty table)
    add_required_column: bool = True
    # CREATE TABLE may reference a table that does not exist yet
    forward_references: bool = False
    # DROP INDEX needs the owning table (DROP INDEX x ON t)
    drop_index_on_table: bool = False
    max_identifier_length: Optional[int] = None

    def quote(self, identifier: str) -> str:
        q = self.identifier_quote
        return f"{q}{identifier.replace(q, q + q)}{q}"

    def supports(self, operation: str) -> bool:
        """Whether a direct ALTER form named by ``operation`` is expressible."""
        return bool(getattr(self, operation))


CAPABILITIES: Dict[Dialect, DialectCapabilities] = {
    Dialect.POSTGRES: DialectCapabilities(
        dialect=Dialect.POSTGRES,
        identifier_quote='"',
        transactional_ddl=True,
        alter_column_type=True,
        alter_column_nullability=True,
        add_constraint=True,
        drop_constraint=True,
        max_identifier_length=63,
    ),
    Dialect.MYSQL: DialectCapabilities(
        dialect=Dialect.MYSQL,
        identifier_quote="`",
        transactional_ddl=False,
        alter_column_type=True,
        alter_column_nullability=True,
        add_constraint=True,
        drop_constraint=True,
        drop_index_on_table=True,
        max_identifier_length=64,
    ),
    Dialect.SQLITE: DialectCapabilities(
        dialect=Dialect.SQLITE,
        identifier_quote='"',
        transactional_ddl=True,
        alter_column_type=False,
        alter_column_nullability=False,
        add_constraint=False,
        drop_constraint=False,
        add_required_column=False,
        forward_references=True,
    ),
}


def capabilities_for(dialect) -> DialectCapabilities:
    return CAPABILITIES[Dialect.parse(dialect)]
