"""Database introspection services."""
import logging
import re
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from schema_sync.domain.entities.dialect import Dialect
from schema_sync.domain.entities.schema import (
    CheckConstraint, ColumnSchema, ForeignKey, IndexSchema, PrimaryKey, SchemaSnapshot,
    TableSchema, UniqueConstraint,
)
from schema_sync.domain.repositories.interfaces import IDatabaseDriver
from schema_sync.domain.services.type_mapper import TypeMapper

logger = logging.getLogger(__name__)

_ON_DELETE = {"a": "NO ACTION", "r": "RESTRICT", "c": "CASCADE", "n": "SET NULL", "d": "SET DEFAULT"}
_CHECK = re.compile(r'(?:CONSTRAINT\s+(?:"([^"]+)"|`([^`]+)`|(\w+))\s+)?CHECK\s*\(', re.IGNORECASE)


class IDataBaseInspector(ABC):
    """Interface for database inspection."""

    @abstractmethod
    def introspect_schema(self) -> SchemaSnapshot:
        """Introspect complete database schema."""
        pass


class PostgresInspector(IDataBaseInspector):
    """
    PostgreSQL database inspector.
    Single Responsibility: Database introspection.

    Catalog queries are independent and read-only, so each runs on its own
    connection in a thread pool and the results are joined afterwards.
    """

    def __init__(
        self,
        connection_string: str,
        type_mapper: TypeMapper,
        schema: str = "public",
        exclude_tables: Iterable[str] = (),
        max_workers: int = 5,
    ):
        self._conn_string = connection_string
        self._types = type_mapper
        self._schema = schema
        self._exclude = set(exclude_tables)
        self._max_workers = max_workers

    def introspect_schema(self) -> SchemaSnapshot:
        """Introspect complete PostgreSQL schema."""
        queries = {
            "tables": self._get_tables,
            "columns": self._get_columns,
            "indexes": self._get_indexes,
            "constraints": self._get_constraints,
            "row_counts": self._get_row_counts,
        }
        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            futures = {name: pool.submit(self._with_connection, query) for name, query in queries.items()}
            results = {name: future.result() for name, future in futures.items()}

        tables = []
        for name in results["tables"]:
            if name in self._exclude:
                continue
            tables.append(TableSchema(
                name=name,
                columns=results["columns"].get(name, []),
                indexes=tuple(results["indexes"].get(name, [])),
                constraints=tuple(results["constraints"].get(name, [])),
                row_count=results["row_counts"].get(name),
            ))
        logger.info(f"[PostgresInspector] Introspected {len(tables)} table(s) in schema '{self._schema}'")
        return SchemaSnapshot.from_tables(tables)

    def _with_connection(self, query):
        conn = psycopg2.connect(self._conn_string)
        try:
            return query(conn)
        finally:
            conn.close()

    def _fetch(self, conn, sql: str, params=None) -> List[Dict[str, Any]]:
        with conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(sql, params or (self._schema,))
            return cur.fetchall()

    def _get_tables(self, conn) -> List[str]:
        rows = self._fetch(conn, """
            SELECT c.relname AS table_name
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = %s AND c.relkind = 'r'
            ORDER BY c.relname
        """)
        return [row["table_name"] for row in rows]

    def _get_columns(self, conn) -> Dict[str, List[ColumnSchema]]:
        rows = self._fetch(conn, """
            SELECT
                c.relname AS table_name,
                a.attname AS column_name,
                format_type(a.atttypid, a.atttypmod) AS data_type,
                a.attnotnull AS not_null,
                pg_get_expr(d.adbin, d.adrelid) AS column_default,
                col_description(c.oid, a.attnum) AS comment,
                a.attnum AS position
            FROM pg_attribute a
            JOIN pg_class c ON c.oid = a.attrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            LEFT JOIN pg_attrdef d ON d.adrelid = a.attrelid AND d.adnum = a.attnum
            WHERE n.nspname = %s AND c.relkind = 'r' AND a.attnum > 0 AND NOT a.attisdropped
            ORDER BY c.relname, a.attnum
        """)
        columns: Dict[str, List[ColumnSchema]] = {}
        for row in rows:
            columns.setdefault(row["table_name"], []).append(ColumnSchema(
                name=row["column_name"],
                field_type=self._types.parse(row["data_type"], Dialect.POSTGRES),
                nullable=not row["not_null"],
                default=row["column_default"],
                comment=row["comment"],
            ))
        return columns

    def _get_indexes(self, conn) -> Dict[str, List[IndexSchema]]:
        # Indexes backing primary key / unique constraints are reported as constraints
        rows = self._fetch(conn, """
            SELECT
                t.relname AS table_name,
                i.relname AS index_name,
                ix.indisunique AS is_unique,
                array_agg(a.attname ORDER BY k.ord) AS columns
            FROM pg_index ix
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            CROSS JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS k(attnum, ord)
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = k.attnum
            WHERE n.nspname = %s
              AND NOT ix.indisprimary
              AND NOT EXISTS (
                  SELECT 1 FROM pg_constraint con
                  WHERE con.conindid = ix.indexrelid AND con.contype IN ('p', 'u', 'x')
              )
            GROUP BY t.relname, i.relname, ix.indisunique
            ORDER BY t.relname, i.relname
        """)
        indexes: Dict[str, List[IndexSchema]] = {}
        for row in rows:
            indexes.setdefault(row["table_name"], []).append(
                IndexSchema(name=row["index_name"], columns=tuple(row["columns"]), unique=row["is_unique"])
            )
        return indexes

    def _get_constraints(self, conn) -> Dict[str, list]:
        rows = self._fetch(conn, """
            SELECT
                t.relname AS table_name,
                con.conname AS constraint_name,
                con.contype AS constraint_type,
                ARRAY(
                    SELECT a.attname FROM unnest(con.conkey) WITH ORDINALITY AS k(attnum, ord)
                    JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.attnum
                    ORDER BY k.ord
                ) AS columns,
                rt.relname AS referenced_table,
                ARRAY(
                    SELECT a.attname FROM unnest(con.confkey) WITH ORDINALITY AS k(attnum, ord)
                    JOIN pg_attribute a ON a.attrelid = con.confrelid AND a.attnum = k.attnum
                    ORDER BY k.ord
                ) AS referenced_columns,
                con.confdeltype AS delete_rule,
                pg_get_constraintdef(con.oid) AS definition
            FROM pg_constraint con
            JOIN pg_class t ON t.oid = con.conrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            LEFT JOIN pg_class rt ON rt.oid = con.confrelid
            WHERE n.nspname = %s AND con.contype IN ('p', 'u', 'f', 'c')
            ORDER BY t.relname, con.conname
        """)
        constraints: Dict[str, list] = {}
        for row in rows:
            kind, name, columns = row["constraint_type"], row["constraint_name"], tuple(row["columns"])
            if kind == "p":
                constraint = PrimaryKey(columns=columns, name=name)
            elif kind == "u":
                constraint = UniqueConstraint(columns=columns, name=name)
            elif kind == "f":
                constraint = ForeignKey(
                    columns=columns,
                    referenced_table=row["referenced_table"],
                    referenced_columns=tuple(row["referenced_columns"]),
                    on_delete=_ON_DELETE.get(row["delete_rule"], "NO ACTION"),
                    name=name,
                )
            else:
                expression = re.sub(r"^CHECK\s*", "", row["definition"], flags=re.IGNORECASE)
                constraint = CheckConstraint(expression=expression, name=name)
            constraints.setdefault(row["table_name"], []).append(constraint)
        return constraints

    def _get_row_counts(self, conn) -> Dict[str, Optional[int]]:
        """Planner statistics, confirmed against the table when they claim it is empty."""
        rows = self._fetch(conn, """
            SELECT s.relname AS table_name, s.n_live_tup AS row_count
            FROM pg_stat_user_tables s
            WHERE s.schemaname = %s
        """)
        counts: Dict[str, Optional[int]] = {}
        with conn.cursor() as cur:
            for row in rows:
                name = row["table_name"]
                if row["row_count"]:
                    counts[name] = row["row_count"]
                    continue
                quoted = '"' + name.replace('"', '""') + '"'
                cur.execute(f"SELECT EXISTS (SELECT 1 FROM {self._schema}.{quoted})")
                counts[name] = None if cur.fetchone()[0] else 0
        return counts


class SqliteInspector(IDataBaseInspector):
    """
    SQLite database inspector.
    Single Responsibility: Database introspection.
    """

    def __init__(self, driver: IDatabaseDriver, type_mapper: TypeMapper, exclude_tables: Iterable[str] = ()):
        self._driver = driver
        self._types = type_mapper
        self._exclude = set(exclude_tables)

    def introspect_schema(self) -> SchemaSnapshot:
        rows = self._driver.fetchall(
            "SELECT name, sql FROM sqlite_master "
            "WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        tables = [self._build_table(name, sql or "") for name, sql in rows if name not in self._exclude]
        logger.info(f"[SqliteInspector] Introspected {len(tables)} table(s)")
        return SchemaSnapshot.from_tables(tables)

    @staticmethod
    def _quote(name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def _build_table(self, name: str, sql: str) -> TableSchema:
        quoted = self._quote(name)
        info = self._driver.fetchall(f"PRAGMA table_info({quoted})")
        columns = [
            ColumnSchema(
                name=col_name,
                field_type=self._types.parse(col_type or "TEXT", Dialect.SQLITE),
                nullable=not notnull,
                default=default,
            )
            for _, col_name, col_type, notnull, default, _ in info
        ]

        constraints: list = []
        pk_columns = [row[1] for row in sorted((r for r in info if r[5]), key=lambda r: r[5])]
        if pk_columns:
            constraints.append(PrimaryKey(columns=tuple(pk_columns)))

        indexes: List[IndexSchema] = []
        for _, index_name, unique, origin, _ in self._driver.fetchall(f"PRAGMA index_list({quoted})"):
            if origin == "pk":
                continue
            index_columns = tuple(
                row[2] for row in sorted(self._driver.fetchall(f"PRAGMA index_info({self._quote(index_name)})"))
            )
            if origin == "u":
                constraints.append(UniqueConstraint(columns=index_columns))
            else:
                indexes.append(IndexSchema(name=index_name, columns=index_columns, unique=bool(unique)))

        constraints.extend(self._foreign_keys(quoted))
        constraints.extend(self._checks(sql))
        row_count = self._driver.fetchall(f"SELECT COUNT(*) FROM {quoted}")[0][0]

        return TableSchema(
            name=name,
            columns=columns,
            indexes=tuple(sorted(indexes, key=lambda i: i.name)),
            constraints=tuple(constraints),
            row_count=row_count,
        )

    def _foreign_keys(self, quoted: str) -> List[ForeignKey]:
        grouped: Dict[int, List[tuple]] = {}
        for row in self._driver.fetchall(f"PRAGMA foreign_key_list({quoted})"):
            grouped.setdefault(row[0], []).append(row)

        foreign_keys = []
        for fk_id in sorted(grouped):
            rows = sorted(grouped[fk_id], key=lambda r: r[1])
            referenced_table = rows[0][2]
            referenced = [r[4] for r in rows]
            if any(c is None for c in referenced):
                # REFERENCES t without a column list points at t's primary key
                pk = self._driver.fetchall(f"PRAGMA table_info({self._quote(referenced_table)})")
                referenced = [r[1] for r in sorted((r for r in pk if r[5]), key=lambda r: r[5])]
            foreign_keys.append(ForeignKey(
                columns=tuple(r[3] for r in rows),
                referenced_table=referenced_table,
                referenced_columns=tuple(referenced),
                on_delete=rows[0][6] or "NO ACTION",
            ))
        return foreign_keys

    @staticmethod
    def _checks(sql: str) -> List[CheckConstraint]:
        checks = []
        for match in _CHECK.finditer(sql):
            depth, start = 1, match.end()
            position = start
            while position < len(sql) and depth:
                if sql[position] == "(":
                    depth += 1
                elif sql[position] == ")":
                    depth -= 1
                position += 1
            name = match.group(1) or match.group(2) or match.group(3)
            checks.append(CheckConstraint(expression=sql[start:position - 1].strip(), name=name))
        return checks
