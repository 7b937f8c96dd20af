import json
import logging
from typing import Any, Dict, List, Optional

from schema_sync.domain.entities.dialect import capabilities_for
from schema_sync.domain.entities.rules import NamingConvention, truncate_identifier
from schema_sync.domain.entities.schema import (
    CheckConstraint, ColumnSchema, ConstraintKind, DataType, FieldType, ForeignKey, IndexSchema,
    PrimaryKey, SchemaSnapshot, TableSchema, UniqueConstraint,
)
from schema_sync.domain.exceptions import ModelError
from schema_sync.domain.repositories.interfaces import ISchemaProvider

logger = logging.getLogger(__name__)


class JsonSchemaProvider(ISchemaProvider):
    """
    Desired schema from a declarative JSON models document.
    Single Responsibility: model parsing and naming.

    Document shape::

        {"models": [{"name": "User", "fields": [
            {"name": "id", "type": "bigint", "primary_key": true},
            {"name": "email", "type": "text(320)", "unique": true},
            {"name": "team", "type": "bigint", "references": "Team", "on_delete": "CASCADE"}
        ], "indexes": [{"columns": ["email", "id"]}]}]}
    """

    def __init__(
        self,
        path: Optional[str] = None,
        document: Optional[Dict[str, Any]] = None,
        naming: Optional[NamingConvention] = None,
        default_nullable: bool = False,
        index_foreign_keys: bool = False,
        add_created_at_column: bool = False,
        add_updated_at_column: bool = False,
        dialect="postgres",
    ):
        if path is None and document is None:
            raise ModelError("JsonSchemaProvider needs a models file or document")
        self._path = path
        self._document = document
        self._naming = naming or NamingConvention()
        self._default_nullable = default_nullable
        self._index_foreign_keys = index_foreign_keys
        self._timestamp_columns = [
            (name, comment)
            for name, comment, enabled in (
                ("created_at", "Record creation timestamp", add_created_at_column),
                ("updated_at", "Record last update timestamp", add_updated_at_column),
            )
            if enabled
        ]
        self._max_length = capabilities_for(dialect).max_identifier_length

    def get_desired_schema(self) -> SchemaSnapshot:
        document = self._document
        if document is None:
            with open(self._path, "r", encoding="utf-8") as f:
                document = json.load(f)
        return self.parse(document)

    def parse(self, document: Dict[str, Any]) -> SchemaSnapshot:
        """Parse a models document into a SchemaSnapshot."""
        models = document.get("models")
        if not isinstance(models, list):
            raise ModelError("Models document needs a 'models' list")

        table_names = {m["name"]: self._table_name(m) for m in models}
        primary_keys = {
            table_names[m["name"]]: [self._naming.column_name(f["name"]) for f in m.get("fields", [])
                                     if f.get("primary_key")]
            for m in models
        }

        tables = [self._parse_model(m, table_names, primary_keys) for m in models]
        logger.info(f"[JsonSchemaProvider] Parsed {len(tables)} model(s)")
        return SchemaSnapshot.from_tables(tables)

    def _table_name(self, model: Dict[str, Any]) -> str:
        name = model.get("table") or self._naming.table_name(model["name"])
        return self._truncate(name)

    def _truncate(self, name: str) -> str:
        return truncate_identifier(name, self._max_length)

    def _parse_model(self, model: Dict[str, Any], table_names: Dict[str, str], primary_keys) -> TableSchema:
        table = table_names[model["name"]]
        columns: List[ColumnSchema] = []
        pk_columns: List[str] = []
        constraints: list = []
        indexes: List[IndexSchema] = []
        used_names = set()

        def constraint_name(kind: ConstraintKind, cols: List[str]) -> str:
            name = self._naming.constraint_name(kind, table, cols, self._max_length)
            candidate, suffix = name, 2
            while candidate in used_names:
                candidate = self._truncate(f"{name}_{suffix}")
                suffix += 1
            used_names.add(candidate)
            return candidate

        for position, field_def in enumerate(model.get("fields", [])):
            column_name = self._truncate(self._naming.column_name(field_def["name"]))
            primary = bool(field_def.get("primary_key"))
            if primary:
                pk_columns.append(column_name)
            columns.append(ColumnSchema(
                name=column_name,
                field_type=self._field_type(field_def, table),
                nullable=False if primary else field_def.get("nullable", self._default_nullable),
                default=field_def.get("default"),
                comment=field_def.get("comment"),
                position=position,
                renamed_from=field_def.get("renamed_from"),
            ))
            if field_def.get("unique") and not primary:
                constraints.append(UniqueConstraint(
                    columns=(column_name,), name=constraint_name(ConstraintKind.UNIQUE, [column_name])
                ))
            if field_def.get("index"):
                indexes.append(IndexSchema(
                    name=self._naming.index_name(table, [column_name], self._max_length), columns=(column_name,)
                ))
            if field_def.get("check"):
                constraints.append(CheckConstraint(
                    expression=field_def["check"],
                    columns=(column_name,),
                    name=constraint_name(ConstraintKind.CHECK, [column_name]),
                ))
            if field_def.get("references"):
                referenced_table, referenced_columns = self._resolve_reference(
                    field_def["references"], table_names, primary_keys, table
                )
                constraints.append(ForeignKey(
                    columns=(column_name,),
                    referenced_table=referenced_table,
                    referenced_columns=referenced_columns,
                    on_delete=field_def.get("on_delete", "NO ACTION"),
                    name=constraint_name(ConstraintKind.FOREIGN_KEY, [column_name]),
                ))

        if pk_columns:
            constraints.insert(0, PrimaryKey(
                columns=tuple(pk_columns), name=constraint_name(ConstraintKind.PRIMARY_KEY, pk_columns)
            ))

        for entry in model.get("unique", []):
            cols = [self._naming.column_name(c) for c in entry]
            constraints.append(UniqueConstraint(columns=tuple(cols), name=constraint_name(ConstraintKind.UNIQUE, cols)))

        for entry in model.get("checks", []):
            constraints.append(CheckConstraint(
                expression=entry["expression"],
                name=entry.get("name") or constraint_name(ConstraintKind.CHECK, []),
            ))

        for entry in model.get("indexes", []):
            cols = [self._naming.column_name(c) for c in entry["columns"]]
            indexes.append(IndexSchema(
                name=entry.get("name") or self._naming.index_name(table, cols, self._max_length),
                columns=tuple(cols),
                unique=entry.get("unique", False),
            ))

        if self._index_foreign_keys:
            indexes.extend(self._foreign_key_indexes(table, constraints, indexes))
        columns.extend(self._timestamps(columns))

        return TableSchema(
            name=table,
            columns=columns,
            indexes=tuple(indexes),
            constraints=tuple(constraints),
            comment=model.get("comment"),
            renamed_from=model.get("renamed_from"),
        )

    def _foreign_key_indexes(self, table: str, constraints, indexes: List[IndexSchema]) -> List[IndexSchema]:
        """One index per foreign key whose columns no existing index leads with."""
        covered = [index.columns for index in indexes]
        added = []
        for fk in constraints:
            if not isinstance(fk, ForeignKey):
                continue
            if any(cols[:len(fk.columns)] == fk.columns for cols in covered):
                continue
            covered.append(fk.columns)
            added.append(IndexSchema(
                name=self._naming.index_name(table, list(fk.columns), self._max_length), columns=fk.columns
            ))
        return added

    def _timestamps(self, columns: List[ColumnSchema]) -> List[ColumnSchema]:
        existing = {c.name for c in columns}
        added: List[ColumnSchema] = []
        for base, comment in self._timestamp_columns:
            name = self._naming.column_name(base)
            if name in existing:
                continue
            added.append(ColumnSchema(
                name=name,
                field_type=FieldType(DataType.TIMESTAMP, timezone=True),
                nullable=False,
                default="CURRENT_TIMESTAMP",
                comment=comment,
                position=len(columns) + len(added),
            ))
        return added

    @staticmethod
    def _field_type(field_def: Dict[str, Any], table: str) -> FieldType:
        type_key = str(field_def.get("type", "text"))
        override = field_def.get("override")
        if type_key.lower() == "custom":
            return FieldType(DataType.CUSTOM, override=override)
        try:
            return FieldType.from_key(type_key, override=override)
        except ModelError as e:
            raise ModelError(f"{table}.{field_def['name']}: {e.message}", table=table, column=field_def["name"]) from e

    def _resolve_reference(self, reference: str, table_names, primary_keys, table: str):
        target, _, column = reference.partition(".")
        referenced_table = table_names.get(target, target)
        if column:
            return referenced_table, (self._naming.column_name(column),)
        pk = primary_keys.get(referenced_table)
        if not pk:
            raise ModelError(
                f"Reference '{reference}' from '{table}' needs a column: target has no primary key",
                table=table,
            )
        return referenced_table, tuple(pk)
