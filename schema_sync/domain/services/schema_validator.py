import logging
from typing import List, Optional

from schema_sync.domain.entities.dialect import DialectCapabilities
from schema_sync.domain.entities.schema import ConstraintKind, SchemaSnapshot, TableSchema
from schema_sync.domain.exceptions import ModelError

logger = logging.getLogger(__name__)


class SchemaValidator:
    """
    Checks snapshot consistency before diffing.
    Single Responsibility: snapshot validation only.
    """

    def __init__(self, capabilities: Optional[DialectCapabilities] = None):
        self._capabilities = capabilities

    def validate(self, snapshot: SchemaSnapshot, label: str = "schema") -> SchemaSnapshot:
        """Raise ModelError listing every problem found in ``snapshot``."""
        problems: List[str] = []
        for table in snapshot:
            problems.extend(self._check_table(table, snapshot))

        if problems:
            logger.error(f"[SchemaValidator] {label} has {len(problems)} problem(s)")
            raise ModelError(f"Invalid {label}: " + "; ".join(problems), problems=problems)
        return snapshot

    def _check_table(self, table: TableSchema, snapshot: SchemaSnapshot) -> List[str]:
        problems = []
        if table.name != table.name.strip() or not table.name:
            problems.append(f"table name '{table.name}' is empty or padded")
        problems.extend(self._check_identifier(table.name))

        for column in table.columns.values():
            problems.extend(self._check_identifier(column.name, table.name))

        for index in table.indexes:
            problems.extend(self._check_identifier(index.name, table.name))
            missing = [c for c in index.columns if c not in table.columns]
            if missing:
                problems.append(f"index '{table.name}.{index.name}' references unknown columns {missing}")

        for constraint in table.constraints:
            if constraint.kind is ConstraintKind.CHECK:
                continue
            missing = [c for c in constraint.columns if c not in table.columns]
            if missing:
                problems.append(
                    f"{constraint.kind.value} on '{table.name}' references unknown columns {missing}"
                )

        for fk in table.foreign_keys():
            problems.extend(self._check_foreign_key(table, fk, snapshot))
        return problems

    @staticmethod
    def _check_foreign_key(table, fk, snapshot: SchemaSnapshot) -> List[str]:
        target = snapshot.get(fk.referenced_table)
        if target is None:
            return [f"foreign key on '{table.name}{list(fk.columns)}' references missing table '{fk.referenced_table}'"]
        if len(fk.columns) != len(fk.referenced_columns):
            return [f"foreign key on '{table.name}' maps {len(fk.columns)} columns to {len(fk.referenced_columns)}"]
        missing = [c for c in fk.referenced_columns if c not in target.columns]
        if missing:
            return [f"foreign key on '{table.name}' references unknown columns {missing} of '{target.name}'"]
        return []

    def _check_identifier(self, name: str, table: Optional[str] = None) -> List[str]:
        limit = self._capabilities.max_identifier_length if self._capabilities else None
        if limit and len(name) > limit:
            where = f"'{table}.{name}'" if table else f"'{name}'"
            return [f"identifier {where} exceeds the {limit}-character limit"]
        return []
