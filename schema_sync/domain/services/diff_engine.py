from dataclasses import replace
from typing import Dict, List, Mapping, Optional, Tuple
import logging

from schema_sync.domain.entities.dialect import Dialect, capabilities_for
from schema_sync.domain.entities.evolution import (
    AddColumn, AddConstraint, AddIndex, AddTable, AlterColumnNullability, AlterColumnType,
    DropColumn, DropConstraint, DropIndex, DropTable, RenameColumn, RenameTable, SchemaChange,
)
from schema_sync.domain.entities.rules import DiffPolicy
from schema_sync.domain.entities.schema import (
    ColumnSchema, ConstraintKind, ConstraintSchema, SchemaSnapshot, TableSchema
)
from schema_sync.domain.exceptions import DestructiveChangeRejected
from schema_sync.domain.services.schema_validator import SchemaValidator
from schema_sync.domain.services.type_mapper import TypeMapper

logger = logging.getLogger(__name__)


class DiffEngine:
    """
    Computes structural differences between the desired and actual schema.
    Single Responsibility: Only handles diff computation.
    """

    def __init__(
        self,
        type_mapper: TypeMapper,
        dialect="postgres",
        type_overrides: Optional[Mapping[str, str]] = None,
        validator: Optional[SchemaValidator] = None,
    ):
        self._types = type_mapper
        self._dialect = Dialect.parse(dialect)
        self._overrides = dict(type_overrides or {})
        self._validator = validator or SchemaValidator(capabilities_for(self._dialect))

        # renames decided during compute_diff
        self._table_renames: Dict[str, str] = {}            # old -> new
        self._column_renames: Dict[str, Dict[str, str]] = {}  # new table -> {old col: new col}

        logger.info(f"[DiffEngine] Initialized for dialect: {self._dialect.value}")

    def compute_diff(
        self,
        desired: SchemaSnapshot,
        actual: SchemaSnapshot,
        policy: Optional[DiffPolicy] = None,
    ) -> List[SchemaChange]:
        """
        Compute the ordered changes that turn ``actual`` into ``desired``.

        Raises DestructiveChangeRejected, listing every offending object,
        when the policy forbids a required removal or lossy alteration.
        """
        policy = policy or DiffPolicy()
        self._validator.validate(desired, "desired schema")
        self._validator.validate(actual, "actual schema")

        self._table_renames = self._resolve_table_renames(desired, actual)
        renamed_sources = set(self._table_renames)
        renamed_targets = set(self._table_renames.values())

        added = [t for t in desired.table_names() if t not in actual and t not in renamed_targets]
        dropped = [t for t in actual.table_names() if t not in desired and t not in renamed_sources]

        # Pair every surviving table with its actual shape under the desired name
        pairs: Dict[str, Tuple[TableSchema, TableSchema, Optional[str]]] = {}
        for name in desired.table_names():
            if name in actual:
                pairs[name] = (desired.get(name), actual.get(name), None)
        for old, new in self._table_renames.items():
            pairs[new] = (desired.get(new), replace(actual.get(old), name=new), old)

        self._column_renames = {
            name: self._resolve_column_renames(target, source, policy)
            for name, (target, source, _) in pairs.items()
        }

        per_table: Dict[str, List[SchemaChange]] = {}
        rejected: List[str] = []

        for name in dropped:
            if not policy.allow_table_removal:
                rejected.append(f"table '{name}'")
            per_table[name] = [DropTable(table=name, schema=actual.get(name))]

        for name in added:
            table = desired.get(name)
            changes: List[SchemaChange] = [AddTable(table=name, schema=table)]
            changes.extend(
                AddIndex(table=name, index=index, target=table)
                for index in sorted(table.indexes, key=lambda i: i.name)
            )
            per_table[name] = changes

        for name, (target, source, old_name) in pairs.items():
            changes = []
            if old_name:
                changes.append(RenameTable(table=old_name, new_name=name))
            changes.extend(self._diff_table(target, source, policy, rejected))
            if changes:
                per_table[name] = changes

        if rejected:
            logger.error(f"[DiffEngine] Rejected {len(rejected)} destructive change(s): {rejected}")
            raise DestructiveChangeRejected(
                "Policy rejects destructive changes: " + ", ".join(rejected), rejected=rejected
            )

        result: List[SchemaChange] = []
        for name in sorted(per_table):
            result.extend(per_table[name])
        logger.info(f"[DiffEngine] Computed {len(result)} change(s) across {len(per_table)} table(s)")
        return result

    # ----------------------------- renames -----------------------------

    def _resolve_table_renames(self, desired: SchemaSnapshot, actual: SchemaSnapshot) -> Dict[str, str]:
        renames: Dict[str, str] = {}
        for table in desired:
            old = table.renamed_from
            if not old or table.name in actual or old not in actual or old in desired:
                continue
            if old in renames:
                logger.warning(f"[DiffEngine] Ignoring second rename hint for table '{old}' on '{table.name}'")
                continue
            renames[old] = table.name
            logger.info(f"[DiffEngine] Table rename: {old} -> {table.name}")
        return renames

    def _resolve_column_renames(
        self, desired: TableSchema, actual: TableSchema, policy: DiffPolicy
    ) -> Dict[str, str]:
        renames: Dict[str, str] = {}
        for column in desired.columns.values():
            old = column.renamed_from
            if old and column.name not in actual.columns and old in actual.columns \
                    and old not in desired.columns and old not in renames:
                renames[old] = column.name

        if policy.detect_renames:
            gone = [c for c in actual.columns.values() if c.name not in desired.columns and c.name not in renames]
            new = [c for c in desired.columns.values()
                   if c.name not in actual.columns and c.name not in renames.values()]
            gone_sigs = {c.name: self._column_signature(c, desired_side=False) for c in gone}
            new_sigs = {c.name: self._column_signature(c, desired_side=True) for c in new}

            for old_name, sig in gone_sigs.items():
                candidates = [n for n, s in new_sigs.items() if s == sig]
                if len(candidates) != 1:
                    continue
                reverse = [o for o, s in gone_sigs.items() if s == new_sigs[candidates[0]]]
                if reverse == [old_name]:
                    renames[old_name] = candidates[0]
                    logger.info(f"[DiffEngine] Heuristic column rename: {desired.name}.{old_name} -> {candidates[0]}")
        return renames

    def _column_signature(self, column: ColumnSchema, desired_side: bool) -> Tuple[str, bool]:
        overrides = self._overrides if desired_side else None
        rendered = self._types.map(column.field_type, self._dialect, overrides)
        return self._types.normalize(rendered, self._dialect), column.nullable

    # ---------------------------- table diff ----------------------------

    def _translate(self, table: TableSchema) -> TableSchema:
        """Actual table as it will look once the detected renames ran."""
        mapping = self._column_renames.get(table.name, {})
        columns = [replace(c, name=mapping.get(c.name, c.name)) for c in table.columns.values()]
        indexes = tuple(replace(i, columns=tuple(mapping.get(c, c) for c in i.columns)) for i in table.indexes)
        constraints = tuple(self._translate_constraint(c.renamed_columns(mapping)) for c in table.constraints)
        return replace(table, columns=columns, indexes=indexes, constraints=constraints)

    def _translate_constraint(self, constraint: ConstraintSchema) -> ConstraintSchema:
        if constraint.kind is not ConstraintKind.FOREIGN_KEY:
            return constraint
        referenced = self._table_renames.get(constraint.referenced_table, constraint.referenced_table)
        mapping = self._column_renames.get(referenced, {})
        return replace(
            constraint,
            referenced_table=referenced,
            referenced_columns=tuple(mapping.get(c, c) for c in constraint.referenced_columns),
        )

    def _diff_table(
        self,
        desired: TableSchema,
        actual: TableSchema,
        policy: DiffPolicy,
        rejected: List[str],
    ) -> List[SchemaChange]:
        name = desired.name
        renames = self._column_renames.get(name, {})
        view = self._translate(actual)
        ctx = dict(source=actual, target=desired)

        rename_changes = [
            RenameColumn(table=name, old_name=old, new_name=new, **ctx)
            for old, new in sorted(renames.items())
        ]

        desired_constraints = {c.signature(): c for c in desired.constraints}
        actual_constraints = {c.signature(): c for c in view.constraints}
        constraint_drops = [
            DropConstraint(table=name, constraint=c, **ctx)
            for sig, c in actual_constraints.items() if sig not in desired_constraints
        ]
        constraint_adds = [
            AddConstraint(table=name, constraint=c, **ctx)
            for sig, c in desired_constraints.items() if sig not in actual_constraints
        ]

        desired_indexes = {i.signature(): i for i in desired.indexes}
        actual_indexes = {i.signature(): i for i in view.indexes}
        index_drops = [
            DropIndex(table=name, index=i, **ctx)
            for sig, i in actual_indexes.items() if sig not in desired_indexes
        ]
        index_adds = [
            AddIndex(table=name, index=i, **ctx)
            for sig, i in desired_indexes.items() if sig not in actual_indexes
        ]

        column_drops, column_adds, type_alters, null_alters = [], [], [], []
        for column in view.columns.values():
            if column.name not in desired.columns:
                column_drops.append(DropColumn(table=name, column=column, **ctx))
                if not policy.allow_column_removal:
                    rejected.append(f"column '{name}.{column.name}'")

        for column in desired.columns.values():
            current = view.columns.get(column.name)
            if current is None:
                column_adds.append(AddColumn(table=name, column=column, **ctx))
                continue
            if not self._types.same_type(column.field_type, current.field_type, self._dialect, self._overrides):
                type_alters.append(AlterColumnType(table=name, column=column, from_type=current.field_type, **ctx))
                if policy.strict_mode and not self._types.is_widening(current.field_type, column.field_type):
                    rejected.append(
                        f"type change '{name}.{column.name}' {current.field_type.key()} -> {column.field_type.key()}"
                    )
            if column.nullable != current.nullable:
                null_alters.append(AlterColumnNullability(table=name, column=column, **ctx))
                if policy.strict_mode and not column.nullable:
                    rejected.append(f"nullability '{name}.{column.name}' NULL -> NOT NULL")

        by_column = lambda c: c.column.name
        by_index = lambda c: c.index.name
        by_constraint = lambda c: (c.constraint.name or "", repr(c.constraint.signature()))

        return (
            rename_changes
            + sorted(constraint_drops, key=by_constraint)
            + sorted(index_drops, key=by_index)
            + sorted(column_drops, key=by_column)
            + sorted(column_adds, key=by_column)
            + sorted(type_alters, key=by_column)
            + sorted(null_alters, key=by_column)
            + sorted(index_adds, key=by_index)
            + sorted(constraint_adds, key=by_constraint)
        )
