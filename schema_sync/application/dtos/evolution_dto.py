"""Data Transfer Objects for application layer."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from schema_sync.domain.entities.dialect import Dialect
from schema_sync.domain.entities.evolution import MigrationPlan, PlannedStatement, SchemaChange
from schema_sync.domain.entities.execution import ApplyOptions, ApplyReport
from schema_sync.domain.entities.rules import DiffPolicy
from schema_sync.domain.entities.schema import SchemaSnapshot
from schema_sync.domain.exceptions import ModelError


@dataclass
class SyncRequest:
    """Request to reconcile the database with a desired schema."""
    desired: SchemaSnapshot
    policy: DiffPolicy = field(default_factory=DiffPolicy)
    options: ApplyOptions = field(default_factory=ApplyOptions)
    description: Optional[str] = None


@dataclass
class SyncResponse:
    """Response containing the plan and, once applied, its report."""
    changes: List[SchemaChange]
    plan: MigrationPlan
    validation_results: Dict[str, Any] = field(default_factory=dict)
    report: Optional[ApplyReport] = None

    @property
    def sql_statements(self) -> List[str]:
        return list(self.plan.sql_statements())

    def to_dict(self) -> Dict[str, Any]:
        data = plan_to_dict(self.plan)
        data["changes"] = [change.describe() for change in self.changes]
        data["validation"] = self.validation_results
        data["report"] = self.report.to_dict() if self.report else None
        return data


def plan_to_dict(plan: MigrationPlan) -> Dict[str, Any]:
    return {
        "dialect": plan.dialect.value,
        "description": plan.description,
        "record_id": plan.record_id,
        "statements": [
            {
                "sql": s.sql,
                "reversible": s.reversible,
                "heavy": s.heavy,
                "destructive": s.destructive,
                "description": s.description,
            }
            for s in plan.statements
        ],
        "irreversible": plan.irreversible,
        "heavy": plan.heavy,
        "warnings": list(plan.warnings),
    }


def plan_from_dict(data: Dict[str, Any]) -> MigrationPlan:
    """Rebuild a plan saved by :func:`plan_to_dict`."""
    try:
        dialect = Dialect.parse(data["dialect"])
        statements = [
            PlannedStatement(
                sql=s["sql"],
                dialect=dialect,
                reversible=s.get("reversible", True),
                heavy=s.get("heavy", False),
                destructive=s.get("destructive", False),
                description=s.get("description", ""),
            )
            for s in data["statements"]
        ]
    except (KeyError, TypeError, ValueError) as e:
        raise ModelError(f"Malformed migration plan: {e}") from e
    return MigrationPlan(
        dialect=dialect,
        statements=statements,
        warnings=data.get("warnings", ()),
        description=data.get("description") or "Automatically generated migration plan",
        record_id=data.get("record_id"),
    )


def snapshot_to_dict(snapshot: SchemaSnapshot) -> Dict[str, Any]:
    return {
        "tables": [
            {
                "name": t.name,
                "columns": [
                    {
                        "name": c.name,
                        "type": c.field_type.key(),
                        "nullable": c.nullable,
                        "default": c.default,
                    }
                    for c in t.ordered_columns()
                ],
                "indexes": [
                    {"name": i.name, "columns": list(i.columns), "unique": i.unique} for i in t.indexes
                ],
                "constraints": [
                    {"kind": c.kind.value, "name": c.name, "signature": [str(p) for p in c.signature()]}
                    for c in t.constraints
                ],
                "row_count": t.row_count,
            }
            for t in (snapshot.tables[name] for name in snapshot.table_names())
        ]
    }
