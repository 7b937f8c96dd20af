"""Use case for generating migration plan."""
import logging
from typing import Any, Dict, List, Optional, Tuple

from schema_sync.domain.entities.evolution import MigrationPlan, SchemaChange
from schema_sync.domain.entities.rules import DiffPolicy
from schema_sync.domain.entities.schema import SchemaSnapshot
from schema_sync.domain.services.diff_engine import DiffEngine
from schema_sync.domain.services.migration_planner import MigrationPlanner
from schema_sync.infrastructure.validators.sql_validator import SQLValidator

logger = logging.getLogger(__name__)


class GenerateMigrationUseCase:
    """
    Use case: Generate executable migration plan.
    Single Responsibility: Generate migration artifacts.
    """

    def __init__(self, diff_engine: DiffEngine, planner: MigrationPlanner, sql_validator: SQLValidator):
        self._diff_engine = diff_engine
        self._planner = planner
        self._sql_validator = sql_validator

    def execute(
        self,
        desired: SchemaSnapshot,
        actual: SchemaSnapshot,
        policy: Optional[DiffPolicy] = None,
        description: Optional[str] = None,
    ) -> Tuple[List[SchemaChange], MigrationPlan, Dict[str, Any]]:
        """Diff, plan and validate. Returns (changes, plan, validation_results)."""
        changes = self._diff_engine.compute_diff(desired, actual, policy)
        plan = self._planner.plan(changes, description)

        statement_results = []
        for i, statement in enumerate(plan.statements):
            is_valid, error = self._sql_validator.validate_syntax(statement.sql)
            statement_results.append({"index": i, "valid": is_valid, "error": error, "sql": statement.sql})

        safety_warnings = []
        for statement in plan.statements:
            _, warnings = self._sql_validator.validate_safety(statement)
            safety_warnings.extend(warnings)

        validation_results = {
            "sql_valid": all(r["valid"] for r in statement_results),
            "safe": not safety_warnings,
            "warnings": safety_warnings,
            "statements": statement_results,
        }
        logger.info(
            f"[GenerateMigrationUseCase] {len(changes)} change(s) -> {len(plan.statements)} statement(s)"
        )
        return changes, plan, validation_results
