from typing import Optional

from schema_sync.domain.entities.evolution import MigrationPlan
from schema_sync.domain.entities.execution import ApplyOptions, ApplyReport
from schema_sync.domain.services.apply_executor import ApplyExecutor
from schema_sync.domain.services.cancellation import CancellationToken


class ApplyMigrationUseCase:
    """
    Use case: Execute a migration plan against the target database.
    Single Responsibility: apply only.
    """

    def __init__(self, executor: ApplyExecutor):
        self._executor = executor

    def execute(
        self,
        plan: MigrationPlan,
        options: Optional[ApplyOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ApplyReport:
        return self._executor.apply(plan, options or ApplyOptions(), cancel_token)
