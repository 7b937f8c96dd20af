"""Main orchestrator for the synchronization process."""
import logging
import os
import socket
from contextlib import contextmanager
from typing import List, Optional

from schema_sync.application.dtos.evolution_dto import SyncRequest, SyncResponse
from schema_sync.application.use_case.analyze_schema import AnalyzeSchemaUseCase
from schema_sync.application.use_case.apply_migration import ApplyMigrationUseCase
from schema_sync.application.use_case.generate_migration import GenerateMigrationUseCase
from schema_sync.domain.entities.evolution import MigrationPlan
from schema_sync.domain.entities.execution import ApplyOptions, ApplyReport
from schema_sync.domain.entities.history import MigrationRecord, MigrationStatus
from schema_sync.domain.entities.rules import DiffPolicy, SyncConfig
from schema_sync.domain.entities.schema import SchemaSnapshot
from schema_sync.domain.exceptions import SchemaSyncError
from schema_sync.domain.services.cancellation import CancellationToken
from schema_sync.domain.services.history_ledger import HistoryLedger

logger = logging.getLogger(__name__)


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SyncOrchestrator:
    """
    Main orchestrator coordinating the entire synchronization process.
    Single Responsibility: Coordinate use cases and the migration lock.
    """

    def __init__(
        self,
        analyze_use_case: AnalyzeSchemaUseCase,
        generate_use_case: GenerateMigrationUseCase,
        apply_use_case: ApplyMigrationUseCase,
        ledger: Optional[HistoryLedger] = None,
        config: Optional[SyncConfig] = None,
        holder: Optional[str] = None,
    ):
        self._analyze = analyze_use_case
        self._generate = generate_use_case
        self._apply = apply_use_case
        self._ledger = ledger
        self._config = config or SyncConfig()
        self._holder = holder or default_holder()

    @property
    def default_options(self) -> ApplyOptions:
        return ApplyOptions(
            dry_run=self._config.dry_run,
            per_migration_transaction=self._config.transaction_per_migration,
            backup=self._config.backup_before_migrate,
        )

    def analyze(self) -> SchemaSnapshot:
        """Introspect the target database."""
        return self._analyze.execute()

    def generate(
        self,
        desired: SchemaSnapshot,
        policy: Optional[DiffPolicy] = None,
        description: Optional[str] = None,
    ) -> SyncResponse:
        """Diff the desired schema against the database and plan the migration."""
        actual = self.analyze()
        changes, plan, validation = self._generate.execute(
            desired, actual, policy or self._config.policy, description
        )
        return SyncResponse(changes=changes, plan=plan, validation_results=validation)

    def reserve(self, plan: MigrationPlan) -> MigrationPlan:
        """Record a saved plan as Pending so re-applying it resumes the same migration."""
        if plan.is_empty or plan.record_id is not None:
            return plan
        return self._require_ledger().reserve(plan)

    def apply(
        self,
        plan: MigrationPlan,
        options: Optional[ApplyOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ApplyReport:
        """Apply a plan under the migration lock, after verifying the ledger."""
        options = options or self.default_options
        if options.dry_run:
            return self._apply.execute(plan, options, cancel_token)
        with self._locked():
            self._ledger.verify_all()
            return self._apply.execute(plan, options, cancel_token)

    def sync(self, request: SyncRequest, cancel_token: Optional[CancellationToken] = None) -> SyncResponse:
        """Full pipeline: introspect, diff, plan and apply."""
        token = cancel_token or CancellationToken()
        if request.options.dry_run:
            return self._sync(request, token)
        with self._locked():
            self._ledger.verify_all()
            return self._sync(request, token)

    def history(self, status: Optional[MigrationStatus] = None) -> List[MigrationRecord]:
        return self._require_ledger().list_records(status)

    def verify(self) -> List[MigrationRecord]:
        """Check every recorded migration for drift."""
        return self._require_ledger().verify_all()

    def resolve(self, record_id: str) -> MigrationRecord:
        """Acknowledge a failed migration as rolled back."""
        ledger = self._require_ledger()
        record = ledger.get(record_id)
        if record is None:
            raise SchemaSyncError(f"Unknown migration '{record_id}'")
        return ledger.mark_rolled_back(record)

    # ------------------------------------------------------------------

    def _sync(self, request: SyncRequest, token: CancellationToken) -> SyncResponse:
        token.raise_if_cancelled("before introspection")
        logger.info("[SyncOrchestrator] Analyzing schema differences...")
        response = self.generate(request.desired, request.policy, request.description)
        if response.plan.is_empty:
            logger.info("[SyncOrchestrator] Schema already in sync")
            response.report = ApplyReport(
                record_id=None,
                status=None,
                dialect=response.plan.dialect.value,
                dry_run=request.options.dry_run,
                skipped=True,
            )
            return response

        token.raise_if_cancelled("before apply")
        logger.info(f"[SyncOrchestrator] Applying {len(response.plan.statements)} statement(s)")
        response.report = self._apply.execute(response.plan, request.options, token)
        return response

    def _require_ledger(self) -> HistoryLedger:
        if self._ledger is None:
            raise SchemaSyncError("No migration ledger is configured (dry-run mode)")
        return self._ledger

    @contextmanager
    def _locked(self):
        ledger = self._require_ledger()
        ledger.acquire_lock(self._holder, self._config.lock_timeout_seconds)
        logger.debug(f"[SyncOrchestrator] Lock acquired by {self._holder}")
        try:
            yield
        finally:
            ledger.release_lock(self._holder)
            logger.debug(f"[SyncOrchestrator] Lock released by {self._holder}")
