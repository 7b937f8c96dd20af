import logging
import time
from typing import List, Optional

from schema_sync.domain.entities.dialect import capabilities_for
from schema_sync.domain.entities.evolution import MigrationPlan, PlannedStatement
from schema_sync.domain.entities.execution import ApplyOptions, ApplyReport, StatementResult
from schema_sync.domain.entities.history import (
    ExecutionLogEntry, MigrationRecord, MigrationStatus, compute_checksum,
)
from schema_sync.domain.exceptions import (
    ApplyFailure, BackupFailed, ConfigurationError, DriftDetected, SchemaSyncError,
)
from schema_sync.domain.repositories.interfaces import IDatabaseDriver, IStatementValidator
from schema_sync.domain.services.cancellation import CancellationToken
from schema_sync.domain.services.history_ledger import HistoryLedger

logger = logging.getLogger(__name__)


class ApplyExecutor:
    """
    Executes a migration plan and keeps the ledger in step.
    Single Responsibility: statement execution only.
    """

    def __init__(
        self,
        driver: Optional[IDatabaseDriver],
        ledger: Optional[HistoryLedger],
        validator: IStatementValidator,
    ):
        self._driver = driver
        self._ledger = ledger
        self._validator = validator

    def apply(
        self,
        plan: MigrationPlan,
        options: ApplyOptions = ApplyOptions(),
        cancel_token: Optional[CancellationToken] = None,
    ) -> ApplyReport:
        if options.dry_run:
            return self.dry_run(plan)
        if plan.is_empty:
            logger.info("[ApplyExecutor] Empty plan, nothing to apply")
            return ApplyReport(record_id=None, status=None, dialect=plan.dialect.value, skipped=True)

        if self._driver.dialect is not plan.dialect:
            raise ConfigurationError(
                f"Plan targets {plan.dialect.value} but the database is {self._driver.dialect.value}"
            )

        token = cancel_token or CancellationToken()
        record = self._resolve_record(plan)
        if record.status is MigrationStatus.APPLIED:
            logger.info(f"[ApplyExecutor] Migration {record.id} already applied, skipping")
            return ApplyReport(
                record_id=record.id,
                status=record.status,
                dialect=plan.dialect.value,
                skipped=True,
                warnings=list(plan.warnings),
            )

        report = ApplyReport(
            record_id=record.id,
            status=MigrationStatus.PENDING,
            dialect=plan.dialect.value,
            warnings=list(plan.warnings),
        )
        token.raise_if_cancelled("start of apply")
        report.backup_taken = self._backup_if_needed(plan, options, record)

        log: List[ExecutionLogEntry] = []
        for group in self._transaction_groups(plan, options):
            if token.cancelled:
                if log:
                    self._ledger.mark_failed(record, log)
                    report.status = record.status
                token.raise_if_cancelled(f"statement {group[0][0]}")
            self._run_group(group, record, log, report)

        self._ledger.mark_applied(record, log)
        report.status = record.status
        logger.info(
            f"[ApplyExecutor] Applied {record.id}: {len(plan.statements)} statement(s) "
            f"in {report.total_duration_ms:.1f} ms"
        )
        return report

    def dry_run(self, plan: MigrationPlan) -> ApplyReport:
        """Validate every statement offline; touches neither the database nor the ledger."""
        report = ApplyReport(
            record_id=None, status=None, dialect=plan.dialect.value, dry_run=True, warnings=list(plan.warnings)
        )
        for index, statement in enumerate(plan.statements):
            problems = list(self._validator.validate_statement(statement.sql, plan.dialect))
            if statement.dialect is not plan.dialect:
                problems.append(f"statement rendered for {statement.dialect.value}, plan targets {plan.dialect.value}")
            report.results.append(StatementResult(
                index=index,
                sql=statement.sql,
                status="invalid" if problems else "validated",
                error="; ".join(problems) or None,
            ))
        invalid = sum(1 for r in report.results if r.status == "invalid")
        logger.info(f"[ApplyExecutor] Dry run: {len(report.results)} statement(s), {invalid} invalid")
        return report

    # ------------------------------------------------------------------

    def _resolve_record(self, plan: MigrationPlan) -> MigrationRecord:
        """
        The record this run executes under.

        A plan without a reserved record always gets a fresh Pending record,
        even when an older record holds the same statements. A reserved record
        is resumed when Pending, reported when Applied, and replaced by a new
        attempt when it Failed or was rolled back.
        """
        if plan.record_id is None:
            return self._ledger.record_pending(plan)

        record = self._ledger.get(plan.record_id)
        if record is None:
            raise SchemaSyncError(f"Migration {plan.record_id} is not in the ledger")
        self._ledger.verify(record)
        checksum = compute_checksum(plan.sql_statements())
        if checksum != record.checksum:
            logger.error(f"[ApplyExecutor] Plan statements differ from migration {record.id}")
            raise DriftDetected(record.id, record.checksum, checksum)

        if record.status is MigrationStatus.APPLIED:
            return record
        if record.status is MigrationStatus.PENDING:
            logger.info(f"[ApplyExecutor] Resuming pending record {record.id}")
            return record
        logger.info(f"[ApplyExecutor] Migration {record.id} is {record.status.value}, recording a new attempt")
        return self._ledger.record_pending(plan)

    def _backup_if_needed(self, plan: MigrationPlan, options: ApplyOptions, record: MigrationRecord) -> bool:
        if not options.backup or not plan.destructive:
            return False
        try:
            location = self._driver.backup(record.id)
        except Exception as e:
            logger.error(f"[ApplyExecutor] Backup before {record.id} failed: {e}")
            self._ledger.mark_failed(record, [])
            raise BackupFailed(f"Backup failed, migration not started: {e}", record_id=record.id) from e
        logger.info(f"[ApplyExecutor] Backup written to {location}")
        return True

    def _transaction_groups(self, plan: MigrationPlan, options: ApplyOptions):
        indexed = list(enumerate(plan.statements))
        if options.per_migration_transaction and capabilities_for(plan.dialect).transactional_ddl:
            return [indexed]
        if options.per_migration_transaction:
            logger.warning(
                f"[ApplyExecutor] {plan.dialect.value} has no transactional DDL; "
                f"committing statement by statement"
            )
        return [[item] for item in indexed]

    def _run_group(self, group, record: MigrationRecord, log: List[ExecutionLogEntry], report: ApplyReport) -> None:
        pending: List[ExecutionLogEntry] = []
        index, statement = group[0]
        try:
            with self._driver.transaction():
                for index, statement in group:
                    pending.append(self._execute(index, statement))
        except self._driver.error_types as e:
            for entry in pending:
                entry.status = "rolled_back"
            failed = ExecutionLogEntry(index=index, sql=statement.sql, status="failed",
                                       error=str(e))
            log.extend(pending + [failed])
            self._record_results(report, pending + [failed])
            self._ledger.mark_failed(record, log)
            report.status = record.status
            logger.error(f"[ApplyExecutor] Statement {index} of {record.id} failed: {e}")
            raise ApplyFailure(
                f"Statement {index} failed: {e}",
                record_id=record.id,
                sql=statement.sql,
                statement_index=index,
            ) from e
        log.extend(pending)
        self._record_results(report, pending)

    def _execute(self, index: int, statement: PlannedStatement) -> ExecutionLogEntry:
        if statement.heavy:
            logger.warning(f"[ApplyExecutor] Heavy operation: {statement.description or statement.sql}")
        started = time.perf_counter()
        self._driver.execute(statement.sql)
        duration = (time.perf_counter() - started) * 1000
        logger.debug(f"[ApplyExecutor] Executed statement {index} in {duration:.1f} ms")
        return ExecutionLogEntry(index=index, sql=statement.sql, status="executed", duration_ms=duration)

    @staticmethod
    def _record_results(report: ApplyReport, entries: List[ExecutionLogEntry]) -> None:
        for entry in entries:
            report.results.append(StatementResult(
                index=entry.index,
                sql=entry.sql,
                status=entry.status,
                duration_ms=entry.duration_ms,
                error=entry.error,
            ))
