import logging
from dataclasses import replace
from datetime import datetime
from typing import Iterable, List, Optional

from schema_sync.domain.entities.evolution import MigrationPlan
from schema_sync.domain.entities.history import (
    ALLOWED_TRANSITIONS, ExecutionLogEntry, MigrationRecord, MigrationStatus, compute_checksum,
)
from schema_sync.domain.exceptions import DriftDetected, InvalidTransition
from schema_sync.domain.repositories.interfaces import ILedgerStore

logger = logging.getLogger(__name__)


class HistoryLedger:
    """
    Append-only record of migration attempts.
    Single Responsibility: record lifecycle and drift detection.
    """

    def __init__(self, store: ILedgerStore, clock=datetime.now):
        self._store = store
        self._clock = clock

    def ensure_storage(self) -> None:
        self._store.ensure_storage()

    def record_pending(self, plan: MigrationPlan) -> MigrationRecord:
        """Append a Pending record for ``plan`` with its checksum."""
        statements = plan.sql_statements()
        now = self._clock()
        sequence = len(self._store.list_records()) + 1
        record = MigrationRecord(
            id=f"{now.strftime('%Y%m%d%H%M%S')}_{sequence:04d}",
            checksum=compute_checksum(statements),
            statements=statements,
            dialect=plan.dialect.value,
            status=MigrationStatus.PENDING,
            created_at=now,
            description=plan.description,
        )
        self._store.insert(record)
        logger.info(f"[HistoryLedger] Recorded pending migration {record.id} ({len(statements)} statements)")
        return record

    def reserve(self, plan: MigrationPlan) -> MigrationPlan:
        """Record ``plan`` as Pending and return it bound to that record."""
        record = self.record_pending(plan)
        return replace(plan, record_id=record.id)

    def mark_applied(self, record: MigrationRecord, log: Iterable[ExecutionLogEntry]) -> MigrationRecord:
        self._transition(record, MigrationStatus.APPLIED)
        record.execution_log = list(log)
        record.applied_at = self._clock()
        self._store.update(record)
        logger.info(f"[HistoryLedger] Migration {record.id} applied")
        return record

    def mark_failed(self, record: MigrationRecord, log: Iterable[ExecutionLogEntry]) -> MigrationRecord:
        """Failed keeps the executed prefix so an operator can see how far it got."""
        self._transition(record, MigrationStatus.FAILED)
        record.execution_log = list(log)
        self._store.update(record)
        logger.error(f"[HistoryLedger] Migration {record.id} failed after {len(record.executed_statements())} statement(s)")
        return record

    def mark_rolled_back(self, record: MigrationRecord) -> MigrationRecord:
        """Operator acknowledgement that a failed migration was cleaned up."""
        self._transition(record, MigrationStatus.ROLLED_BACK)
        self._store.update(record)
        logger.info(f"[HistoryLedger] Migration {record.id} marked rolled back")
        return record

    def verify(self, record: MigrationRecord) -> MigrationRecord:
        actual = compute_checksum(record.statements)
        if actual != record.checksum:
            logger.error(f"[HistoryLedger] Drift detected on migration {record.id}")
            raise DriftDetected(record.id, record.checksum, actual)
        return record

    def verify_all(self) -> List[MigrationRecord]:
        """Verify every record that left Pending; raises on the first drift."""
        checked = []
        for record in self._store.list_records():
            if record.status is MigrationStatus.PENDING:
                continue
            checked.append(self.verify(record))
        logger.info(f"[HistoryLedger] Verified {len(checked)} record(s)")
        return checked

    def list_records(self, status: Optional[MigrationStatus] = None) -> List[MigrationRecord]:
        return self._store.list_records(status)

    def get(self, record_id: str) -> Optional[MigrationRecord]:
        return self._store.get(record_id)

    def find_by_checksum(self, checksum: str) -> List[MigrationRecord]:
        return self._store.find_by_checksum(checksum)

    def acquire_lock(self, holder: str, timeout_seconds: int) -> None:
        self._store.acquire_lock(holder, timeout_seconds)
        logger.debug(f"[HistoryLedger] Lock acquired by {holder}")

    def release_lock(self, holder: str) -> None:
        self._store.release_lock(holder)
        logger.debug(f"[HistoryLedger] Lock released by {holder}")

    @staticmethod
    def _transition(record: MigrationRecord, status: MigrationStatus) -> None:
        if status not in ALLOWED_TRANSITIONS[record.status]:
            raise InvalidTransition(
                f"Migration {record.id} cannot move from {record.status.value} to {status.value}"
            )
        record.status = status
