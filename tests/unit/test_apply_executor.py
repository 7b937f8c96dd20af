"""Unit tests for ApplyExecutor."""

import unittest
from dataclasses import replace

from schema_sync.domain.entities.dialect import Dialect
from schema_sync.domain.entities.evolution import PlannedStatement
from schema_sync.domain.entities.execution import ApplyOptions
from schema_sync.domain.entities.history import MigrationStatus
from schema_sync.domain.exceptions import (
    ApplyFailure, BackupFailed, ConfigurationError, DriftDetected, OperationCancelled, SchemaSyncError,
)
from schema_sync.domain.services.apply_executor import ApplyExecutor
from schema_sync.domain.services.cancellation import CancellationToken
from schema_sync.domain.services.history_ledger import HistoryLedger
from schema_sync.infrastructure.validators.sql_validator import SQLValidator
from tests.fixtures.mock_services import FakeDriver, FakeDriverError, InMemoryLedgerStore, SteppingClock
from tests.fixtures.test_data import TestDataFactory

CREATE_A = 'CREATE TABLE "a" ("id" INTEGER)'
CREATE_B = 'CREATE TABLE "b" ("id" INTEGER)'
BROKEN = 'CREATE TABLE "boom" ("id" INTEGER)'


class TestApplyExecutor(unittest.TestCase):
    """Test ApplyExecutor functionality."""

    def setUp(self):
        self.store = InMemoryLedgerStore()
        self.ledger = HistoryLedger(self.store, clock=SteppingClock())
        self.driver = FakeDriver(fail_on="boom")
        self.executor = ApplyExecutor(self.driver, self.ledger, SQLValidator("sqlite"))

    def executor_for(self, driver: FakeDriver) -> ApplyExecutor:
        return ApplyExecutor(driver, self.ledger, SQLValidator(driver.dialect))

    def test_dry_run_touches_nothing(self):
        plan = TestDataFactory.create_plan([CREATE_A, 'ALTER TABLE "a" ALTER COLUMN "id" TYPE BIGINT'])

        report = self.executor.apply(plan, ApplyOptions(dry_run=True))

        self.assertTrue(report.dry_run)
        self.assertEqual([r.status for r in report.results], ["validated", "invalid"])
        self.assertIn("sqlite does not support ALTER COLUMN ... TYPE", report.results[1].error)
        self.assertFalse(report.succeeded)
        self.assertEqual(self.driver.executed, [])
        self.assertEqual(self.store.records, {})

    def test_dry_run_without_database(self):
        executor = ApplyExecutor(None, None, SQLValidator("postgres"))
        plan = TestDataFactory.create_plan([CREATE_A], dialect=Dialect.POSTGRES)

        report = executor.dry_run(plan)

        self.assertTrue(report.succeeded)
        self.assertIsNone(report.record_id)

    def test_apply_records_applied_migration(self):
        plan = TestDataFactory.create_plan([CREATE_A, CREATE_B])

        report = self.executor.apply(plan)

        self.assertTrue(report.succeeded)
        self.assertEqual(report.status, MigrationStatus.APPLIED)
        self.assertEqual(self.driver.committed, [[CREATE_A, CREATE_B]])
        record = self.ledger.get(report.record_id)
        self.assertEqual(record.status, MigrationStatus.APPLIED)
        self.assertEqual(record.executed_statements(), [CREATE_A, CREATE_B])

    def test_failure_rolls_back_transactional_plan(self):
        plan = TestDataFactory.create_plan([CREATE_A, BROKEN, CREATE_B])

        with self.assertRaises(ApplyFailure) as ctx:
            self.executor.apply(plan)

        error = ctx.exception
        self.assertEqual(error.statement_index, 1)
        self.assertEqual(error.sql, BROKEN)
        self.assertEqual(self.driver.rolled_back, [[CREATE_A]])
        self.assertNotIn(CREATE_B, self.driver.executed)

        record = self.ledger.get(error.record_id)
        self.assertEqual(record.status, MigrationStatus.FAILED)
        self.assertEqual([e.status for e in record.execution_log], ["rolled_back", "failed"])
        self.assertEqual(record.executed_statements(), [])

    def test_failure_keeps_committed_prefix_without_transactional_ddl(self):
        driver = FakeDriver(dialect=Dialect.MYSQL, fail_on="boom")
        plan = TestDataFactory.create_plan(["CREATE TABLE `a` (`id` INT)", "CREATE TABLE `boom` (`id` INT)",
                                            "CREATE TABLE `b` (`id` INT)"], dialect=Dialect.MYSQL)

        with self.assertRaises(ApplyFailure) as ctx:
            self.executor_for(driver).apply(plan)

        self.assertEqual(driver.committed, [["CREATE TABLE `a` (`id` INT)"]])
        record = self.ledger.get(ctx.exception.record_id)
        self.assertEqual(record.status, MigrationStatus.FAILED)
        self.assertEqual(record.executed_statements(), ["CREATE TABLE `a` (`id` INT)"])

    def test_reapplying_reserved_plan_is_skipped(self):
        plan = self.ledger.reserve(TestDataFactory.create_plan([CREATE_A]))
        first = self.executor.apply(plan)

        second = self.executor.apply(plan)

        self.assertTrue(second.skipped)
        self.assertTrue(second.succeeded)
        self.assertEqual(second.record_id, first.record_id)
        self.assertEqual(second.record_id, plan.record_id)
        self.assertEqual(self.driver.executed, [CREATE_A])
        self.assertEqual(len(self.store.records), 1)

    def test_identical_statements_from_a_new_plan_run_again(self):
        # e.g. a column re-added after an earlier migration dropped it
        first = self.executor.apply(TestDataFactory.create_plan([CREATE_A]))

        second = self.executor.apply(TestDataFactory.create_plan([CREATE_A]))

        self.assertFalse(second.skipped)
        self.assertNotEqual(second.record_id, first.record_id)
        self.assertEqual(self.driver.executed, [CREATE_A, CREATE_A])
        self.assertEqual(
            [r.status for r in self.ledger.list_records()], [MigrationStatus.APPLIED, MigrationStatus.APPLIED]
        )

    def test_reserved_pending_record_is_resumed(self):
        plan = self.ledger.reserve(TestDataFactory.create_plan([CREATE_A]))

        report = self.executor.apply(plan)

        self.assertEqual(report.record_id, plan.record_id)
        self.assertEqual(report.status, MigrationStatus.APPLIED)
        self.assertEqual(len(self.store.records), 1)

    def test_failed_reserved_plan_is_retried_under_new_record(self):
        plan = self.ledger.reserve(TestDataFactory.create_plan([CREATE_A, BROKEN]))
        with self.assertRaises(ApplyFailure):
            self.executor.apply(plan)
        self.driver.fail_on = None

        report = self.executor.apply(plan)

        self.assertEqual(report.status, MigrationStatus.APPLIED)
        self.assertNotEqual(report.record_id, plan.record_id)
        self.assertEqual(self.ledger.get(plan.record_id).status, MigrationStatus.FAILED)

    def test_reserved_plan_with_changed_statements_is_drift(self):
        plan = self.ledger.reserve(TestDataFactory.create_plan([CREATE_A]))
        edited = replace(plan, statements=(PlannedStatement(sql=CREATE_B, dialect=Dialect.SQLITE),))

        with self.assertRaises(DriftDetected) as ctx:
            self.executor.apply(edited)

        self.assertEqual(ctx.exception.record_id, plan.record_id)
        self.assertEqual(self.driver.executed, [])

    def test_unknown_reserved_record(self):
        plan = replace(TestDataFactory.create_plan([CREATE_A]), record_id="19990101000000_0001")

        with self.assertRaises(SchemaSyncError):
            self.executor.apply(plan)
        self.assertEqual(self.driver.executed, [])

    def test_plan_for_another_dialect_is_refused(self):
        plan = TestDataFactory.create_plan([CREATE_A], dialect=Dialect.POSTGRES)

        with self.assertRaises(ConfigurationError):
            self.executor.apply(plan)

        self.assertEqual(self.driver.executed, [])
        self.assertEqual(self.store.records, {})

    def test_backup_only_for_destructive_plans(self):
        safe = TestDataFactory.create_plan([CREATE_A])
        report = self.executor.apply(safe, ApplyOptions(backup=True))
        self.assertFalse(report.backup_taken)

        destructive = TestDataFactory.create_plan(['DROP TABLE "a"'], destructive=True)
        report = self.executor.apply(destructive, ApplyOptions(backup=True))
        self.assertTrue(report.backup_taken)
        self.assertEqual(self.driver.backups, [report.record_id])

    def test_backup_failure_prevents_apply(self):
        driver = FakeDriver(backup_error=FakeDriverError("disk full"))
        plan = TestDataFactory.create_plan(['DROP TABLE "a"'], destructive=True)

        with self.assertRaises(BackupFailed) as ctx:
            self.executor_for(driver).apply(plan, ApplyOptions(backup=True))

        self.assertEqual(driver.executed, [])
        self.assertEqual(self.ledger.get(ctx.exception.record_id).status, MigrationStatus.FAILED)

    def test_cancel_before_start(self):
        token = CancellationToken()
        token.cancel()
        plan = TestDataFactory.create_plan([CREATE_A])

        with self.assertRaises(OperationCancelled):
            self.executor.apply(plan, cancel_token=token)

        self.assertEqual(self.driver.executed, [])
        self.assertEqual(self.ledger.list_records()[0].status, MigrationStatus.PENDING)

    def test_cancel_between_statements(self):
        token = CancellationToken()
        driver = FakeDriver(dialect=Dialect.MYSQL)
        driver.on_execute = lambda sql: token.cancel("by operator")
        plan = TestDataFactory.create_plan(["CREATE TABLE `a` (`id` INT)", "CREATE TABLE `b` (`id` INT)"],
                                           dialect=Dialect.MYSQL)

        with self.assertRaises(OperationCancelled) as ctx:
            self.executor_for(driver).apply(plan, cancel_token=token)

        self.assertIn("by operator", ctx.exception.message)
        self.assertEqual(driver.executed, ["CREATE TABLE `a` (`id` INT)"])
        record = self.ledger.list_records()[0]
        self.assertEqual(record.status, MigrationStatus.FAILED)
        self.assertEqual(record.executed_statements(), ["CREATE TABLE `a` (`id` INT)"])

    def test_empty_plan(self):
        report = self.executor.apply(TestDataFactory.create_plan([]))
        self.assertTrue(report.skipped)
        self.assertEqual(self.store.records, {})


if __name__ == '__main__':
    unittest.main()
