"""Unit tests for HistoryLedger."""

import unittest

from schema_sync.domain.entities.history import ExecutionLogEntry, MigrationStatus, compute_checksum
from schema_sync.domain.exceptions import DriftDetected, InvalidTransition
from schema_sync.domain.services.history_ledger import HistoryLedger
from tests.fixtures.mock_services import InMemoryLedgerStore, SteppingClock
from tests.fixtures.test_data import TestDataFactory


class TestHistoryLedger(unittest.TestCase):
    """Test HistoryLedger functionality."""

    def setUp(self):
        self.store = InMemoryLedgerStore()
        self.ledger = HistoryLedger(self.store, clock=SteppingClock())
        self.plan = TestDataFactory.create_plan(['CREATE TABLE "a" ("id" INTEGER)', 'CREATE TABLE "b" ("id" INTEGER)'])

    def test_record_pending(self):
        record = self.ledger.record_pending(self.plan)

        self.assertEqual(record.id, "20240102030405_0001")
        self.assertEqual(record.status, MigrationStatus.PENDING)
        self.assertEqual(record.checksum, compute_checksum(self.plan.sql_statements()))
        self.assertEqual(record.dialect, "sqlite")
        self.assertEqual(record.description, "test plan")
        self.assertIn(record.id, self.store.records)

        second = self.ledger.record_pending(TestDataFactory.create_plan(["DROP TABLE x"]))
        self.assertEqual(second.id, "20240102030406_0002")

    def test_checksum_depends_on_order(self):
        self.assertNotEqual(compute_checksum(["a", "b"]), compute_checksum(["b", "a"]))
        self.assertEqual(len(compute_checksum([])), 64)

    def test_applied_lifecycle(self):
        record = self.ledger.record_pending(self.plan)
        log = [ExecutionLogEntry(index=0, sql=self.plan.statements[0].sql, status="executed")]

        self.ledger.mark_applied(record, log)

        stored = self.ledger.get(record.id)
        self.assertEqual(stored.status, MigrationStatus.APPLIED)
        self.assertIsNotNone(stored.applied_at)
        self.assertEqual(stored.executed_statements(), [self.plan.statements[0].sql])

        with self.assertRaises(InvalidTransition):
            self.ledger.mark_failed(record, [])

    def test_failed_then_rolled_back(self):
        record = self.ledger.record_pending(self.plan)
        self.ledger.mark_failed(record, [])
        self.ledger.mark_rolled_back(record)

        self.assertEqual(self.ledger.get(record.id).status, MigrationStatus.ROLLED_BACK)
        with self.assertRaises(InvalidTransition):
            self.ledger.mark_rolled_back(record)

    def test_pending_cannot_be_rolled_back(self):
        record = self.ledger.record_pending(self.plan)
        with self.assertRaises(InvalidTransition):
            self.ledger.mark_rolled_back(record)

    def test_verify_detects_tampering(self):
        record = self.ledger.record_pending(self.plan)
        self.ledger.mark_applied(record, [])
        self.store.records[record.id].statements = ('CREATE TABLE "a" ("id" BIGINT)',)

        with self.assertRaises(DriftDetected) as ctx:
            self.ledger.verify_all()
        self.assertEqual(ctx.exception.record_id, record.id)
        self.assertEqual(ctx.exception.expected, record.checksum)

    def test_verify_all_skips_pending(self):
        applied = self.ledger.record_pending(self.plan)
        self.ledger.mark_applied(applied, [])
        pending = self.ledger.record_pending(TestDataFactory.create_plan(["DROP TABLE x"]))
        self.store.records[pending.id].statements = ("DROP TABLE y",)

        checked = self.ledger.verify_all()

        self.assertEqual([r.id for r in checked], [applied.id])

    def test_list_records_by_status(self):
        first = self.ledger.record_pending(self.plan)
        self.ledger.mark_applied(first, [])
        self.ledger.record_pending(TestDataFactory.create_plan(["DROP TABLE x"]))

        self.assertEqual(len(self.ledger.list_records()), 2)
        self.assertEqual([r.id for r in self.ledger.list_records(MigrationStatus.APPLIED)], [first.id])
        self.assertEqual(self.ledger.find_by_checksum(first.checksum)[0].id, first.id)

    def test_record_serializes(self):
        record = self.ledger.record_pending(self.plan)
        data = record.to_dict()
        self.assertEqual(data["status"], "pending")
        self.assertEqual(data["created_at"], "2024-01-02T03:04:05")
        self.assertIsNone(data["applied_at"])
        self.assertEqual(len(data["statements"]), 2)


if __name__ == '__main__':
    unittest.main()
