"""Unit tests for DiffEngine."""

import unittest
from dataclasses import replace

from schema_sync.domain.entities.evolution import ChangeType
from schema_sync.domain.entities.rules import DiffPolicy
from schema_sync.domain.entities.schema import ForeignKey, IndexSchema, UniqueConstraint
from schema_sync.domain.exceptions import DestructiveChangeRejected, ModelError
from schema_sync.domain.services.diff_engine import DiffEngine
from schema_sync.domain.services.type_mapper import TypeMapper
from tests.fixtures.test_data import TestDataFactory, col


class TestDiffEngine(unittest.TestCase):
    """Test DiffEngine functionality."""

    def setUp(self):
        self.engine = DiffEngine(TypeMapper(), "postgres")
        self.users = TestDataFactory.create_users_table()
        self.posts = TestDataFactory.create_posts_table()

    def kinds(self, changes):
        return [c.change_type for c in changes]

    def test_identical_schemas_produce_no_changes(self):
        desired = TestDataFactory.snapshot(self.users, self.posts)
        self.assertEqual(self.engine.compute_diff(desired, desired), [])

    def test_create_table_for_new_table(self):
        desired = TestDataFactory.snapshot(self.users, self.posts)
        actual = TestDataFactory.snapshot(self.users)

        changes = self.engine.compute_diff(desired, actual)

        self.assertEqual(self.kinds(changes), [ChangeType.ADD_TABLE, ChangeType.ADD_INDEX])
        self.assertEqual(changes[0].table, "posts")
        self.assertEqual(changes[1].index.name, "idx_posts_user_id")

    def test_dropped_column_when_allowed(self):
        desired = TestDataFactory.snapshot(self.users)
        actual = TestDataFactory.snapshot(TestDataFactory.create_users_table(with_bio=True))

        changes = self.engine.compute_diff(desired, actual, DiffPolicy(allow_column_removal=True))

        self.assertEqual(len(changes), 1)
        self.assertEqual(changes[0].change_type, ChangeType.DROP_COLUMN)
        self.assertEqual(changes[0].describe(), "drop_column users.bio")

    def test_dropped_column_rejected_by_default(self):
        desired = TestDataFactory.snapshot(self.users)
        actual = TestDataFactory.snapshot(TestDataFactory.create_users_table(with_bio=True))

        with self.assertRaises(DestructiveChangeRejected) as ctx:
            self.engine.compute_diff(desired, actual)
        self.assertEqual(ctx.exception.rejected, ["column 'users.bio'"])

    def test_rejection_lists_every_offender(self):
        desired = TestDataFactory.snapshot(self.users)
        actual = TestDataFactory.snapshot(TestDataFactory.create_users_table(with_bio=True), self.posts)

        with self.assertRaises(DestructiveChangeRejected) as ctx:
            self.engine.compute_diff(desired, actual, DiffPolicy(detect_renames=False))
        self.assertEqual(sorted(ctx.exception.rejected), ["column 'users.bio'", "table 'posts'"])

    def test_table_removal_allowed(self):
        desired = TestDataFactory.snapshot(self.users)
        actual = TestDataFactory.snapshot(self.users, self.posts)

        changes = self.engine.compute_diff(desired, actual, DiffPolicy(allow_table_removal=True))

        self.assertEqual(self.kinds(changes), [ChangeType.DROP_TABLE])
        self.assertEqual(changes[0].table, "posts")

    def test_type_and_nullability_changes(self):
        target = replace(self.users, columns=[
            col("id", "bigint", nullable=False),
            col("email", "text(500)", nullable=False),
            col("name", "text", nullable=False),
        ])
        changes = self.engine.compute_diff(TestDataFactory.snapshot(target), TestDataFactory.snapshot(self.users))

        self.assertEqual(self.kinds(changes), [ChangeType.ALTER_COLUMN_TYPE, ChangeType.ALTER_COLUMN_NULLABILITY])
        self.assertEqual(changes[0].from_type.key(), "text(320)")
        self.assertEqual(changes[0].to_type.key(), "text(500)")
        self.assertIs(changes[0].source, self.users)
        self.assertIs(changes[0].target, target)

    def test_strict_mode_rejects_lossy_changes(self):
        target = replace(self.users, columns=[
            col("id", "integer", nullable=False),
            col("email", "text(320)", nullable=False),
            col("name", "text", nullable=False),
        ])
        desired = TestDataFactory.snapshot(target)
        actual = TestDataFactory.snapshot(self.users)

        with self.assertRaises(DestructiveChangeRejected) as ctx:
            self.engine.compute_diff(desired, actual, DiffPolicy(strict_mode=True))
        self.assertEqual(len(ctx.exception.rejected), 2)

        # widening is fine in strict mode
        widened = replace(self.users, columns=[
            col("id", "bigint", nullable=False),
            col("email", "text", nullable=False),
            col("name", "text"),
        ])
        changes = self.engine.compute_diff(TestDataFactory.snapshot(widened), actual, DiffPolicy(strict_mode=True))
        self.assertEqual(self.kinds(changes), [ChangeType.ALTER_COLUMN_TYPE])

    def test_explicit_column_rename_hint(self):
        target = replace(self.users, columns=[
            col("id", "bigint", nullable=False),
            col("email", "text(320)", nullable=False),
            col("full_name", "text", renamed_from="name"),
        ])
        changes = self.engine.compute_diff(TestDataFactory.snapshot(target), TestDataFactory.snapshot(self.users))

        self.assertEqual(self.kinds(changes), [ChangeType.RENAME_COLUMN])
        self.assertEqual((changes[0].old_name, changes[0].new_name), ("name", "full_name"))

    def test_heuristic_rename_requires_unique_match(self):
        target = replace(self.users, columns=[
            col("id", "bigint", nullable=False),
            col("email", "text(320)", nullable=False),
            col("display_name", "text"),
        ])
        changes = self.engine.compute_diff(TestDataFactory.snapshot(target), TestDataFactory.snapshot(self.users))
        self.assertEqual(self.kinds(changes), [ChangeType.RENAME_COLUMN])

        # two equally plausible candidates: no rename
        ambiguous = replace(self.users, columns=[
            col("id", "bigint", nullable=False),
            col("email", "text(320)", nullable=False),
            col("first_name", "text"),
            col("last_name", "text"),
        ])
        changes = self.engine.compute_diff(
            TestDataFactory.snapshot(ambiguous),
            TestDataFactory.snapshot(self.users),
            DiffPolicy(allow_column_removal=True),
        )
        self.assertEqual(self.kinds(changes), [ChangeType.DROP_COLUMN, ChangeType.ADD_COLUMN, ChangeType.ADD_COLUMN])

    def test_rename_detection_can_be_disabled(self):
        target = replace(self.users, columns=[
            col("id", "bigint", nullable=False),
            col("email", "text(320)", nullable=False),
            col("display_name", "text"),
        ])
        changes = self.engine.compute_diff(
            TestDataFactory.snapshot(target),
            TestDataFactory.snapshot(self.users),
            DiffPolicy(allow_column_removal=True, detect_renames=False),
        )
        self.assertEqual(self.kinds(changes), [ChangeType.DROP_COLUMN, ChangeType.ADD_COLUMN])

    def test_rename_translates_dependent_constraints(self):
        """A unique constraint on a renamed column is not reissued."""
        actual = replace(self.users, constraints=self.users.constraints + (
            UniqueConstraint(columns=("name",), name="uq_users_name"),
        ))
        target = replace(
            self.users,
            columns=[
                col("id", "bigint", nullable=False),
                col("email", "text(320)", nullable=False),
                col("handle", "text", renamed_from="name"),
            ],
            constraints=self.users.constraints + (UniqueConstraint(columns=("handle",), name="uq_users_handle"),),
        )
        changes = self.engine.compute_diff(TestDataFactory.snapshot(target), TestDataFactory.snapshot(actual))
        self.assertEqual(self.kinds(changes), [ChangeType.RENAME_COLUMN])

    def test_table_rename_hint(self):
        members = replace(self.users, name="members", renamed_from="users")
        changes = self.engine.compute_diff(TestDataFactory.snapshot(members), TestDataFactory.snapshot(self.users))

        self.assertEqual(self.kinds(changes), [ChangeType.RENAME_TABLE])
        self.assertEqual((changes[0].table, changes[0].new_name), ("users", "members"))

    def test_constraints_compared_by_definition_not_name(self):
        unnamed = replace(self.users, constraints=tuple(c.with_name(None) for c in self.users.constraints))
        changes = self.engine.compute_diff(TestDataFactory.snapshot(self.users), TestDataFactory.snapshot(unnamed))
        self.assertEqual(changes, [])

    def test_index_and_constraint_changes_in_group_order(self):
        actual = replace(
            self.posts,
            indexes=(IndexSchema(name="idx_posts_title", columns=("title",)),),
            constraints=(self.posts.constraints[0],),
        )
        desired = TestDataFactory.snapshot(self.users, self.posts)
        changes = self.engine.compute_diff(desired, TestDataFactory.snapshot(self.users, actual))

        self.assertEqual(self.kinds(changes), [ChangeType.DROP_INDEX, ChangeType.ADD_INDEX, ChangeType.ADD_CONSTRAINT])

    def test_output_is_deterministic(self):
        desired = TestDataFactory.snapshot(self.posts, self.users)
        first = self.engine.compute_diff(desired, TestDataFactory.create_empty_schema())
        second = self.engine.compute_diff(
            TestDataFactory.snapshot(self.users, self.posts), TestDataFactory.create_empty_schema()
        )
        self.assertEqual([c.describe() for c in first], [c.describe() for c in second])
        self.assertEqual([c.table for c in first], ["posts", "posts", "users"])

    def test_invalid_snapshot_raises_model_error(self):
        broken = replace(self.posts, constraints=(
            ForeignKey(columns=("user_id",), referenced_table="accounts", referenced_columns=("id",)),
        ))
        with self.assertRaises(ModelError) as ctx:
            self.engine.compute_diff(TestDataFactory.snapshot(broken), TestDataFactory.create_empty_schema())
        self.assertIn("accounts", ctx.exception.problems[0])

    def test_type_overrides_count_as_converged(self):
        engine = DiffEngine(TypeMapper(), "postgres", type_overrides={"text": "CITEXT"})
        actual = replace(self.users, columns=[
            col("id", "bigint", nullable=False),
            col("email", "text(320)", nullable=False),
            replace(col("name", "text"), field_type=TestDataFactory.custom_type("citext")),
        ])
        changes = engine.compute_diff(TestDataFactory.snapshot(self.users), TestDataFactory.snapshot(actual))
        self.assertEqual(changes, [])


if __name__ == '__main__':
    unittest.main()
