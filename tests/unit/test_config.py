"""Unit tests for configuration loading and validation."""

import json
import os
import tempfile
import unittest

from schema_sync.domain.entities.dialect import Dialect
from schema_sync.domain.entities.rules import SyncConfig
from schema_sync.domain.exceptions import ConfigurationError
from schema_sync.infrastructure.di_container import DIContainer
from schema_sync.infrastructure.repositories.config_repository import ConfigRepository
from tests.fixtures.test_data import TestDataFactory


class TestConfigRepository(unittest.TestCase):
    """Test ConfigRepository functionality."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def write_config(self, data) -> str:
        path = os.path.join(self.tmp.name, "schema_sync.json")
        with open(path, "w", encoding="utf-8") as f:
            f.write(data if isinstance(data, str) else json.dumps(data))
        return path

    def test_defaults(self):
        config = ConfigRepository(environ={}).load()

        self.assertEqual(config.target_dialect, Dialect.SQLITE)
        self.assertIsNone(config.database_url)
        self.assertFalse(config.policy.allow_column_removal)
        self.assertTrue(config.policy.detect_renames)
        self.assertEqual(config.history_table, "schema_sync_history")

    def test_environment_supplies_connection(self):
        environ = {"DATABASE_URL": "postgresql://db/app", "SCHEMA_SYNC_DIALECT": "postgresql"}
        config = ConfigRepository(environ=environ).load()

        self.assertEqual(config.database_url, "postgresql://db/app")
        self.assertEqual(config.target_dialect, Dialect.POSTGRES)

    def test_precedence(self):
        """CLI overrides beat the file, which beats the environment."""
        path = self.write_config({"database_url": "sqlite:///file.db", "strict_mode": True})
        repository = ConfigRepository(path, environ={"SCHEMA_SYNC_DATABASE_URL": "sqlite:///env.db"})

        self.assertEqual(repository.load().database_url, "sqlite:///file.db")

        config = repository.load({"database_url": "sqlite:///cli.db", "strict_mode": None})
        self.assertEqual(config.database_url, "sqlite:///cli.db")
        self.assertTrue(config.strict_mode)

    def test_unknown_key_rejected(self):
        path = self.write_config({"colour": "blue"})
        with self.assertRaises(ConfigurationError) as ctx:
            ConfigRepository(path, environ={}).load()
        self.assertIn("colour", ctx.exception.message)

    def test_missing_or_malformed_file(self):
        with self.assertRaises(ConfigurationError):
            ConfigRepository(os.path.join(self.tmp.name, "absent.json"), environ={}).load()
        with self.assertRaises(ConfigurationError):
            ConfigRepository(self.write_config("{not json"), environ={}).load()
        with self.assertRaises(ConfigurationError):
            ConfigRepository(self.write_config("[1, 2]"), environ={}).load()

    def test_model_options_reach_provider(self):
        models = os.path.join(self.tmp.name, "models.json")
        with open(models, "w", encoding="utf-8") as f:
            json.dump(TestDataFactory.create_blog_document(), f)
        path = self.write_config({"index_foreign_keys": True, "add_updated_at_column": True})
        config = ConfigRepository(path, environ={}).load()
        container = DIContainer()
        container.configure(config, models_path=models)
        self.addCleanup(container.close)

        posts = container.get_provider().get_desired_schema().get("blog_posts")

        self.assertEqual(config.model_options["add_created_at_column"], False)
        self.assertIn("updated_at", posts.columns)
        self.assertNotIn("created_at", posts.columns)
        self.assertEqual(posts.indexes[-1].columns, ("author", "title"))


class TestSyncConfig(unittest.TestCase):
    """Test SyncConfig validation."""

    def test_every_problem_is_reported(self):
        config = SyncConfig(dialect="oracle", table_style="kebab", lock_timeout_seconds=0)
        with self.assertRaises(ConfigurationError) as ctx:
            config.validate()
        message = ctx.exception.message
        self.assertIn("unknown dialect 'oracle'", message)
        self.assertIn("table_style", message)
        self.assertIn("lock_timeout_seconds", message)

    def test_dry_run_with_backup_conflicts(self):
        with self.assertRaises(ConfigurationError):
            SyncConfig(dry_run=True, backup_before_migrate=True).validate()

    def test_naming_patterns_checked(self):
        with self.assertRaises(ConfigurationError) as ctx:
            SyncConfig(index_pattern="ix_{tbl}").validate()
        self.assertIn("unknown placeholders ['tbl']", ctx.exception.message)
        self.assertIn("must contain ['{table}']", ctx.exception.message)

    def test_type_overrides_checked(self):
        SyncConfig(type_overrides={"postgres:text": "CITEXT", "json": "TEXT"}).validate()
        with self.assertRaises(ConfigurationError) as ctx:
            SyncConfig(type_overrides={"oracle:text": "CLOB", "money": "NUMERIC", "uuid": " "}).validate()
        message = ctx.exception.message
        self.assertIn("unknown dialect 'oracle'", message)
        self.assertIn("'money'", message)
        self.assertIn("empty column type", message)

    def test_derived_views(self):
        config = SyncConfig(allow_table_removal=True, pluralize_tables=False, table_style="pascal_case")
        self.assertTrue(config.policy.allow_table_removal)
        self.assertEqual(config.naming.table_name("order_item"), "OrderItem")


if __name__ == '__main__':
    unittest.main()
