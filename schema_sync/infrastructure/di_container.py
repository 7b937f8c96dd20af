"""Dependency Injection Container."""

import logging
from typing import Optional

from schema_sync.domain.entities.dialect import Dialect
from schema_sync.domain.entities.rules import SyncConfig

logger = logging.getLogger(__name__)


class DIContainer:
    """
    Dependency Injection Container.
    Follows Dependency Inversion Principle.

    Services are built lazily from one SyncConfig and cached for the
    lifetime of the container.
    """

    def __init__(self, config: Optional[SyncConfig] = None):
        self._config = config or SyncConfig()
        self._models_path: Optional[str] = None
        self._services = {}

    @property
    def config(self) -> SyncConfig:
        return self._config

    def configure(self, config: SyncConfig, models_path: Optional[str] = None):
        """Configure the container. Drops every cached service."""
        self.close()
        self._config = config.validate()
        self._models_path = models_path

    def get_type_mapper(self):
        """Get type mapper."""
        if "type_mapper" not in self._services:
            from schema_sync.domain.services.type_mapper import TypeMapper
            self._services["type_mapper"] = TypeMapper()
        return self._services["type_mapper"]

    def get_driver(self):
        """Get database driver."""
        if "driver" not in self._services:
            from schema_sync.infrastructure.database.drivers import create_driver
            self._services["driver"] = create_driver(
                self._config.database_url, self._config.dialect, self._config.backup_directory
            )
            logger.info(f"[DIContainer] Opened {self._config.dialect} driver")
        return self._services["driver"]

    def get_ledger_repository(self):
        """Get ledger store."""
        if "ledger_repository" not in self._services:
            from schema_sync.infrastructure.repositories.ledger_repository import SqlLedgerRepository
            self._services["ledger_repository"] = SqlLedgerRepository(
                self.get_driver(), history_table=self._config.history_table
            )
        return self._services["ledger_repository"]

    def get_ledger(self):
        """Get history ledger."""
        if "ledger" not in self._services:
            from schema_sync.domain.services.history_ledger import HistoryLedger
            ledger = HistoryLedger(self.get_ledger_repository())
            ledger.ensure_storage()
            self._services["ledger"] = ledger
        return self._services["ledger"]

    def get_inspector(self):
        """Get database inspector."""
        if "inspector" not in self._services:
            from schema_sync.infrastructure.database.inspector import PostgresInspector, SqliteInspector

            exclude = self.get_ledger_repository().table_names
            driver = self.get_driver()
            if self._config.target_dialect is Dialect.POSTGRES:
                self._services["inspector"] = PostgresInspector(
                    driver.dsn, self.get_type_mapper(), exclude_tables=exclude
                )
            else:
                self._services["inspector"] = SqliteInspector(driver, self.get_type_mapper(), exclude_tables=exclude)
        return self._services["inspector"]

    def get_schema_repository(self):
        """Get actual-schema repository."""
        if "schema_repository" not in self._services:
            from schema_sync.infrastructure.repositories.schema_repository import SchemaRepository
            self._services["schema_repository"] = SchemaRepository(self.get_inspector())
        return self._services["schema_repository"]

    def get_provider(self):
        """Get desired-schema provider."""
        if "provider" not in self._services:
            from schema_sync.infrastructure.repositories.model_repository import JsonSchemaProvider
            self._services["provider"] = JsonSchemaProvider(
                path=self._models_path,
                naming=self._config.naming,
                **self._config.model_options,
                dialect=self._config.dialect,
            )
        return self._services["provider"]

    def get_diff_engine(self):
        """Get diff engine."""
        if "diff_engine" not in self._services:
            from schema_sync.domain.services.diff_engine import DiffEngine
            self._services["diff_engine"] = DiffEngine(
                self.get_type_mapper(), self._config.dialect, self._config.type_overrides
            )
        return self._services["diff_engine"]

    def get_migration_builder(self):
        """Get migration builder."""
        if "migration_builder" not in self._services:
            from schema_sync.domain.services.migration_builder import MigrationBuilder
            self._services["migration_builder"] = MigrationBuilder(
                self.get_type_mapper(), self._config.dialect, self._config.type_overrides
            )
        return self._services["migration_builder"]

    def get_planner(self):
        """Get migration planner."""
        if "planner" not in self._services:
            from schema_sync.domain.services.migration_planner import MigrationPlanner
            self._services["planner"] = MigrationPlanner(self.get_migration_builder())
        return self._services["planner"]

    def get_sql_validator(self):
        """Get SQL validator."""
        if "sql_validator" not in self._services:
            from schema_sync.infrastructure.validators.sql_validator import SQLValidator
            self._services["sql_validator"] = SQLValidator(self._config.dialect)
        return self._services["sql_validator"]

    def get_executor(self):
        """Get apply executor. Dry runs need neither a driver nor a ledger."""
        if "executor" not in self._services:
            from schema_sync.domain.services.apply_executor import ApplyExecutor
            if self._config.dry_run:
                executor = ApplyExecutor(None, None, self.get_sql_validator())
            else:
                executor = ApplyExecutor(self.get_driver(), self.get_ledger(), self.get_sql_validator())
            self._services["executor"] = executor
        return self._services["executor"]

    def get_orchestrator(self):
        """Get synchronization orchestrator."""
        from schema_sync.application.orchestrators.sync_orchestrator import SyncOrchestrator
        from schema_sync.application.use_case.analyze_schema import AnalyzeSchemaUseCase
        from schema_sync.application.use_case.apply_migration import ApplyMigrationUseCase
        from schema_sync.application.use_case.generate_migration import GenerateMigrationUseCase

        analyze_use_case = AnalyzeSchemaUseCase(self.get_schema_repository())
        generate_use_case = GenerateMigrationUseCase(
            self.get_diff_engine(),
            self.get_planner(),
            self.get_sql_validator(),
        )
        apply_use_case = ApplyMigrationUseCase(self.get_executor())
        ledger = None if self._config.dry_run else self.get_ledger()
        return SyncOrchestrator(
            analyze_use_case,
            generate_use_case,
            apply_use_case,
            ledger=ledger,
            config=self._config,
        )

    def close(self):
        """Close the database connection if one was opened."""
        driver = self._services.get("driver")
        if driver is not None:
            driver.close()
        self._services = {}
