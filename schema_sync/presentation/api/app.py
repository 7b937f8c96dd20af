"""FastAPI application."""

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from schema_sync.application.dtos.evolution_dto import snapshot_to_dict
from schema_sync.domain.entities.history import MigrationRecord, MigrationStatus
from schema_sync.domain.entities.rules import DiffPolicy
from schema_sync.domain.exceptions import DestructiveChangeRejected, DriftDetected, SchemaSyncError
from schema_sync.infrastructure.di_container import DIContainer
from schema_sync.infrastructure.repositories.model_repository import JsonSchemaProvider


# Pydantic models for API
class ExecutionLogOutput(BaseModel):
    index: int
    sql: str
    status: str
    duration_ms: float = 0.0
    error: Optional[str] = None


class MigrationRecordOutput(BaseModel):
    """Output model for a ledger record."""
    id: str
    checksum: str
    statements: List[str]
    dialect: str
    status: MigrationStatus
    created_at: Optional[str] = None
    applied_at: Optional[str] = None
    execution_log: List[ExecutionLogOutput] = []
    description: str = ""

    @classmethod
    def from_record(cls, record: MigrationRecord) -> "MigrationRecordOutput":
        return cls(**record.to_dict())


class VerifyOutput(BaseModel):
    verified: int


class PlanPreviewInput(BaseModel):
    """Input model for a plan preview. Without ``models`` the served models file is used."""
    models: Optional[Dict[str, Any]] = None
    allow_column_removal: bool = False
    allow_table_removal: bool = False
    strict_mode: bool = False
    detect_renames: bool = True


class PlannedStatementOutput(BaseModel):
    sql: str
    reversible: bool
    heavy: bool
    destructive: bool
    description: str = ""


class PlanPreviewOutput(BaseModel):
    """Output model for a migration plan preview."""
    dialect: str
    description: str
    changes: List[str]
    statements: List[PlannedStatementOutput]
    irreversible: bool
    heavy: bool
    warnings: List[str]
    validation: Dict[str, Any]


def create_app(container: DIContainer) -> FastAPI:
    """Create the ledger read API over a configured container."""

    app = FastAPI(
        title="Schema Sync",
        description="Migration ledger and plan preview API",
        version="1.0.0"
    )

    @app.get("/")
    def root():
        """Root endpoint."""
        return {
            "name": "Schema Sync",
            "version": "1.0.0",
            "dialect": container.config.target_dialect.value,
            "endpoints": {
                "migrations": "/api/v1/migrations",
                "migration": "/api/v1/migrations/{record_id}",
                "verify": "/api/v1/verify",
                "schema": "/api/v1/schema",
                "plan": "/api/v1/plan",
            }
        }

    @app.get("/api/v1/migrations", response_model=List[MigrationRecordOutput])
    def list_migrations(status: Optional[MigrationStatus] = None):
        """List ledger records, oldest first."""
        records = container.get_ledger().list_records(status)
        return [MigrationRecordOutput.from_record(r) for r in records]

    @app.get("/api/v1/migrations/{record_id}", response_model=MigrationRecordOutput)
    def get_migration(record_id: str):
        record = container.get_ledger().get(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Migration not found")
        return MigrationRecordOutput.from_record(record)

    @app.get("/api/v1/verify", response_model=VerifyOutput)
    def verify_migrations():
        """Recompute checksums of every non-pending record."""
        try:
            records = container.get_ledger().verify_all()
        except DriftDetected as e:
            raise HTTPException(
                status_code=409,
                detail={"record_id": e.record_id, "expected": e.expected, "actual": e.actual},
            )
        return VerifyOutput(verified=len(records))

    @app.get("/api/v1/schema")
    def current_schema():
        """Introspect the database."""
        return snapshot_to_dict(container.get_orchestrator().analyze())

    @app.post("/api/v1/plan", response_model=PlanPreviewOutput)
    def preview_plan(input_data: PlanPreviewInput):
        """
        Diff the models against the database and return the plan.
        Nothing is executed or recorded.
        """
        config = container.config
        policy = DiffPolicy(
            allow_column_removal=input_data.allow_column_removal,
            allow_table_removal=input_data.allow_table_removal,
            strict_mode=input_data.strict_mode,
            detect_renames=input_data.detect_renames,
        )
        try:
            if input_data.models is not None:
                provider = JsonSchemaProvider(
                    document=input_data.models,
                    naming=config.naming,
                    **config.model_options,
                    dialect=config.dialect,
                )
            else:
                provider = container.get_provider()
            response = container.get_orchestrator().generate(provider.get_desired_schema(), policy)
        except DestructiveChangeRejected as e:
            raise HTTPException(status_code=422, detail={"message": e.message, "rejected": e.rejected})
        except SchemaSyncError as e:
            raise HTTPException(status_code=400, detail={"message": e.message, **e.context()})
        return response.to_dict()

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app
