from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from schema_sync.domain.entities.history import MigrationStatus


@dataclass(frozen=True)
class ApplyOptions:
    """How a plan is executed."""
    dry_run: bool = False
    per_migration_transaction: bool = True
    backup: bool = False


@dataclass
class StatementResult:
    """Outcome of one statement in an apply run."""
    index: int
    sql: str
    status: str  # executed, failed, validated, invalid, not_run
    duration_ms: float = 0.0
    error: Optional[str] = None


@dataclass
class ApplyReport:
    """Result of applying (or dry-running) one migration plan."""
    record_id: Optional[str]
    status: Optional[MigrationStatus]
    dialect: str
    dry_run: bool = False
    skipped: bool = False
    backup_taken: bool = False
    results: List[StatementResult] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        if self.dry_run:
            return all(r.status == "validated" for r in self.results)
        return self.skipped or self.status == MigrationStatus.APPLIED

    @property
    def total_duration_ms(self) -> float:
        return sum(r.duration_ms for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "status": self.status.value if self.status else None,
            "dialect": self.dialect,
            "dry_run": self.dry_run,
            "skipped": self.skipped,
            "backup_taken": self.backup_taken,
            "warnings": list(self.warnings),
            "results": [
                {
                    "index": r.index,
                    "sql": r.sql,
                    "status": r.status,
                    "duration_ms": r.duration_ms,
                    "error": r.error,
                }
                for r in self.results
            ],
        }
