import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


class MigrationStatus(str, Enum):
    """Status of a recorded migration attempt."""
    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


ALLOWED_TRANSITIONS = {
    MigrationStatus.PENDING: {MigrationStatus.APPLIED, MigrationStatus.FAILED},
    MigrationStatus.FAILED: {MigrationStatus.ROLLED_BACK},
    MigrationStatus.APPLIED: set(),
    MigrationStatus.ROLLED_BACK: set(),
}


def compute_checksum(statements: Iterable[str]) -> str:
    """SHA-256 over the ordered statement texts."""
    payload = json.dumps(list(statements), ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass
class ExecutionLogEntry:
    """One executed statement of a migration attempt."""
    index: int
    sql: str
    status: str  # executed, failed
    duration_ms: float = 0.0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "sql": self.sql,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionLogEntry":
        return cls(
            index=data["index"],
            sql=data["sql"],
            status=data["status"],
            duration_ms=data.get("duration_ms", 0.0),
            error=data.get("error"),
        )


@dataclass
class MigrationRecord:
    """A persisted migration attempt."""
    id: str
    checksum: str
    statements: Tuple[str, ...]
    dialect: str
    status: MigrationStatus = MigrationStatus.PENDING
    created_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    execution_log: List[ExecutionLogEntry] = field(default_factory=list)
    description: str = ""

    def executed_statements(self) -> List[str]:
        return [entry.sql for entry in self.execution_log if entry.status == "executed"]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "checksum": self.checksum,
            "statements": list(self.statements),
            "dialect": self.dialect,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "applied_at": self.applied_at.isoformat() if self.applied_at else None,
            "execution_log": [entry.to_dict() for entry in self.execution_log],
            "description": self.description,
        }
