"""Error taxonomy for schema synchronization."""

from typing import Iterable, List, Optional


class SchemaSyncError(Exception):
    """Base class for every error raised by the synchronization core."""

    def __init__(
        self,
        message: str,
        table: Optional[str] = None,
        column: Optional[str] = None,
        statement_index: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.table = table
        self.column = column
        self.statement_index = statement_index

    def context(self) -> dict:
        """Diagnostic context as a plain dict (None values omitted)."""
        ctx = {
            "table": self.table,
            "column": self.column,
            "statement_index": self.statement_index,
        }
        return {k: v for k, v in ctx.items() if v is not None}


class ConfigurationError(SchemaSyncError):
    """Invalid option or option combination, detected before diffing."""


class ModelError(SchemaSyncError):
    """Malformed schema snapshot (duplicate names, unresolvable foreign key...)."""

    def __init__(self, message: str, problems: Optional[Iterable[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.problems: List[str] = list(problems or [])


class UnmappedType(SchemaSyncError):
    """A normalized field type has no column type for the target dialect."""

    def __init__(self, type_key: str, dialect: str, **kwargs):
        super().__init__(f"No column type mapping for '{type_key}' on dialect '{dialect}'", **kwargs)
        self.type_key = type_key
        self.dialect = dialect


class DestructiveChangeRejected(SchemaSyncError):
    """The diff needs a destructive change the policy does not allow."""

    def __init__(self, message: str, rejected: Optional[Iterable[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.rejected: List[str] = list(rejected or [])


class UnsupportedOperation(SchemaSyncError):
    """The dialect cannot express a change, not even through a table rebuild."""


class DriftDetected(SchemaSyncError):
    """A ledger record no longer matches the checksum it was recorded with."""

    def __init__(self, record_id: str, expected: str, actual: str):
        super().__init__(
            f"Migration {record_id} drifted: recorded checksum {expected[:12]}..., "
            f"recomputed {actual[:12]}..."
        )
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class ApplyFailure(SchemaSyncError):
    """A statement failed while applying a migration."""

    def __init__(
        self,
        message: str,
        record_id: Optional[str] = None,
        sql: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.record_id = record_id
        self.sql = sql


class BackupFailed(ApplyFailure):
    """The pre-migration backup hook failed."""


class InvalidTransition(SchemaSyncError):
    """A ledger record was asked to move to a status it cannot reach."""


class MigrationLocked(SchemaSyncError):
    """Another run holds the advisory migration lock."""

    def __init__(self, holder: str, acquired_at: str):
        super().__init__(f"Migration lock held by '{holder}' since {acquired_at}")
        self.holder = holder
        self.acquired_at = acquired_at


class OperationCancelled(SchemaSyncError):
    """Cancellation was requested and honored at a safe boundary."""
