from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional, Sequence, Tuple, Type

from schema_sync.domain.entities.dialect import Dialect
from schema_sync.domain.entities.history import MigrationRecord, MigrationStatus
from schema_sync.domain.entities.schema import SchemaSnapshot


class IDatabaseDriver(ABC):
    """Interface for raw database access."""

    @property
    @abstractmethod
    def dialect(self) -> Dialect:
        """Backend this driver talks to."""
        pass

    @property
    @abstractmethod
    def placeholder(self) -> str:
        """Bind-parameter marker of the driver (``?`` or ``%s``)."""
        pass

    @property
    @abstractmethod
    def error_types(self) -> Tuple[Type[BaseException], ...]:
        """Exceptions the underlying DB-API module raises for failed statements."""
        pass

    @abstractmethod
    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute one statement; returns the affected row count (-1 when not applicable)."""
        pass

    @abstractmethod
    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[tuple]:
        """Execute a query and return every row."""
        pass

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit on normal exit, roll back on exception."""
        pass

    @abstractmethod
    def backup(self, label: str) -> str:
        """Snapshot the database before destructive work; returns where it went."""
        pass

    def close(self) -> None:
        """Release the underlying connection."""


class IStatementValidator(ABC):
    """Interface for offline statement validation (dry-run)."""

    @abstractmethod
    def validate_statement(self, sql: str, dialect: Dialect) -> List[str]:
        """Problems found in ``sql``; empty when it is valid for ``dialect``."""
        pass


class ISchemaRepository(ABC):
    """Interface for schema data access."""

    @abstractmethod
    def get_current_schema(self) -> SchemaSnapshot:
        """Retrieve current database schema."""
        pass


class ISchemaProvider(ABC):
    """Interface for the desired schema source."""

    @abstractmethod
    def get_desired_schema(self) -> SchemaSnapshot:
        """Build the desired schema from application models."""
        pass


class ILedgerStore(ABC):
    """Interface for persisting migration records and the advisory lock."""

    @abstractmethod
    def ensure_storage(self) -> None:
        """Create history and lock storage if missing."""
        pass

    @abstractmethod
    def insert(self, record: MigrationRecord) -> None:
        pass

    @abstractmethod
    def update(self, record: MigrationRecord) -> None:
        pass

    @abstractmethod
    def get(self, record_id: str) -> Optional[MigrationRecord]:
        pass

    @abstractmethod
    def list_records(self, status: Optional[MigrationStatus] = None) -> List[MigrationRecord]:
        """Records in creation order, optionally filtered by status."""
        pass

    @abstractmethod
    def find_by_checksum(self, checksum: str) -> List[MigrationRecord]:
        pass

    @abstractmethod
    def acquire_lock(self, holder: str, timeout_seconds: int) -> None:
        """Take the advisory lock or raise MigrationLocked."""
        pass

    @abstractmethod
    def release_lock(self, holder: str) -> None:
        pass
