import logging

from schema_sync.domain.entities.schema import SchemaSnapshot
from schema_sync.domain.repositories.interfaces import ISchemaRepository

logger = logging.getLogger(__name__)


class AnalyzeSchemaUseCase:
    """
    Use case: Read the actual schema of the target database.
    Single Responsibility: introspection.
    """

    def __init__(self, schema_repository: ISchemaRepository):
        self._schema_repo = schema_repository

    def execute(self) -> SchemaSnapshot:
        """Execute the analysis."""
        snapshot = self._schema_repo.get_current_schema()
        logger.info(f"[AnalyzeSchemaUseCase] Found {len(snapshot.tables)} table(s)")
        return snapshot
