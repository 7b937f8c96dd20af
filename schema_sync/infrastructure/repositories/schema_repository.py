from schema_sync.domain.entities.schema import SchemaSnapshot
from schema_sync.domain.repositories.interfaces import ISchemaRepository
from schema_sync.infrastructure.database.inspector import IDataBaseInspector


class SchemaRepository(ISchemaRepository):
    """
    Repository for schema data access.
    Single Responsibility: Data access for schema.
    """

    def __init__(self, inspector: IDataBaseInspector):
        self._inspector = inspector

    def get_current_schema(self) -> SchemaSnapshot:
        """Retrieve current database schema."""
        return self._inspector.introspect_schema()
