import json
import logging
import os
from dataclasses import fields
from typing import Any, Dict, Mapping, Optional

from schema_sync.domain.entities.rules import SyncConfig
from schema_sync.domain.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

_FIELDS = {f.name for f in fields(SyncConfig)}


class ConfigRepository:
    """
    Repository for synchronization settings.
    Single Responsibility: configuration loading.

    Precedence, lowest first: built-in defaults, environment variables,
    the JSON config file, explicit overrides (CLI options).
    """

    def __init__(self, config_file: Optional[str] = None, environ: Optional[Mapping[str, str]] = None):
        self._config_file = config_file
        self._environ = os.environ if environ is None else environ

    def load(self, overrides: Optional[Dict[str, Any]] = None) -> SyncConfig:
        """Build and validate a SyncConfig."""
        values: Dict[str, Any] = {}
        if self._config_file:
            values.update(self._read_file(self._config_file))

        database_url = self._environ.get("SCHEMA_SYNC_DATABASE_URL") or self._environ.get("DATABASE_URL")
        if database_url and not values.get("database_url"):
            values["database_url"] = database_url
        dialect = self._environ.get("SCHEMA_SYNC_DIALECT")
        if dialect and not values.get("dialect"):
            values["dialect"] = dialect

        values.update({k: v for k, v in (overrides or {}).items() if v is not None})

        unknown = sorted(set(values) - _FIELDS)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {unknown}")
        config = SyncConfig(**values).validate()
        logger.debug(f"[ConfigRepository] Loaded configuration for dialect {config.dialect}")
        return config

    @staticmethod
    def _read_file(path: str) -> Dict[str, Any]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Config file not found: {path}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Config file {path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a JSON object")
        return data
