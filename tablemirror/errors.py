from __future__ import annotations

from typing import Any


class TableMirrorError(Exception):
    """Base exception for tablemirror errors."""


class ConfigurationError(TableMirrorError):
    """Missing or invalid table, schema or mirror option."""


class NotFoundError(TableMirrorError):
    """Referenced table does not exist."""


class ValidationError(TableMirrorError):
    """A write resolved to nothing that can be sent to the database."""


class GatewayError(TableMirrorError):
    """The database rejected a load, upsert or delete call."""

    def __init__(self, message: str, batch: Any = None) -> None:
        super().__init__(message)
        self.batch = batch
