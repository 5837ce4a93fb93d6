from .config import DbConfig, MirrorConfig
from .errors import (
    ConfigurationError,
    GatewayError,
    NotFoundError,
    TableMirrorError,
    ValidationError,
)
from .mirror import TableMirror
from .models import FlushBatch, FlushResult, OperationType
from .tracking import Tracked, TrackedDict, TrackedList, track

__all__ = [
    "TableMirror",
    "MirrorConfig",
    "DbConfig",
    "track",
    "Tracked",
    "TrackedDict",
    "TrackedList",
    "OperationType",
    "FlushBatch",
    "FlushResult",
    "TableMirrorError",
    "ConfigurationError",
    "NotFoundError",
    "ValidationError",
    "GatewayError",
]
