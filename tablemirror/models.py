from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


class OperationType(str, Enum):
    SAVE = "save"
    DELETE = "delete"


@dataclass
class PendingOperation:
    """
    The latest queued operation for one row.

    ``row`` is the live tracked row, not a copy: whatever it holds when the
    queue is drained is what gets written.
    """
    op_type: OperationType
    row: Any


@dataclass
class FlushBatch:
    """
    One statement's worth of work submitted to the gateway.

    For SAVE batches ``payload`` holds serialized rows; for DELETE batches it
    holds identity values.
    """
    schema: str
    table: str
    op_type: OperationType
    payload: list[Any]


@dataclass
class FlushResult:
    saved: int = 0
    deleted: int = 0
    failed: list[tuple[FlushBatch, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def serialize_value(value: Any) -> Any:
    """Encode dict/list values as JSON text; scalars pass through."""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return value


def serialize_row(row: Mapping[str, Any], id_column: str) -> dict[str, Any]:
    out: dict[str, Any] = {id_column: row[id_column]}
    for key in list(row.keys()):
        if key == id_column:
            continue
        out[key] = serialize_value(row[key])
    return out
