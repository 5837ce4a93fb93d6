from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy.engine import URL

from .errors import ConfigurationError

if TYPE_CHECKING:
    from sqlalchemy.engine import Engine

DEFAULT_WRITE_SCHEMA = "tk"
DEFAULT_READ_SCHEMA = "public"
DEFAULT_ID_COLUMN = "_idx"
DEFAULT_DEBOUNCE_MS = 500


def split_table_name(name: str, default_schema: Optional[str]) -> tuple[Optional[str], str]:
    """
    Split a possibly dotted "schema.table" name.

    A dotted name always wins over ``default_schema``.

    Raises:
        ConfigurationError: If the name is empty or has more than one dot
    """
    if not isinstance(name, str) or not name.strip():
        raise ConfigurationError("table name must be a non-empty string")

    if "." not in name:
        return default_schema, name

    parts = name.split(".")
    if len(parts) != 2 or not all(parts):
        raise ConfigurationError(
            f"Invalid table name {name!r}: expected 'table' or 'schema.table'"
        )
    return parts[0], parts[1]


@dataclass
class DbConfig:
    """
    Connection descriptor for a single database.

    Mirrors the environment variables used by deployments:
    DB_HOSTNAME, DB_PORT, DB_USERNAME, DB_PASSWORD and DB.
    """
    host: str
    database: str
    username: Optional[str] = None
    password: Optional[str] = None
    port: int = 5432
    drivername: str = "postgresql+psycopg2"

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigurationError("host must be set")
        if not self.database:
            raise ConfigurationError("database must be set")
        if self.port <= 0:
            raise ConfigurationError("port must be > 0")

    def url(self) -> URL:
        return URL.create(
            self.drivername,
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.database,
        )

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "DbConfig":
        env = os.environ if environ is None else environ
        try:
            port = int(env.get("DB_PORT") or 5432)
        except ValueError as exc:
            raise ConfigurationError(f"DB_PORT must be an integer, got {env.get('DB_PORT')!r}") from exc

        return cls(
            host=env.get("DB_HOSTNAME", ""),
            database=env.get("DB", ""),
            username=env.get("DB_USERNAME"),
            password=env.get("DB_PASSWORD"),
            port=port,
        )


@dataclass
class MirrorConfig:
    """
    Options for a TableMirror.

    ``connection`` may be a URL string, a SQLAlchemy URL, an Engine or a
    DbConfig. A dotted ``table`` ("schema.table") overrides ``schema``.
    ``logging`` turns on SQLAlchemy statement echo.
    """
    connection: "str | URL | Engine | DbConfig | Any"
    table: str
    schema: str = DEFAULT_WRITE_SCHEMA
    logging: bool = False
    id_column: str = DEFAULT_ID_COLUMN
    debounce_ms: int = DEFAULT_DEBOUNCE_MS

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        schema, table = split_table_name(self.table, self.schema)
        if not schema:
            raise ConfigurationError("schema must be a non-empty string")
        self.schema = schema
        self.table = table

        if not self.id_column:
            raise ConfigurationError("id_column must be a non-empty string")
        if self.debounce_ms <= 0:
            raise ConfigurationError("debounce_ms must be > 0")

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.table}"

    @property
    def debounce_s(self) -> float:
        return self.debounce_ms / 1000.0
