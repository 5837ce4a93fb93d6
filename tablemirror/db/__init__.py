from .gateway import PersistenceGateway, SqlGateway, make_engine
from .helpers import (
    add_table,
    delete_rows,
    get_table_columns,
    insert_row,
    list_tables,
    prepare_data_for_table,
    read_table,
    remove_table,
    table_exists,
    update_rows,
)
from .session import DbSession

__all__ = [
    "DbSession",
    "PersistenceGateway",
    "SqlGateway",
    "make_engine",
    "list_tables",
    "table_exists",
    "get_table_columns",
    "prepare_data_for_table",
    "insert_row",
    "update_rows",
    "delete_rows",
    "add_table",
    "remove_table",
    "read_table",
]
