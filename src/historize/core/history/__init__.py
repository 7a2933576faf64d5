"""History engine: transactional change capture and schema mirroring.

Primary API:
    HistoryDB - Engines plus session and mirror factories
    CaptureInterceptor - History-capturing MutatingCommands
    SchemaMirror - Migration operations mirrored onto history tables

Building blocks:
    NestedTransaction - Savepoint-backed nested transactions
    RowResolver - KeySpec to current rows
    HistoryWriter - Appends history rows
    SqlCommands - Plain, non-capturing commands
    SchemaCatalog - Reflected table shapes
"""

from historize.core.history.catalog import SchemaCatalog, TableInfo
from historize.core.history.commands import SqlCommands, where_clause
from historize.core.history.database import HistoryDB
from historize.core.history.interceptor import CaptureInterceptor
from historize.core.history.mirror import SchemaMirror, history_key_name, history_table_columns
from historize.core.history.resolver import RowResolver
from historize.core.history.session import open_session
from historize.core.history.transaction import NestedTransaction, savepoint_name
from historize.core.history.writer import (
    BOOKKEEPING_COLUMNS,
    HISTORY_ACTION_COLUMN,
    HISTORY_ACTOR_COLUMN,
    HISTORY_RECORDED_AT_COLUMN,
    HistoryWriter,
)

__all__ = [
    "BOOKKEEPING_COLUMNS",
    "HISTORY_ACTION_COLUMN",
    "HISTORY_ACTOR_COLUMN",
    "HISTORY_RECORDED_AT_COLUMN",
    "CaptureInterceptor",
    "HistoryDB",
    "HistoryWriter",
    "NestedTransaction",
    "RowResolver",
    "SchemaCatalog",
    "SchemaMirror",
    "SqlCommands",
    "TableInfo",
    "history_key_name",
    "history_table_columns",
    "open_session",
    "savepoint_name",
    "where_clause",
]
