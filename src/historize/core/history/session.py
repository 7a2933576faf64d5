"""Wiring for one capture session over open connections."""

from sqlalchemy import Connection

from historize.contracts.commands import ActorProvider, MutatingCommands, no_actor
from historize.core.history.catalog import SchemaCatalog
from historize.core.history.commands import SqlCommands
from historize.core.history.interceptor import CaptureInterceptor
from historize.core.history.resolver import RowResolver
from historize.core.history.transaction import NestedTransaction
from historize.core.history.writer import HistoryWriter
from historize.core.naming import NamingPolicy


def open_session(
    connection: Connection,
    naming: NamingPolicy,
    *,
    actor: ActorProvider = no_actor,
    history_connection: Connection | None = None,
    enabled: bool = True,
) -> MutatingCommands:
    """Build the commands callers use for one unit of work.

    Returns plain ``SqlCommands`` when ``enabled`` is False, otherwise a
    ``CaptureInterceptor`` whose history rows go to ``history_connection``
    (or to ``connection`` when that is None).
    """
    catalog = SchemaCatalog(connection)
    commands = SqlCommands(connection, catalog)
    if not enabled:
        return commands

    if history_connection is None:
        # Own instance: history inserts must not overwrite the business last_insert_id
        history_commands = SqlCommands(connection, catalog)
        history_catalog = catalog
        history_transaction = None
    else:
        history_catalog = SchemaCatalog(history_connection)
        history_commands = SqlCommands(history_connection, history_catalog)
        history_transaction = NestedTransaction(history_connection)

    writer = HistoryWriter(history_commands, history_catalog, naming, actor)
    return CaptureInterceptor(
        commands,
        RowResolver(connection, catalog),
        writer,
        NestedTransaction(connection),
        history_transaction=history_transaction,
    )
