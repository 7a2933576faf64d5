"""History Writer: appends one history row per captured table row.

History rows hold the captured column values plus two bookkeeping values,
the acting user and the action. ``recorded_at`` is filled by the column
default at write time. Nothing here updates or deletes history rows.
"""

from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from historize.contracts.commands import ActorProvider, MutatingCommands, no_actor
from historize.contracts.enums import HistoryAction
from historize.contracts.errors import ConfigurationError, DatastoreError
from historize.core.history.catalog import SchemaCatalog
from historize.core.naming import NamingPolicy

logger = structlog.get_logger(__name__)

HISTORY_ACTOR_COLUMN = "actor_id"
HISTORY_ACTION_COLUMN = "action"
HISTORY_RECORDED_AT_COLUMN = "recorded_at"

BOOKKEEPING_COLUMNS: tuple[str, ...] = (
    HISTORY_ACTOR_COLUMN,
    HISTORY_ACTION_COLUMN,
    HISTORY_RECORDED_AT_COLUMN,
)


class HistoryWriter:
    """Writes history rows through a ``MutatingCommands`` on the history datastore."""

    def __init__(
        self,
        commands: MutatingCommands,
        catalog: SchemaCatalog,
        naming: NamingPolicy,
        actor: ActorProvider = no_actor,
    ) -> None:
        """Initialize writer.

        Args:
            commands: Commands bound to the history datastore's connection
            catalog: Catalog of the history datastore
            naming: Tracked/history naming policy
            actor: Consulted once per history row for the acting user id
        """
        self._commands = commands
        self._catalog = catalog
        self._naming = naming
        self._actor = actor
        self._confirmed: set[str] = set()

    @property
    def naming(self) -> NamingPolicy:
        return self._naming

    def is_tracked(self, table: str) -> bool:
        return self._naming.is_tracked(table)

    def history_table(self, table: str) -> str:
        """Name of the existing history table for tracked ``table``.

        Raises:
            ConfigurationError: If ``table`` is untracked or its history table is missing
        """
        history = self._naming.history_name(table)
        if history not in self._confirmed:
            if not self._catalog.has_table(history):
                raise ConfigurationError(
                    f"No history table '{history}' exists for tracked table",
                    table=table,
                )
            self._confirmed.add(history)
        return history

    def record(self, table: str, row: Mapping[str, Any], action: HistoryAction, actor_id: int | None) -> int:
        """Append one history row for ``row``; returns rows written (0 for untracked tables).

        Only the columns present in ``row`` are listed in the INSERT.

        Raises:
            ConfigurationError: If the history table is missing, or ``row``
                uses a bookkeeping column name
            DatastoreError: If the history insert fails
        """
        if not self._naming.is_tracked(table):
            return 0
        history = self.history_table(table)
        clashes = [name for name in BOOKKEEPING_COLUMNS if name in row]
        if clashes:
            raise ConfigurationError(
                f"Tracked columns {clashes} collide with history bookkeeping columns",
                table=table,
                action=str(action),
            )
        values = dict(row)
        values[HISTORY_ACTOR_COLUMN] = actor_id
        values[HISTORY_ACTION_COLUMN] = str(action)
        try:
            self._commands.insert(history, values)
        except DatastoreError as e:
            raise DatastoreError(
                f"History write to '{history}' failed: {e.__cause__ or e}",
                table=table,
                action=str(action),
                key=row,
            ) from (e.__cause__ or e)
        return 1

    def record_rows(self, table: str, rows: Iterable[Mapping[str, Any]], action: HistoryAction) -> int:
        """Append one history row per row, consulting the actor provider for each."""
        written = 0
        for row in rows:
            written += self.record(table, row, action, self._actor())
        if written:
            logger.debug("history_rows_recorded", table=table, action=str(action), count=written)
        return written
