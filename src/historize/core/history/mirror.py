"""Schema Mirror: migration operations that keep history tables in step.

Each operation takes the arguments of the matching alembic operation plus an
opt-out flag, runs the tracked-table DDL and then the same change on the
history table. History tables and history columns are only ever removed on
explicit request (``drop_history=True`` or ``drop_history_column``).

All checks (naming, primary-key shape, history-table existence) run before
any DDL is issued. Column changes go through ``batch_alter_table`` so they
also work on SQLite.
"""

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import sqlalchemy as sa
import structlog
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import Connection

from historize.contracts.enums import HistoryAction
from historize.contracts.errors import ConfigurationError
from historize.core.history.catalog import SchemaCatalog
from historize.core.history.transaction import NestedTransaction
from historize.core.history.writer import (
    BOOKKEEPING_COLUMNS,
    HISTORY_ACTION_COLUMN,
    HISTORY_ACTOR_COLUMN,
    HISTORY_RECORDED_AT_COLUMN,
)
from historize.core.naming import NamingPolicy

logger = structlog.get_logger(__name__)

DEFAULT_IDENTIFIER_MAX_LENGTH = 64


def history_key_name(primary_key: Sequence[str], max_length: int = DEFAULT_IDENTIFIER_MAX_LENGTH) -> str:
    """Synthesized history key column: ``h_<pk>``, or ``h_<pk1>_<pk2>`` for composite keys."""
    return ("h_" + "_".join(primary_key))[:max_length]


def history_column(column: sa.Column[Any]) -> sa.Column[Any]:
    """Detached history-side copy of a tracked column.

    Primary-key markers, constraints and client-side defaults are dropped
    and the copy is always nullable. Temporal columns also lose their
    server default.
    """
    server_default = None
    if column.server_default is not None and not isinstance(column.type, sa.DateTime):
        if isinstance(column.server_default, sa.DefaultClause):
            server_default = sa.DefaultClause(column.server_default.arg)
    return sa.Column(
        column.name,
        column.type,
        nullable=True,
        server_default=server_default,
        comment=column.comment,
    )


def bookkeeping_columns() -> list[sa.Column[Any]]:
    return [
        sa.Column(HISTORY_ACTOR_COLUMN, sa.Integer(), nullable=True),
        sa.Column(
            HISTORY_ACTION_COLUMN,
            sa.Enum(*(str(a) for a in HistoryAction), native_enum=False, create_constraint=True),
            nullable=False,
        ),
        sa.Column(HISTORY_RECORDED_AT_COLUMN, sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def history_table_columns(
    table: str,
    columns: Sequence[sa.Column[Any]],
    primary_key: Sequence[str],
    max_length: int = DEFAULT_IDENTIFIER_MAX_LENGTH,
) -> list[sa.Column[Any]]:
    """Full column list of the history table for a tracked table.

    Raises:
        ConfigurationError: If the table has no primary key, or a tracked
            column collides with a column the history table adds
    """
    if not primary_key:
        raise ConfigurationError("Tracked tables need a primary key", table=table)
    key_name = history_key_name(primary_key, max_length)
    reserved = (key_name, *BOOKKEEPING_COLUMNS)
    clashes = [c.name for c in columns if c.name in reserved]
    if clashes:
        raise ConfigurationError(f"Tracked columns {clashes} collide with history table columns", table=table)
    key = sa.Column(key_name, sa.Integer(), primary_key=True, autoincrement=True)
    return [key, *(history_column(c) for c in columns), *bookkeeping_columns()]


def _primary_key_sets(items: Sequence[Any]) -> int:
    # Flagged columns form one key; each PrimaryKeyConstraint is another
    flagged = any(isinstance(i, sa.Column) and i.primary_key for i in items)
    constraints = sum(1 for i in items if isinstance(i, sa.PrimaryKeyConstraint))
    return int(flagged) + constraints


class SchemaMirror:
    """Mirrors tracked-table DDL onto history tables.

    Example:
        with db.mirror() as mirror:
            mirror.create_table(
                "p_orders",
                sa.Column("id", sa.Integer, primary_key=True),
                sa.Column("status", sa.String(20), nullable=False),
            )
            mirror.add_column("p_orders", sa.Column("note", sa.Text))
    """

    def __init__(
        self,
        connection: Connection,
        naming: NamingPolicy,
        *,
        history_connection: Connection | None = None,
        enabled: bool = True,
        identifier_max_length: int = DEFAULT_IDENTIFIER_MAX_LENGTH,
    ) -> None:
        """Initialize mirror.

        Args:
            connection: Primary datastore connection
            naming: Tracked/history naming policy
            history_connection: Separate history datastore connection, if any
            enabled: When False only tracked-table DDL runs
            identifier_max_length: Backend limit for generated identifiers
        """
        self._naming = naming
        self._enabled = enabled
        self._max_length = identifier_max_length
        self._ops = Operations(MigrationContext.configure(connection))
        self._catalog = SchemaCatalog(connection)
        self._transaction = NestedTransaction(connection)
        if history_connection is None:
            self._history_ops = self._ops
            self._history_catalog = self._catalog
            self._history_transaction: NestedTransaction | None = None
        else:
            self._history_ops = Operations(MigrationContext.configure(history_connection))
            self._history_catalog = SchemaCatalog(history_connection)
            self._history_transaction = NestedTransaction(history_connection)

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def catalog(self) -> SchemaCatalog:
        return self._catalog

    @property
    def history_catalog(self) -> SchemaCatalog:
        return self._history_catalog

    # === Tables ===

    def create_table(self, table: str, *columns: Any, skip_history: bool = False, **kw: Any) -> sa.Table:
        """Create ``table``, then its history table.

        Raises:
            ConfigurationError: If the table does not declare exactly one
                primary key, or its history table already exists
        """
        mirrored = self._mirrors(table, skip_history)
        if mirrored:
            if _primary_key_sets(columns) != 1:
                raise ConfigurationError("Tracked tables need exactly one primary key declaration", table=table)
            self._require_history(table, exists=False)
        with self._scoped(mirrored):
            created = self._ops.create_table(table, *columns, **kw)
            if mirrored:
                self._create_history(table, list(created.columns), [c.name for c in created.primary_key.columns])
        self._forget(table)
        return created

    def create_history_table(self, table: str) -> str:
        """Build the history table for an already existing tracked table.

        Columns, types, defaults and primary key come from reflection.

        Raises:
            ConfigurationError: If the table is untracked or has no primary
                key, or its history table already exists
        """
        if not self._naming.is_tracked(table):
            raise ConfigurationError("Only tracked tables have history tables", table=table)
        info = self._catalog.keyed_table(table)
        self._require_history(table, exists=False)
        with self._scoped(True):
            history = self._create_history(table, info.columns, info.primary_key)
        self._forget(table)
        return history

    def rename_table(self, old: str, new: str, skip_history: bool = False) -> None:
        """Rename ``old`` to ``new`` and its history table along with it.

        Raises:
            ConfigurationError: If a tracked table would be renamed to an
                untracked name, or the history tables are not as expected
        """
        mirrored = self._mirrors(old, skip_history)
        if mirrored:
            if not self._naming.is_tracked(new):
                raise ConfigurationError(
                    f"Renaming tracked table to untracked name '{new}' would orphan its history",
                    table=old,
                )
            self._require_history(old, exists=True)
            self._require_history(new, exists=False)
        with self._scoped(mirrored):
            self._ops.rename_table(old, new)
            if mirrored:
                self._history_ops.rename_table(self._naming.history_name(old), self._naming.history_name(new))
                logger.info("history_table_renamed", table=old, new_table=new)
        self._forget(old)
        self._forget(new)

    def drop_table(self, table: str, drop_history: bool = False) -> None:
        """Drop ``table``. Its history table stays unless ``drop_history`` is set."""
        mirrored = self._mirrors(table, not drop_history)
        if mirrored:
            self._require_history(table, exists=True)
        with self._scoped(mirrored):
            self._ops.drop_table(table)
            if mirrored:
                self._history_ops.drop_table(self._naming.history_name(table))
                logger.warning("history_table_dropped", table=table)
        if not mirrored and self._enabled and self._naming.is_tracked(table):
            logger.info("history_table_kept", table=table)
        self._forget(table)

    # === Columns ===

    def add_column(self, table: str, column: sa.Column[Any], skip_history: bool = False) -> None:
        """Add ``column`` to ``table`` and a nullable copy to its history table."""
        mirrored = self._mirrors(table, skip_history)
        copy = None
        if mirrored:
            self._require_history(table, exists=True)
            copy = history_column(column)
        with self._scoped(mirrored):
            with self._ops.batch_alter_table(table) as batch_op:
                batch_op.add_column(column)
            if copy is not None:
                with self._history_ops.batch_alter_table(self._naming.history_name(table)) as batch_op:
                    batch_op.add_column(copy)
                logger.info("history_column_added", table=table, column=copy.name)
        self._forget(table)

    def alter_column(self, table: str, column_name: str, skip_history: bool = False, **kw: Any) -> None:
        """Alter a column on ``table`` and the same column of its history table.

        The history column stays nullable whatever ``nullable`` says.
        """
        mirrored = self._mirrors(table, skip_history)
        if mirrored:
            self._require_history(table, exists=True)
        history_kw = {k: v for k, v in kw.items() if k not in ("nullable", "existing_nullable")}
        with self._scoped(mirrored):
            with self._ops.batch_alter_table(table) as batch_op:
                batch_op.alter_column(column_name, **kw)
            if mirrored:
                with self._history_ops.batch_alter_table(self._naming.history_name(table)) as batch_op:
                    batch_op.alter_column(column_name, existing_nullable=True, **history_kw)
                logger.info("history_column_altered", table=table, column=column_name)
        self._forget(table)

    def rename_column(self, table: str, old: str, new: str, skip_history: bool = False) -> None:
        mirrored = self._mirrors(table, skip_history)
        if mirrored:
            self._require_history(table, exists=True)
        with self._scoped(mirrored):
            with self._ops.batch_alter_table(table) as batch_op:
                batch_op.alter_column(old, new_column_name=new)
            if mirrored:
                with self._history_ops.batch_alter_table(self._naming.history_name(table)) as batch_op:
                    batch_op.alter_column(old, new_column_name=new)
                logger.info("history_column_renamed", table=table, column=old, new_column=new)
        self._forget(table)

    def drop_column(self, table: str, column_name: str, drop_history: bool = False) -> None:
        """Drop a column from ``table``. The history column stays unless ``drop_history`` is set."""
        mirrored = self._mirrors(table, not drop_history)
        if mirrored:
            self._require_history(table, exists=True)
        with self._scoped(mirrored):
            with self._ops.batch_alter_table(table) as batch_op:
                batch_op.drop_column(column_name)
            if mirrored:
                self._drop_history_column(table, column_name)
        self._forget(table)

    def drop_history_column(self, table: str, column_name: str) -> None:
        """Remove a column from the history table of ``table`` only.

        Raises:
            ConfigurationError: If ``table`` is untracked or has no history table
        """
        if not self._naming.is_tracked(table):
            raise ConfigurationError("Only tracked tables have history tables", table=table)
        if not self._enabled:
            return
        self._require_history(table, exists=True)
        with self._scoped(True):
            self._drop_history_column(table, column_name)
        self._forget(table)

    # === Internals ===

    def _mirrors(self, table: str, skip_history: bool) -> bool:
        return self._enabled and not skip_history and self._naming.is_tracked(table)

    def _require_history(self, table: str, *, exists: bool) -> None:
        history = self._naming.history_name(table)
        if self._history_catalog.has_table(history) != exists:
            problem = "does not exist" if exists else "already exists"
            raise ConfigurationError(f"History table '{history}' {problem}", table=table)

    def _create_history(self, table: str, columns: Sequence[sa.Column[Any]], primary_key: Sequence[str]) -> str:
        history = self._naming.history_name(table)
        self._history_ops.create_table(
            history,
            *history_table_columns(table, columns, primary_key, self._max_length),
        )
        logger.info("history_table_created", table=table, history_table=history)
        return history

    def _drop_history_column(self, table: str, column_name: str) -> None:
        with self._history_ops.batch_alter_table(self._naming.history_name(table)) as batch_op:
            batch_op.drop_column(column_name)
        logger.warning("history_column_dropped", table=table, column=column_name)

    def _forget(self, table: str) -> None:
        self._catalog.invalidate(table)
        if self._naming.is_tracked(table):
            self._history_catalog.invalidate(self._naming.history_name(table))

    @contextmanager
    def _scoped(self, mirrored: bool) -> Iterator[None]:
        history = self._history_transaction if mirrored else None
        with self._transaction.scope():
            if history is None:
                yield
            else:
                with history.scope():
                    yield
