"""Capture Interceptor: the single choke point for tracked-table mutations.

Wraps any ``MutatingCommands`` and exposes the same surface. Around each
mutation of a tracked table it resolves the affected rows, runs the real
statement and writes one history row per affected row, all inside one
nested transaction level. Any failure rolls that level back before the
error propagates, so a business change never commits without its history.

Resolution order depends on the statement:

- UPDATE and DELETE resolve *before* running: the old rows (DELETE) or
  their keys (UPDATE) only exist until the statement runs.
- INSERT resolves *after* running: generated keys and column defaults
  only exist once the row does.

A per-instance reentrancy guard is set while the wrapped statement runs.
Calls that arrive while it is set (e.g. a wrapped primitive calling back
into this interceptor) pass straight through without capture.
"""

from collections.abc import Callable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

import structlog
from sqlalchemy import Executable

from historize.contracts.commands import MutatingCommands, Where
from historize.contracts.enums import HistoryAction
from historize.contracts.errors import ConfigurationError, DatastoreError, TransactionError, ValidationError
from historize.contracts.keyspec import KeySpec, Row
from historize.core.history.catalog import TableInfo
from historize.core.history.resolver import RowResolver
from historize.core.history.transaction import NestedTransaction
from historize.core.history.writer import HistoryWriter

logger = structlog.get_logger(__name__)


class CaptureInterceptor:
    """History-capturing decorator over ``MutatingCommands``.

    Satisfies ``MutatingCommands`` itself, so callers cannot tell it from
    the plain commands except by the history rows it leaves behind.

    Example:
        with db.session(actor=static_actor(7)) as commands:
            commands.update("p_orders", {"status": "shipped"}, "id = :id", {"id": 5})
    """

    def __init__(
        self,
        commands: MutatingCommands,
        resolver: RowResolver,
        writer: HistoryWriter,
        transaction: NestedTransaction,
        *,
        history_transaction: NestedTransaction | None = None,
    ) -> None:
        """Initialize interceptor.

        Args:
            commands: Wrapped commands; must share ``transaction``'s connection
            resolver: Row resolver on the same connection
            writer: History writer (its connection may differ)
            transaction: Nested transaction of the primary connection
            history_transaction: Nested transaction of a separate history
                connection; None when history shares the primary connection
        """
        self._commands = commands
        self._resolver = resolver
        self._writer = writer
        self._transaction = transaction
        self._history_transaction = history_transaction
        self._capturing = False

    @property
    def commands(self) -> MutatingCommands:
        return self._commands

    @property
    def transaction(self) -> NestedTransaction:
        """Nested transaction callers use to group captured operations."""
        return self._transaction

    @property
    def capturing(self) -> bool:
        """Whether a wrapped statement is running right now."""
        return self._capturing

    @property
    def last_insert_id(self) -> Any:
        return self._commands.last_insert_id

    # === Intercepted primitives ===

    def insert(self, table: str, values: Mapping[str, Any]) -> int:
        if self._bypass(table):
            return self._commands.insert(table, values)
        with self._scope(table, HistoryAction.INSERT):
            with self._guarded():
                count = self._commands.insert(table, values)
            self._record_inserted(table)
        return count

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        where: Where | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        if self._bypass(table):
            return self._commands.update(table, values, where, params)
        with self._scope(table, HistoryAction.UPDATE):
            keys = self._resolver.primary_keys(table, where, params, lock=True)
            if not keys:
                return 0
            with self._guarded():
                count = self._commands.update(table, values, where, params)
            info = self._resolver.catalog.keyed_table(table)
            rows = self._resolver.by_primary_key(table, _keys_after_update(info, keys, values))
            self._writer.record_rows(table, rows, HistoryAction.UPDATE)
        return count

    def delete(
        self,
        table: str,
        where: Where | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        if self._bypass(table):
            return self._commands.delete(table, where, params)
        with self._scope(table, HistoryAction.DELETE):
            rows = self._resolver.rows_where(table, where, params, lock=True)
            if not rows:
                return 0
            self._writer.record_rows(table, rows, HistoryAction.DELETE)
            with self._guarded():
                count = self._commands.delete(table, where, params)
        return count

    def upsert(self, table: str, values: Mapping[str, Any], unique_keys: Sequence[str]) -> int:
        if self._bypass(table):
            return self._commands.upsert(table, values, unique_keys)
        missing = [k for k in unique_keys if k not in values]
        if missing:
            raise ValidationError(f"Upsert values lack unique key columns {missing}", table=table, action="upsert")
        unique_spec = KeySpec.composite({k: values[k] for k in unique_keys})
        return self._capture_upsert(
            table,
            unique_spec,
            lambda: self._commands.upsert(table, values, unique_keys),
            values=values,
        )

    def execute(
        self,
        statement: str | Executable,
        params: Mapping[str, Any] | None = None,
        *,
        table: str | None = None,
    ) -> int:
        """Run a statement without capture. Use ``execute_*`` to capture."""
        return self._commands.execute(statement, params, table=table)

    # === Statement-level entry points ===

    def execute_insert(self, statement: str | Executable, table: str, params: Mapping[str, Any] | None = None) -> int:
        """Run a caller-built INSERT into ``table`` and capture the new row."""
        if self._bypass(table):
            return self._commands.execute(statement, params, table=table)
        with self._scope(table, HistoryAction.INSERT):
            with self._guarded():
                count = self._commands.execute(statement, params, table=table)
            self._record_inserted(table)
        return count

    def execute_update(
        self,
        statement: str | Executable,
        table: str,
        key_spec: KeySpec,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """Run a caller-built UPDATE, then capture the rows ``key_spec`` resolves to."""
        if self._bypass(table):
            return self._commands.execute(statement, params, table=table)
        with self._scope(table, HistoryAction.UPDATE, key_spec):
            with self._guarded():
                count = self._commands.execute(statement, params, table=table)
            self._writer.record_rows(table, self._resolver.resolve(table, key_spec), HistoryAction.UPDATE)
        return count

    def execute_delete(
        self,
        statement: str | Executable,
        table: str,
        key_spec: KeySpec,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """Capture the rows ``key_spec`` resolves to, then run a caller-built DELETE."""
        if self._bypass(table):
            return self._commands.execute(statement, params, table=table)
        with self._scope(table, HistoryAction.DELETE, key_spec):
            rows = self._resolver.resolve(table, key_spec, lock=True)
            self._writer.record_rows(table, rows, HistoryAction.DELETE)
            with self._guarded():
                count = self._commands.execute(statement, params, table=table)
        return count

    def execute_upsert(
        self,
        statement: str | Executable,
        table: str,
        unique_key_spec: KeySpec,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """Run a caller-built insert-or-update and capture INSERT or UPDATE accordingly."""
        if self._bypass(table):
            return self._commands.execute(statement, params, table=table)
        return self._capture_upsert(
            table,
            unique_key_spec,
            lambda: self._commands.execute(statement, params, table=table),
        )

    # === Explicit capture for mutations performed elsewhere ===

    def capture_insert(self, table: str, final_row: Row) -> int:
        """Record INSERT history for a row the caller already inserted."""
        if self._bypass(table):
            return 0
        with self._scope(table, HistoryAction.INSERT):
            return self._writer.record_rows(table, [final_row], HistoryAction.INSERT)

    def capture_update(self, table: str, key_spec: KeySpec, transaction: NestedTransaction | None = None) -> int:
        """Record UPDATE history for rows the caller already updated.

        Args:
            table: Tracked table
            key_spec: Rows to snapshot in their current (post-update) state
            transaction: The caller's open level of this interceptor's
                transaction. History is written inside it; committing it
                stays with the caller.

        Raises:
            TransactionError: If ``transaction`` is not this interceptor's,
                or is not open
        """
        if transaction is not None:
            if transaction is not self._transaction:
                raise TransactionError(
                    "capture_update() was given a transaction from another connection",
                    depth=transaction.depth,
                    table=table,
                    action=str(HistoryAction.UPDATE),
                )
            if not transaction.active:
                raise TransactionError(
                    "capture_update() was given a transaction with no open level",
                    depth=0,
                    table=table,
                    action=str(HistoryAction.UPDATE),
                )
        if self._bypass(table):
            return 0
        with self._scope(table, HistoryAction.UPDATE, key_spec):
            rows = self._resolver.resolve(table, key_spec)
            return self._writer.record_rows(table, rows, HistoryAction.UPDATE)

    def capture_delete(self, table: str, key_spec: KeySpec) -> int:
        """Record DELETE history for rows the caller is about to delete.

        Call this before deleting, inside the same transaction as the delete.
        """
        if self._bypass(table):
            return 0
        with self._scope(table, HistoryAction.DELETE, key_spec):
            rows = self._resolver.resolve(table, key_spec, lock=True)
            return self._writer.record_rows(table, rows, HistoryAction.DELETE)

    def capture_upsert(self, table: str, unique_key_spec: KeySpec, execute: Callable[[], int]) -> int:
        """Run ``execute`` (an insert-or-update) and capture INSERT or UPDATE.

        ``unique_key_spec`` must identify at most one existing row.
        """
        if self._bypass(table):
            return execute()
        return self._capture_upsert(table, unique_key_spec, execute)

    # === Internals ===

    def _bypass(self, table: str) -> bool:
        return self._capturing or not self._writer.is_tracked(table)

    def _capture_upsert(
        self,
        table: str,
        unique_spec: KeySpec,
        execute: Callable[[], int],
        *,
        values: Mapping[str, Any] | None = None,
    ) -> int:
        with self._scope(table, "upsert", unique_spec):
            matches = self._resolver.resolve(table, unique_spec, lock=True)
            if len(matches) > 1:
                raise ValidationError(
                    f"Insert-or-update unique key matched {len(matches)} rows, expected at most one",
                    table=table,
                    action="upsert",
                    key=unique_spec.describe(),
                )
            with self._guarded():
                count = execute()
            if not matches:
                self._record_inserted(table)
            else:
                info = self._resolver.catalog.keyed_table(table)
                keys = [_row_key(info, matches[0])]
                if values is not None:
                    keys = _keys_after_update(info, keys, values)
                rows = self._resolver.by_primary_key(table, keys)
                if not rows:
                    # Key rewritten by a caller-built statement
                    raise DatastoreError(
                        "Upserted row could not be read back by its primary key for capture",
                        table=table,
                        action=str(HistoryAction.UPDATE),
                        key=unique_spec.describe(),
                    )
                self._writer.record_rows(table, rows, HistoryAction.UPDATE)
        return count

    def _record_inserted(self, table: str) -> None:
        info = self._resolver.catalog.keyed_table(table)
        pk = info.single_primary_key
        if pk is None:
            raise ConfigurationError(
                f"Automatic insert capture needs a single-column primary key, table has {list(info.primary_key)}",
                table=table,
                action=str(HistoryAction.INSERT),
            )
        key = self._commands.last_insert_id
        if key is None:
            raise DatastoreError(
                "Insert reported no generated key to capture",
                table=table,
                action=str(HistoryAction.INSERT),
            )
        rows = self._resolver.resolve(table, KeySpec.single(pk, key))
        if not rows:
            raise DatastoreError(
                "Inserted row could not be read back for capture",
                table=table,
                action=str(HistoryAction.INSERT),
                key={pk: key},
            )
        self._writer.record_rows(table, rows, HistoryAction.INSERT)

    @contextmanager
    def _guarded(self) -> Iterator[None]:
        previous = self._capturing
        self._capturing = True
        try:
            yield
        finally:
            self._capturing = previous

    @contextmanager
    def _scope(self, table: str, action: HistoryAction | str, key_spec: KeySpec | None = None) -> Iterator[None]:
        primary = self._transaction
        history = self._history_transaction
        primary.begin()
        if history is not None:
            try:
                history.begin()
            except BaseException:
                primary.rollback()
                raise
        try:
            yield
        except Exception as exc:
            logger.warning(
                "capture_rolled_back",
                table=table,
                action=str(action),
                key=key_spec.describe() if key_spec is not None else None,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if history is not None:
                history.rollback()
            primary.rollback()
            raise
        except BaseException:
            # Cancelled: unwind everything, not just this level
            if history is not None:
                history.rollback_all()
            primary.rollback_all()
            raise
        else:
            # History commits first: a failure here must take the business change with it
            if history is not None:
                try:
                    history.commit()
                except BaseException:
                    primary.rollback()
                    raise
            primary.commit()


def _row_key(info: TableInfo, row: Row) -> Any:
    missing = [name for name in info.primary_key if name not in row]
    if missing:
        raise ConfigurationError(
            f"Resolved row lacks primary key columns {missing}",
            table=info.name,
            key=dict(row),
        )
    if len(info.primary_key) == 1:
        return row[info.primary_key[0]]
    return tuple(row[name] for name in info.primary_key)


def _keys_after_update(info: TableInfo, keys: list[Any], values: Mapping[str, Any]) -> list[Any]:
    """Primary keys the updated rows carry once ``values`` is applied."""
    pk = info.primary_key
    changed = [name for name in pk if name in values]
    if not changed:
        return keys
    if len(pk) == 1:
        return [values[pk[0]] for _ in keys]
    return [tuple(values[name] if name in values else part for name, part in zip(pk, key, strict=True)) for key in keys]


__all__ = ["CaptureInterceptor"]
