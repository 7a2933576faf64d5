"""Nested transactions over one physical connection.

``begin``/``commit``/``rollback`` nest by counting. Only the outermost level
touches the physical transaction; inner levels map to savepoints named
after their depth (``LEVEL1``, ``LEVEL2``, ...) on backends that support
them, so nested scopes never collide.

Backends without savepoints only move the counter. An inner rollback there
cannot undo anything on its own, so it marks the transaction rollback-only
and the outermost commit then rolls back and raises.
"""

from collections.abc import Callable, Iterator
from contextlib import contextmanager

import structlog
from sqlalchemy import Connection
from sqlalchemy.engine import RootTransaction
from sqlalchemy.exc import SQLAlchemyError

from historize.contracts.errors import TransactionError

logger = structlog.get_logger(__name__)

# Dialects whose SAVEPOINT / RELEASE SAVEPOINT / ROLLBACK TO SAVEPOINT we rely on.
# SQLite only honors them when the driver's implicit transaction handling is
# disabled (see HistoryDB._configure_sqlite).
SAVEPOINT_DIALECTS = frozenset({"postgresql", "mysql", "mariadb", "sqlite"})


def savepoint_name(depth: int) -> str:
    """Savepoint created when beginning at ``depth`` (depth >= 1)."""
    return f"LEVEL{depth}"


class NestedTransaction:
    """Counting wrapper around one connection's transaction control.

    Not thread-safe: a NestedTransaction is confined to the connection it
    wraps, and a connection to one thread.

    Example:
        tx = NestedTransaction(conn)
        tx.begin()        # BEGIN
        tx.begin()        # SAVEPOINT LEVEL1
        tx.commit()       # RELEASE SAVEPOINT LEVEL1
        tx.commit()       # COMMIT
    """

    def __init__(self, connection: Connection, *, savepoints: bool | None = None) -> None:
        """Wrap a connection.

        Args:
            connection: Connection whose transactions this object controls
            savepoints: Force savepoint use on or off. Default: decided by
                the connection's dialect.
        """
        self._connection = connection
        if savepoints is None:
            savepoints = connection.dialect.name in SAVEPOINT_DIALECTS
        self._savepoints = savepoints
        self._depth = 0
        self._physical: RootTransaction | None = None
        self._rollback_only = False

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def depth(self) -> int:
        """Number of open logical levels."""
        return self._depth

    @property
    def savepoints(self) -> bool:
        return self._savepoints

    @property
    def active(self) -> bool:
        return self._depth > 0

    def begin(self) -> None:
        """Open a logical level: physical BEGIN at depth 0, savepoint otherwise."""
        if self._depth == 0:
            self._physical = self._begin_physical()
            self._rollback_only = False
        elif self._savepoints:
            self._execute(f"SAVEPOINT {savepoint_name(self._depth)}")
        self._depth += 1

    def commit(self) -> None:
        """Close the innermost level, committing the physical transaction at depth 0.

        Raises:
            TransactionError: On underflow, on physical commit failure, or when
                an inner level was rolled back on a backend without savepoints
        """
        if self._depth == 0:
            raise TransactionError("commit() called with no open transaction level", depth=0)
        self._depth -= 1
        if self._depth == 0:
            physical = self._take_physical()
            if self._rollback_only:
                self._rollback_only = False
                self._finish(physical.rollback, "rollback")
                raise TransactionError(
                    "Transaction rolled back: an inner level was rolled back and the backend has no savepoints",
                    depth=0,
                )
            self._finish(physical.commit, "commit")
        elif self._savepoints:
            self._execute(f"RELEASE SAVEPOINT {savepoint_name(self._depth)}")

    def rollback(self) -> None:
        """Undo the innermost level, rolling back physically at depth 0.

        Raises:
            TransactionError: On underflow or physical rollback failure
        """
        if self._depth == 0:
            raise TransactionError("rollback() called with no open transaction level", depth=0)
        self._depth -= 1
        if self._depth == 0:
            self._rollback_only = False
            self._finish(self._take_physical().rollback, "rollback")
        elif self._savepoints:
            self._execute(f"ROLLBACK TO SAVEPOINT {savepoint_name(self._depth)}")
        else:
            self._rollback_only = True

    def rollback_all(self) -> None:
        """Unwind every open level with one physical rollback.

        Used when an operation is cancelled: the whole nested stack goes,
        not just the innermost level. No-op when nothing is open.
        """
        if self._depth == 0:
            return
        logger.warning("transaction_stack_rolled_back", depth=self._depth)
        self._depth = 0
        self._rollback_only = False
        self._finish(self._take_physical().rollback, "rollback")

    @contextmanager
    def scope(self) -> Iterator["NestedTransaction"]:
        """One logical level as a context manager.

        Commits on success, rolls back the level on error, and rolls back the
        entire stack on cancellation (KeyboardInterrupt, GeneratorExit, ...).
        """
        self.begin()
        try:
            yield self
        except Exception:
            self.rollback()
            raise
        except BaseException:
            self.rollback_all()
            raise
        else:
            self.commit()

    def _begin_physical(self) -> RootTransaction:
        conn = self._connection
        if conn.in_transaction():
            # Autobegun by an earlier statement on this connection ("commit as
            # you go"); it becomes our outermost level.
            existing = conn.get_transaction()
            if existing is not None:
                logger.debug("transaction_adopted")
                return existing
        try:
            return conn.begin()
        except SQLAlchemyError as e:
            raise TransactionError(f"Could not begin transaction: {e}", depth=0) from e

    def _take_physical(self) -> RootTransaction:
        physical = self._physical
        self._physical = None
        if physical is None:
            raise TransactionError("No physical transaction is open", depth=self._depth)
        return physical

    def _finish(self, operation: Callable[[], None], verb: str) -> None:
        try:
            operation()
        except SQLAlchemyError as e:
            raise TransactionError(f"Physical {verb} failed: {e}", depth=0) from e

    def _execute(self, statement: str) -> None:
        try:
            self._connection.exec_driver_sql(statement)
        except SQLAlchemyError as e:
            raise TransactionError(f"{statement} failed: {e}", depth=self._depth) from e
