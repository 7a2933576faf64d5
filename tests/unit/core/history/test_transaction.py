"""Tests for NestedTransaction: savepoint naming, ordering and unwinding."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
from sqlalchemy import Connection, event, text
from sqlalchemy.engine import Engine

from historize.contracts import TransactionError
from historize.core.history.database import HistoryDB
from historize.core.history.transaction import NestedTransaction, savepoint_name

_CONTROL = ("BEGIN", "SAVEPOINT", "RELEASE", "ROLLBACK")


def _record_transaction_sql(engine: Engine) -> list[str]:
    """Transaction-control statements in the order the datastore receives them."""
    statements: list[str] = []

    @event.listens_for(engine, "before_cursor_execute")
    def _statement(conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: bool) -> None:
        if statement.lstrip().upper().startswith(_CONTROL):
            statements.append(statement.strip())

    @event.listens_for(engine, "commit")
    def _commit(conn: Any) -> None:
        statements.append("COMMIT")

    @event.listens_for(engine, "rollback")
    def _rollback(conn: Any) -> None:
        statements.append("ROLLBACK")

    return statements


@pytest.fixture
def conn(history_db: HistoryDB) -> Iterator[Connection]:
    with history_db.engine.connect() as connection:
        connection.execute(text("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)"))
        connection.commit()
        yield connection


def _names(conn: Connection) -> list[str]:
    return [row[0] for row in conn.execute(text("SELECT name FROM items ORDER BY id"))]


class TestSavepointOrdering:
    def test_nested_commit_sequence(self, history_db: HistoryDB, conn: Connection) -> None:
        statements = _record_transaction_sql(history_db.engine)
        tx = NestedTransaction(conn)

        tx.begin()
        tx.begin()
        tx.begin()
        tx.commit()
        tx.commit()
        tx.commit()

        assert statements == [
            "BEGIN",
            "SAVEPOINT LEVEL1",
            "SAVEPOINT LEVEL2",
            "RELEASE SAVEPOINT LEVEL2",
            "RELEASE SAVEPOINT LEVEL1",
            "COMMIT",
        ]

    def test_inner_rollback_uses_its_own_savepoint(self, history_db: HistoryDB, conn: Connection) -> None:
        statements = _record_transaction_sql(history_db.engine)
        tx = NestedTransaction(conn)

        tx.begin()
        tx.begin()
        tx.rollback()
        tx.commit()

        assert statements == ["BEGIN", "SAVEPOINT LEVEL1", "ROLLBACK TO SAVEPOINT LEVEL1", "COMMIT"]

    def test_savepoint_names_follow_depth(self) -> None:
        assert [savepoint_name(d) for d in (1, 2, 3)] == ["LEVEL1", "LEVEL2", "LEVEL3"]


class TestNestedSemantics:
    def test_inner_rollback_keeps_outer_work(self, conn: Connection) -> None:
        tx = NestedTransaction(conn)

        tx.begin()
        conn.execute(text("INSERT INTO items (name) VALUES ('outer')"))
        tx.begin()
        conn.execute(text("INSERT INTO items (name) VALUES ('inner')"))
        tx.rollback()
        tx.commit()

        assert _names(conn) == ["outer"]

    def test_outer_rollback_discards_committed_inner_work(self, conn: Connection) -> None:
        tx = NestedTransaction(conn)

        tx.begin()
        tx.begin()
        conn.execute(text("INSERT INTO items (name) VALUES ('inner')"))
        tx.commit()
        tx.rollback()

        assert _names(conn) == []
        assert tx.depth == 0

    def test_adopts_autobegun_transaction(self, conn: Connection) -> None:
        conn.execute(text("INSERT INTO items (name) VALUES ('before')"))
        assert conn.in_transaction()
        tx = NestedTransaction(conn)

        tx.begin()
        tx.commit()

        assert not conn.in_transaction()
        assert _names(conn) == ["before"]

    @pytest.mark.parametrize("operation", ["commit", "rollback"])
    def test_underflow_raises(self, conn: Connection, operation: str) -> None:
        tx = NestedTransaction(conn)

        with pytest.raises(TransactionError, match="no open transaction level") as exc_info:
            getattr(tx, operation)()

        assert exc_info.value.depth == 0

    def test_physical_commit_failure_is_transaction_error(self, conn: Connection, monkeypatch: pytest.MonkeyPatch) -> None:
        from sqlalchemy.exc import OperationalError

        tx = NestedTransaction(conn)
        tx.begin()
        physical = conn.get_transaction()
        assert physical is not None

        def failing_commit(self: object) -> None:
            raise OperationalError("COMMIT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(type(physical), "commit", failing_commit)

        with pytest.raises(TransactionError, match="Physical commit failed"):
            tx.commit()
        assert tx.depth == 0


class TestScope:
    def test_scope_commits_on_success(self, conn: Connection) -> None:
        tx = NestedTransaction(conn)

        with tx.scope():
            conn.execute(text("INSERT INTO items (name) VALUES ('kept')"))

        assert _names(conn) == ["kept"]

    def test_scope_rolls_back_only_its_level_on_error(self, conn: Connection) -> None:
        tx = NestedTransaction(conn)

        with tx.scope():
            conn.execute(text("INSERT INTO items (name) VALUES ('outer')"))
            with pytest.raises(ValueError), tx.scope():
                conn.execute(text("INSERT INTO items (name) VALUES ('inner')"))
                raise ValueError("boom")

        assert _names(conn) == ["outer"]

    def test_cancellation_unwinds_whole_stack(self, conn: Connection) -> None:
        tx = NestedTransaction(conn)

        with pytest.raises(KeyboardInterrupt):
            with tx.scope():
                conn.execute(text("INSERT INTO items (name) VALUES ('outer')"))
                with tx.scope():
                    raise KeyboardInterrupt

        assert tx.depth == 0
        assert not conn.in_transaction()
        assert _names(conn) == []

    def test_rollback_all_without_open_levels_is_noop(self, conn: Connection) -> None:
        tx = NestedTransaction(conn)

        tx.rollback_all()

        assert tx.depth == 0


class TestWithoutSavepoints:
    def test_inner_levels_issue_no_savepoints(self, history_db: HistoryDB, conn: Connection) -> None:
        statements = _record_transaction_sql(history_db.engine)
        tx = NestedTransaction(conn, savepoints=False)

        tx.begin()
        tx.begin()
        tx.commit()
        tx.commit()

        assert statements == ["BEGIN", "COMMIT"]

    def test_inner_rollback_makes_outer_commit_fail(self, conn: Connection) -> None:
        tx = NestedTransaction(conn, savepoints=False)

        tx.begin()
        conn.execute(text("INSERT INTO items (name) VALUES ('doomed')"))
        tx.begin()
        tx.rollback()

        with pytest.raises(TransactionError, match="inner level was rolled back"):
            tx.commit()

        assert _names(conn) == []
        assert tx.depth == 0
