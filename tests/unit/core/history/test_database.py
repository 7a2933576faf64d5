"""Tests for HistoryDB engine management, sessions and separate history datastores."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
import sqlalchemy as sa
from sqlalchemy import text

from historize.contracts import ConfigurationError, static_actor
from historize.core.config import DatabaseSettings, HistorizeSettings, NamingSettings
from historize.core.history.commands import SqlCommands
from historize.core.history.database import HistoryDB
from historize.core.history.interceptor import CaptureInterceptor
from tests.fixtures.history import ORDERS, create_orders, fetch_rows, history_rows


class TestHistoryDB:
    def test_in_memory_connections_share_one_database(self, history_db: HistoryDB) -> None:
        with history_db.connections() as (conn, history_conn):
            conn.execute(text("CREATE TABLE t (id INTEGER PRIMARY KEY)"))
            assert history_conn is None

        assert sa.inspect(history_db.engine).has_table("t")

    def test_pending_work_rolled_back_on_error(self, history_db: HistoryDB) -> None:
        with history_db.connections() as (conn, _):
            conn.execute(text("CREATE TABLE t (id INTEGER PRIMARY KEY)"))

        with pytest.raises(RuntimeError), history_db.connections() as (conn, _):
            conn.execute(text("INSERT INTO t (id) VALUES (1)"))
            raise RuntimeError("abort")

        assert fetch_rows(history_db.engine, "t") == []

    def test_session_yields_interceptor(self, history_db: HistoryDB) -> None:
        with history_db.session() as commands:
            assert isinstance(commands, CaptureInterceptor)

    def test_disabled_session_yields_plain_commands(self) -> None:
        db = HistoryDB.in_memory(enabled=False)
        with db.mirror() as mirror:
            create_orders(mirror)

        with db.session() as commands:
            assert type(commands) is SqlCommands
            commands.insert(ORDERS, {"status": "new"})

        assert len(fetch_rows(db.engine, ORDERS)) == 1
        assert not sa.inspect(db.engine).has_table("z_orders")
        db.close()

    def test_close_is_idempotent_and_engine_unavailable_after(self) -> None:
        db = HistoryDB.in_memory()
        db.close()
        db.close()

        with pytest.raises(RuntimeError, match="not initialized"):
            _ = db.engine

    def test_context_manager_closes(self) -> None:
        with HistoryDB.in_memory() as db:
            assert db.engine is not None

        with pytest.raises(RuntimeError):
            _ = db.engine

    def test_sqlite_pragmas_applied(self, tmp_path: Path) -> None:
        with HistoryDB(f"sqlite:///{tmp_path / 'app.db'}") as db, db.engine.connect() as conn:
            assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
            assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"


class TestFromSettings:
    def test_naming_and_limits_come_from_settings(self, tmp_path: Path) -> None:
        settings = HistorizeSettings(
            database=DatabaseSettings(url=f"sqlite:///{tmp_path / 'app.db'}"),
            naming=NamingSettings(tracked_prefix="app_", history_prefix="hist_"),
            identifier_max_length=30,
        )

        with HistoryDB.from_settings(settings) as db:
            assert db.naming.history_name("app_users") == "hist_users"
            assert db.identifier_max_length == 30
            assert db.history_engine is None


class TestSeparateHistoryDatastore:
    @pytest.fixture
    def split_db(self, tmp_path: Path) -> Iterator[HistoryDB]:
        db = HistoryDB(
            f"sqlite:///{tmp_path / 'app.db'}",
            history_connection_string=f"sqlite:///{tmp_path / 'history.db'}",
        )
        with db.mirror() as mirror:
            create_orders(mirror)
        yield db
        db.close()

    def test_history_table_lives_in_history_datastore(self, split_db: HistoryDB) -> None:
        assert split_db.history_engine is not None
        assert set(sa.inspect(split_db.engine).get_table_names()) == {ORDERS}
        assert set(sa.inspect(split_db.history_engine).get_table_names()) == {"z_orders"}

    def test_history_written_to_history_datastore(self, split_db: HistoryDB) -> None:
        with split_db.session(actor=static_actor(4)) as commands:
            commands.insert(ORDERS, {"status": "new"})
            commands.update(ORDERS, {"status": "paid"}, "id = 1")

        assert [(r["id"], r["status"], r["action"], r["actor_id"]) for r in history_rows(split_db)] == [
            (1, "new", "INSERT", 4),
            (1, "paid", "UPDATE", 4),
        ]

    def test_history_failure_rolls_back_primary(self, split_db: HistoryDB) -> None:
        assert split_db.history_engine is not None
        with split_db.history_engine.begin() as conn:
            conn.execute(text("DROP TABLE z_orders"))

        with split_db.session() as commands:
            with pytest.raises(ConfigurationError):
                commands.insert(ORDERS, {"status": "new"})

        assert fetch_rows(split_db.engine, ORDERS) == []

    def test_mirror_rejects_missing_history_in_history_datastore(self, split_db: HistoryDB) -> None:
        assert split_db.history_engine is not None
        with split_db.history_engine.begin() as conn:
            conn.execute(text("DROP TABLE z_orders"))

        with split_db.mirror() as mirror:
            with pytest.raises(ConfigurationError, match="does not exist"):
                mirror.add_column(ORDERS, sa.Column("note", sa.Text))
