"""Plain SQL commands: the four mutating operations, without history capture.

This is the primitive the Capture Interceptor wraps. It knows nothing about
tracked tables; it builds Core statements from reflected tables, executes
them on one connection and reports affected row counts.
"""

from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import ColumnElement, Connection, Executable, TextClause, text
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import SQLAlchemyError

from historize.contracts.commands import Where
from historize.contracts.errors import DatastoreError, ValidationError
from historize.core.history.catalog import SchemaCatalog


def where_clause(where: Where | None, params: Mapping[str, Any] | None) -> ColumnElement[bool] | TextClause | None:
    """Turn a caller WHERE condition into a Core clause with its binds applied.

    String conditions use ``:name`` bind syntax and take values from
    ``params``. Expressions take ``params`` as replacements for their
    named ``bindparam()`` values.
    """
    if where is None:
        if params:
            raise ValidationError("Bind parameters given without a WHERE condition")
        return None
    if isinstance(where, str):
        clause = text(where)
        return clause.bindparams(**params) if params else clause
    if params:
        return where.params(**params)
    return where


class SqlCommands:
    """Executes inserts, updates, deletes and upserts on one connection.

    Satisfies ``MutatingCommands``.
    """

    def __init__(self, connection: Connection, catalog: SchemaCatalog | None = None) -> None:
        self._connection = connection
        self._catalog = catalog if catalog is not None else SchemaCatalog(connection)
        self._last_insert_id: Any = None

    @property
    def connection(self) -> Connection:
        return self._connection

    @property
    def catalog(self) -> SchemaCatalog:
        return self._catalog

    @property
    def last_insert_id(self) -> Any:
        """Generated key of the most recent insert or upsert.

        A scalar for single-column keys, a tuple for composite keys.
        """
        return self._last_insert_id

    def insert(self, table: str, values: Mapping[str, Any]) -> int:
        target = self._catalog.table(table).table
        result = self._run(target.insert().values(dict(values)), table=table, action="insert")
        self._last_insert_id = self._inserted_key(result)
        return result.rowcount

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        where: Where | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        target = self._catalog.table(table).table
        stmt = target.update().values(dict(values))
        clause = where_clause(where, params)
        if clause is not None:
            stmt = stmt.where(clause)
        return self._run(stmt, table=table, action="update").rowcount

    def delete(
        self,
        table: str,
        where: Where | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        target = self._catalog.table(table).table
        stmt = target.delete()
        clause = where_clause(where, params)
        if clause is not None:
            stmt = stmt.where(clause)
        return self._run(stmt, table=table, action="delete").rowcount

    def upsert(self, table: str, values: Mapping[str, Any], unique_keys: Sequence[str]) -> int:
        """Insert ``values``, updating the existing row on a ``unique_keys`` collision.

        Raises:
            ValidationError: If ``values`` lacks a unique key column
            DatastoreError: If the dialect has no upsert construct, or the
                datastore rejects the statement
        """
        target = self._catalog.table(table).table
        row = dict(values)
        missing = [k for k in unique_keys if k not in row]
        if missing:
            raise ValidationError(f"Upsert values lack unique key columns {missing}", table=table, action="upsert")
        updates = [k for k in row if k not in unique_keys]
        dialect = self._connection.dialect.name
        stmt: Executable
        if dialect in ("sqlite", "postgresql"):
            if dialect == "sqlite":
                from sqlalchemy.dialects.sqlite import insert as dialect_insert
            else:
                from sqlalchemy.dialects.postgresql import insert as dialect_insert
            ins = dialect_insert(target).values(row)
            if updates:
                stmt = ins.on_conflict_do_update(
                    index_elements=list(unique_keys),
                    set_={k: ins.excluded[k] for k in updates},
                )
            else:
                stmt = ins.on_conflict_do_nothing(index_elements=list(unique_keys))
        elif dialect in ("mysql", "mariadb"):
            from sqlalchemy.dialects.mysql import insert as mysql_insert

            mins = mysql_insert(target).values(row)
            # Assigning a key column to itself keeps "no change" upserts valid
            assignments = {k: mins.inserted[k] for k in (updates or list(unique_keys)[:1])}
            stmt = mins.on_duplicate_key_update(assignments)
        else:
            raise DatastoreError(f"Upsert is not supported on dialect '{dialect}'", table=table, action="upsert")
        result = self._run(stmt, table=table, action="upsert")
        self._last_insert_id = self._inserted_key(result)
        return result.rowcount

    def execute(self, statement: str | Executable, params: Mapping[str, Any] | None = None, *, table: str | None = None) -> int:
        """Run a caller-built statement; returns its affected row count."""
        stmt = text(statement) if isinstance(statement, str) else statement
        result = self._run(stmt, table=table, action="execute", params=params)
        if result.is_insert:
            self._last_insert_id = self._inserted_key(result)
        elif isinstance(stmt, TextClause) and stmt.text.lstrip().upper().startswith(("INSERT", "REPLACE")):
            # Textual inserts only expose the driver's lastrowid
            self._last_insert_id = result.lastrowid
        return result.rowcount

    def _run(
        self,
        stmt: Executable,
        *,
        table: str | None,
        action: str,
        params: Mapping[str, Any] | None = None,
    ) -> CursorResult[Any]:
        try:
            if params:
                return self._connection.execute(stmt, dict(params))
            return self._connection.execute(stmt)
        except SQLAlchemyError as e:
            raise DatastoreError(f"{action} statement failed: {e}", table=table, action=action) from e

    @staticmethod
    def _inserted_key(result: CursorResult[Any]) -> Any:
        try:
            key = result.inserted_primary_key
        except SQLAlchemyError:
            return result.lastrowid
        if key is None:
            return result.lastrowid
        values = tuple(key)
        if len(values) == 1:
            return values[0]
        return values
