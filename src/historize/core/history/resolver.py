"""Row Resolver: turns a KeySpec into the rows it currently matches.

Used to snapshot "before" state (update/delete, resolved ahead of the
statement) and "after" state (insert/update, resolved once the statement
has run). Reads issued ahead of a destructive statement take row locks
(``SELECT ... FOR UPDATE``) where the dialect supports them, so no
concurrent writer can change the resolved rows before the mutation runs.
"""

from collections.abc import Mapping, Sequence
from typing import Any

from sqlalchemy import Connection, Select, and_, select
from sqlalchemy.exc import SQLAlchemyError

from historize.contracts.commands import Where
from historize.contracts.errors import DatastoreError, ValidationError
from historize.contracts.keyspec import ChangeSet, KeySpec, coerce_key_integer, is_membership
from historize.core.history.catalog import SchemaCatalog, TableInfo
from historize.core.history.commands import where_clause


def _integer_like(value: Any) -> bool:
    try:
        coerce_key_integer(value, column="")
    except ValidationError:
        return False
    return True


class RowResolver:
    """Resolves KeySpecs and WHERE conditions to full rows on one connection."""

    def __init__(self, connection: Connection, catalog: SchemaCatalog | None = None) -> None:
        self._connection = connection
        self._catalog = catalog if catalog is not None else SchemaCatalog(connection)

    @property
    def catalog(self) -> SchemaCatalog:
        return self._catalog

    def resolve(self, table: str, key_spec: KeySpec, *, lock: bool = False) -> ChangeSet:
        """Rows of ``table`` matched by ``key_spec``.

        Explicit-row KeySpecs are returned as given, without querying.

        Raises:
            ValidationError: If a key column does not exist on the table
            ConfigurationError: If the table does not exist
        """
        if key_spec.rows is not None:
            return [dict(row) for row in key_spec.rows]
        info = self._catalog.table(table)
        target = info.table
        predicates = []
        for name in key_spec.columns:
            if name not in target.c:
                raise ValidationError(f"Key column '{name}' does not exist", table=table, key=key_spec.describe())
            value = key_spec.values[name]
            if is_membership(value):
                predicates.append(target.c[name].in_(value))
            else:
                predicates.append(target.c[name] == value)
        stmt = select(target).where(and_(*predicates))
        return self._fetch(self._ordered(stmt, info, lock), table)

    def rows_where(
        self,
        table: str,
        where: Where | None,
        params: Mapping[str, Any] | None = None,
        *,
        lock: bool = False,
    ) -> ChangeSet:
        """Full rows of ``table`` matched by a caller WHERE condition."""
        info = self._catalog.table(table)
        stmt = select(info.table)
        clause = where_clause(where, params)
        if clause is not None:
            stmt = stmt.where(clause)
        return self._fetch(self._ordered(stmt, info, lock), table)

    def primary_keys(
        self,
        table: str,
        where: Where | None,
        params: Mapping[str, Any] | None = None,
        *,
        lock: bool = False,
    ) -> list[Any]:
        """Primary-key values of the rows matched by a caller WHERE condition.

        Scalars for single-column keys, tuples for composite keys.

        Raises:
            ConfigurationError: If the table has no primary key
        """
        info = self._catalog.keyed_table(table)
        pk_columns = list(info.table.primary_key.columns)
        stmt = select(*pk_columns)
        clause = where_clause(where, params)
        if clause is not None:
            stmt = stmt.where(clause)
        try:
            result = self._connection.execute(self._ordered(stmt, info, lock))
        except SQLAlchemyError as e:
            raise DatastoreError(f"Key lookup failed: {e}", table=table) from e
        if len(pk_columns) == 1:
            return [row[0] for row in result]
        return [tuple(row) for row in result]

    def by_primary_key(self, table: str, keys: Sequence[Any]) -> ChangeSet:
        """Current rows for primary-key values previously returned by ``primary_keys``.

        Integer keys are fetched with one membership query. Other keys are
        fetched one equality query per key, never batched into IN lists.
        """
        if not keys:
            return []
        info = self._catalog.keyed_table(table)
        pk = info.primary_key
        if len(pk) == 1:
            if all(_integer_like(k) for k in keys):
                return self.resolve(table, KeySpec.single(pk[0], list(keys)))
            rows: ChangeSet = []
            for key in keys:
                rows.extend(self.resolve(table, KeySpec.single(pk[0], key)))
            return rows
        rows = []
        for key in keys:
            rows.extend(self.resolve(table, KeySpec.composite(dict(zip(pk, key, strict=True)))))
        return rows

    def _ordered(self, stmt: Select[Any], info: TableInfo, lock: bool) -> Select[Any]:
        # Stable order within one statement; callers must not rely on more
        stmt = stmt.order_by(*info.table.primary_key.columns)
        if lock:
            stmt = stmt.with_for_update()
        return stmt

    def _fetch(self, stmt: Select[Any], table: str) -> ChangeSet:
        try:
            result = self._connection.execute(stmt)
        except SQLAlchemyError as e:
            raise DatastoreError(f"Row resolution failed: {e}", table=table) from e
        return [dict(row._mapping) for row in result]
