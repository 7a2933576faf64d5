"""Catalog lookups: table shapes and existence, reflected from the datastore.

Reflected tables are cached per catalog; the Schema Mirror invalidates
entries it changes. Existence checks (``has_table``) always hit the
catalog and match the exact table name.
"""

from dataclasses import dataclass

from sqlalchemy import Column, Connection, MetaData, Table, inspect
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from historize.contracts.errors import ConfigurationError, DatastoreError


@dataclass(frozen=True)
class TableInfo:
    """Reflected shape of one table."""

    table: Table

    @property
    def name(self) -> str:
        return self.table.name

    @property
    def columns(self) -> list[Column]:  # type: ignore[type-arg]
        return list(self.table.columns)

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.table.columns)

    @property
    def primary_key(self) -> tuple[str, ...]:
        return tuple(c.name for c in self.table.primary_key.columns)

    @property
    def single_primary_key(self) -> str | None:
        """The key column when the key is not composite, else None."""
        pk = self.primary_key
        if len(pk) == 1:
            return pk[0]
        return None


class SchemaCatalog:
    """Reflects tables visible on one connection."""

    def __init__(self, connection: Connection) -> None:
        self._connection = connection
        self._metadata = MetaData()
        self._tables: dict[str, TableInfo] = {}

    @property
    def connection(self) -> Connection:
        return self._connection

    def has_table(self, name: str) -> bool:
        """Whether ``name`` exists, exactly as spelled."""
        try:
            return bool(inspect(self._connection).has_table(name))
        except SQLAlchemyError as e:
            raise DatastoreError(f"Catalog lookup failed: {e}", table=name) from e

    def table_names(self) -> list[str]:
        try:
            return sorted(inspect(self._connection).get_table_names())
        except SQLAlchemyError as e:
            raise DatastoreError(f"Catalog listing failed: {e}") from e

    def table(self, name: str) -> TableInfo:
        """Reflected shape of ``name``.

        Raises:
            ConfigurationError: If the table does not exist
        """
        if name in self._tables:
            return self._tables[name]
        info = TableInfo(self._reflect(name))
        self._tables[name] = info
        return info

    def keyed_table(self, name: str) -> TableInfo:
        """Like ``table`` but requires at least one primary-key column.

        Raises:
            ConfigurationError: If the table does not exist or has no primary key
        """
        info = self.table(name)
        if not info.primary_key:
            raise ConfigurationError("Table has no primary key; history capture requires one", table=name)
        return info

    def invalidate(self, name: str | None = None) -> None:
        """Forget cached shapes (all of them when ``name`` is None)."""
        if name is None:
            self._tables.clear()
            self._metadata = MetaData()
            return
        self._tables.pop(name, None)
        if name in self._metadata.tables:
            self._metadata.remove(self._metadata.tables[name])

    def _reflect(self, name: str) -> Table:
        if name in self._metadata.tables:
            self._metadata.remove(self._metadata.tables[name])
        try:
            return Table(name, self._metadata, autoload_with=self._connection)
        except NoSuchTableError as e:
            raise ConfigurationError("Table not found in catalog", table=name) from e
        except SQLAlchemyError as e:
            raise DatastoreError(f"Catalog reflection failed: {e}", table=name) from e
