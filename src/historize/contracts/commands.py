"""Capability interface shared by plain and capturing SQL commands.

``SqlCommands`` executes mutations directly; ``CaptureInterceptor`` wraps
any ``MutatingCommands`` and records history around each call. Callers
depend on this protocol, not on either class.
"""

from collections.abc import Callable, Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import ColumnElement, Executable

# Caller-supplied WHERE condition: raw SQL with named binds, or a Core expression
Where = str | ColumnElement[bool]

# Returns the acting user id at the moment a history row is written
ActorProvider = Callable[[], int | None]


def no_actor() -> int | None:
    """ActorProvider for unattended writes (migrations, batch jobs)."""
    return None


def static_actor(actor_id: int | None) -> ActorProvider:
    """ActorProvider that always reports the same actor."""

    def _provider() -> int | None:
        return actor_id

    return _provider


@runtime_checkable
class MutatingCommands(Protocol):
    """The four mutating operations (plus raw execution), each returning the affected row count."""

    def insert(self, table: str, values: Mapping[str, Any]) -> int:
        """Insert one row."""
        ...

    def update(
        self,
        table: str,
        values: Mapping[str, Any],
        where: Where | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """Update every row matching ``where``."""
        ...

    def delete(
        self,
        table: str,
        where: Where | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> int:
        """Delete every row matching ``where``."""
        ...

    def upsert(self, table: str, values: Mapping[str, Any], unique_keys: Sequence[str]) -> int:
        """Insert, or update the row that collides on ``unique_keys``."""
        ...

    def execute(
        self,
        statement: str | Executable,
        params: Mapping[str, Any] | None = None,
        *,
        table: str | None = None,
    ) -> int:
        """Run a caller-built statement as-is."""
        ...

    @property
    def last_insert_id(self) -> Any:
        """Generated primary key of the most recent insert or upsert."""
        ...
