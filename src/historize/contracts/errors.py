"""Exception hierarchy for the change-capture engine.

Every error carries enough context (table, key, action) to diagnose a
failure without inspecting engine internals. The engine rolls back the
current transaction scope before any of these escape, and never swallows
them.
"""

from typing import Any


class HistorizeError(Exception):
    """Base class for all change-capture errors.

    Attributes:
        table: Table the failing operation targeted, if known
        action: Capture action or DDL operation being attempted, if known
        key: Key specification or key values involved, if known
    """

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        action: str | None = None,
        key: Any = None,
    ) -> None:
        self.table = table
        self.action = action
        self.key = key
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        context = []
        if self.table is not None:
            context.append(f"table={self.table}")
        if self.action is not None:
            context.append(f"action={self.action}")
        if self.key is not None:
            context.append(f"key={self.key!r}")
        if not context:
            return base
        return f"{base} ({', '.join(context)})"


class ConfigurationError(HistorizeError):
    """Raised when schema or configuration does not support history capture.

    Examples: a tracked table without a history table, a tracked table with
    no (or an ambiguous) primary key, a malformed naming convention.
    """

    pass


class ValidationError(HistorizeError):
    """Raised when a request is malformed.

    Examples: a KeySpec whose keys and values do not line up, a non-numeric
    value in a membership list, an upsert whose unique key matched more
    than one row.
    """

    pass


class TransactionError(HistorizeError):
    """Raised on nested transaction misuse or transaction control failure."""

    def __init__(self, message: str, *, depth: int | None = None, **kwargs: Any) -> None:
        self.depth = depth
        super().__init__(message, **kwargs)


class DatastoreError(HistorizeError):
    """Raised when the datastore rejects a business or history statement.

    The original SQLAlchemy exception is chained as ``__cause__``.
    """

    pass
