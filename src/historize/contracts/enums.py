"""Action kinds recorded in history tables."""

from enum import StrEnum


class HistoryAction(StrEnum):
    """Kind of mutation a history row records.

    Stored in the database (history tables, ``action`` column).
    """

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
