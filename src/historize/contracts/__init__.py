"""Shared contracts: action kinds, key specifications, errors, command protocol.

Leaf module: imports nothing from ``historize.core``.
"""

from historize.contracts.commands import (
    ActorProvider,
    MutatingCommands,
    Where,
    no_actor,
    static_actor,
)
from historize.contracts.enums import HistoryAction
from historize.contracts.errors import (
    ConfigurationError,
    DatastoreError,
    HistorizeError,
    TransactionError,
    ValidationError,
)
from historize.contracts.keyspec import ChangeSet, KeySpec, Row, coerce_key_integer, is_membership

__all__ = [
    "ActorProvider",
    "ChangeSet",
    "ConfigurationError",
    "DatastoreError",
    "HistorizeError",
    "HistoryAction",
    "KeySpec",
    "MutatingCommands",
    "Row",
    "TransactionError",
    "ValidationError",
    "Where",
    "coerce_key_integer",
    "is_membership",
    "no_actor",
    "static_actor",
]
