"""KeySpec: which rows of a tracked table an operation targets.

A KeySpec takes one of three shapes:

- one key column with a scalar value (equality) or a list of values
  (membership)
- several key columns, each with a scalar or a list
- an explicit list of full rows, used when the caller already holds the
  values (DELETE capture fetches rows once and reuses them)

Membership lists are restricted to integer-like values. String keys are
only matched by equality; batching them into IN lists is not supported.
"""

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from types import MappingProxyType
from typing import Any

from historize.contracts.errors import ValidationError

# A resolved row: column name -> value
Row = Mapping[str, Any]

# Rows resolved from a KeySpec at one instant
ChangeSet = list[dict[str, Any]]

_INTEGER_STRING = re.compile(r"^\s*[+-]?\d+\s*$")


def is_membership(value: Any) -> bool:
    """Whether a KeySpec value selects by membership rather than equality."""
    return isinstance(value, (list, tuple, set, frozenset))


def coerce_key_integer(value: Any, *, column: str) -> int:
    """Coerce one membership value to int, rejecting anything non-numeric.

    Raises:
        ValidationError: If value is not integer-like
    """
    if isinstance(value, bool):
        raise ValidationError(
            f"Non-integer value {value!r} in membership list is not supported",
            key=column,
        )
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)) and value == int(value):
        return int(value)
    if isinstance(value, str) and _INTEGER_STRING.match(value):
        return int(value)
    raise ValidationError(
        f"Non-integer value {value!r} in membership list is not supported",
        key=column,
    )


def _freeze_value(column: str, value: Any) -> Any:
    if is_membership(value):
        return tuple(coerce_key_integer(v, column=column) for v in value)
    if isinstance(value, Mapping):
        raise ValidationError(f"Malformed usage, value for key '{column}' is a mapping", key=column)
    return value


@dataclass(frozen=True)
class KeySpec:
    """Targets rows of a table by key columns or by explicit rows.

    Use the constructors (``single``, ``composite``, ``of_rows``,
    ``from_keys``) rather than building instances directly.
    """

    columns: tuple[str, ...] = ()
    values: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    rows: tuple[Row, ...] | None = None

    def __post_init__(self) -> None:
        if self.rows is not None:
            if self.columns or self.values:
                raise ValidationError("Explicit-row KeySpec cannot also declare key columns")
            return
        if not self.columns:
            raise ValidationError("KeySpec requires at least one key column")
        if len(set(self.columns)) != len(self.columns):
            raise ValidationError(f"Duplicate key columns: {list(self.columns)}")
        frozen: dict[str, Any] = {}
        for column in self.columns:
            if column not in self.values:
                raise ValidationError(f"Malformed usage, value not present for key '{column}'", key=column)
            frozen[column] = _freeze_value(column, self.values[column])
        extra = set(self.values) - set(self.columns)
        if extra:
            raise ValidationError(f"Values given for undeclared key columns: {sorted(extra)}")
        object.__setattr__(self, "values", MappingProxyType(frozen))

    @classmethod
    def single(cls, column: str, value: Any) -> "KeySpec":
        """One key column; a list value selects by membership."""
        return cls(columns=(column,), values={column: value})

    @classmethod
    def composite(cls, values: Mapping[str, Any]) -> "KeySpec":
        """Several key columns, each with a scalar or a list of values."""
        return cls(columns=tuple(values), values=dict(values))

    @classmethod
    def of_rows(cls, rows: Sequence[Row]) -> "KeySpec":
        """Rows the caller already holds; resolution returns them unchanged."""
        return cls(rows=tuple(MappingProxyType(dict(row)) for row in rows))

    @classmethod
    def from_keys(cls, keys: str | Sequence[str], values: Any) -> "KeySpec":
        """Build a KeySpec from a ``(keys, values)`` pair.

        Accepted shapes:
            keys="id", values=5                     -> id = 5
            keys="id", values=[1, 2]                -> id IN (1, 2)
            keys="id", values={"id": 5}             -> id = 5
            keys="id", values={"id": [1, 2]}        -> id IN (1, 2)
            keys=["a", "b"], values={"a": 1, "b": [2, 3]}

        Raises:
            ValidationError: If keys and values do not line up
        """
        if isinstance(keys, str):
            if isinstance(values, Mapping):
                if keys not in values:
                    raise ValidationError(f"Malformed usage, value not present for key '{keys}'", key=keys)
                return cls.single(keys, values[keys])
            return cls.single(keys, values)
        if not isinstance(keys, Sequence) or not keys:
            raise ValidationError(f"Improper key format: {keys!r}")
        if not isinstance(values, Mapping):
            raise ValidationError(
                f"Malformed usage, values not a mapping for multiple keys {list(keys)}",
                key=list(keys),
            )
        missing = [k for k in keys if k not in values]
        if missing:
            raise ValidationError(f"Malformed usage, value not present for key '{missing[0]}'", key=missing[0])
        return cls.composite({k: values[k] for k in keys})

    @property
    def is_explicit(self) -> bool:
        """Whether this KeySpec carries full rows instead of key predicates."""
        return self.rows is not None

    def describe(self) -> dict[str, Any] | list[dict[str, Any]]:
        """Plain representation for error messages and logs."""
        if self.rows is not None:
            return [dict(row) for row in self.rows]
        return {column: self.values[column] for column in self.columns}
