"""Tracked-table naming convention.

A fixed prefix marks a table as tracked; its history table swaps that
prefix for another one: ``p_orders`` -> ``z_orders``. The mapping is a pure
string transform and is pluggable, since deployments choose their own
prefixes.
"""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from historize.contracts.errors import ConfigurationError


@runtime_checkable
class NamingPolicy(Protocol):
    """Maps tracked table names to history table names."""

    def is_tracked(self, table: str) -> bool:
        """Whether mutations of ``table`` must be captured."""
        ...

    def history_name(self, table: str) -> str:
        """History table name for tracked ``table``.

        Raises:
            ConfigurationError: If ``table`` is not tracked
        """
        ...


@dataclass(frozen=True)
class PrefixNamingPolicy:
    """Prefix substitution: ``tracked_prefix + suffix`` -> ``history_prefix + suffix``."""

    tracked_prefix: str = "p_"
    history_prefix: str = "z_"

    def __post_init__(self) -> None:
        if not self.tracked_prefix or not self.history_prefix:
            raise ConfigurationError("Naming convention prefixes must be non-empty")
        if self.tracked_prefix.startswith(self.history_prefix) or self.history_prefix.startswith(self.tracked_prefix):
            # History tables would themselves look tracked, or vice versa
            raise ConfigurationError(
                f"Naming convention prefixes overlap: tracked={self.tracked_prefix!r}, history={self.history_prefix!r}"
            )

    def is_tracked(self, table: str) -> bool:
        return table.startswith(self.tracked_prefix) and len(table) > len(self.tracked_prefix)

    def history_name(self, table: str) -> str:
        if not self.is_tracked(table):
            raise ConfigurationError(
                f"Table is not prefixed with {self.tracked_prefix!r}, it has no history table",
                table=table,
            )
        return self.history_prefix + table[len(self.tracked_prefix) :]
