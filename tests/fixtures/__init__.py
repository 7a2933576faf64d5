"""Shared pytest fixtures for historize tests.

Available fixtures:
- history_db: fresh in-memory HistoryDB
- orders_db: history_db with p_orders and its history table
"""

from tests.fixtures.history import history_db, orders_db

__all__ = [
    "history_db",
    "orders_db",
]
