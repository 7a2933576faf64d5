"""Tests for the change-capture exception hierarchy."""

import pytest

from historize.contracts import (
    ConfigurationError,
    DatastoreError,
    HistorizeError,
    TransactionError,
    ValidationError,
)


class TestErrorContext:
    def test_message_without_context(self) -> None:
        assert str(HistorizeError("boom")) == "boom"

    def test_context_is_appended_to_message(self) -> None:
        error = DatastoreError("insert failed", table="p_orders", action="INSERT", key={"id": 1})

        assert str(error) == "insert failed (table=p_orders, action=INSERT, key={'id': 1})"
        assert error.table == "p_orders"
        assert error.action == "INSERT"
        assert error.key == {"id": 1}

    def test_transaction_error_carries_depth(self) -> None:
        error = TransactionError("underflow", depth=0, table="p_orders")

        assert error.depth == 0
        assert error.table == "p_orders"

    @pytest.mark.parametrize("cls", [ConfigurationError, ValidationError, TransactionError, DatastoreError])
    def test_all_errors_share_base(self, cls: type[HistorizeError]) -> None:
        assert issubclass(cls, HistorizeError)
