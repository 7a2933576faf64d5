"""Tests for structured logging configuration."""

import json
import logging

import pytest

from historize.core.logging import configure_logging, get_logger


class TestConfigureLogging:
    def test_json_output_is_one_object_per_line(self, capsys: pytest.CaptureFixture[str]) -> None:
        configure_logging(json_output=True, level="INFO")

        get_logger("historize.test").info("history_rows_recorded", table="p_orders", count=2)

        line = capsys.readouterr().out.strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["event"] == "history_rows_recorded"
        assert payload["table"] == "p_orders"
        assert payload["count"] == 2
        assert "_record" not in payload

    def test_noisy_loggers_never_below_warning(self) -> None:
        configure_logging(level="DEBUG")

        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        assert logging.getLogger("alembic").level == logging.WARNING
