"""Tests for settings models and YAML/environment loading."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from historize.core.config import (
    DatabaseSettings,
    HistorizeSettings,
    NamingSettings,
    load_settings,
)
from historize.core.naming import PrefixNamingPolicy


class TestHistorizeSettings:
    def test_defaults(self) -> None:
        settings = HistorizeSettings(database=DatabaseSettings(url="sqlite:///app.db"))

        assert settings.enabled is True
        assert settings.history_database is None
        assert settings.identifier_max_length == 64
        assert settings.naming.policy() == PrefixNamingPolicy("p_", "z_")
        assert settings.logging.level == "INFO"

    def test_settings_are_frozen(self) -> None:
        settings = HistorizeSettings(database=DatabaseSettings(url="sqlite:///app.db"))

        with pytest.raises(ValidationError):
            settings.enabled = False  # type: ignore[misc]

    def test_overlapping_prefixes_rejected(self) -> None:
        with pytest.raises(ValidationError, match="overlap"):
            NamingSettings(tracked_prefix="h_", history_prefix="h_x_")

    def test_empty_prefix_rejected(self) -> None:
        with pytest.raises(ValidationError):
            NamingSettings(tracked_prefix="")

    def test_in_memory_history_database_rejected(self) -> None:
        with pytest.raises(ValidationError, match="in-memory"):
            HistorizeSettings(
                database=DatabaseSettings(url="sqlite:///app.db"),
                history_database=DatabaseSettings(url="sqlite:///:memory:"),
            )

    def test_identifier_length_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            HistorizeSettings(database=DatabaseSettings(url="sqlite:///app.db"), identifier_max_length=0)


class TestLoadSettings:
    def test_loads_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.yaml"
        path.write_text(
            "database:\n"
            "  url: sqlite:///app.db\n"
            "history_database:\n"
            "  url: sqlite:///history.db\n"
            "naming:\n"
            "  tracked_prefix: app_\n"
            "  history_prefix: hist_\n"
            "identifier_max_length: 30\n"
        )

        settings = load_settings(path)

        assert settings.database.url == "sqlite:///app.db"
        assert settings.history_database is not None
        assert settings.history_database.url == "sqlite:///history.db"
        assert settings.naming.policy().history_name("app_users") == "hist_users"
        assert settings.identifier_max_length == 30

    def test_environment_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "settings.yaml"
        path.write_text("database:\n  url: sqlite:///app.db\nenabled: true\n")
        monkeypatch.setenv("HISTORIZE_ENABLED", "false")

        settings = load_settings(path)

        assert settings.enabled is False

    def test_expands_environment_references(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        path = tmp_path / "settings.yaml"
        path.write_text("database:\n  url: ${APP_DB_URL:-sqlite:///fallback.db}\n")
        monkeypatch.delenv("APP_DB_URL", raising=False)

        assert load_settings(path).database.url == "sqlite:///fallback.db"

        monkeypatch.setenv("APP_DB_URL", "postgresql://u:p@db/app")

        assert load_settings(path).database.url == "postgresql://u:p@db/app"

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "missing.yaml")

    def test_invalid_config_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "settings.yaml"
        path.write_text("enabled: true\n")

        with pytest.raises(ValidationError):
            load_settings(path)
