"""Tests for settings loading."""

import pytest
from pydantic import ValidationError

from forum.config import (
    SETTINGS_ENV_VAR,
    AppSettings,
    ChatSettings,
    LoggingSettings,
    get_config,
    load_settings,
    reset_config,
    set_config,
)


def test_defaults_when_file_missing(tmp_path):
    cfg = load_settings(tmp_path / "missing.yaml")

    assert cfg.server.port == 8080
    assert cfg.logging.level == "info"
    assert cfg.chat.outbound_queue_size == 256
    assert cfg.chat.persist_timeout_seconds == 3.0
    assert cfg.chat.sort_timeout_seconds == 2.0
    assert cfg.chat.history_page_size == 10
    assert cfg.storage.db_path == "chat_messages.duckdb"


def test_yaml_values_override_defaults(tmp_path):
    settings_file = tmp_path / "forum.settings.yaml"
    settings_file.write_text(
        "server:\n"
        "  port: 9000\n"
        "logging:\n"
        "  level: DEBUG\n"
        "chat:\n"
        "  outbound_queue_size: 32\n"
        "storage:\n"
        "  db_path: /var/lib/forum/chat.duckdb\n",
        encoding="utf-8",
    )

    cfg = load_settings(settings_file)

    assert cfg.server.port == 9000
    assert cfg.server.host == "0.0.0.0"
    assert cfg.logging.level == "debug"
    assert cfg.chat.outbound_queue_size == 32
    assert cfg.chat.history_page_size == 10
    assert cfg.storage.db_path == "/var/lib/forum/chat.duckdb"


def test_empty_file_gives_defaults(tmp_path):
    settings_file = tmp_path / "forum.settings.yaml"
    settings_file.write_text("", encoding="utf-8")

    assert load_settings(settings_file) == AppSettings()


def test_env_var_selects_settings_file(tmp_path, monkeypatch):
    settings_file = tmp_path / "custom.yaml"
    settings_file.write_text("server:\n  port: 7070\n", encoding="utf-8")
    monkeypatch.setenv(SETTINGS_ENV_VAR, str(settings_file))
    reset_config()

    assert get_config().server.port == 7070
    # Cached until reset
    settings_file.write_text("server:\n  port: 7171\n", encoding="utf-8")
    assert get_config().server.port == 7070


def test_set_config_replaces_cached_settings():
    custom = AppSettings(chat=ChatSettings(history_page_size=5))
    set_config(custom)
    assert get_config() is custom


def test_unknown_log_level_rejected():
    with pytest.raises(ValidationError):
        LoggingSettings(level="chatty")


@pytest.mark.parametrize("field", ["outbound_queue_size", "history_page_size"])
def test_sizes_must_be_positive(field):
    with pytest.raises(ValidationError):
        ChatSettings(**{field: 0})


def test_timeouts_must_be_positive():
    with pytest.raises(ValidationError):
        ChatSettings(persist_timeout_seconds=0)
