"""Tests for configuration loading and logging setup."""

from __future__ import annotations

import logging
import sys

import pytest

from omnibrain.config import DEFAULT_CREDENTIALS_FILE, Config, configure_logging, load_config
from omnibrain.errors import ConfigError


@pytest.fixture()
def credentials(tmp_path):
    path = tmp_path / "key.json"
    path.write_text("{}")
    return str(path)


def test_user_id_from_environment(credentials):
    config = load_config([], {"USER_ID": "alice", "OMNIBRAIN_CREDENTIALS": credentials})
    assert config.user_id == "alice"
    assert config.backend == "firestore"
    assert config.credentials_path == credentials
    assert config.log_level == "info"


def test_arguments_override_environment(credentials):
    config = load_config(
        ["--user-id=bob", f"--credentials={credentials}", "--gemini-key", "g-arg"],
        {"USER_ID": "alice", "GEMINI_API_KEY": "g-env"},
    )
    assert config.user_id == "bob"
    assert config.gemini_api_key == "g-arg"


def test_missing_user_id_is_an_error(credentials):
    with pytest.raises(ConfigError, match="USER_ID"):
        load_config([], {"OMNIBRAIN_CREDENTIALS": credentials})


def test_empty_values_count_as_unset(credentials):
    with pytest.raises(ConfigError):
        load_config(["--user-id="], {"USER_ID": "", "OMNIBRAIN_CREDENTIALS": credentials})


def test_missing_credentials_file_is_an_error(tmp_path):
    env = {"USER_ID": "alice", "OMNIBRAIN_CREDENTIALS": str(tmp_path / "nope.json")}
    with pytest.raises(ConfigError, match="credentials"):
        load_config([], env)


def test_default_credentials_path(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    (tmp_path / DEFAULT_CREDENTIALS_FILE).write_text("{}")
    config = load_config([], {"USER_ID": "alice"})
    assert config.credentials_path == DEFAULT_CREDENTIALS_FILE


def test_google_application_credentials_fallback(credentials):
    config = load_config([], {"USER_ID": "alice", "GOOGLE_APPLICATION_CREDENTIALS": credentials})
    assert config.credentials_path == credentials


def test_sqlite_backend_needs_no_credentials(tmp_path):
    db = str(tmp_path / "m.db")
    config = load_config(["--backend=sqlite", f"--db-path={db}"], {"USER_ID": "alice"})
    assert config.backend == "sqlite"
    assert config.sqlite_path == db


def test_unknown_backend():
    with pytest.raises(ConfigError, match="backend"):
        load_config(["--backend=mongo"], {"USER_ID": "alice"})


def test_embedding_settings(tmp_path):
    env = {
        "USER_ID": "alice",
        "OMNIBRAIN_BACKEND": "sqlite",
        "OPENAI_API_KEY": "sk",
        "OPENAI_BASE_URL": "http://localhost:11434/v1",
        "OPENAI_MODEL": "nomic-embed-text",
        "COHERE_API_KEY": "co",
        "COHERE_MODEL": "embed-multilingual-v3.0",
        "EMBEDDING_PROVIDER": "openai-compatible",
    }
    config = load_config(["--unrelated-flag"], env)
    assert config == Config(
        user_id="alice",
        backend="sqlite",
        credentials_path=DEFAULT_CREDENTIALS_FILE,
        sqlite_path=config.sqlite_path,
        openai_api_key="sk",
        openai_base_url="http://localhost:11434/v1",
        openai_model="nomic-embed-text",
        cohere_api_key="co",
        cohere_model="embed-multilingual-v3.0",
        embedding_provider="openai-compatible",
    )


def test_debug_flag_forces_debug_level():
    env = {"USER_ID": "a", "OMNIBRAIN_BACKEND": "sqlite", "OMNIBRAIN_DEBUG": "1"}
    config = load_config([], env)
    assert config.log_level == "debug"


def test_configure_logging_uses_stderr(monkeypatch):
    monkeypatch.delenv("OMNIBRAIN_DEBUG", raising=False)
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    root.handlers = []
    try:
        configure_logging("warning")
        assert root.level == logging.WARNING
        (handler,) = root.handlers
        assert handler.stream is sys.stderr
    finally:
        root.handlers, level = saved
        root.setLevel(level)
