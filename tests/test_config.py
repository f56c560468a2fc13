import json

import pytest

from chamber_cache import config
from chamber_cache.models import Budgets
from chamber_cache.stream.backoff import Backoff
from chamber_cache.stream.reconciler import ReconcilerSettings


@pytest.fixture
def write_config(tmp_path, monkeypatch):
    def _write(data):
        path = tmp_path / "chamber_cache.json"
        path.write_text(json.dumps(data) if not isinstance(data, str) else data, encoding="utf-8")
        monkeypatch.setenv("CHAMBER_CACHE_CONFIG", str(path))
        config.load_config_uncached()
        return path

    yield _write
    config.load_config.cache_clear()


def test_defaults_without_config_file(write_config, tmp_path, monkeypatch):
    monkeypatch.setenv("CHAMBER_CACHE_CONFIG", str(tmp_path / "missing.json"))
    monkeypatch.delenv("CHAMBER_CACHE_DIR", raising=False)
    config.load_config_uncached()

    assert config.cache_max_sessions() == 50
    assert config.cache_max_full_sessions() == 10
    assert config.reorder_window_s() == 2.0
    assert config.persistence_backend() == "file"
    assert config.event_source_url() == "ws://127.0.0.1:4096/event"
    assert Budgets.from_config() == Budgets()


def test_values_from_config_file(write_config):
    write_config({
        "cache": {"max_sessions": 20, "full_cache_sessions": 4, "ttl_s": 3600},
        "stream": {"reorder_window_s": 0.5, "backoff": {"base_s": 1, "cap_s": 8}, "resume_max_attempts": 2},
        "data": {"backend": "SQLite", "dir": "/tmp/chamber"},
        "server": {"url": "ws://example.test/event"},
    })

    budgets = Budgets.from_config()
    assert (budgets.max_sessions, budgets.max_full_sessions, budgets.ttl_s) == (20, 4, 3600.0)
    settings = ReconcilerSettings.from_config()
    assert settings.reorder_window_s == 0.5
    assert settings.resume_max_attempts == 2
    backoff = Backoff.from_config()
    assert (backoff.base_s, backoff.cap_s) == (1.0, 8.0)
    assert config.persistence_backend() == "sqlite"
    assert config.event_source_url() == "ws://example.test/event"


def test_malformed_values_fall_back(write_config):
    write_config({"cache": {"max_sessions": "lots"}, "data": {"backend": "tape"}})

    assert config.cache_max_sessions() == 50
    assert config.persistence_backend() == "file"


def test_unreadable_config_is_ignored(write_config):
    write_config("{broken")
    assert config.load_config() == {}


def test_data_dir_env_override(write_config, monkeypatch, tmp_path):
    monkeypatch.delenv("CHAMBER_CACHE_DIR", raising=False)
    write_config({"data": {"dir": "/from/config"}})
    assert str(config.data_dir()) == "/from/config"

    monkeypatch.setenv("CHAMBER_CACHE_DIR", str(tmp_path))
    assert config.data_dir() == tmp_path
