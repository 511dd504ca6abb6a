# test_config.py
#
#
# Imports
from pathlib import Path
import pytest
#
# Third-Party Imports
import toml
#
# Local Imports
from offline_sync import config as config_module
from offline_sync.config import (
    DEFAULT_CLIENT_ID,
    DEFAULT_CONFIG,
    ENV_OVERRIDES,
    database_settings,
    deep_merge_dicts,
    get_setting,
    load_settings,
    server_settings,
    sync_settings,
)
#
#######################################################################################################################
#
# Functions:


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for env_var in ENV_OVERRIDES:
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.setattr(config_module, "_CONFIG_CACHE", None)


def test_missing_file_is_created_with_defaults(tmp_path):
    path = tmp_path / "nested" / "config.toml"
    settings = load_settings(path)

    assert path.exists()
    assert toml.load(path) == DEFAULT_CONFIG
    assert settings == DEFAULT_CONFIG


def test_user_values_are_merged_over_defaults(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[server]\nurl = "https://records.example"\n\n[sync]\nremote_timeout = 5\n', encoding="utf-8")

    settings = load_settings(path)

    assert settings["server"]["url"] == "https://records.example"
    assert settings["server"]["resource_path"] == "/records"
    assert settings["sync"]["remote_timeout"] == 5
    assert settings["sync"]["reconcile_on_reconnect"] is True


def test_invalid_toml_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text("[server\nurl = ", encoding="utf-8")
    assert load_settings(path) == DEFAULT_CONFIG


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = tmp_path / "config.toml"
    path.write_text('[server]\nurl = "https://from-file.example"\n', encoding="utf-8")
    monkeypatch.setenv("OFFLINE_SYNC_SERVER_URL", "https://from-env.example")
    monkeypatch.setenv("OFFLINE_SYNC_API_TOKEN", "env-token")

    settings = load_settings(path)

    assert settings["server"]["url"] == "https://from-env.example"
    assert server_settings(settings)["token"] == "env-token"


def test_default_path_is_cached(tmp_path, monkeypatch):
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "default.toml")
    first = load_settings()
    assert load_settings() is first
    assert load_settings(force_reload=True) is not first
    assert get_setting("server", "list_key") == "records"
    assert get_setting("server", "missing", "fallback") == "fallback"
    assert get_setting("no_section", "key", 3) == 3


def test_deep_merge_does_not_mutate_inputs():
    base = {"a": {"b": 1, "c": 2}}
    merged = deep_merge_dicts(base, {"a": {"c": 3}, "d": 4})
    assert merged == {"a": {"b": 1, "c": 3}, "d": 4}
    assert base == {"a": {"b": 1, "c": 2}}


def test_typed_sections():
    settings = deep_merge_dicts(DEFAULT_CONFIG, {
        "database": {"path": "~/data/records.db", "client_id": ""},
        "server": {"token": "", "timeout": "7"},
        "sync": {"remote_timeout": "not a number", "reconcile_on_reconnect": "no"},
    })

    db = database_settings(settings)
    assert db["path"] == Path("~/data/records.db").expanduser()
    assert db["client_id"] == DEFAULT_CLIENT_ID

    server = server_settings(settings)
    assert server["token"] is None
    assert server["timeout"] == 7.0
    assert server["base_url"] == "http://localhost:3000"

    sync = sync_settings(settings)
    assert sync["remote_timeout"] == DEFAULT_CONFIG["sync"]["remote_timeout"]
    assert sync["reconcile_on_reconnect"] is False


def test_memory_database_path_is_kept():
    assert database_settings({"database": {"path": ":memory:"}})["path"] == ":memory:"

#
# End of test_config.py
#######################################################################################################################
