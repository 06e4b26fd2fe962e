import pytest

from comms_dispatch.settings import core_kwargs, load_settings

ENV_VARS = (
    "COMMS_CONFIG",
    "COMMS_DB_PATH",
    "COMMS_PORT",
    "COMMS_API_TOKEN",
    "COMMS_ACTIVE",
    "COMMS_TEST_MODE",
    "COMMS_MAX_RETRIES",
    "COMMS_DEFAULT_COUNTRY_CODE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_config_file(tmp_path):
    settings = load_settings(str(tmp_path / "missing.ini"))

    assert settings["db_path"] == "/data/comms_dispatch.db"
    assert settings["http_port"] == 8000
    assert settings["api_token"] is None
    assert settings["start_active"] is True
    assert settings["test_mode"] is False
    assert settings["max_retries"] == 3
    assert settings["expire_after"] == 86400
    assert settings["default_country_code"] == "254"


def test_environment_fallbacks(tmp_path, monkeypatch):
    monkeypatch.setenv("COMMS_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("COMMS_PORT", "9000")
    monkeypatch.setenv("COMMS_API_TOKEN", "  secret ")
    monkeypatch.setenv("COMMS_TEST_MODE", "yes")
    monkeypatch.setenv("COMMS_MAX_RETRIES", "7")

    settings = load_settings(str(tmp_path / "missing.ini"))

    assert settings["db_path"] == str(tmp_path / "env.db")
    assert settings["http_port"] == 9000
    assert settings["api_token"] == "secret"
    assert settings["test_mode"] is True
    assert settings["max_retries"] == 7


def test_config_file_wins_over_environment(tmp_path, monkeypatch):
    config_file = tmp_path / "config.ini"
    config_file.write_text("""
[storage]
db_path = /tmp/file.db

[server]
port = 8100
api_token =

[delivery]
active = off
retry_unit_seconds = 1
expire_after_seconds = 600

[sms]
default_country_code = 44
""")
    monkeypatch.setenv("COMMS_PORT", "9000")
    monkeypatch.setenv("COMMS_CONFIG", str(config_file))

    settings = load_settings()

    assert settings["config_path"] == str(config_file)
    assert settings["db_path"] == "/tmp/file.db"
    assert settings["http_port"] == 8100
    assert settings["api_token"] is None
    assert settings["start_active"] is False
    assert settings["retry_unit_seconds"] == 1
    assert settings["expire_after"] == 600
    assert settings["default_country_code"] == "44"


def test_core_kwargs_selects_engine_settings(tmp_path):
    settings = load_settings(str(tmp_path / "missing.ini"))
    kwargs = core_kwargs(settings)

    assert kwargs["db_path"] == settings["db_path"]
    assert kwargs["max_retries"] == 3
    assert "http_port" not in kwargs
    assert "api_token" not in kwargs
    assert "config_path" not in kwargs
