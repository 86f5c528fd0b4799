import json

import pytest

from config import load_config, parse_bool, parse_list

ENV_NAMES = [
    "WORKSHOP_CONFIG",
    "WORKSHOP_DATABASE_PATH",
    "WORKSHOP_GAMES_CONFIG",
    "WORKSHOP_GAMES_DIR",
    "WORKSHOP_LOGIN",
    "WORKSHOP_PASSWORD",
    "STEAMCMD_PATH",
    "WORKSHOP_HTTP_TIMEOUT",
    "WORKSHOP_HTTP_RETRIES",
    "WORKSHOP_BATCH_SIZE",
    "WORKSHOP_PROXY_POOL",
    "WORKSHOP_LOG_LEVEL",
    "WORKSHOP_LOG_REQUESTS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def _write(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_file_values_relative_to_config(tmp_path):
    path = _write(
        tmp_path / "config.json",
        {
            "database_path": "db.json",
            "games_config_path": "/etc/workshop/games.json",
            "games_dir": "games",
            "login_username": "operator",
            "steamcmd_path": "/opt/steamcmd/steamcmd.sh",
        },
    )

    config = load_config(path)

    assert config.database_path == tmp_path / "db.json"
    assert str(config.games_config_path) == "/etc/workshop/games.json"
    assert config.games_dir == tmp_path / "games"
    assert config.login_username == "operator"
    assert str(config.steamcmd_path) == "/opt/steamcmd/steamcmd.sh"
    assert config.batch_size == 100
    assert config.log_level == "INFO"


def test_environment_overrides_file(tmp_path, monkeypatch):
    path = _write(
        tmp_path / "config.json",
        {"database_path": "db.json", "games_config_path": "games.json", "login_username": "a"},
    )
    monkeypatch.setenv("WORKSHOP_LOGIN", "b")
    monkeypatch.setenv("WORKSHOP_BATCH_SIZE", "25")
    monkeypatch.setenv("WORKSHOP_PROXY_POOL", "http://p1:8080, http://p2:8080")
    monkeypatch.setenv("WORKSHOP_LOG_REQUESTS", "yes")
    monkeypatch.setenv("WORKSHOP_LOG_LEVEL", "debug")

    config = load_config(path)

    assert config.login_username == "b"
    assert config.batch_size == 25
    assert config.proxy_pool == ["http://p1:8080", "http://p2:8080"]
    assert config.log_requests
    assert config.log_level == "DEBUG"


def test_login_argument_wins(tmp_path, monkeypatch):
    path = _write(
        tmp_path / "config.json",
        {"database_path": "db.json", "games_config_path": "games.json", "login_username": "a"},
    )
    monkeypatch.setenv("WORKSHOP_LOGIN", "b")

    assert load_config(path, login_username="c").login_username == "c"


@pytest.mark.parametrize("missing", ["database_path", "games_config_path"])
def test_required_paths(tmp_path, missing):
    data = {"database_path": "db.json", "games_config_path": "games.json"}
    del data[missing]

    with pytest.raises(ValueError):
        load_config(_write(tmp_path / "config.json", data))


def test_explicit_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.json")


def test_parse_helpers():
    assert parse_bool("on")
    assert not parse_bool("0")
    assert parse_bool(None, default=True)
    assert parse_list("a b,c") == ["a", "b", "c"]
    assert parse_list(None) == []
