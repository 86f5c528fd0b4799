from dataclasses import dataclass, field
import os
import re
from pathlib import Path
from typing import Any, Dict

from utils import load_json

DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_STEAMCMD_PATH = "/usr/games/steamcmd"
DEFAULT_TIMEOUT = 60
DEFAULT_HTTP_RETRIES = 2
DEFAULT_HTTP_RETRY_BACKOFF = 2.0
DEFAULT_REQUEST_DELAY = 0.0
DEFAULT_BATCH_SIZE = 100
DEFAULT_LOG_LEVEL = "INFO"


def parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def parse_int(value: Any, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_float(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [str(part).strip() for part in value if str(part).strip()]
    parts = re.split(r"[,\s]+", str(value).strip())
    return [part for part in (p.strip() for p in parts) if part]


@dataclass
class Config:
    database_path: Path
    games_config_path: Path
    games_dir: Path
    steamcmd_path: Path
    login_username: str = ""
    login_password: str = ""
    timeout: int = DEFAULT_TIMEOUT
    http_retries: int = DEFAULT_HTTP_RETRIES
    http_retry_backoff: float = DEFAULT_HTTP_RETRY_BACKOFF
    request_delay: float = DEFAULT_REQUEST_DELAY
    proxy_pool: list[str] = field(default_factory=list)
    batch_size: int = DEFAULT_BATCH_SIZE
    log_level: str = DEFAULT_LOG_LEVEL
    log_requests: bool = False
    language: str = "english"


def _setting(file_values: Dict[str, Any], key: str, env_name: str) -> Any:
    value = os.environ.get(env_name)
    if value is not None and value != "":
        return value
    return file_values.get(key)


def _resolve_path(value: Any, base_dir: Path) -> Path | None:
    if not value:
        return None
    path = Path(str(value)).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path


def load_config(path: str | Path | None = None, *, login_username: str = "") -> Config:
    """Build the configuration from a JSON file, overridden by environment variables.

    Relative paths in the file are taken relative to the file's directory.
    """
    config_path = Path(path or os.environ.get("WORKSHOP_CONFIG", DEFAULT_CONFIG_PATH))
    file_values: Dict[str, Any] = {}
    if config_path.exists():
        loaded = load_json(config_path)
        if not isinstance(loaded, dict):
            raise ValueError(f"{config_path}: config must be a JSON object")
        file_values = loaded
    elif path is not None:
        raise FileNotFoundError(f"config file {config_path} does not exist")
    base_dir = config_path.resolve().parent

    database_path = _resolve_path(
        _setting(file_values, "database_path", "WORKSHOP_DATABASE_PATH"), base_dir
    )
    if database_path is None:
        raise ValueError("database_path is not set")
    games_config_path = _resolve_path(
        _setting(file_values, "games_config_path", "WORKSHOP_GAMES_CONFIG"), base_dir
    )
    if games_config_path is None:
        raise ValueError("games_config_path is not set")
    games_dir = _resolve_path(
        _setting(file_values, "games_dir", "WORKSHOP_GAMES_DIR"), base_dir
    ) or base_dir / "games"
    steamcmd_path = Path(
        _setting(file_values, "steamcmd_path", "STEAMCMD_PATH") or DEFAULT_STEAMCMD_PATH
    ).expanduser()

    login = login_username or _setting(file_values, "login_username", "WORKSHOP_LOGIN") or ""
    batch_size = parse_int(
        _setting(file_values, "batch_size", "WORKSHOP_BATCH_SIZE"), DEFAULT_BATCH_SIZE
    )
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    return Config(
        database_path=database_path,
        games_config_path=games_config_path,
        games_dir=games_dir,
        steamcmd_path=steamcmd_path,
        login_username=str(login),
        login_password=os.environ.get("WORKSHOP_PASSWORD", ""),
        timeout=parse_int(
            _setting(file_values, "http_timeout", "WORKSHOP_HTTP_TIMEOUT"), DEFAULT_TIMEOUT
        ),
        http_retries=parse_int(
            _setting(file_values, "http_retries", "WORKSHOP_HTTP_RETRIES"), DEFAULT_HTTP_RETRIES
        ),
        http_retry_backoff=parse_float(
            _setting(file_values, "http_retry_backoff", "WORKSHOP_HTTP_RETRY_BACKOFF"),
            DEFAULT_HTTP_RETRY_BACKOFF,
        ),
        request_delay=parse_float(
            _setting(file_values, "request_delay", "WORKSHOP_REQUEST_DELAY"),
            DEFAULT_REQUEST_DELAY,
        ),
        proxy_pool=parse_list(_setting(file_values, "proxy_pool", "WORKSHOP_PROXY_POOL")),
        batch_size=batch_size,
        log_level=str(
            _setting(file_values, "log_level", "WORKSHOP_LOG_LEVEL") or DEFAULT_LOG_LEVEL
        ).upper(),
        log_requests=parse_bool(_setting(file_values, "log_requests", "WORKSHOP_LOG_REQUESTS")),
        language=str(_setting(file_values, "language", "STEAM_LANGUAGE") or "english"),
    )
