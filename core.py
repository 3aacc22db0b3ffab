import json
import logging
import os
import sys

log = logging.getLogger(__name__)

_DEFAULT_SERVER_URL = "http://localhost:8080/api/v1"
_ENV_SERVER_URL = "INCIDENT_API_URL"

_DEFAULTS = {
    "server_url": _DEFAULT_SERVER_URL,
    "logout_settle_delay": 0.5,
    "refresh_wait_timeout": None,
}


def _config_dir() -> str:
    if getattr(sys, 'frozen', False):
        return os.path.dirname(sys.executable)
    return os.path.dirname(os.path.abspath(__file__))


def config_path() -> str:
    return os.path.join(_config_dir(), "config.json")


def load_config(path: str | None = None) -> dict:
    """config.json merged over defaults; INCIDENT_API_URL wins for the server URL."""
    cfg = dict(_DEFAULTS)
    try:
        with open(path or config_path(), "r", encoding="utf-8") as f:
            data = json.load(f)
        cfg.update({k: data[k] for k in _DEFAULTS if k in data})
    except (FileNotFoundError, json.JSONDecodeError):
        pass
    env_url = os.environ.get(_ENV_SERVER_URL)
    if env_url:
        cfg["server_url"] = env_url
    return cfg


def _load_server_url() -> str:
    return load_config()["server_url"]


SERVER_URL = _load_server_url()


class AppState:
    def __init__(self):
        # Auth / Server
        self.api_client = None       # ApiClient, set from main.py
        self.token_store = None      # TokenStore, set from main.py
        self.session = None          # SessionController, set from main.py
        self.profile = None          # ProfileManager, set from main.py
        self.user_info: dict | None = None
        self.is_authenticated: bool = False
        self.server_url: str = SERVER_URL
        # Navigation
        self.screen: str = "login"   # login / home

    def redirect_to_login(self):
        if self.screen != "login":
            log.info("Navigating to login")
        self.screen = "login"
        self.user_info = None
        self.is_authenticated = False
