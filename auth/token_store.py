"""Credential storage in config.json, exposed as an async key-value store."""

import json
import logging
import os

log = logging.getLogger(__name__)

_CONFIG_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config.json")

ACCESS_TOKEN_KEY = "authToken"
REFRESH_TOKEN_KEY = "refreshToken"
USER_KEY = "user"

_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY)


class TokenStore:
    """Access/refresh tokens and the cached user, persisted alongside other config keys.

    Reads and writes go to an in-memory map first and are flushed to disk
    before the coroutine returns, so interleaved writers never drop each
    other's keys.
    """

    def __init__(self, path: str | None = None):
        self._path = path or _CONFIG_PATH
        self._values: dict[str, str] = {}
        self._load()

    @property
    def path(self) -> str:
        return self._path

    @property
    def is_authenticated(self) -> bool:
        return self._values.get(ACCESS_TOKEN_KEY) is not None

    async def get(self, key: str) -> str | None:
        return self._values.get(key)

    async def set(self, key: str, value: str):
        self._values[key] = value
        self._persist()

    async def delete(self, key: str):
        if self._values.pop(key, None) is not None:
            self._persist()

    async def save(self, access_token: str, refresh_token: str | None = None):
        self._values[ACCESS_TOKEN_KEY] = access_token
        if refresh_token:
            self._values[REFRESH_TOKEN_KEY] = refresh_token
        self._persist()
        log.info("Tokens saved")

    async def clear(self):
        for key in _KEYS:
            self._values.pop(key, None)
        self._persist()
        log.info("Tokens cleared")

    def _load(self):
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            return
        for key in _KEYS:
            if isinstance(data.get(key), str):
                self._values[key] = data[key]

    def _persist(self):
        # Read existing config, merge tokens
        data = {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (FileNotFoundError, json.JSONDecodeError):
            pass

        for key in _KEYS:
            if key in self._values:
                data[key] = self._values[key]
            else:
                data.pop(key, None)

        with open(self._path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False)
