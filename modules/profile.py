"""Profile manager — current user and permission checks."""

import json
import logging

import aiohttp

from auth.errors import ApiError, RequestBlocked, SessionExpired
from auth.token_store import USER_KEY

log = logging.getLogger(__name__)

TICKET_TYPES = ("incident", "request", "complaint", "query")

_PLURALS = {"query": "queries"}


def permission_name(ticket_type: str, action: str) -> str:
    """('query', 'view') → 'queries:view'."""
    if ticket_type not in TICKET_TYPES:
        raise ValueError(f"Unknown ticket type: {ticket_type}")
    return f"{_PLURALS.get(ticket_type, ticket_type + 's')}:{action}"


class ProfileManager:
    def __init__(self, state):
        self._state = state

    @property
    def user(self) -> dict | None:
        return self._state.user_info

    async def load_cached(self):
        """Restore the user stored at login, without touching the network."""
        raw = await self._state.token_store.get(USER_KEY)
        if not raw:
            return
        try:
            self._state.user_info = json.loads(raw)
        except ValueError:
            log.warning("Cached user is not valid JSON, ignoring")

    async def refresh(self):
        """Fetch /users/me and update the cached user.

        Auth failures (no token, expired session) drop the user; transient
        failures keep whatever was cached.
        """
        if not self._state.api_client or not self._state.token_store.is_authenticated:
            self._forget()
            return

        try:
            user = await self._state.api_client.get_profile()
        except (RequestBlocked, SessionExpired) as e:
            log.info("Profile unavailable: %s", e)
            self._forget()
            return
        except (ApiError, aiohttp.ClientError):
            log.exception("Failed to refresh profile")
            return

        self._state.user_info = user
        self._state.is_authenticated = True
        await self._state.token_store.set(USER_KEY, json.dumps(user, ensure_ascii=False))
        log.info("Profile refreshed: %s", user.get("email") if user else None)

    def _forget(self):
        self._state.user_info = None
        self._state.is_authenticated = False

    # ── Permissions ────────────────────────────────────────

    def has_permission(self, permission: str) -> bool:
        user = self.user
        if not user:
            return False
        if user.get("is_super_admin"):
            return True
        perms = user.get("permissions") or []
        return permission in perms or "*" in perms

    def has_any_permission(self, permissions) -> bool:
        return any(self.has_permission(p) for p in permissions)

    def has_all_permissions(self, permissions) -> bool:
        if not self.user:
            return False
        return all(self.has_permission(p) for p in permissions)

    def has_role(self, role_code: str) -> bool:
        user = self.user
        if not user:
            return False
        if user.get("is_super_admin"):
            return True
        return any(
            r.get("code") == role_code and r.get("is_active")
            for r in user.get("roles") or []
        )

    def can(self, action: str, ticket_type: str) -> bool:
        return self.has_permission(permission_name(ticket_type, action))
