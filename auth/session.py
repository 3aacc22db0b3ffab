"""Login/logout choreography around the API client."""

import asyncio
import inspect
import json
import logging
from typing import Callable

import aiohttp

from auth.errors import ApiError
from auth.token_store import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY, TokenStore

log = logging.getLogger(__name__)

# Time given to navigation to unmount screens before requests are allowed again
LOGOUT_SETTLE_DELAY = 0.5


class SessionController:
    def __init__(
        self,
        api_client,
        token_store: TokenStore,
        redirect_to_login: Callable[[], object],
        settle_delay: float = LOGOUT_SETTLE_DELAY,
    ):
        self._api = api_client
        self._tokens = token_store
        self._redirect = redirect_to_login
        self._settle_delay = settle_delay
        self._reset_handle: asyncio.TimerHandle | None = None
        api_client.set_expiry_handler(self.force_redirect)

    @property
    def logging_out(self) -> bool:
        return self._api.logging_out

    async def login(self, access_token: str, refresh_token: str | None = None):
        """Store credentials obtained elsewhere. No network call.

        Replaces the whole pair: without a refresh token, any earlier one is dropped.
        """
        await self._tokens.save(access_token, refresh_token)
        if not refresh_token:
            await self._tokens.delete(REFRESH_TOKEN_KEY)

    async def login_with_password(self, email: str, password: str) -> dict | None:
        data = await self._api.login(email, password)
        await self.login(data["token"], data.get("refresh_token"))
        user = data.get("user")
        if user:
            await self._tokens.set(USER_KEY, json.dumps(user, ensure_ascii=False))
        log.info("Logged in as %s", email)
        return user

    async def logout(self):
        """Fence off traffic, tell the server, drop credentials, go to login.

        The logging-out flag is raised before anything else and stays up until
        ``settle_delay`` seconds after navigation started.
        """
        if self._reset_handle is not None:
            self._reset_handle.cancel()
            self._reset_handle = None

        self._api.set_logging_out(True)
        try:
            self._api.refresh.cancel_pending("Logged out")
            try:
                await self._api.notify_logout()
            except (ApiError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                log.info("Logout notification failed, ignoring: %s", e)
            await self._clear_credentials()
            await self._navigate()
        finally:
            loop = asyncio.get_running_loop()
            self._reset_handle = loop.call_later(self._settle_delay, self._logout_settled)
        log.info("Logged out")

    async def force_redirect(self):
        """Unrecoverable session expiry: drop credentials and go to login."""
        log.warning("Session expired, redirecting to login")
        await self._clear_credentials()
        await self._navigate()

    def _logout_settled(self):
        self._reset_handle = None
        self._api.set_logging_out(False)

    async def _clear_credentials(self):
        await self._tokens.delete(ACCESS_TOKEN_KEY)
        await self._tokens.delete(REFRESH_TOKEN_KEY)
        await self._tokens.delete(USER_KEY)

    async def _navigate(self):
        result = self._redirect()
        if inspect.isawaitable(result):
            await result
