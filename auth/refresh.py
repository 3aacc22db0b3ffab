"""Single-flight access token refresh shared by every request that hits a 401."""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

import aiohttp

from auth.errors import ApiError, NoRefreshCredential, RefreshFailed, SessionExpired
from auth.token_store import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, TokenStore

log = logging.getLogger(__name__)


class RefreshState(enum.Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str | None = None  # only set when the server rotates it


class RefreshCoordinator:
    """Owns the refresh state and the queue of callers waiting on it.

    The first caller to arrive while idle performs the exchange; everyone
    arriving while it is in flight parks a future in the queue and receives
    the same outcome. The queue is swapped out in one step when the attempt
    settles, so each waiter is resolved or rejected exactly once.

    ``exchange`` trades a refresh token for a ``TokenPair`` and raises on any
    failure. ``on_expired`` runs once per failed attempt, before any caller
    sees the rejection.
    """

    def __init__(
        self,
        token_store: TokenStore,
        exchange: Callable[[str], Awaitable[TokenPair]],
        on_expired: Callable[[], Awaitable[None]],
        wait_timeout: float | None = None,
    ):
        self._tokens = token_store
        self._exchange = exchange
        self._on_expired = on_expired
        self._wait_timeout = wait_timeout
        self._state = RefreshState.IDLE
        self._pending: list[asyncio.Future] = []
        self._gen = 0
        self._attempt_gen = 0
        self._settled = asyncio.Event()
        self.refresh_count = 0

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def pending_count(self) -> int:
        return sum(1 for fut in self._pending if not fut.done())

    async def ensure_fresh_credential(self) -> str:
        """Return a freshly issued access token, refreshing at most once per expiry."""
        while self._state is RefreshState.REFRESHING and self._attempt_gen != self._gen:
            # Abandoned attempt still on the wire; start over once it settles
            await self._settled.wait()
        if self._state is RefreshState.REFRESHING:
            return await self._wait()

        self._state = RefreshState.REFRESHING
        self._attempt_gen = gen = self._gen
        self._settled = asyncio.Event()
        try:
            token = await self._refresh(gen)
        except SessionExpired as e:
            await self._fail(gen, e)
            raise
        except asyncio.CancelledError:
            # Nobody may be left parked
            waiters = self._settle()
            self._reject(waiters, RefreshFailed("Token refresh cancelled"))
            raise
        except Exception as e:
            failure = RefreshFailed(f"Token refresh failed: {str(e) or type(e).__name__}")
            await self._fail(gen, failure)
            raise failure from e

        waiters = self._settle()
        for fut in waiters:
            if not fut.done():
                fut.set_result(token)
        log.info("Access token refreshed (%d waiting request(s) released)", len(waiters))
        return token

    def cancel_pending(self, reason: str = "Session ended") -> int:
        """Reject every queued waiter and abandon the in-flight attempt.

        The attempt's network call is left to finish; its result is discarded
        rather than persisted and the state returns to idle only then.
        Callers arriving meanwhile wait for it to settle and then start a
        new attempt with whatever refresh token the store holds by then.
        """
        if self._state is RefreshState.IDLE:
            return 0
        self._gen += 1
        waiters, self._pending = self._pending, []
        self._reject(waiters, RefreshFailed(reason))
        log.info("Abandoned in-flight token refresh: %s", reason)
        return len(waiters)

    async def _refresh(self, gen: int) -> str:
        refresh_token = await self._tokens.get(REFRESH_TOKEN_KEY)
        if not refresh_token:
            raise NoRefreshCredential()

        self.refresh_count += 1
        log.info("Refreshing access token")
        try:
            pair = await self._exchange(refresh_token)
        except (ApiError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RefreshFailed(str(e) or type(e).__name__) from e

        if gen != self._gen:
            raise RefreshFailed("Token refresh abandoned - logging out")

        await self._tokens.set(ACCESS_TOKEN_KEY, pair.access_token)
        if pair.refresh_token:
            await self._tokens.set(REFRESH_TOKEN_KEY, pair.refresh_token)
        return pair.access_token

    async def _wait(self) -> str:
        fut = asyncio.get_running_loop().create_future()
        self._pending.append(fut)
        if self._wait_timeout is None:
            return await fut
        try:
            return await asyncio.wait_for(fut, self._wait_timeout)
        except asyncio.TimeoutError:
            raise RefreshFailed(
                f"Timed out after {self._wait_timeout}s waiting for token refresh"
            ) from None

    async def _fail(self, gen: int, exc: SessionExpired):
        waiters = self._settle()
        try:
            if gen == self._gen:
                log.warning("Token refresh failed: %s", exc.reason)
                await self._on_expired()
        finally:
            self._reject(waiters, exc)

    def _settle(self) -> list[asyncio.Future]:
        self._state = RefreshState.IDLE
        self._settled.set()
        waiters, self._pending = self._pending, []
        return waiters

    @staticmethod
    def _reject(waiters: list[asyncio.Future], exc: SessionExpired):
        for fut in waiters:
            if not fut.done():
                fut.set_exception(type(exc)(exc.reason))
