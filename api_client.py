"""Central HTTP client for the incident desk API. Bearer auth with single-flight refresh."""

import json as jsonlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import aiohttp

from auth.errors import (
    CancelledDueToLogout,
    HttpStatusError,
    InvalidResponse,
    NoCredentialAvailable,
    SessionExpired,
)
from auth.refresh import RefreshCoordinator, TokenPair
from auth.token_store import ACCESS_TOKEN_KEY, TokenStore

log = logging.getLogger(__name__)

LOGIN_PATH = "/auth/login"
LOGOUT_PATH = "/auth/logout"
REFRESH_PATH = "/auth/refresh"

# Reachable without an access token
PUBLIC_ENDPOINTS = (LOGIN_PATH, "/auth/register", "/auth/forgot-password", LOGOUT_PATH)


@dataclass
class RequestContext:
    method: str
    path: str
    json: Any = None
    params: dict | None = None
    retryable: bool = True
    retried: bool = False
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def is_logout(self) -> bool:
        return LOGOUT_PATH in self.path

    @property
    def is_refresh(self) -> bool:
        return REFRESH_PATH in self.path

    @property
    def is_public(self) -> bool:
        return any(endpoint in self.path for endpoint in PUBLIC_ENDPOINTS)


def _error_message(body: str) -> str:
    try:
        data = jsonlib.loads(body)
    except ValueError:
        return body[:200]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return body[:200]


def _unwrap(path: str, body) -> Any:
    if not isinstance(body, dict) or not body.get("success"):
        message = body.get("message") if isinstance(body, dict) else None
        raise InvalidResponse(path, message or "Invalid response from server")
    return body.get("data")


class ApiClient:
    def __init__(
        self,
        server_url: str,
        token_store: TokenStore,
        *,
        refresh_wait_timeout: float | None = None,
    ):
        self._base = server_url.rstrip("/")
        self._tokens = token_store
        self._session: aiohttp.ClientSession | None = None
        self._logging_out = False
        self._expiry_handler: Callable[[], Awaitable[None]] | None = None
        self.refresh = RefreshCoordinator(
            token_store,
            self._exchange_refresh_token,
            self._session_expired,
            wait_timeout=refresh_wait_timeout,
        )

    @property
    def logging_out(self) -> bool:
        return self._logging_out

    def set_logging_out(self, value: bool):
        self._logging_out = value
        log.debug("logging_out=%s", value)

    def set_expiry_handler(self, handler: Callable[[], Awaitable[None]]):
        """Called once per failed refresh, before the waiting requests are rejected."""
        self._expiry_handler = handler

    async def _ensure_session(self):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()

    async def request(
        self, method: str, path: str, *, json=None, params=None, retryable: bool = True,
    ) -> Any:
        """Send a request through both interceptors and return the decoded JSON body.

        Raises RequestBlocked subclasses when the call never left the client,
        HttpStatusError for error statuses, SessionExpired when a 401 could not
        be recovered by refreshing, and aiohttp.ClientError on connectivity
        failures.
        """
        call = RequestContext(method, path, json=json, params=params, retryable=retryable)
        try:
            return await self._send(call)
        except HttpStatusError as e:
            return await self._intercept_failure(call, e)

    async def _send(self, call: RequestContext) -> Any:
        await self._intercept_request(call)
        return await self._transmit(
            call.method, call.path, json=call.json, params=call.params, headers=call.headers,
        )

    async def _intercept_request(self, call: RequestContext):
        token = await self._tokens.get(ACCESS_TOKEN_KEY)

        # Checked after the read so a logout that began meanwhile still wins
        if self._logging_out and not call.is_logout:
            log.debug("Blocked %s %s: logging out", call.method, call.path)
            raise CancelledDueToLogout(call.path)

        if not token and not call.is_public:
            log.debug("Blocked %s %s: no access token", call.method, call.path)
            raise NoCredentialAvailable(call.path)

        if token:
            call.headers["Authorization"] = f"Bearer {token}"
        else:
            call.headers.pop("Authorization", None)

    async def _intercept_failure(self, call: RequestContext, err: HttpStatusError) -> Any:
        if err.status != 401:
            raise err
        if not call.retryable or call.retried or call.is_logout or call.is_refresh:
            raise err
        if self._logging_out:
            raise err

        call.retried = True
        try:
            await self.refresh.ensure_fresh_credential()
        except SessionExpired as exc:
            raise exc from err
        log.debug("Retrying %s %s with refreshed token", call.method, call.path)
        return await self._send(call)

    async def _transmit(
        self, method: str, path: str, *, json=None, params=None, headers=None,
    ) -> Any:
        await self._ensure_session()
        url = f"{self._base}{path}"
        try:
            async with self._session.request(
                method, url, json=json, params=params, headers=headers,
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    level = logging.INFO if resp.status == 401 else logging.ERROR
                    log.log(level, "API %s %s → %d: %s", method, path, resp.status, body[:200])
                    raise HttpStatusError(method, path, resp.status, _error_message(body))
                if resp.status == 204:
                    return None
                try:
                    return await resp.json(content_type=None)
                except ValueError:
                    raise InvalidResponse(path, "Response body is not JSON") from None
        except aiohttp.ClientError as e:
            log.error("API %s %s error: %s", method, path, e)
            raise

    async def _exchange_refresh_token(self, refresh_token: str) -> TokenPair:
        # Sent directly: never intercepted, never refreshes itself
        body = await self._transmit("POST", REFRESH_PATH, json={"refresh_token": refresh_token})
        data = _unwrap(REFRESH_PATH, body)
        if not isinstance(data, dict) or not data.get("token"):
            raise InvalidResponse(REFRESH_PATH, "Refresh response carried no token")
        return TokenPair(data["token"], data.get("refresh_token"))

    async def _session_expired(self):
        if self._expiry_handler is not None:
            await self._expiry_handler()
        else:
            await self._tokens.clear()

    async def _call(self, method: str, path: str, *, json=None, params=None) -> Any:
        body = await self.request(method, path, json=json, params=params)
        return _unwrap(path, body)

    # ── Auth ───────────────────────────────────────────────

    async def login(self, email: str, password: str) -> dict:
        """POST /auth/login → {token, refresh_token?, user}."""
        data = await self._call("POST", LOGIN_PATH, json={"email": email, "password": password})
        if not isinstance(data, dict) or not data.get("token"):
            raise InvalidResponse(LOGIN_PATH, "Login response carried no token")
        return data

    async def notify_logout(self):
        await self.request("POST", LOGOUT_PATH)

    async def forgot_password(self, email: str):
        return await self._call("POST", "/auth/forgot-password", json={"email": email})

    # ── Users ──────────────────────────────────────────────

    async def get_profile(self) -> dict:
        return await self._call("GET", "/users/me")

    async def update_profile(self, profile: dict) -> dict:
        return await self._call("PUT", "/users/me", json=profile)

    async def change_password(self, current_password: str, new_password: str):
        return await self._call("PUT", "/users/me/password", json={
            "current_password": current_password,
            "new_password": new_password,
        })

    # ── Incidents ──────────────────────────────────────────

    async def list_incidents(self, **filters) -> tuple[list[dict], dict | None]:
        """GET /incidents with filters (page, limit, current_state_id, priority, ...).

        Returns (items, pagination).
        """
        params = {k: v for k, v in filters.items() if v is not None}
        body = await self.request("GET", "/incidents", params=params)
        items = _unwrap("/incidents", body)
        return items or [], body.get("pagination")

    async def get_incident(self, incident_id: str) -> dict:
        return await self._call("GET", f"/incidents/{incident_id}")

    async def create_incident(self, incident: dict) -> dict:
        return await self._call("POST", "/incidents", json=incident)

    async def get_available_transitions(self, incident_id: str) -> list[dict]:
        return await self._call("GET", f"/incidents/{incident_id}/available-transitions") or []

    async def execute_transition(self, incident_id: str, transition_id: str, comment: str | None = None) -> dict:
        payload = {"transition_id": transition_id}
        if comment:
            payload["comment"] = comment
        return await self._call("POST", f"/incidents/{incident_id}/transition", json=payload)

    async def get_comments(self, incident_id: str) -> list[dict]:
        return await self._call("GET", f"/incidents/{incident_id}/comments") or []

    async def add_comment(self, incident_id: str, content: str, is_internal: bool = False) -> dict:
        return await self._call("POST", f"/incidents/{incident_id}/comments", json={
            "content": content,
            "is_internal": is_internal,
        })

    async def get_attachments(self, incident_id: str) -> list[dict]:
        return await self._call("GET", f"/incidents/{incident_id}/attachments") or []

    async def get_incident_stats(self, **params) -> dict:
        return await self._call("GET", "/incidents/stats", params=params or None)

    # ── Workflows & lookups ────────────────────────────────

    async def get_workflows(self, active_only: bool = True) -> list[dict]:
        params = {"active_only": "true"} if active_only else None
        return await self._call("GET", "/admin/workflows", params=params) or []

    async def get_workflow_states(self, workflow_id: str) -> list[dict]:
        return await self._call("GET", f"/admin/workflows/{workflow_id}/states") or []

    async def get_all_states(self) -> list[dict]:
        """Every state across active workflows, first occurrence of each name wins."""
        states, seen = [], set()
        for workflow in await self.get_workflows():
            for state in workflow.get("states") or []:
                if state.get("name") not in seen:
                    seen.add(state.get("name"))
                    states.append(state)
        return states

    async def get_classifications(self) -> list[dict]:
        return await self._call("GET", "/admin/classifications") or []

    async def get_departments(self) -> list[dict]:
        return await self._call("GET", "/admin/departments") or []

    async def get_locations(self) -> list[dict]:
        return await self._call("GET", "/admin/locations") or []
