"""Errors raised by the API client and the auth layer."""


class ApiError(Exception):
    """Base for everything the API client raises besides aiohttp.ClientError."""


class HttpStatusError(ApiError):
    def __init__(self, method: str, path: str, status: int, message: str = ""):
        self.method = method
        self.path = path
        self.status = status
        self.message = message
        super().__init__(f"{method} {path} → {status}" + (f": {message}" if message else ""))


class InvalidResponse(ApiError):
    """2xx response whose envelope is not marked successful."""

    def __init__(self, path: str, message: str = "Invalid response from server"):
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


# ── Blocked before transmission ─────────────────────────


class RequestBlocked(ApiError):
    """The request never left the client."""


class NoCredentialAvailable(RequestBlocked):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"No auth token available for {path}")


class CancelledDueToLogout(RequestBlocked):
    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Request to {path} cancelled - logging out")


# ── Unrecoverable session expiry ────────────────────────


class SessionExpired(ApiError):
    """Refresh could not produce a new access token. Always paired with a redirect to login."""

    status = 401
    default_reason = "Session expired"

    def __init__(self, reason: str | None = None):
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


class NoRefreshCredential(SessionExpired):
    default_reason = "No refresh token available"


class RefreshFailed(SessionExpired):
    default_reason = "Token refresh failed"
