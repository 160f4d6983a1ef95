"""
Error taxonomy shared by the sync, fetch and export services.

Every error carries a ``recoverable`` flag: recoverable errors degrade to
"last known good" data and are retried by the next refresh, terminal errors
are reported to the caller immediately.
"""


class DashboardError(Exception):
    """Base exception for dashboard core operations."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        recoverable: bool = True,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.recoverable = recoverable
        self.response_data = response_data or {}


class TransportError(DashboardError):
    """Push channel or HTTP network failure."""

    def __init__(self, message: str, error_code: str | None = "transport", **kwargs):
        kwargs.setdefault("recoverable", True)
        super().__init__(message, error_code=error_code, **kwargs)


class ValidationError(DashboardError):
    """Missing or invalid input, detected before any network call."""

    def __init__(self, message: str, error_code: str | None = "validation", **kwargs):
        kwargs["recoverable"] = False
        super().__init__(message, error_code=error_code, **kwargs)


class ServerError(DashboardError):
    """Non-success response or malformed payload from the dashboard API."""

    def __init__(self, message: str, error_code: str | None = "server", **kwargs):
        status_code = kwargs.get("status_code")
        # 4xx will not fix itself on the next poll
        kwargs.setdefault("recoverable", status_code is None or status_code >= 500)
        super().__init__(message, error_code=error_code, **kwargs)


class AuthError(DashboardError):
    """Credential missing or rejected. Re-authentication is required."""

    def __init__(self, message: str, error_code: str | None = "auth", **kwargs):
        kwargs["recoverable"] = False
        super().__init__(message, error_code=error_code, **kwargs)
