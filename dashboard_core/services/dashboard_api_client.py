"""
Dashboard API client for attendance, payouts and export artifacts.
Handles HTTP client setup, retry with backoff for reads, and response validation.
Low-level API client: returns validated payloads, never raw JSON.
"""

import asyncio
from dataclasses import dataclass

import httpx
from pydantic import ValidationError as PydanticValidationError

from dashboard_core.config import settings
from dashboard_core.infrastructure.observability.logging import get_logger
from dashboard_core.models.api.attendance_response import (
    AttendanceEnvelope,
    AttendanceResponse,
    PayoutsEnvelope,
)
from dashboard_core.models.domain.attendance_domain import ExportFormat, Filter
from dashboard_core.models.domain.payout_domain import PayoutRecord
from dashboard_core.services.credential_service import Credential, require_credential
from dashboard_core.services.errors import AuthError, ServerError, TransportError

logger = get_logger(__name__)

ATTENDANCE_PATH = "/api/teacher/attendance"
PAYOUTS_PATH = "/api/payouts/my-payouts"
EXPORT_PATH = "/api/attendance/export"

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}
AUTH_STATUS_CODES = {401, 403}


@dataclass(frozen=True, slots=True)
class ArtifactResponse:
    """Body and metadata of a successful export response."""

    content: bytes
    content_type: str | None
    content_disposition: str | None


class DashboardApiClient:
    """
    Client for the dashboard HTTP API.

    Reads (attendance, payouts) retry on network errors and 429/5xx with
    exponential backoff. Exports are one-shot and never retried.
    """

    def __init__(
        self,
        base_url: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_factor: float | None = None,
    ):
        config = settings.get_http_config()
        self.base_url = (base_url or config["base_url"]).rstrip("/")
        self.max_retries = max(1, max_retries if max_retries is not None else config["max_retries"])
        self.backoff_factor = (
            backoff_factor if backoff_factor is not None else config["backoff_factor"]
        )
        self._owns_client = client is None
        self._client = client or self._create_client(timeout or config["timeout"])

    def _create_client(self, timeout: float) -> httpx.AsyncClient:
        """Create async HTTP client for the dashboard API."""
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client if we created it."""
        if self._owns_client:
            await self._client.aclose()

    async def fetch_attendance(self, filter: Filter, credential: Credential) -> AttendanceResponse:
        """
        Fetch raw attendance records for a filter.

        Args:
            filter: Scope and optional date range
            credential: Bearer credential

        Returns:
            AttendanceResponse: Validated record list and optional server summary

        Raises:
            ValidationError: If the filter has no scope
            AuthError: If the credential is missing or rejected
            TransportError: If the network keeps failing after retries
            ServerError: If the API returns an error or a malformed payload
        """
        filter.validate()
        require_credential(credential)

        response = await self._request_with_retry(
            "GET",
            f"{self.base_url}{ATTENDANCE_PATH}",
            params=filter.query_params(),
            headers=self._get_headers(credential),
        )
        payload = self._handle_api_response(response, "fetch_attendance")

        try:
            if isinstance(payload, dict) and "records" in payload and "data" not in payload:
                return AttendanceResponse.model_validate(payload)
            envelope = AttendanceEnvelope.model_validate(payload)
        except PydanticValidationError as e:
            logger.error(
                "Malformed attendance payload",
                scope_id=filter.scope_id,
                error_count=e.error_count(),
            )
            raise ServerError("Malformed attendance payload", error_code="malformed_payload") from e

        if not envelope.success:
            raise ServerError(envelope.message or "Attendance request failed")

        return envelope.data or AttendanceResponse()

    async def fetch_payouts(self, credential: Credential) -> list[PayoutRecord]:
        """Fetch the instructor's payout requests."""
        require_credential(credential)

        response = await self._request_with_retry(
            "GET",
            f"{self.base_url}{PAYOUTS_PATH}",
            headers=self._get_headers(credential),
        )
        payload = self._handle_api_response(response, "fetch_payouts")

        try:
            envelope = PayoutsEnvelope.model_validate(payload)
        except PydanticValidationError as e:
            raise ServerError("Malformed payouts payload", error_code="malformed_payload") from e

        if not envelope.success:
            raise ServerError(envelope.message or "Payouts request failed")

        return [payout.to_domain() for payout in envelope.data]

    async def request_export(
        self, filter: Filter, export_format: ExportFormat, credential: Credential
    ) -> ArtifactResponse:
        """
        Request a server-rendered export artifact. Single attempt, no retry.

        Raises:
            AuthError: If the credential is missing or rejected
            TransportError: On network failure
            ServerError: On any non-success response
        """
        filter.validate()
        require_credential(credential)

        params = filter.query_params()
        params["format"] = export_format.value

        try:
            response = await self._client.get(
                f"{self.base_url}{EXPORT_PATH}",
                params=params,
                headers=self._get_headers(credential, accept="*/*"),
            )
        except httpx.RequestError as e:
            raise TransportError(f"Export request failed: {e}") from e

        if not response.is_success:
            self._raise_for_error(response, "request_export")

        return ArtifactResponse(
            content=response.content,
            content_type=response.headers.get("Content-Type"),
            content_disposition=response.headers.get("Content-Disposition"),
        )

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry and backoff."""
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
                if response.status_code in RETRY_STATUS_CODES and attempt < self.max_retries:
                    backoff = self.backoff_factor * (2 ** (attempt - 1))
                    logger.debug(
                        "Dashboard API retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= self.max_retries:
                    raise TransportError(f"Dashboard API unreachable: {e}") from e
                backoff = self.backoff_factor * (2 ** (attempt - 1))
                logger.debug(
                    "Dashboard API request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RuntimeError("Dashboard API retry loop exhausted")

    def _get_headers(self, credential: Credential, accept: str = "application/json") -> dict:
        headers = credential.auth_headers()
        headers["Accept"] = accept
        return headers

    def _handle_api_response(self, response: httpx.Response, operation: str):
        """
        Validate an API response and return its parsed JSON body.

        Raises:
            AuthError / ServerError: If the response is not a success
        """
        logger.debug(
            f"Dashboard API {operation} response",
            status_code=response.status_code,
            response_size=len(response.content),
        )

        if not response.is_success:
            self._raise_for_error(response, operation)

        try:
            return response.json() if response.content else {}
        except ValueError as e:
            logger.error(f"Failed to parse dashboard API {operation} response", error=str(e))
            raise ServerError(f"Invalid response format: {e}", error_code="malformed_payload") from e

    def _raise_for_error(self, response: httpx.Response, operation: str) -> None:
        try:
            error_data = response.json() if response.content else {}
        except ValueError:
            error_data = {}
        if not isinstance(error_data, dict):
            error_data = {}

        message = error_data.get("message") or error_data.get("error") or ""
        if not isinstance(message, str):
            message = str(message)

        logger.error(
            f"Dashboard API {operation} failed",
            status_code=response.status_code,
            error_message=message or None,
        )

        if response.status_code in AUTH_STATUS_CODES:
            raise AuthError(
                message or "Session expired. Please sign in again.",
                status_code=response.status_code,
                response_data=error_data,
            )

        raise ServerError(
            message or f"Dashboard API error (HTTP {response.status_code})",
            status_code=response.status_code,
            response_data=error_data,
        )
