"""
Credential source for the dashboard core.

The bearer token is issued elsewhere. This module only locates it and hands
it out read-only; a missing token is an AuthError so nothing ever goes out
unauthenticated.
"""

from dataclasses import dataclass
from pathlib import Path

from dashboard_core.config import settings
from dashboard_core.infrastructure.observability.logging import get_logger
from dashboard_core.services.errors import AuthError

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class Credential:
    token: str

    def __repr__(self) -> str:
        return f"Credential(token='{self.token[:4]}…')" if self.token else "Credential(token='')"

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def handshake_auth(self) -> dict[str, str]:
        return {"token": self.token}


def require_credential(credential: Credential | None) -> Credential:
    """Reject absent or blank credentials before any network use."""
    if credential is None or not credential.token or not credential.token.strip():
        raise AuthError("Not authenticated. Please sign in again.", error_code="missing_credential")
    return credential


class CredentialSource:
    """
    Resolve the locally available bearer token.

    Lookup order: explicit token, DASHBOARD_API_TOKEN, DASHBOARD_TOKEN_FILE.
    """

    def __init__(self, token: str | None = None, token_file: str | Path | None = None):
        self._token = token
        self._token_file = Path(token_file) if token_file else None

    @classmethod
    def from_settings(cls) -> "CredentialSource":
        return cls(token=settings.DASHBOARD_API_TOKEN, token_file=settings.DASHBOARD_TOKEN_FILE)

    def get(self) -> Credential:
        """
        Get the current credential.

        Raises:
            AuthError: If no token is available
        """
        if self._token and self._token.strip():
            return Credential(self._token.strip())

        if self._token_file:
            try:
                token = self._token_file.read_text(encoding="utf-8").strip()
            except OSError as e:
                logger.warning("Token file unreadable", path=str(self._token_file), error=str(e))
                token = ""
            if token:
                return Credential(token)

        return require_credential(None)
