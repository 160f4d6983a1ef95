"""
Push channel transport.

The coordinator only needs "connect with a credential, tell me when anything
arrives, tell me when you drop". Message bodies are opaque here.
"""

from collections.abc import Callable
from typing import Any, Protocol

import socketio

from dashboard_core.config import settings
from dashboard_core.infrastructure.observability.logging import get_logger
from dashboard_core.services.credential_service import Credential
from dashboard_core.services.errors import AuthError, TransportError

logger = get_logger(__name__)

EventCallback = Callable[[str, Any], None]
DisconnectCallback = Callable[[], None]

AUTH_REJECTION_MARKERS = ("unauthorized", "unauthorised", "not authenticated", "invalid token", "401", "403")


class PushChannel(Protocol):
    async def connect(
        self,
        scope_id: str,
        credential: Credential,
        on_event: EventCallback,
        on_disconnect: DisconnectCallback,
    ) -> None:
        """Open the session; raise TransportError or AuthError on failure."""
        ...

    async def disconnect(self) -> None:
        """Close the session. Safe to call when not connected."""
        ...


class SocketIOPushChannel:
    """
    Socket.IO client session scoped to one batch.

    Automatic reconnection is disabled in the client; the coordinator owns
    the reconnection policy.
    """

    def __init__(self, url: str | None = None, connect_timeout: float | None = None):
        self.url = url or settings.push_url()
        self.connect_timeout = connect_timeout or settings.PUSH_CONNECT_TIMEOUT
        self._client: socketio.AsyncClient | None = None
        self._closing = False
        self._connect_error: Any = None

    async def connect(
        self,
        scope_id: str,
        credential: Credential,
        on_event: EventCallback,
        on_disconnect: DisconnectCallback,
    ) -> None:
        client = socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)
        self._client = client
        self._closing = False
        self._connect_error = None

        async def _on_any(event, *args):
            on_event(event, args[0] if args else None)

        async def _on_disconnect(*_args):
            if not self._closing:
                on_disconnect()

        async def _on_connect_error(data=None):
            self._connect_error = data

        client.on("*", _on_any)
        client.on("disconnect", _on_disconnect)
        client.on("connect_error", _on_connect_error)

        try:
            await client.connect(
                self.url,
                auth=credential.handshake_auth(),
                transports=["websocket", "polling"],
                wait_timeout=self.connect_timeout,
            )
        except socketio.exceptions.ConnectionError as e:
            self._client = None
            detail = str(self._connect_error or e)
            if any(marker in detail.lower() for marker in AUTH_REJECTION_MARKERS):
                raise AuthError(f"Push channel rejected credential: {detail}") from e
            raise TransportError(f"Push channel connect failed: {detail}") from e

        await client.emit("join-batch", scope_id)
        logger.debug("Push channel joined scope", scope_id=scope_id, url=self.url)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        self._closing = True
        try:
            await client.disconnect()
        except Exception as e:
            logger.warning("Push channel disconnect error", error=str(e))
