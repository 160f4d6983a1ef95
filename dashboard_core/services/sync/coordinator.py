"""
Sync coordinator: one live-update session per dashboard view.

Turns an unreliable push channel plus a fallback poll timer into a single
"scope S may have changed" notification. Consumers refetch on every signal;
nothing delivered over the push channel is ever treated as state.

State machine::

    disconnected -> connecting -> connected <-> reconnecting
    (any state) -> closed

The fallback timer runs from ``open`` until ``close`` in every state. If the
push channel rejects the credential the coordinator stays ``disconnected``
with the timer still running (polling only) and reports an AuthError.
"""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any
from uuid import uuid4

from dashboard_core.config import settings
from dashboard_core.infrastructure.observability.logging import get_logger, log_sync_transition
from dashboard_core.models.domain.attendance_domain import SyncSignal
from dashboard_core.services.credential_service import Credential, require_credential
from dashboard_core.services.errors import (
    AuthError,
    DashboardError,
    TransportError,
    ValidationError,
)
from dashboard_core.services.sync.push_channel import PushChannel, SocketIOPushChannel

logger = get_logger(__name__)

SCOPE_KEYS = ("scopeId", "scope_id", "batchId", "batch_id")

SignalHandler = Callable[[SyncSignal], Awaitable[None] | None]
ErrorHandler = Callable[[DashboardError], Awaitable[None] | None]


class SyncState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class SubscriptionHandle:
    scope_id: str
    session_id: str


def extract_scope(payload: Any) -> str | None:
    """Scope named in a push message body, if it names one."""
    if not isinstance(payload, dict):
        return None
    for key in SCOPE_KEYS:
        value = payload.get(key)
        if value is not None:
            return str(value)
    return None


class SyncCoordinator:
    """
    Live-update session for a single scope.

    Not a singleton: every dashboard view owns its own coordinator.
    """

    def __init__(
        self,
        channel_factory: Callable[[], PushChannel] = SocketIOPushChannel,
        *,
        poll_interval: float | None = None,
        coalesce_window: float | None = None,
        reconnect_base_delay: float | None = None,
        reconnect_max_delay: float | None = None,
        escalation_threshold: int | None = None,
        connect_timeout: float | None = None,
    ):
        config = settings.get_sync_config()
        self.poll_interval = poll_interval if poll_interval is not None else config["poll_interval"]
        self.coalesce_window = (
            coalesce_window if coalesce_window is not None else config["coalesce_window"]
        )
        self.reconnect_base_delay = (
            reconnect_base_delay
            if reconnect_base_delay is not None
            else config["reconnect_base_delay"]
        )
        self.reconnect_max_delay = (
            reconnect_max_delay if reconnect_max_delay is not None else config["reconnect_max_delay"]
        )
        self.escalation_threshold = (
            escalation_threshold
            if escalation_threshold is not None
            else config["escalation_threshold"]
        )
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else config["connect_timeout"]
        )

        self._channel_factory = channel_factory
        self._channel: PushChannel | None = None
        self._state = SyncState.DISCONNECTED
        self._handle: SubscriptionHandle | None = None
        self._credential: Credential | None = None

        self._signal_handlers: list[SignalHandler] = []
        self._error_handlers: list[ErrorHandler] = []

        self._poll_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._flush_tasks: set[asyncio.Task] = set()
        self._window_open = False

        self.triggers_received = 0
        self.signals_delivered = 0

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def handle(self) -> SubscriptionHandle | None:
        return self._handle

    @property
    def is_closed(self) -> bool:
        return self._state is SyncState.CLOSED

    def on_signal(self, handler: SignalHandler) -> None:
        """Register a callback for coalesced "data may have changed" signals."""
        self._signal_handlers.append(handler)

    def on_error(self, handler: ErrorHandler) -> None:
        """Register a callback for errors the caller should hear about."""
        self._error_handlers.append(handler)

    async def __aenter__(self) -> "SyncCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self, scope_id: str, credential: Credential | None) -> SubscriptionHandle:
        """
        Start the live session for a scope.

        A push channel that cannot be established is not an error: the
        coordinator keeps polling and retries the channel in the background.

        Raises:
            ValidationError: If scope_id is empty
            AuthError: If no credential is available
        """
        if self._state is SyncState.CLOSED:
            raise RuntimeError("Sync coordinator is closed; create a new one")
        if self._handle is not None:
            raise RuntimeError(f"Sync coordinator already open for scope '{self._handle.scope_id}'")
        if not scope_id or not scope_id.strip():
            raise ValidationError("Please select a batch first", error_code="missing_scope")
        self._credential = require_credential(credential)

        handle = SubscriptionHandle(scope_id=scope_id, session_id=uuid4().hex)
        self._handle = handle
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._set_state(SyncState.CONNECTING)

        try:
            await self._connect_channel()
        except AuthError as e:
            if not self.is_closed:
                logger.warning("Push channel rejected credential, polling only", scope_id=scope_id)
                self._set_state(SyncState.DISCONNECTED)
                await self._report_error(e)
        except TransportError as e:
            if not self.is_closed:
                logger.warning(
                    "Push channel unavailable, polling only",
                    scope_id=scope_id,
                    error=str(e),
                    poll_interval=self.poll_interval,
                )
                self._set_state(SyncState.RECONNECTING)
                self._start_reconnect()
        else:
            if not self.is_closed:
                self._set_state(SyncState.CONNECTED)

        return handle

    async def close(self, handle: SubscriptionHandle | None = None) -> None:
        """
        Tear down the push session and the fallback timer.

        Idempotent and safe from any state. Once this returns no signal is
        delivered.
        """
        if handle is not None and self._handle is not None and handle != self._handle:
            logger.debug("Ignoring close for a stale subscription handle", scope_id=handle.scope_id)
            return
        if self._state is SyncState.CLOSED:
            return

        self._set_state(SyncState.CLOSED)
        channel, self._channel = self._channel, None

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._poll_task, self._reconnect_task, *self._flush_tasks)
            if task is not None and not task.done() and task is not current
        ]
        for task in tasks:
            task.cancel()
        self._poll_task = None
        self._reconnect_task = None
        self._flush_tasks.clear()
        self._window_open = False

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if channel is not None:
            await channel.disconnect()

        logger.info(
            "Sync session closed",
            scope_id=self._handle.scope_id if self._handle else None,
            triggers_received=self.triggers_received,
            signals_delivered=self.signals_delivered,
        )

    def trigger(self) -> None:
        """Request a refresh from outside (e.g. a manual refresh button)."""
        self._trigger("manual")

    # =======================================================================
    # PRIVATE METHODS - Push channel
    # =======================================================================

    async def _connect_channel(self) -> None:
        channel = self._channel_factory()
        self._channel = channel

        def on_event(event: str, payload: Any) -> None:
            self._on_push_event(channel, event, payload)

        def on_disconnect() -> None:
            self._on_push_disconnect(channel)

        try:
            await asyncio.wait_for(
                channel.connect(self._handle.scope_id, self._credential, on_event, on_disconnect),
                timeout=self.connect_timeout,
            )
        except BaseException as e:
            if self._channel is channel:
                self._channel = None
            await channel.disconnect()
            if isinstance(e, TimeoutError):
                raise TransportError(
                    f"Push channel connect timed out after {self.connect_timeout}s"
                ) from e
            if isinstance(e, Exception) and not isinstance(e, DashboardError):
                raise TransportError(f"Push channel connect failed: {e}") from e
            raise

        if self.is_closed:
            # close() ran while we were connecting
            if self._channel is channel:
                self._channel = None
            await channel.disconnect()

    def _on_push_event(self, channel: PushChannel, event: str, payload: Any) -> None:
        if channel is not self._channel or self.is_closed:
            return
        scope = extract_scope(payload)
        if scope is not None and scope != self._handle.scope_id:
            logger.debug("Ignoring push event for another scope", push_event=event, event_scope=scope)
            return
        self._trigger("push")

    def _on_push_disconnect(self, channel: PushChannel) -> None:
        if channel is not self._channel or self.is_closed:
            return
        self._channel = None
        logger.warning("Push channel dropped", scope_id=self._handle.scope_id)
        self._set_state(SyncState.RECONNECTING)
        self._start_reconnect()

    def _start_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        attempt = 0
        while not self.is_closed:
            attempt += 1
            delay = min(self.reconnect_base_delay * (2 ** (attempt - 1)), self.reconnect_max_delay)
            await asyncio.sleep(delay)
            if self.is_closed:
                return

            try:
                await self._connect_channel()
            except AuthError as e:
                logger.warning("Push channel rejected credential on reconnect", attempt=attempt)
                self._set_state(SyncState.DISCONNECTED)
                await self._report_error(e)
                return
            except TransportError as e:
                logger.warning(
                    "Push channel reconnect failed",
                    scope_id=self._handle.scope_id,
                    attempt=attempt,
                    next_delay_seconds=min(
                        self.reconnect_base_delay * (2**attempt), self.reconnect_max_delay
                    ),
                    error=str(e),
                )
                if attempt == self.escalation_threshold:
                    await self._report_error(
                        TransportError(
                            f"Live updates unavailable after {attempt} reconnect attempts; "
                            "falling back to periodic refresh"
                        )
                    )
                continue

            if self.is_closed:
                return
            self._set_state(SyncState.CONNECTED, attempts=attempt)
            # Anything pushed while we were away is lost; refetch
            self._trigger("reconnect")
            return

    # =======================================================================
    # PRIVATE METHODS - Fallback timer and coalescing
    # =======================================================================

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            self._trigger("poll")

    def _trigger(self, source: str) -> None:
        if self.is_closed or self._handle is None:
            return
        self.triggers_received += 1
        if self._window_open:
            logger.debug("Sync trigger merged", source=source, scope_id=self._handle.scope_id)
            return
        self._window_open = True
        task = asyncio.create_task(self._flush(source))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def _flush(self, source: str) -> None:
        await asyncio.sleep(self.coalesce_window)
        self._window_open = False
        if self.is_closed:
            return
        signal = SyncSignal(scope_id=self._handle.scope_id)
        self.signals_delivered += 1
        logger.debug("Sync signal", scope_id=signal.scope_id, first_source=source)

        for handler in list(self._signal_handlers):
            if self.is_closed:
                return
            try:
                result = handler(signal)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Sync signal handler failed",
                    scope_id=signal.scope_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def _report_error(self, error: DashboardError) -> None:
        for handler in list(self._error_handlers):
            try:
                result = handler(error)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Sync error handler failed", error=str(e))

    def _set_state(self, state: SyncState, **extra) -> None:
        previous, self._state = self._state, state
        if previous is not state:
            log_sync_transition(
                self._handle.scope_id if self._handle else "",
                previous.value,
                state.value,
                **extra,
            )
