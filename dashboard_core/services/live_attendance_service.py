"""
Live attendance view.

Wires the sync coordinator to the record fetch and the aggregation engine:
signal -> refetch raw records -> recompute Summary -> on_summary callback.

Guarantees:
- Refetches are single-flight. A signal during an in-flight refetch leaves
  exactly one follow-up refetch, never a backlog.
- A response fetched under an older Filter is discarded on arrival.
- Failures keep the last good snapshot; terminal failures are reported.
"""

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from dashboard_core.infrastructure.observability.logging import get_logger
from dashboard_core.models.domain.attendance_domain import (
    DashboardSnapshot,
    Filter,
    RawRecord,
    Summary,
    SyncSignal,
)
from dashboard_core.models.domain.payout_domain import PayoutSummary
from dashboard_core.services.aggregation.service import attendance_aggregation_service
from dashboard_core.services.credential_service import CredentialSource
from dashboard_core.services.dashboard_api_client import DashboardApiClient
from dashboard_core.services.errors import DashboardError
from dashboard_core.services.sync.coordinator import SyncCoordinator

logger = get_logger(__name__)

SummaryCallback = Callable[[DashboardSnapshot], Awaitable[None] | None]
ErrorCallback = Callable[[DashboardError], Awaitable[None] | None]


class RefreshOutcome(StrEnum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"
    DISCARDED = "discarded"


@dataclass(frozen=True, slots=True)
class RefreshResult:
    outcome: RefreshOutcome
    summary: Summary | None = None
    error: DashboardError | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is RefreshOutcome.SUCCESS


class LiveAttendanceView:
    """
    One dashboard view's live attendance state.

    Owns its own SyncCoordinator; a scope change closes the old one and
    opens a fresh one.
    """

    def __init__(
        self,
        api_client: DashboardApiClient,
        credential_source: CredentialSource,
        coordinator_factory: Callable[[], SyncCoordinator] = SyncCoordinator,
        on_summary: SummaryCallback | None = None,
        on_error: ErrorCallback | None = None,
    ):
        self.api_client = api_client
        self.credential_source = credential_source
        self._coordinator_factory = coordinator_factory
        self._on_summary = on_summary
        self._on_error = on_error

        self._coordinator: SyncCoordinator | None = None
        self._filter: Filter | None = None
        self._generation = 0
        self._snapshot: DashboardSnapshot | None = None
        self._records_cache: dict[str, tuple[RawRecord, ...]] = {}

        self._refreshing = False
        self._refresh_pending = False
        self._stopped = False

        self.fetch_count = 0

    @property
    def filter(self) -> Filter | None:
        return self._filter

    @property
    def coordinator(self) -> SyncCoordinator | None:
        return self._coordinator

    @property
    def snapshot(self) -> DashboardSnapshot | None:
        """Last good snapshot, only if it belongs to the active filter."""
        if self._snapshot is None or self._snapshot.filter != self._filter:
            return None
        return self._snapshot

    @property
    def current_summary(self) -> Summary | None:
        snapshot = self.snapshot
        return snapshot.summary if snapshot else None

    def cached_records(self, scope_id: str) -> tuple[RawRecord, ...] | None:
        return self._records_cache.get(scope_id)

    async def start(self, filter: Filter) -> RefreshResult:
        """Open the live session for a filter and load the first snapshot."""
        filter.validate()
        self._stopped = False
        self._apply_filter(filter)
        await self._open_coordinator(filter.scope_id)
        return await self.request_refresh()

    async def set_filter(self, filter: Filter) -> RefreshResult:
        """Switch to a new filter. In-flight results for the old one are dropped."""
        filter.validate()
        previous = self._filter
        self._apply_filter(filter)
        if previous is None or previous.scope_id != filter.scope_id:
            await self._open_coordinator(filter.scope_id)
        return await self.request_refresh()

    async def request_refresh(self) -> RefreshResult:
        """
        Refetch and recompute, single-flight.

        Returns the result of the last refetch this call ran, or DISCARDED if
        another call was already running (it will pick this request up).
        """
        if self._stopped or self._filter is None:
            return RefreshResult(RefreshOutcome.DISCARDED)
        if self._refreshing:
            self._refresh_pending = True
            return RefreshResult(RefreshOutcome.DISCARDED)

        self._refreshing = True
        try:
            result = await self._refresh_once()
            while self._refresh_pending and not self._stopped:
                self._refresh_pending = False
                result = await self._refresh_once()
            return result
        finally:
            self._refreshing = False
            self._refresh_pending = False

    async def stop(self) -> None:
        """Close the live session. Safe to call more than once."""
        self._stopped = True
        coordinator, self._coordinator = self._coordinator, None
        if coordinator is not None:
            await coordinator.close()

    # =======================================================================
    # PRIVATE METHODS
    # =======================================================================

    def _apply_filter(self, filter: Filter) -> None:
        if filter != self._filter:
            self._generation += 1
            # A new Filter invalidates what we cached for its scope
            self._records_cache.pop(filter.scope_id, None)
        self._filter = filter

    async def _open_coordinator(self, scope_id: str) -> None:
        if self._coordinator is not None:
            await self._coordinator.close()
        coordinator = self._coordinator_factory()
        coordinator.on_signal(self._handle_signal)
        coordinator.on_error(self._report_error)
        self._coordinator = coordinator
        try:
            credential = self.credential_source.get()
            await coordinator.open(scope_id, credential)
        except DashboardError as e:
            # No live session without a credential; refresh reports it too
            logger.warning("Live session not opened", scope_id=scope_id, error=str(e))

    async def _handle_signal(self, signal: SyncSignal) -> None:
        if self._filter is None or signal.scope_id != self._filter.scope_id:
            return
        await self.request_refresh()

    async def _refresh_once(self) -> RefreshResult:
        filter = self._filter
        generation = self._generation
        self.fetch_count += 1

        try:
            credential = self.credential_source.get()
            response = await self.api_client.fetch_attendance(filter, credential)
        except DashboardError as e:
            if generation != self._generation:
                return RefreshResult(RefreshOutcome.DISCARDED, error=e)
            if e.recoverable:
                logger.warning(
                    "Attendance refresh failed, keeping last snapshot",
                    scope_id=filter.scope_id,
                    error=str(e),
                    error_code=e.error_code,
                )
                return RefreshResult(RefreshOutcome.RETRYABLE, self.current_summary, e)
            logger.error(
                "Attendance refresh failed",
                scope_id=filter.scope_id,
                error=str(e),
                error_code=e.error_code,
            )
            await self._report_error(e)
            return RefreshResult(RefreshOutcome.TERMINAL, self.current_summary, e)

        if generation != self._generation or self._stopped:
            logger.debug(
                "Discarding stale attendance response",
                scope_id=filter.scope_id,
                generation=generation,
                current_generation=self._generation,
            )
            return RefreshResult(RefreshOutcome.DISCARDED)

        records = tuple(response.to_records(filter.scope_id))
        self._records_cache[filter.scope_id] = records
        summary = attendance_aggregation_service.summarize(records, filter)

        if response.summary is not None:
            hint = response.summary.to_domain()
            if hint != summary:
                logger.warning(
                    "Server summary disagrees with records, using local",
                    scope_id=filter.scope_id,
                    server_summary=hint.to_dict(),
                    local_summary=summary.to_dict(),
                )

        snapshot = DashboardSnapshot(
            filter=filter,
            records=records,
            summary=summary,
            fetched_at=datetime.now(UTC),
        )
        self._snapshot = snapshot
        logger.info("Attendance summary updated", scope_id=filter.scope_id, **summary.to_dict())

        if self._on_summary is not None:
            try:
                result = self._on_summary(snapshot)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Summary callback failed", error=str(e))

        return RefreshResult(RefreshOutcome.SUCCESS, summary)

    async def _report_error(self, error: DashboardError) -> None:
        if self._on_error is None:
            return
        try:
            result = self._on_error(error)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Error callback failed", error=str(e))


class PayoutStatusService:
    """Fetch payout requests and reduce them to a status summary."""

    def __init__(self, api_client: DashboardApiClient, credential_source: CredentialSource):
        self.api_client = api_client
        self.credential_source = credential_source

    async def get_summary(self) -> PayoutSummary:
        credential = self.credential_source.get()
        payouts = await self.api_client.fetch_payouts(credential)
        summary = attendance_aggregation_service.summarize_payouts(payouts)
        logger.info("Payout summary computed", **summary.to_dict())
        return summary
