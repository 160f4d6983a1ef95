import asyncio
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from dashboard_core.models.api.attendance_response import AttendanceResponse
from dashboard_core.models.domain.attendance_domain import DateRange, Filter, Summary
from dashboard_core.models.domain.payout_domain import PayoutRecord
from dashboard_core.services.errors import AuthError, ServerError, TransportError
from dashboard_core.services.live_attendance_service import (
    LiveAttendanceView,
    PayoutStatusService,
    RefreshOutcome,
)
from dashboard_core.services.sync.coordinator import SyncCoordinator, SyncState
from tests.conftest import FakeApiClient


def _response(*statuses: str, summary: dict | None = None, scope: str = "B1") -> AttendanceResponse:
    payload = {
        "records": [
            {
                "id": f"{scope}-{index}",
                "batchId": scope,
                "timestamp": "2024-03-10T09:00:00Z",
                "subjectLabel": f"student-{index}",
                "status": status,
            }
            for index, status in enumerate(statuses)
        ]
    }
    if summary is not None:
        payload["summary"] = summary
    return AttendanceResponse.model_validate(payload)


def _view(api, credential_source, channel_factory, **kwargs) -> LiveAttendanceView:
    def coordinator_factory():
        return SyncCoordinator(
            channel_factory,
            poll_interval=60.0,
            coalesce_window=0.02,
            reconnect_base_delay=0.01,
            reconnect_max_delay=0.02,
            connect_timeout=1.0,
        )

    return LiveAttendanceView(api, credential_source, coordinator_factory=coordinator_factory, **kwargs)


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_start_opens_session_and_computes_summary(credential_source, channel_factory):
    snapshots = []
    api = FakeApiClient(lambda f: _response("present", "present", "absent", "late"))
    view = _view(api, credential_source, channel_factory, on_summary=snapshots.append)

    result = await view.start(Filter("B1"))

    assert result.outcome is RefreshOutcome.SUCCESS
    assert view.current_summary == Summary(total=4, present=2, absent=1, late=1, percentage=50)
    assert len(snapshots) == 1
    assert view.coordinator.state is SyncState.CONNECTED
    assert len(view.cached_records("B1")) == 4
    await view.stop()


@pytest.mark.asyncio
async def test_result_for_old_filter_is_discarded(credential_source, channel_factory):
    old_filter = Filter("B1")
    new_filter = Filter(
        "B1",
        DateRange(datetime(2024, 3, 1, tzinfo=UTC), datetime(2024, 3, 31, tzinfo=UTC)),
    )
    release_old = asyncio.Event()

    async def slow_old():
        await release_old.wait()
        return _response("absent", "absent", "absent")

    def responder(filter):
        if filter == old_filter:
            return slow_old()
        return _response("present")

    snapshots = []
    api = FakeApiClient(responder)
    view = _view(api, credential_source, channel_factory, on_summary=snapshots.append)

    start_task = asyncio.create_task(view.start(old_filter))
    await _wait_for(lambda: len(api.calls) == 1)

    queued = await view.set_filter(new_filter)
    assert queued.outcome is RefreshOutcome.DISCARDED

    release_old.set()
    await start_task

    assert api.calls == [old_filter, new_filter]
    assert [snapshot.filter for snapshot in snapshots] == [new_filter]
    assert view.current_summary == Summary(total=1, present=1, absent=0, late=0, percentage=100)
    await view.stop()


@pytest.mark.asyncio
async def test_signals_during_refetch_leave_one_follow_up(credential_source, channel_factory):
    release = asyncio.Event()
    calls = {"count": 0}

    async def gated():
        await release.wait()
        return _response("present")

    def responder(_filter):
        calls["count"] += 1
        return gated() if calls["count"] == 2 else _response("present")

    api = FakeApiClient(responder)
    view = _view(api, credential_source, channel_factory)
    await view.start(Filter("B1"))

    in_flight = asyncio.create_task(view.request_refresh())
    await _wait_for(lambda: len(api.calls) == 2)
    for _ in range(5):
        result = await view.request_refresh()
        assert result.outcome is RefreshOutcome.DISCARDED

    release.set()
    await in_flight

    assert len(api.calls) == 3
    await view.stop()


@pytest.mark.asyncio
async def test_burst_of_push_events_refetches_once(credential_source, channel_factory):
    api = FakeApiClient(lambda f: _response("present"))
    view = _view(api, credential_source, channel_factory)
    await view.start(Filter("B1"))
    assert view.fetch_count == 1

    for _ in range(10):
        channel_factory.latest.push("attendance-marked", {"batchId": "B1"})
    await asyncio.sleep(0.1)

    assert view.fetch_count == 2
    await view.stop()


@pytest.mark.asyncio
async def test_transport_failure_keeps_last_summary(credential_source, channel_factory):
    responses = [_response("present", "absent"), TransportError("network down")]
    api = FakeApiClient(lambda f: responses.pop(0))
    errors = []
    view = _view(api, credential_source, channel_factory, on_error=errors.append)
    await view.start(Filter("B1"))
    before = view.current_summary

    result = await view.request_refresh()

    assert result.outcome is RefreshOutcome.RETRYABLE
    assert result.summary == before
    assert view.current_summary == before
    assert errors == []
    await view.stop()


@pytest.mark.asyncio
async def test_server_error_is_retryable(credential_source, channel_factory):
    api = FakeApiClient(lambda f: ServerError("Bad gateway", status_code=502))
    view = _view(api, credential_source, channel_factory)

    result = await view.start(Filter("B1"))

    assert result.outcome is RefreshOutcome.RETRYABLE
    assert view.current_summary is None
    await view.stop()


@pytest.mark.asyncio
async def test_auth_failure_is_terminal_and_reported(credential_source, channel_factory):
    api = FakeApiClient(lambda f: AuthError("Session expired", status_code=401))
    errors = []
    view = _view(api, credential_source, channel_factory, on_error=errors.append)

    result = await view.start(Filter("B1"))

    assert result.outcome is RefreshOutcome.TERMINAL
    assert len(errors) == 1
    assert isinstance(errors[0], AuthError)
    await view.stop()


@pytest.mark.asyncio
async def test_scope_change_reopens_coordinator(credential_source, channel_factory):
    api = FakeApiClient(lambda f: _response("present", scope=f.scope_id))
    view = _view(api, credential_source, channel_factory)
    await view.start(Filter("B1"))
    first = view.coordinator

    await view.set_filter(Filter("B2"))

    assert first.state is SyncState.CLOSED
    assert view.coordinator.handle.scope_id == "B2"
    assert view.snapshot.filter == Filter("B2")
    await view.stop()


@pytest.mark.asyncio
async def test_summary_hidden_until_new_filter_loads(credential_source, channel_factory):
    api = FakeApiClient(
        lambda f: _response("present") if f.scope_id == "B1" else TransportError("down")
    )
    view = _view(api, credential_source, channel_factory)
    await view.start(Filter("B1"))

    await view.set_filter(Filter("B2"))

    assert view.current_summary is None
    await view.stop()


@pytest.mark.asyncio
async def test_server_summary_is_only_a_hint(credential_source, channel_factory):
    wrong = {"total": 10, "present": 10, "absent": 0, "late": 0, "percentage": 100}
    api = FakeApiClient(lambda f: _response("present", "absent", summary=wrong))
    view = _view(api, credential_source, channel_factory)

    await view.start(Filter("B1"))

    assert view.current_summary == Summary(total=2, present=1, absent=1, late=0, percentage=50)
    await view.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent(credential_source, channel_factory):
    api = FakeApiClient(lambda f: _response("present"))
    view = _view(api, credential_source, channel_factory)
    await view.start(Filter("B1"))
    coordinator = view.coordinator

    await view.stop()
    await view.stop()

    assert coordinator.state is SyncState.CLOSED
    result = await view.request_refresh()
    assert result.outcome is RefreshOutcome.DISCARDED


@pytest.mark.asyncio
async def test_payout_status_summary(credential_source):
    class PayoutApi:
        async def fetch_payouts(self, credential):
            return [
                PayoutRecord(id="1", amount=Decimal("300"), status="pending"),
                PayoutRecord(id="2", amount=Decimal("700"), status="completed"),
            ]

    summary = await PayoutStatusService(PayoutApi(), credential_source).get_summary()

    assert summary.total_requests == 2
    assert summary.pending == 1
    assert summary.completed == 1
    assert summary.average_amount == 500
