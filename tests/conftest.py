from datetime import UTC, datetime

import pytest

from dashboard_core.models.api.attendance_response import AttendanceResponse
from dashboard_core.models.domain.attendance_domain import RawRecord
from dashboard_core.services.credential_service import CredentialSource
from dashboard_core.services.errors import TransportError


class FakePushChannel:
    def __init__(self, fail_with: Exception | None = None):
        self.fail_with = fail_with
        self.connected = False
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.scope_id: str | None = None
        self.credential = None
        self._on_event = None
        self._on_disconnect = None

    async def connect(self, scope_id, credential, on_event, on_disconnect) -> None:
        self.connect_calls += 1
        self.scope_id = scope_id
        self.credential = credential
        self._on_event = on_event
        self._on_disconnect = on_disconnect
        if self.fail_with is not None:
            raise self.fail_with
        self.connected = True

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        self.connected = False

    def push(self, event: str = "analytics-update", payload=None) -> None:
        self._on_event(event, payload)

    def drop(self) -> None:
        self.connected = False
        self._on_disconnect()


class ChannelFactory:
    """Hands out FakePushChannels; ``failures`` fail in order before successes."""

    def __init__(self, *failures: Exception):
        self.failures = list(failures)
        self.channels: list[FakePushChannel] = []

    def __call__(self) -> FakePushChannel:
        fail_with = self.failures.pop(0) if self.failures else None
        channel = FakePushChannel(fail_with=fail_with)
        self.channels.append(channel)
        return channel

    @property
    def latest(self) -> FakePushChannel:
        return self.channels[-1]


class FakeApiClient:
    """Stand-in for DashboardApiClient driven by a per-test responder."""

    def __init__(self, responder=None):
        self.responder = responder or (lambda filter: AttendanceResponse())
        self.calls = []

    async def fetch_attendance(self, filter, credential):
        self.calls.append(filter)
        result = self.responder(filter)
        if hasattr(result, "__await__"):
            result = await result
        if isinstance(result, Exception):
            raise result
        return result


class MemorySink:
    def __init__(self, fail_with: BaseException | None = None):
        self.fail_with = fail_with
        self.saved: dict[str, bytes] = {}

    async def save(self, filename, content, content_type=None):
        if self.fail_with is not None:
            raise self.fail_with
        self.saved[filename] = content
        return f"memory://{filename}"


class RecordingNotifier:
    def __init__(self):
        self.jobs = []

    def notify(self, job):
        self.jobs.append(job)


def make_record(
    record_id: str,
    status: str = "present",
    scope_id: str = "B1",
    timestamp: datetime | None = None,
    subject_label: str = "Asha",
    **kwargs,
) -> RawRecord:
    return RawRecord(
        id=record_id,
        scope_id=scope_id,
        timestamp=timestamp or datetime(2024, 3, 10, 9, 0, tzinfo=UTC),
        subject_label=subject_label,
        status=status,
        **kwargs,
    )


@pytest.fixture
def credential_source():
    return CredentialSource(token="test-token")


@pytest.fixture
def channel_factory():
    return ChannelFactory()


@pytest.fixture
def failing_channel_factory():
    return ChannelFactory(*[TransportError("connection refused") for _ in range(50)])
