# dashboard_core/models/domain/attendance_domain.py
"""
Attendance Domain Models
Strict internal types the sync, aggregation and export services operate on.
Server payloads are validated into these once, at the API boundary.
"""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from enum import StrEnum

from dashboard_core.services.errors import ValidationError


class AttendanceStatus(StrEnum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"


class ExportFormat(StrEnum):
    CSV = "csv"
    PDF = "pdf"
    JSON = "json"

    @classmethod
    def parse(cls, value: "str | ExportFormat") -> "ExportFormat":
        """Coerce user input into a known format or raise ValidationError."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(member.value for member in cls)
            raise ValidationError(
                f"Unsupported export format '{value}'. Expected one of: {allowed}"
            ) from None


class ExportState(StrEnum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Standing(StrEnum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix the two."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive [start, end] window."""

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", as_utc(self.start))
        object.__setattr__(self, "end", as_utc(self.end))
        if self.start > self.end:
            raise ValidationError("Date range start must not be after its end")

    @classmethod
    def from_dates(cls, start: date, end: date) -> "DateRange":
        """Build a range covering whole calendar days (UTC)."""
        return cls(
            start=datetime.combine(start, time.min, tzinfo=UTC),
            end=datetime.combine(end, time.max, tzinfo=UTC),
        )

    def contains(self, moment: datetime) -> bool:
        return self.start <= as_utc(moment) <= self.end


@dataclass(frozen=True, slots=True)
class Filter:
    """Immutable query for one scope. A new Filter means a new query."""

    scope_id: str
    date_range: DateRange | None = None
    export_format: ExportFormat | None = None

    def validate(self) -> None:
        if not self.scope_id or not self.scope_id.strip():
            raise ValidationError("Please select a batch first", error_code="missing_scope")

    def query_params(self) -> dict[str, str]:
        """Query string parameters understood by the dashboard API."""
        params = {"batchId": self.scope_id}
        if self.date_range:
            params["startDate"] = self.date_range.start.date().isoformat()
            params["endDate"] = self.date_range.end.date().isoformat()
        return params


@dataclass(frozen=True, slots=True)
class RawRecord:
    id: str
    scope_id: str
    timestamp: datetime
    subject_label: str
    status: str
    capture_channel: str | None = None
    captured_at: datetime | None = None

    @property
    def normalized_status(self) -> AttendanceStatus:
        """Known statuses as-is, anything else counts as absent."""
        try:
            return AttendanceStatus(self.status.strip().lower())
        except (ValueError, AttributeError):
            return AttendanceStatus.ABSENT

    @property
    def identity(self) -> tuple[str, str]:
        return (self.scope_id, self.id)

    def sort_key(self) -> tuple:
        """Total order over record content, used to pick among duplicates."""
        captured = as_utc(self.captured_at).isoformat() if self.captured_at else ""
        return (
            captured,
            as_utc(self.timestamp).isoformat(),
            self.status,
            self.subject_label,
            self.capture_channel or "",
        )


@dataclass(frozen=True, slots=True)
class Summary:
    total: int
    present: int
    absent: int
    late: int
    percentage: int

    @classmethod
    def empty(cls) -> "Summary":
        return cls(total=0, present=0, absent=0, late=0, percentage=0)

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "present": self.present,
            "absent": self.absent,
            "late": self.late,
            "percentage": self.percentage,
        }


@dataclass(frozen=True, slots=True)
class SubjectStanding:
    subject_label: str
    total: int
    present: int
    absent: int
    late: int
    percentage: int
    standing: Standing

    def to_dict(self) -> dict:
        return {
            "subject_label": self.subject_label,
            "total": self.total,
            "present": self.present,
            "absent": self.absent,
            "late": self.late,
            "percentage": self.percentage,
            "standing": self.standing.value,
        }


@dataclass(frozen=True, slots=True)
class SyncSignal:
    """Scope S may have new data. Consumers refetch, they never patch."""

    scope_id: str


@dataclass(frozen=True, slots=True)
class DashboardSnapshot:
    """Last known good state of a live view."""

    filter: Filter
    records: tuple[RawRecord, ...]
    summary: Summary
    fetched_at: datetime


@dataclass(slots=True)
class ExportJob:
    """One user-initiated export. Terminal on success or failure."""

    scope_id: str
    filter: Filter
    format: ExportFormat
    state: ExportState = ExportState.PENDING
    filename: str | None = None
    location: str | None = None
    error: Exception | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state is not ExportState.PENDING

    def mark_succeeded(self, filename: str, location: str | None = None) -> None:
        self._finish(ExportState.SUCCEEDED)
        self.filename = filename
        self.location = location

    def mark_failed(self, error: Exception) -> None:
        self._finish(ExportState.FAILED)
        self.error = error

    def _finish(self, state: ExportState) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Export job already {self.state.value}")
        self.state = state
        self.completed_at = datetime.now(UTC)
