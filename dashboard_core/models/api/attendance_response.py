# dashboard_core/models/api/attendance_response.py
"""
Dashboard API response models.
Validate server payloads once at ingestion, then convert to domain types.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from dashboard_core.models.domain.attendance_domain import RawRecord, Summary
from dashboard_core.models.domain.payout_domain import PayoutRecord


class RawRecordPayload(BaseModel):
    """One attendance record as sent by the server."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(..., validation_alias=AliasChoices("id", "_id"))
    scope_id: str | None = Field(
        None, validation_alias=AliasChoices("scopeId", "scope_id", "batchId", "batch_id")
    )
    timestamp: datetime = Field(
        ..., validation_alias=AliasChoices("timestamp", "date", "sessionDate")
    )
    subject_label: str = Field(
        default="",
        validation_alias=AliasChoices("subjectLabel", "subject_label", "studentName", "student"),
    )
    status: str = Field(default="absent", description="Raw status string")
    capture_channel: str | None = Field(
        None, validation_alias=AliasChoices("captureChannel", "capture_channel", "method")
    )
    captured_at: datetime | None = Field(
        None, validation_alias=AliasChoices("capturedAt", "captured_at", "markedAt")
    )

    @field_validator("id", "scope_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value):
        # Mongo ObjectIds and numeric ids both arrive here
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("status", mode="before")
    @classmethod
    def _coerce_status(cls, value):
        # null or numeric statuses still tally (as absent) instead of failing the payload
        if value is None:
            return ""
        return value if isinstance(value, str) else str(value)

    @field_validator("subject_label", mode="before")
    @classmethod
    def _flatten_subject(cls, value):
        if isinstance(value, dict):
            return value.get("name") or value.get("label") or ""
        return value or ""

    def to_domain(self, default_scope_id: str) -> RawRecord:
        return RawRecord(
            id=self.id,
            scope_id=self.scope_id or default_scope_id,
            timestamp=self.timestamp,
            subject_label=self.subject_label,
            status=self.status,
            capture_channel=self.capture_channel,
            captured_at=self.captured_at,
        )


class SummaryPayload(BaseModel):
    """Server-computed summary. Only a hint, never trusted for display."""

    model_config = ConfigDict(extra="ignore")

    total: int = 0
    present: int = 0
    absent: int = 0
    late: int = 0
    percentage: float = 0

    def to_domain(self) -> Summary:
        return Summary(
            total=self.total,
            present=self.present,
            absent=self.absent,
            late=self.late,
            percentage=int(self.percentage),
        )


class AttendanceResponse(BaseModel):
    """Record list plus optional pre-computed summary."""

    model_config = ConfigDict(extra="ignore")

    records: list[RawRecordPayload] = Field(default_factory=list)
    summary: SummaryPayload | None = None

    def to_records(self, scope_id: str) -> list[RawRecord]:
        return [record.to_domain(scope_id) for record in self.records]


class AttendanceEnvelope(BaseModel):
    """The ``{success, data, message}`` wrapper the API uses."""

    model_config = ConfigDict(extra="ignore")

    success: bool = True
    data: AttendanceResponse | None = None
    message: str | None = None


class PayoutPayload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(..., validation_alias=AliasChoices("id", "_id"))
    amount: Decimal = Decimal("0")
    status: str = "pending"
    requested_at: datetime | None = Field(
        None, validation_alias=AliasChoices("requestedAt", "requested_at", "createdAt")
    )

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value):
        return value if isinstance(value, str) else str(value)

    def to_domain(self) -> PayoutRecord:
        return PayoutRecord(
            id=self.id,
            amount=self.amount,
            status=self.status,
            requested_at=self.requested_at,
        )


class PayoutsEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    success: bool = True
    data: list[PayoutPayload] = Field(default_factory=list)
    message: str | None = None
