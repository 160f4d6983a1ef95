"""
Domain models for instructor payout status.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import StrEnum


class PayoutStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"

    @classmethod
    def normalize(cls, raw: str | None) -> "PayoutStatus":
        value = (raw or "").strip().lower()
        if value in {"completed", "paid", "success"}:
            return cls.COMPLETED
        if value in {"rejected", "failed", "cancelled", "canceled"}:
            return cls.REJECTED
        # requested / pending / processing / approved and unknown values
        return cls.PENDING


@dataclass(frozen=True, slots=True)
class PayoutRecord:
    id: str
    amount: Decimal
    status: str
    requested_at: datetime | None = None

    @property
    def normalized_status(self) -> PayoutStatus:
        return PayoutStatus.normalize(self.status)


@dataclass(frozen=True, slots=True)
class PayoutSummary:
    total_requests: int
    pending: int
    completed: int
    rejected: int
    total_amount: Decimal
    average_amount: int

    def to_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "pending": self.pending,
            "completed": self.completed,
            "rejected": self.rejected,
            "total_amount": str(self.total_amount),
            "average_amount": self.average_amount,
        }
