"""
Attendance aggregation service.

Reduces raw attendance records to summary statistics under a Filter.
Everything here is a pure function of its inputs: no network, no caching,
and the result does not depend on record ordering.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from dashboard_core.config import settings
from dashboard_core.models.domain.attendance_domain import (
    AttendanceStatus,
    Filter,
    RawRecord,
    Standing,
    SubjectStanding,
    Summary,
    as_utc,
)
from dashboard_core.models.domain.payout_domain import (
    PayoutRecord,
    PayoutStatus,
    PayoutSummary,
)


def round_half_up_percentage(part: int, whole: int) -> int:
    """Integer percentage of part/whole, halves rounded up, 0 for an empty whole."""
    if whole <= 0:
        return 0
    return (part * 200 + whole) // (2 * whole)


@dataclass
class _Tally:
    total: int = 0
    present: int = 0
    absent: int = 0
    late: int = 0

    def add(self, record: RawRecord) -> None:
        self.total += 1
        status = record.normalized_status
        if status is AttendanceStatus.PRESENT:
            self.present += 1
        elif status is AttendanceStatus.LATE:
            self.late += 1
        else:
            self.absent += 1

    def to_summary(self) -> Summary:
        return Summary(
            total=self.total,
            present=self.present,
            absent=self.absent,
            late=self.late,
            percentage=round_half_up_percentage(self.present, self.total),
        )


class AttendanceAggregationService:
    GOOD_STANDING_MIN = 75
    WARNING_STANDING_MIN = 50

    def summarize(self, records: Iterable[RawRecord], filter: Filter) -> Summary:
        tally = _Tally()
        for record in self._included(records, filter):
            tally.add(record)
        return tally.to_summary()

    def subject_breakdown(
        self, records: Iterable[RawRecord], filter: Filter
    ) -> list[SubjectStanding]:
        tallies: defaultdict[str, _Tally] = defaultdict(_Tally)
        for record in self._included(records, filter):
            tallies[record.subject_label].add(record)

        standings = []
        for label in sorted(tallies):
            summary = tallies[label].to_summary()
            standings.append(
                SubjectStanding(
                    subject_label=label,
                    total=summary.total,
                    present=summary.present,
                    absent=summary.absent,
                    late=summary.late,
                    percentage=summary.percentage,
                    standing=self._standing_for(summary.percentage),
                )
            )
        return standings

    def low_attendance(
        self,
        records: Iterable[RawRecord],
        filter: Filter,
        threshold: int | None = None,
    ) -> list[SubjectStanding]:
        limit = settings.LOW_ATTENDANCE_THRESHOLD if threshold is None else threshold
        return [
            standing
            for standing in self.subject_breakdown(records, filter)
            if standing.percentage < limit
        ]

    def monthly_breakdown(
        self, records: Iterable[RawRecord], filter: Filter
    ) -> dict[str, Summary]:
        tallies: defaultdict[str, _Tally] = defaultdict(_Tally)
        for record in self._included(records, filter):
            tallies[as_utc(record.timestamp).strftime("%Y-%m")].add(record)
        return {month: tallies[month].to_summary() for month in sorted(tallies)}

    def summarize_payouts(self, payouts: Iterable[PayoutRecord]) -> PayoutSummary:
        unique: dict[str, PayoutRecord] = {}
        for payout in payouts:
            current = unique.get(payout.id)
            if current is None or self._payout_key(payout) > self._payout_key(current):
                unique[payout.id] = payout

        counts = {status: 0 for status in PayoutStatus}
        total_amount = Decimal("0")
        for payout in unique.values():
            counts[payout.normalized_status] += 1
            total_amount += payout.amount

        total_requests = len(unique)
        if total_requests:
            average = (total_amount / total_requests).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
        else:
            average = Decimal("0")

        return PayoutSummary(
            total_requests=total_requests,
            pending=counts[PayoutStatus.PENDING],
            completed=counts[PayoutStatus.COMPLETED],
            rejected=counts[PayoutStatus.REJECTED],
            total_amount=total_amount,
            average_amount=int(average),
        )

    def _included(self, records: Iterable[RawRecord], filter: Filter) -> list[RawRecord]:
        # One record per identity; the winner is picked by content so input
        # order never changes the result
        unique: dict[tuple[str, str], RawRecord] = {}
        for record in records:
            if record.scope_id != filter.scope_id:
                continue
            if filter.date_range and not filter.date_range.contains(record.timestamp):
                continue
            current = unique.get(record.identity)
            if current is None or record.sort_key() > current.sort_key():
                unique[record.identity] = record
        return list(unique.values())

    def _standing_for(self, percentage: int) -> Standing:
        if percentage >= self.GOOD_STANDING_MIN:
            return Standing.GOOD
        if percentage >= self.WARNING_STANDING_MIN:
            return Standing.WARNING
        return Standing.CRITICAL

    @staticmethod
    def _payout_key(payout: PayoutRecord) -> tuple:
        requested = as_utc(payout.requested_at).isoformat() if payout.requested_at else ""
        return (requested, payout.status, str(payout.amount))


attendance_aggregation_service = AttendanceAggregationService()


def summarize(records: Iterable[RawRecord], filter: Filter) -> Summary:
    """Module-level shortcut for ``attendance_aggregation_service.summarize``."""
    return attendance_aggregation_service.summarize(records, filter)
