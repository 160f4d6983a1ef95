"""
Aggregation package.

Pure reductions of raw attendance and payout records into summaries.
"""

from .service import AttendanceAggregationService, attendance_aggregation_service, summarize

__all__ = ["AttendanceAggregationService", "attendance_aggregation_service", "summarize"]
