"""
Dashboard worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and runs it. Job parameters come from the environment:

    WORKER_SCOPE        batch id (required)
    WORKER_FORMAT       export format for the export job (default csv)
    WORKER_START_DATE   optional YYYY-MM-DD
    WORKER_END_DATE     optional YYYY-MM-DD
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from datetime import date

from dashboard_core.config import settings
from dashboard_core.infrastructure.observability.logging import get_logger, setup_logging
from dashboard_core.models.domain.attendance_domain import DashboardSnapshot, DateRange, Filter
from dashboard_core.services.credential_service import CredentialSource
from dashboard_core.services.dashboard_api_client import DashboardApiClient
from dashboard_core.services.errors import DashboardError, ValidationError
from dashboard_core.services.export.pipeline import ExportPipeline
from dashboard_core.services.live_attendance_service import LiveAttendanceView, PayoutStatusService

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]


def _filter_from_env() -> Filter:
    """Build the job Filter from WORKER_* environment variables."""
    scope_id = os.getenv("WORKER_SCOPE", "").strip()
    start = os.getenv("WORKER_START_DATE", "").strip()
    end = os.getenv("WORKER_END_DATE", "").strip()

    date_range = None
    if start or end:
        try:
            start_date = date.fromisoformat(start or end)
            end_date = date.fromisoformat(end or start)
        except ValueError as e:
            raise ValidationError(f"Invalid date in WORKER_START_DATE/WORKER_END_DATE: {e}") from e
        date_range = DateRange.from_dates(start_date, end_date)

    filter = Filter(scope_id=scope_id, date_range=date_range)
    filter.validate()
    return filter


async def run_watch() -> None:
    """Keep a live attendance view open and log every summary update."""
    filter = _filter_from_env()
    api_client = DashboardApiClient()

    def _log_snapshot(snapshot: DashboardSnapshot) -> None:
        logger.info("Live summary", scope_id=snapshot.filter.scope_id, **snapshot.summary.to_dict())

    def _log_error(error: DashboardError) -> None:
        logger.error("Live view error", error=str(error), error_code=error.error_code)

    view = LiveAttendanceView(
        api_client,
        CredentialSource.from_settings(),
        on_summary=_log_snapshot,
        on_error=_log_error,
    )
    try:
        await view.start(filter)
        await asyncio.Event().wait()
    finally:
        await view.stop()
        await api_client.close()


async def run_export() -> None:
    """Run one export and exit."""
    filter = _filter_from_env()
    export_format = os.getenv("WORKER_FORMAT", "csv")
    api_client = DashboardApiClient()
    try:
        pipeline = ExportPipeline(api_client, CredentialSource.from_settings())
        job = await pipeline.request_export(filter.scope_id, filter, export_format)
        if job.error is not None:
            raise job.error
    finally:
        await api_client.close()


async def run_payouts() -> None:
    """Log the instructor's payout status summary."""
    api_client = DashboardApiClient()
    try:
        await PayoutStatusService(api_client, CredentialSource.from_settings()).get_summary()
    finally:
        await api_client.close()


JOB_REGISTRY: dict[str, JobCoroutine] = {
    "watch": run_watch,
    "export": run_export,
    "payouts": run_payouts,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", "watch").strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested job."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting dashboard worker", job=name)
    await JOB_REGISTRY[name]()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
