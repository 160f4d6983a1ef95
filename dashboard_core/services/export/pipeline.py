"""
Export Pipeline - server-rendered attendance artifacts.

Turns a user-initiated export into a file on the host without blocking the
event loop.

Features:
- Local precondition checks before any request (scope, format)
- One request per export, never retried (the user retries)
- Filename from Content-Disposition, generated fallback otherwise
- In-memory artifact released on both success and failure paths
- One-shot success/failure notification

Usage:
    pipeline = ExportPipeline(api_client, CredentialSource.from_settings())
    job = await pipeline.request_export("B1", Filter("B1"), "csv")
    # job.state is "succeeded" or "failed"
"""

import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from dashboard_core.infrastructure.observability.logging import get_logger, log_export_result
from dashboard_core.models.domain.attendance_domain import (
    DashboardSnapshot,
    ExportFormat,
    ExportJob,
    ExportState,
    Filter,
)
from dashboard_core.services.aggregation.service import attendance_aggregation_service
from dashboard_core.services.credential_service import CredentialSource
from dashboard_core.services.dashboard_api_client import DashboardApiClient
from dashboard_core.services.errors import DashboardError, TransportError, ValidationError
from dashboard_core.services.export.artifacts import (
    ArtifactSink,
    InMemoryArtifact,
    LocalDirectorySink,
    resolve_filename,
)

logger = get_logger(__name__)


class ExportNotifier(Protocol):
    def notify(self, job: ExportJob) -> None:
        """Tell the user how the export ended. Called exactly once per job."""
        ...


class LoggingExportNotifier:
    """Default notifier: a structured log line per finished job."""

    def notify(self, job: ExportJob) -> None:
        log_export_result(
            scope_id=job.scope_id,
            export_format=job.format.value,
            succeeded=job.state is ExportState.SUCCEEDED,
            filename=job.filename,
            error=str(job.error) if job.error else None,
        )


class ExportPipeline:
    """
    Service for exporting attendance artifacts.

    Only one export runs at a time per pipeline; a new one may start after
    the previous job resolves.
    """

    def __init__(
        self,
        api_client: DashboardApiClient,
        credential_source: CredentialSource,
        sink: ArtifactSink | None = None,
        notifier: ExportNotifier | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.api_client = api_client
        self.credential_source = credential_source
        self.sink = sink or LocalDirectorySink()
        self.notifier = notifier or LoggingExportNotifier()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._active_job: ExportJob | None = None

    @property
    def active_job(self) -> ExportJob | None:
        return self._active_job

    async def request_export(
        self,
        scope_id: str,
        filter: Filter | None = None,
        export_format: "ExportFormat | str | None" = None,
    ) -> ExportJob:
        """
        Export attendance for a scope.

        Args:
            scope_id: Selected batch
            filter: Optional filter (date range, default format)
            export_format: csv, pdf or json

        Returns:
            ExportJob: Terminal job (succeeded or failed)

        Raises:
            ValidationError: If preconditions fail. No request is made.
        """
        job = self._prepare_job(scope_id, filter, export_format)

        logger.info(
            "Starting export",
            scope_id=job.scope_id,
            format=job.format.value,
            has_date_range=job.filter.date_range is not None,
        )

        self._active_job = job
        try:
            credential = self.credential_source.get()
            response = await self.api_client.request_export(job.filter, job.format, credential)
            filename = resolve_filename(
                response.content_disposition, job.scope_id, job.format, self._clock()
            )
            with InMemoryArtifact(response.content, response.content_type) as artifact:
                location = await self.sink.save(filename, artifact.getvalue(), artifact.content_type)
            job.mark_succeeded(filename, location)
        except DashboardError as e:
            job.mark_failed(e)
        except OSError as e:
            job.mark_failed(TransportError(f"Could not save export: {e}", error_code="save_failed"))
        finally:
            self._active_job = None

        self.notifier.notify(job)
        return job

    async def export_snapshot(self, snapshot: DashboardSnapshot) -> ExportJob:
        """
        Save the current dashboard numbers as a local JSON report.

        No network call: the snapshot is what the instructor is looking at.
        """
        job = self._prepare_job(snapshot.filter.scope_id, snapshot.filter, ExportFormat.JSON)
        now = self._clock()
        filename = f"reports-{now.date().isoformat()}.json"

        report = {
            "scope_id": snapshot.filter.scope_id,
            "generated_at": now.isoformat(),
            "fetched_at": snapshot.fetched_at.isoformat(),
            "date_range": (
                {
                    "start": snapshot.filter.date_range.start.isoformat(),
                    "end": snapshot.filter.date_range.end.isoformat(),
                }
                if snapshot.filter.date_range
                else None
            ),
            "summary": snapshot.summary.to_dict(),
            "subjects": [
                standing.to_dict()
                for standing in attendance_aggregation_service.subject_breakdown(
                    snapshot.records, snapshot.filter
                )
            ],
            "monthly": {
                month: summary.to_dict()
                for month, summary in attendance_aggregation_service.monthly_breakdown(
                    snapshot.records, snapshot.filter
                ).items()
            },
        }

        self._active_job = job
        try:
            content = json.dumps(report, indent=2).encode("utf-8")
            with InMemoryArtifact(content, "application/json") as artifact:
                location = await self.sink.save(filename, artifact.getvalue(), artifact.content_type)
            job.mark_succeeded(filename, location)
        except OSError as e:
            job.mark_failed(TransportError(f"Could not save report: {e}", error_code="save_failed"))
        finally:
            self._active_job = None

        self.notifier.notify(job)
        return job

    def _prepare_job(
        self,
        scope_id: str,
        filter: Filter | None,
        export_format: "ExportFormat | str | None",
    ) -> ExportJob:
        if self._active_job is not None:
            raise ValidationError("An export is already in progress", error_code="export_in_progress")

        if not scope_id or not scope_id.strip():
            raise ValidationError("Please select a batch first", error_code="missing_scope")

        filter = filter or Filter(scope_id=scope_id)
        if filter.scope_id != scope_id:
            raise ValidationError(
                f"Filter scope '{filter.scope_id}' does not match export scope '{scope_id}'",
                error_code="scope_mismatch",
            )

        requested = export_format if export_format is not None else filter.export_format
        if requested is None:
            raise ValidationError("Choose an export format", error_code="missing_format")

        return ExportJob(scope_id=scope_id, filter=filter, format=ExportFormat.parse(requested))
