"""
Tests for the export pipeline and artifact helpers.
"""

import json
import re
from datetime import UTC, datetime

import pytest

from dashboard_core.models.domain.attendance_domain import (
    DashboardSnapshot,
    ExportFormat,
    ExportState,
    Filter,
    Summary,
)
from dashboard_core.services.dashboard_api_client import ArtifactResponse
from dashboard_core.services.errors import AuthError, ServerError, ValidationError
from dashboard_core.services.export import artifacts
from dashboard_core.services.export.artifacts import (
    InMemoryArtifact,
    LocalDirectorySink,
    filename_from_disposition,
    resolve_filename,
)
from dashboard_core.services.export.pipeline import ExportPipeline
from tests.conftest import MemorySink, RecordingNotifier, make_record

FIXED_NOW = datetime(2024, 3, 10, 12, 0, tzinfo=UTC)


class FakeExportApi:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def request_export(self, filter, export_format, credential):
        self.calls.append((filter, export_format, credential))
        if self.error is not None:
            raise self.error
        return self.response


def _pipeline(api, credential_source, sink=None, notifier=None) -> ExportPipeline:
    return ExportPipeline(
        api,
        credential_source,
        sink=sink or MemorySink(),
        notifier=notifier or RecordingNotifier(),
        clock=lambda: FIXED_NOW,
    )


class TestFilenameResolution:
    def test_generated_name_when_header_missing(self):
        name = resolve_filename(None, "B1", ExportFormat.CSV, FIXED_NOW)

        assert re.fullmatch(r"attendance_B1_\d+\.csv", name)
        assert name == f"attendance_B1_{int(FIXED_NOW.timestamp() * 1000)}.csv"

    @pytest.mark.parametrize("scope_id", ["../B1", "B1\\..\\x", "a:b"])
    def test_generated_name_stays_in_one_path_component(self, scope_id):
        name = resolve_filename(None, scope_id, ExportFormat.CSV, FIXED_NOW)

        assert "/" not in name and "\\" not in name and ":" not in name
        assert re.fullmatch(r"attendance_.+_\d+\.csv", name)

    @pytest.mark.parametrize(
        "header,expected",
        [
            ('attachment; filename="attendance-march.csv"', "attendance-march.csv"),
            ("attachment; filename=report.pdf", "report.pdf"),
            ("attachment; filename*=UTF-8''r%C3%A9sum%C3%A9.csv", "résumé.csv"),
            ('attachment; filename="../../etc/passwd"', "passwd"),
            ('attachment; filename="C:\\temp\\a.csv"', "a.csv"),
        ],
    )
    def test_name_from_content_disposition(self, header, expected):
        assert filename_from_disposition(header) == expected

    @pytest.mark.parametrize("header", ['attachment; filename=""', "attachment", "inline; filename=.."])
    def test_malformed_header_falls_back(self, header):
        name = resolve_filename(header, "B1", ExportFormat.PDF, FIXED_NOW)

        assert re.fullmatch(r"attendance_B1_\d+\.pdf", name)


class TestInMemoryArtifact:
    def test_released_on_exit(self):
        with InMemoryArtifact(b"abc") as artifact:
            assert artifact.getvalue() == b"abc"

        assert artifact.released
        with pytest.raises(ValueError):
            artifact.getvalue()

    def test_released_on_exception(self):
        with pytest.raises(RuntimeError):
            with InMemoryArtifact(b"abc") as artifact:
                raise RuntimeError("boom")

        assert artifact.released


@pytest.mark.asyncio
async def test_export_without_filename_metadata(credential_source):
    api = FakeExportApi(ArtifactResponse(b"id,status\n", "text/csv", None))
    sink = MemorySink()
    notifier = RecordingNotifier()

    job = await _pipeline(api, credential_source, sink, notifier).request_export(
        "B1", Filter("B1"), "csv"
    )

    assert job.state is ExportState.SUCCEEDED
    assert re.fullmatch(r"attendance_B1_\d+\.csv", job.filename)
    assert sink.saved[job.filename] == b"id,status\n"
    assert notifier.jobs == [job]


@pytest.mark.asyncio
async def test_export_uses_server_filename(credential_source):
    api = FakeExportApi(
        ArtifactResponse(b"%PDF", "application/pdf", 'attachment; filename="batch-B1.pdf"')
    )

    job = await _pipeline(api, credential_source).request_export("B1", None, ExportFormat.PDF)

    assert job.filename == "batch-B1.pdf"
    assert job.location == "memory://batch-B1.pdf"
    filter, export_format, credential = api.calls[0]
    assert filter == Filter("B1")
    assert export_format is ExportFormat.PDF
    assert credential.token == "test-token"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "scope_id,filter,export_format",
    [
        ("", None, "csv"),
        ("B1", None, "xlsx"),
        ("B1", None, None),
        ("B1", Filter("B2"), "csv"),
    ],
)
async def test_invalid_export_fails_fast(credential_source, scope_id, filter, export_format):
    api = FakeExportApi(ArtifactResponse(b"", None, None))
    notifier = RecordingNotifier()
    pipeline = _pipeline(api, credential_source, notifier=notifier)

    with pytest.raises(ValidationError):
        await pipeline.request_export(scope_id, filter, export_format)

    assert api.calls == []
    assert notifier.jobs == []


@pytest.mark.asyncio
async def test_format_can_come_from_filter(credential_source):
    api = FakeExportApi(ArtifactResponse(b"{}", "application/json", None))

    job = await _pipeline(api, credential_source).request_export(
        "B1", Filter("B1", export_format=ExportFormat.JSON)
    )

    assert job.format is ExportFormat.JSON
    assert job.filename.endswith(".json")


@pytest.mark.asyncio
async def test_server_error_fails_job_without_retry(credential_source):
    api = FakeExportApi(error=ServerError("Export failed", status_code=500))
    sink = MemorySink()
    notifier = RecordingNotifier()

    job = await _pipeline(api, credential_source, sink, notifier).request_export("B1", None, "csv")

    assert job.state is ExportState.FAILED
    assert isinstance(job.error, ServerError)
    assert len(api.calls) == 1
    assert sink.saved == {}
    assert notifier.jobs == [job]


@pytest.mark.asyncio
async def test_missing_credential_fails_job_before_request():
    from dashboard_core.services.credential_service import CredentialSource

    api = FakeExportApi(ArtifactResponse(b"", None, None))

    job = await _pipeline(api, CredentialSource()).request_export("B1", None, "csv")

    assert job.state is ExportState.FAILED
    assert isinstance(job.error, AuthError)
    assert api.calls == []


@pytest.mark.asyncio
async def test_save_failure_releases_artifact(credential_source, monkeypatch):
    created = []
    original_init = InMemoryArtifact.__init__

    def tracking_init(self, *args, **kwargs):
        original_init(self, *args, **kwargs)
        created.append(self)

    monkeypatch.setattr(InMemoryArtifact, "__init__", tracking_init)
    api = FakeExportApi(ArtifactResponse(b"data", "text/csv", None))
    sink = MemorySink(fail_with=OSError("disk full"))

    job = await _pipeline(api, credential_source, sink).request_export("B1", None, "csv")

    assert job.state is ExportState.FAILED
    assert "disk full" in str(job.error)
    assert len(created) == 1
    assert created[0].released


@pytest.mark.asyncio
async def test_next_export_allowed_after_previous_resolves(credential_source):
    api = FakeExportApi(ArtifactResponse(b"x", "text/csv", None))
    pipeline = _pipeline(api, credential_source)

    first = await pipeline.request_export("B1", None, "csv")
    second = await pipeline.request_export("B1", None, "csv")

    assert first.state is ExportState.SUCCEEDED
    assert second.state is ExportState.SUCCEEDED
    assert pipeline.active_job is None


@pytest.mark.asyncio
async def test_export_snapshot_writes_json_report(credential_source):
    sink = MemorySink()
    records = (
        make_record("r1", "present", subject_label="Asha"),
        make_record("r2", "absent", subject_label="Bilal"),
    )
    snapshot = DashboardSnapshot(
        filter=Filter("B1"),
        records=records,
        summary=Summary(total=2, present=1, absent=1, late=0, percentage=50),
        fetched_at=FIXED_NOW,
    )

    job = await _pipeline(FakeExportApi(), credential_source, sink).export_snapshot(snapshot)

    assert job.state is ExportState.SUCCEEDED
    assert job.filename == "reports-2024-03-10.json"
    report = json.loads(sink.saved[job.filename])
    assert report["summary"]["percentage"] == 50
    assert [s["subject_label"] for s in report["subjects"]] == ["Asha", "Bilal"]
    assert list(report["monthly"]) == ["2024-03"]


@pytest.mark.asyncio
async def test_local_sink_writes_atomically(tmp_path):
    sink = LocalDirectorySink(tmp_path / "exports")

    first = await sink.save("a.csv", b"one")
    second = await sink.save("a.csv", b"two")

    assert (tmp_path / "exports" / "a.csv").read_bytes() == b"one"
    assert second.endswith("a (1).csv")
    assert sorted(p.name for p in (tmp_path / "exports").iterdir()) == ["a (1).csv", "a.csv"]
    assert first.endswith("a.csv")


@pytest.mark.asyncio
async def test_export_with_path_like_scope_saves_inside_directory(credential_source, tmp_path):
    api = FakeExportApi(ArtifactResponse(b"x", "text/csv", None))
    pipeline = _pipeline(api, credential_source, sink=LocalDirectorySink(tmp_path / "out"))

    job = await pipeline.request_export("../B1", None, "csv")

    assert job.state is ExportState.SUCCEEDED
    assert [p.name for p in (tmp_path / "out").iterdir()] == [job.filename]
    assert list(tmp_path.iterdir()) == [tmp_path / "out"]


@pytest.mark.asyncio
async def test_local_sink_leaves_no_partial_file(tmp_path, monkeypatch):
    sink = LocalDirectorySink(tmp_path)

    def broken_replace(src, dst):
        raise OSError("rename failed")

    monkeypatch.setattr(artifacts.os, "replace", broken_replace)

    with pytest.raises(OSError):
        await sink.save("a.csv", b"data")

    assert list(tmp_path.iterdir()) == []
