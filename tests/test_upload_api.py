"""Tests for the Upload API endpoints."""

from datetime import UTC, datetime
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from kitadoc.analysis import AnalysisResponseError
from kitadoc.config import UploadLimits, get_upload_limits
from kitadoc.entries import DocumentationEntryService, EntryPersistenceError
from kitadoc.huey_app import override_pipeline_factory
from kitadoc.models import DocumentationEntry, Process
from kitadoc.tracker import ProgressTracker, Untracked
from services.upload_api.main import app, get_dispatcher

UPLOAD_URL = "/api/v1/audio/upload"
TIMESTAMP = "2024-05-01T09:30:00+02:00"


def _upload(test_client, audio, content_type="audio/wav", teacher_id="7", timestamp=TIMESTAMP):
    data = {}
    if teacher_id is not None:
        data["teacher_id"] = teacher_id
    if timestamp is not None:
        data["timestamp"] = timestamp
    files = None
    if audio is not None:
        files = {"audio": ("recording.wav", audio, content_type)}
    return test_client.post(UPLOAD_URL, data=data, files=files)


def _count(SessionFactory, model) -> int:
    session = SessionFactory()
    try:
        return session.execute(select(func.count()).select_from(model)).scalar_one()
    finally:
        session.close()


def _entries(SessionFactory) -> list[DocumentationEntry]:
    session = SessionFactory()
    try:
        stmt = select(DocumentationEntry).order_by(DocumentationEntry.entry_id)
        return list(session.execute(stmt).scalars().all())
    finally:
        session.close()


class TestHealthCheck:
    """Tests for health check endpoint."""

    def test_health_check(self, client):
        """Health check should return ok."""
        test_client, _ = client
        response = test_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestUploadAccepted:
    """Tests for successful POST /api/v1/audio/upload."""

    def test_returns_202_with_process_id(self, client, sample_wav_bytes):
        """A valid upload should be accepted with a process_id."""
        test_client, SessionFactory = client

        response = _upload(test_client, sample_wav_bytes)

        assert response.status_code == 202
        data = response.json()
        assert isinstance(data["process_id"], int)
        assert _count(SessionFactory, Process) == 1

    def test_mpeg_is_allowed(self, client, sample_wav_bytes):
        """audio/mpeg is in the default allow-list."""
        test_client, _ = client
        response = _upload(test_client, sample_wav_bytes, content_type="audio/mpeg")
        assert response.status_code == 202

    def test_two_entries_complete(self, client, sample_wav_bytes, analysis_client):
        """count=2 should complete with two matching documentation entries."""
        test_client, SessionFactory = client

        response = _upload(test_client, sample_wav_bytes, teacher_id="7")
        process_id = response.json()["process_id"]

        status = test_client.get(f"/api/v1/processes/{process_id}").json()
        assert status["status"] == "completed"
        assert status["records_expected"] == 2
        assert status["records_written"] == 2
        assert status["partial"] is False

        entries = _entries(SessionFactory)
        expected = analysis_client.result.analysis_results
        assert [e.child_id for e in entries] == [a.child_id for a in expected]
        assert [e.observation_description for e in entries] == [
            a.transcription_summary for a in expected
        ]
        for entry in entries:
            assert entry.documenting_teacher_id == 7
            assert entry.approved is False
            assert entry.approved_by_teacher_id is None
            # Observation date comes from the upload, stored in UTC
            assert entry.observation_date.replace(tzinfo=UTC) == datetime(
                2024, 5, 1, 7, 30, tzinfo=UTC
            )

    def test_audio_bytes_reach_analysis(self, client, sample_wav_bytes, analysis_client):
        """The analysis client should receive the uploaded bytes and process id."""
        test_client, _ = client

        response = _upload(test_client, sample_wav_bytes)

        assert analysis_client.calls == [(sample_wav_bytes, response.json()["process_id"])]

    def test_empty_result_fails(self, client, sample_wav_bytes, analysis_client, make_result):
        """count=0 should end failed with no documentation entries."""
        test_client, SessionFactory = client
        analysis_client.result = make_result(0)

        process_id = _upload(test_client, sample_wav_bytes).json()["process_id"]

        status = test_client.get(f"/api/v1/processes/{process_id}").json()
        assert status["status"] == "failed"
        assert status["error_code"] == "EMPTY_RESULT"
        assert _count(SessionFactory, DocumentationEntry) == 0

    def test_analysis_error_fails(self, client, sample_wav_bytes, analysis_client):
        """A failing analysis service should end failed, invisible to the upload response."""
        test_client, SessionFactory = client
        analysis_client.error = AnalysisResponseError(502, "bad gateway")

        response = _upload(test_client, sample_wav_bytes)
        assert response.status_code == 202

        status = test_client.get(f"/api/v1/processes/{response.json()['process_id']}").json()
        assert status["status"] == "failed"
        assert status["error_code"] == "ANALYSIS_FAILED"
        assert _count(SessionFactory, DocumentationEntry) == 0

    def test_non_numeric_teacher_id_fails_in_background(self, client, sample_wav_bytes):
        """teacher_id passes upload validation but fails integer parsing later."""
        test_client, SessionFactory = client

        response = _upload(test_client, sample_wav_bytes, teacher_id="teacher-seven")
        assert response.status_code == 202

        status = test_client.get(f"/api/v1/processes/{response.json()['process_id']}").json()
        assert status["status"] == "failed"
        assert status["error_code"] == "INVALID_TEACHER_ID"
        assert _count(SessionFactory, DocumentationEntry) == 0

    def test_partial_fan_out_failure(
        self, client, sample_wav_bytes, analysis_client, make_result, make_pipeline
    ):
        """Failure on the second of three writes keeps the first entry."""
        test_client, SessionFactory = client
        analysis_client.result = make_result(3)

        class FailOnSecondCreate(DocumentationEntryService):
            calls = 0

            def create(self, data):
                FailOnSecondCreate.calls += 1
                if FailOnSecondCreate.calls == 2:
                    raise EntryPersistenceError("disk full")
                return super().create(data)

        override_pipeline_factory(
            lambda: make_pipeline(entry_service=FailOnSecondCreate(SessionFactory))
        )

        process_id = _upload(test_client, sample_wav_bytes).json()["process_id"]

        status = test_client.get(f"/api/v1/processes/{process_id}").json()
        assert status["status"] == "failed"
        assert status["error_code"] == "PERSISTENCE_FAILED"
        assert status["partial"] is True
        assert status["records_written"] == 1
        assert status["records_expected"] == 3

        entries = _entries(SessionFactory)
        assert [e.child_id for e in entries] == [100]

    def test_untracked_upload_still_processed(self, client, sample_wav_bytes):
        """If the Process cannot be created, the upload proceeds untracked."""
        test_client, SessionFactory = client

        with patch.object(ProgressTracker, "create", return_value=Untracked()):
            response = _upload(test_client, sample_wav_bytes)

        assert response.status_code == 202
        assert response.json() == {"process_id": None}
        assert _count(SessionFactory, Process) == 0
        assert _count(SessionFactory, DocumentationEntry) == 2

    def test_dispatch_failure_marks_process_failed(self, client, sample_wav_bytes):
        """A queue failure after the response should fail the Process."""
        test_client, _ = client

        def broken_dispatch(job):
            raise RuntimeError("queue unavailable")

        app.dependency_overrides[get_dispatcher] = lambda: broken_dispatch

        response = _upload(test_client, sample_wav_bytes)
        assert response.status_code == 202

        status = test_client.get(f"/api/v1/processes/{response.json()['process_id']}").json()
        assert status["status"] == "failed"
        assert status["error_code"] == "DISPATCH_FAILED"
        assert "queue unavailable" in status["error_message"]


class TestUploadRejected:
    """Tests for uploads rejected with 400 before any state is created."""

    def test_disallowed_content_type(self, client, sample_wav_bytes, analysis_client):
        """A content type outside the allow-list should be rejected."""
        test_client, SessionFactory = client

        response = _upload(test_client, sample_wav_bytes, content_type="video/mp4")

        assert response.status_code == 400
        error = response.json()["error"]
        assert "Disallowed file type: video/mp4" in error
        assert "audio/mpeg, audio/wav" in error
        assert _count(SessionFactory, Process) == 0
        assert analysis_client.calls == []

    def test_body_over_limit(self, client, analysis_client):
        """An oversize body should be rejected before the form is parsed."""
        test_client, SessionFactory = client
        app.dependency_overrides[get_upload_limits] = lambda: UploadLimits(
            max_bytes=1024, allowed_content_types=("audio/wav",)
        )

        with patch("kitadoc.upload.validate_form") as mock_validate:
            response = _upload(test_client, b"\x00" * 4096)

        assert response.status_code == 400
        assert "size exceeded limit" in response.json()["error"]
        mock_validate.assert_not_called()
        assert _count(SessionFactory, Process) == 0
        assert analysis_client.calls == []

    def test_missing_file(self, client):
        """A request without the audio part should be rejected."""
        test_client, SessionFactory = client

        response = _upload(test_client, None)

        assert response.status_code == 400
        assert "Error retrieving audio file" in response.json()["error"]
        assert _count(SessionFactory, Process) == 0

    @pytest.mark.parametrize(
        "teacher_id,timestamp,message",
        [
            (None, TIMESTAMP, "teacher_id is required"),
            ("", TIMESTAMP, "teacher_id is required"),
            ("7", None, "timestamp is required"),
            ("7", "yesterday", "Invalid timestamp format"),
            ("7", "2024-05-01T09:30:00", "Invalid timestamp format"),
        ],
    )
    def test_malformed_side_channel(self, client, sample_wav_bytes, teacher_id, timestamp, message):
        """Missing or invalid teacher_id/timestamp should be rejected."""
        test_client, SessionFactory = client

        response = _upload(
            test_client, sample_wav_bytes, teacher_id=teacher_id, timestamp=timestamp
        )

        assert response.status_code == 400
        assert message in response.json()["error"]
        assert _count(SessionFactory, Process) == 0


class TestProcessStatus:
    """Tests for GET /api/v1/processes/{process_id}."""

    def test_unknown_process(self, client):
        """Unknown ids should return 404."""
        test_client, _ = client
        response = test_client.get("/api/v1/processes/9999")
        assert response.status_code == 404
        assert response.json() == {"error": "Process not found"}

    def test_invalid_process_id(self, client):
        """Non-integer ids should return 400."""
        test_client, _ = client
        response = test_client.get("/api/v1/processes/abc")
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid process ID"}

    def test_starting_process(self, client, session_factory):
        """A freshly created Process reports starting with no counters."""
        test_client, _ = client
        handle = ProgressTracker(session_factory).create()

        data = test_client.get(f"/api/v1/processes/{handle.process_id}").json()

        assert data["process_id"] == handle.process_id
        assert data["status"] == "starting"
        assert data["records_expected"] is None
        assert data["records_written"] == 0
        assert data["partial"] is False
