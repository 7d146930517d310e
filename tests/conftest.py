"""Shared pytest fixtures for KitaDoc Audio Pipeline tests.

This module contains common fixtures used across multiple test files:
temporary databases, a scriptable analysis client, and an API test client
whose task queue runs analyses in-process.
"""

import io
import tempfile
import wave
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from kitadoc.analysis import BaseAnalysisClient
from kitadoc.db import init_db
from kitadoc.entries import DocumentationEntryService
from kitadoc.huey_app import huey, override_pipeline_factory
from kitadoc.pipeline import AnalysisPipeline
from kitadoc.schemas import AnalysisResult
from kitadoc.tracker import ProgressTracker
from services.upload_api.main import app, override_session_factory


def build_analysis_result(count: int) -> AnalysisResult:
    """Build an AnalysisResult with `count` distinct child entries."""
    entries = [
        {
            "child_id": 100 + i,
            "first_name": f"Kind{i}",
            "last_name": "Muster",
            "transcription_summary": f"Child {100 + i} built a tall tower with blocks today.",
            "analysis_category": {"category_id": 10 + i, "category_name": f"Category {i}"},
        }
        for i in range(count)
    ]
    return AnalysisResult.model_validate(
        {"number_of_entries": count, "analysis_results": entries}
    )


class FakeAnalysisClient(BaseAnalysisClient):
    """Analysis client returning a scripted result or raising a scripted error."""

    def __init__(self, result: AnalysisResult | None = None, error: Exception | None = None):
        self.result = result if result is not None else build_analysis_result(2)
        self.error = error
        self.calls: list[tuple[bytes, int | None]] = []

    def analyze(self, audio: bytes, process_id: int | None = None) -> AnalysisResult:
        self.calls.append((audio, process_id))
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def temp_db():
    """Create a temporary database for testing.

    Creates an isolated SQLite database in a temporary directory.
    The database is cleaned up after the test completes.

    Yields:
        tuple: (db_path, engine, SessionFactory)
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = Path(tmpdir) / "test.db"
        engine, SessionFactory = init_db(db_path)
        override_session_factory(SessionFactory)
        yield db_path, engine, SessionFactory
        override_session_factory(None)
        engine.dispose()


@pytest.fixture
def session_factory(temp_db):
    """Session factory bound to the temporary database."""
    _, _, SessionFactory = temp_db
    return SessionFactory


@pytest.fixture
def make_result():
    """Factory for AnalysisResult objects with N child entries."""
    return build_analysis_result


@pytest.fixture
def analysis_client():
    """Scriptable analysis client; defaults to two child entries."""
    return FakeAnalysisClient()


@pytest.fixture
def make_pipeline(session_factory, analysis_client):
    """Factory building pipelines against the temp database and fake client."""

    def _make(entry_service=None, cancel_event=None) -> AnalysisPipeline:
        return AnalysisPipeline(
            tracker=ProgressTracker(session_factory),
            analysis_client=analysis_client,
            entry_service=entry_service or DocumentationEntryService(session_factory),
            cancel_event=cancel_event,
        )

    return _make


@pytest.fixture
def client(temp_db, make_pipeline):
    """Create a FastAPI test client with temp database and in-process queue.

    Huey runs in immediate mode so every accepted upload is analysed
    before the test client returns.

    Yields:
        tuple: (test_client, SessionFactory)
    """
    _, _, SessionFactory = temp_db

    huey.immediate = True
    override_pipeline_factory(make_pipeline)

    with TestClient(app) as test_client:
        yield test_client, SessionFactory

    app.dependency_overrides.clear()
    override_pipeline_factory(None)
    huey.immediate = False


@pytest.fixture
def sample_wav_bytes():
    """A minimal valid WAV file (0.5 seconds of silence, mono, 16 kHz)."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(16000)
        wf.writeframes(b"\x00" * 16000)
    return buffer.getvalue()
