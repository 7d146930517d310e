"""KitaDoc Audio Pipeline - Upload API FastAPI application.

Accepts audio recordings, creates a pollable Process, answers 202
immediately and hands the recording to the task queue once the response
has been sent. Analysis results never travel back on the upload response;
clients poll GET /api/v1/processes/{process_id}.

Authentication and role checks are applied by the surrounding
application's middleware.

Run with:
    uvicorn services.upload_api.main:app
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from kitadoc.config import LOG_FORMAT, LOG_LEVEL, UploadLimits, get_upload_limits
from kitadoc.db import init_db
from kitadoc.logging_setup import configure_logging
from kitadoc.models import ProcessStatus
from kitadoc.pipeline import AnalysisJob, mark_dispatch_failed
from kitadoc.schemas import ErrorResponse, ProcessStatusResponse, UploadAcceptedResponse
from kitadoc.tracker import ProcessNotFoundError, ProgressTracker
from kitadoc.upload import UploadError, validate_upload

logger = logging.getLogger(__name__)

# --- Database Setup ---

# Module-level session factory (initialized on startup)
_session_factory = None


def get_session_factory():
    """Get the session factory.

    Raises:
        RuntimeError: If session factory not initialized (app lifespan not invoked).
    """
    if _session_factory is None:
        raise RuntimeError("Session factory not initialized. App lifespan not invoked?")
    return _session_factory


def get_tracker() -> ProgressTracker:
    """Dependency that provides the Process tracker."""
    return ProgressTracker(get_session_factory())


def get_dispatcher() -> Callable[[AnalysisJob], None]:
    """Dependency that provides the function handing jobs to the task queue."""
    from kitadoc.huey_app import enqueue_analysis

    return enqueue_analysis


# --- Lifespan ---


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler.

    Configures logging and initializes the database on startup.
    """
    global _session_factory
    configure_logging(LOG_LEVEL, LOG_FORMAT)
    if _session_factory is None:
        _, _session_factory = init_db()
    yield


# --- FastAPI App ---


app = FastAPI(
    title="KitaDoc Audio Pipeline - Upload API",
    description="Audio upload and asynchronous documentation entry creation.",
    version="0.1.0",
    lifespan=lifespan,
)


# --- Error Handling ---


def make_error_response(status_code: int, message: str) -> JSONResponse:
    """Create a JSON error response."""
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
    )


def dispatch_analysis_safe(
    tracker: ProgressTracker,
    dispatch: Callable[[AnalysisJob], None],
    job: AnalysisJob,
) -> None:
    """Hand a job to the task queue, failing its Process if that is impossible.

    Runs after the upload response has been sent.
    """
    try:
        dispatch(job)
    except Exception as e:
        logger.error(
            "Failed to dispatch analysis for process_id=%s", job.process_id, exc_info=True
        )
        mark_dispatch_failed(tracker, job, f"Failed to dispatch analysis: {e}")


# --- Endpoints ---


@app.post(
    "/api/v1/audio/upload",
    status_code=202,
    response_model=UploadAcceptedResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Upload rejected"},
        500: {"model": ErrorResponse, "description": "Upload failed"},
    },
    summary="Upload an audio recording",
    description=(
        "Multipart fields: audio (file), teacher_id, timestamp (RFC3339). "
        "Returns a process_id to poll."
    ),
)
async def upload_audio(
    request: Request,
    background_tasks: BackgroundTasks,
    tracker: Annotated[ProgressTracker, Depends(get_tracker)],
    limits: Annotated[UploadLimits, Depends(get_upload_limits)],
    dispatch: Annotated[Callable[[AnalysisJob], None], Depends(get_dispatcher)],
):
    """Accept an audio recording for asynchronous analysis.

    Validation failures return 400 and create nothing. On success one
    Process is created before responding; analysis starts after the
    response has been sent.
    """
    logger.info("Starting audio upload processing")
    try:
        upload = await validate_upload(request, limits)
    except UploadError as e:
        logger.warning("Upload rejected (%s): %s", e.error_code, e.message)
        return make_error_response(400, e.message)
    except Exception:
        logger.exception("Unexpected error during audio upload")
        return make_error_response(500, "An unexpected error occurred during upload")

    handle = tracker.create(ProcessStatus.STARTING)

    job = AnalysisJob(
        handle=handle,
        audio=upload.audio,
        teacher_id=upload.teacher_id,
        observed_at=upload.observed_at,
    )
    background_tasks.add_task(dispatch_analysis_safe, tracker, dispatch, job)

    logger.info("Accepted upload for process_id=%s", handle.process_id)
    return UploadAcceptedResponse(process_id=handle.process_id)


@app.get(
    "/api/v1/processes/{process_id}",
    response_model=ProcessStatusResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid process ID"},
        404: {"model": ErrorResponse, "description": "Process not found"},
    },
    summary="Get the status of an upload's processing",
)
def get_process_status(
    process_id: str,
    tracker: Annotated[ProgressTracker, Depends(get_tracker)],
):
    """Return the current status of one pipeline run."""
    try:
        pid = int(process_id)
    except ValueError:
        return make_error_response(400, "Invalid process ID")

    try:
        process = tracker.get_by_id(pid)
    except ProcessNotFoundError:
        return make_error_response(404, "Process not found")

    return ProcessStatusResponse(
        process_id=process.process_id,
        status=process.status,
        created_at=process.created_at,
        updated_at=process.updated_at,
        records_expected=process.records_expected,
        records_written=process.records_written,
        partial=process.is_partial,
        error_code=process.error_code,
        error_message=process.error_message,
    )


@app.get("/health", summary="Health check")
def health_check():
    """Simple health check endpoint."""
    return {"status": "ok"}


# --- For testing: allow overriding session factory ---


def override_session_factory(factory):
    """Override the session factory for testing."""
    global _session_factory
    _session_factory = factory
