"""KitaDoc Audio Pipeline - Huey task queue configuration.

Huey setup with SQLite backend. Each accepted upload becomes one
analyze_recording_task; the consumer's worker count bounds how many
analyses run at once.

How to run:
1. Start the upload API:
   uvicorn services.upload_api.main:app

2. Start the Huey consumer (processes queued analyses, 4 at a time):
   huey_consumer kitadoc.huey_app.huey -w 4 -k thread

Set KITADOC_HUEY_IMMEDIATE=1 to run tasks in-process without a consumer.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from huey import SqliteHuey
from huey.consumer import Consumer

from kitadoc.config import HUEY_DB_PATH, HUEY_IMMEDIATE, LOG_FORMAT, LOG_LEVEL, QUEUE_DIR
from kitadoc.pipeline import AnalysisJob, AnalysisPipeline

logger = logging.getLogger(__name__)

# Set when the consumer interrupts its workers; running pipelines stop
# between steps. Never cleared: the consumer process exits (or re-execs).
shutdown_event = threading.Event()


class PipelineConsumer(Consumer):
    """Consumer that cancels in-flight analyses when it interrupts workers.

    Worker shutdown hooks also fire when a single worker recycles
    (max tasks) or dies, so cancellation hangs off the consumer instead.
    A graceful stop that finishes in time leaves running analyses alone.
    Only thread workers share the event with the consumer.
    """

    def _interrupt_workers(self):
        logger.info("Huey consumer interrupting workers; cancelling in-flight analyses")
        shutdown_event.set()
        super()._interrupt_workers()


class PipelineHuey(SqliteHuey):
    """SqliteHuey whose consumer is a PipelineConsumer (huey_consumer uses create_consumer)."""

    def create_consumer(self, **options):
        return PipelineConsumer(self, **options)


def _ensure_queue_dir() -> None:
    """Ensure the queue directory exists."""
    Path(QUEUE_DIR).mkdir(parents=True, exist_ok=True)


# Ensure queue directory exists before creating Huey instance
_ensure_queue_dir()

huey = PipelineHuey(
    name="kitadoc_pipeline",
    filename=str(HUEY_DB_PATH),
    immediate=HUEY_IMMEDIATE,
)

_pipeline_factory: Callable[[], AnalysisPipeline] | None = None
_default_pipeline: AnalysisPipeline | None = None
_default_pipeline_lock = threading.Lock()


def build_default_pipeline() -> AnalysisPipeline:
    """Build a pipeline from the worker's configuration."""
    # Import here to keep the task module light for the API process
    from kitadoc.analysis import HttpAnalysisClient
    from kitadoc.db import init_db
    from kitadoc.entries import DocumentationEntryService
    from kitadoc.tracker import ProgressTracker

    _, SessionFactory = init_db()
    return AnalysisPipeline(
        tracker=ProgressTracker(SessionFactory),
        analysis_client=HttpAnalysisClient(),
        entry_service=DocumentationEntryService(SessionFactory),
        cancel_event=shutdown_event,
    )


def get_pipeline() -> AnalysisPipeline:
    """Get the pipeline used by analysis tasks.

    Uses the override factory when one is set; otherwise builds the
    default pipeline once per worker process.
    """
    global _default_pipeline
    if _pipeline_factory is not None:
        return _pipeline_factory()
    with _default_pipeline_lock:
        if _default_pipeline is None:
            _default_pipeline = build_default_pipeline()
        return _default_pipeline


def override_pipeline_factory(factory: Callable[[], AnalysisPipeline] | None) -> None:
    """Override the pipeline factory (tests, embedding). Pass None to reset."""
    global _pipeline_factory
    _pipeline_factory = factory


@huey.on_startup()
def _configure_worker_logging() -> None:
    from kitadoc.logging_setup import configure_logging

    configure_logging(LOG_LEVEL, LOG_FORMAT)


@huey.task(retries=0)
def analyze_recording_task(job: AnalysisJob) -> dict:
    """Huey task running the analysis pipeline for one accepted upload.

    Args:
        job: The accepted upload.

    Returns:
        Dict with the run outcome (for logging/debugging).
    """
    logger.info("Analysis task started for process_id=%s", job.process_id)
    result = get_pipeline().run(job)
    logger.info("Analysis task finished for process_id=%s: %s", job.process_id, result)
    return result


def enqueue_analysis(job: AnalysisJob) -> None:
    """Enqueue the analysis of an accepted upload.

    Non-blocking unless the queue runs in immediate mode. The task is
    persisted in SQLite and processed when a consumer picks it up.

    Args:
        job: The accepted upload.
    """
    logger.info(
        "Enqueueing analysis for process_id=%s (%d bytes)", job.process_id, len(job.audio)
    )
    analyze_recording_task(job)
