"""KitaDoc Audio Pipeline - Analysis orchestration.

Runs one accepted upload to completion in the background:

1. Send the buffered audio to the analysis service.
2. Fail on a service error or an empty result.
3. Move to creating_documentation_entry with records_expected set.
4. Fail if the teacher id is not an integer (before any write).
5. Fan out one documentation entry per analysis entry.
6. Finish as completed, or failed with the number of entries written.

No step is retried and nothing is rolled back. A run never raises: every
outcome ends in a terminal Process status plus a log line, and run()
returns a small dict describing what happened.

Cancellation is owned by the pipeline, not by the HTTP request. The
cancel_event is checked before the analysis call and before each write.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum

from kitadoc.analysis import AnalysisError, BaseAnalysisClient
from kitadoc.entries import DocumentationEntryService
from kitadoc.fanout import FanOutCancelled, FanOutError, write_documentation_entries
from kitadoc.models import ProcessStatus
from kitadoc.tracker import ProgressTracker, TrackingHandle

logger = logging.getLogger(__name__)


class PipelineErrorCode(StrEnum):
    """Error codes recorded on failed Process rows."""

    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    EMPTY_RESULT = "EMPTY_RESULT"
    INVALID_TEACHER_ID = "INVALID_TEACHER_ID"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    CANCELLED = "CANCELLED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DISPATCH_FAILED = "DISPATCH_FAILED"


# Optional sign and ASCII digits only; int() alone also takes "1_000" and
# non-ASCII digits
_TEACHER_ID_RE = re.compile(r"[+-]?[0-9]+")


def parse_teacher_id(value: str) -> int:
    """Parse the raw teacher_id form value as a decimal integer.

    Raises:
        ValueError: If value is not a plain decimal integer.
    """
    if not isinstance(value, str) or not _TEACHER_ID_RE.fullmatch(value):
        raise ValueError(f"not a decimal integer: {value!r}")
    return int(value)


@dataclass(frozen=True)
class AnalysisJob:
    """Everything a background run needs, captured at upload time.

    The audio buffer belongs to the single run that receives this job.
    teacher_id is kept as the raw form value; it is parsed by the run.
    """

    handle: TrackingHandle
    audio: bytes
    teacher_id: str
    observed_at: datetime

    @property
    def process_id(self) -> int | None:
        return self.handle.process_id


class AnalysisPipeline:
    """Drives one AnalysisJob through analysis and fan-out."""

    def __init__(
        self,
        tracker: ProgressTracker,
        analysis_client: BaseAnalysisClient,
        entry_service: DocumentationEntryService,
        cancel_event: threading.Event | None = None,
    ):
        self.tracker = tracker
        self.analysis_client = analysis_client
        self.entry_service = entry_service
        self.cancel_event = cancel_event if cancel_event is not None else threading.Event()

    def run(self, job: AnalysisJob) -> dict:
        """Run the pipeline for one job.

        Args:
            job: The accepted upload.

        Returns:
            Dict with status, process_id, records_written, error_code.
        """
        try:
            return self._run_impl(job)
        except Exception as e:
            logger.exception("Unexpected error in analysis pipeline for process_id=%s", job.process_id)
            return self._fail(job, PipelineErrorCode.INTERNAL_ERROR, f"Internal error: {e}")

    def _run_impl(self, job: AnalysisJob) -> dict:
        process_id = job.process_id
        logger.info("Starting audio analysis for process_id=%s", process_id)

        # 1. Analyse the recording
        if self.cancel_event.is_set():
            return self._fail(job, PipelineErrorCode.CANCELLED, "Cancelled before analysis")
        try:
            result = self.analysis_client.analyze(job.audio, process_id)
        except AnalysisError as e:
            logger.error("Failed to analyze audio for process_id=%s: %s", process_id, e)
            return self._fail(job, PipelineErrorCode.ANALYSIS_FAILED, str(e))

        # 2. Empty result is not a usable outcome
        if result.number_of_entries == 0:
            logger.warning("No analysis results found for process_id=%s", process_id)
            return self._fail(job, PipelineErrorCode.EMPTY_RESULT, "Analysis returned no entries")

        expected = result.number_of_entries
        self.tracker.update(
            job.handle,
            ProcessStatus.CREATING_DOCUMENTATION_ENTRY,
            records_expected=expected,
        )

        # 3. Teacher id must be numeric before anything is written
        try:
            teacher_id = parse_teacher_id(job.teacher_id)
        except ValueError:
            logger.error("Invalid teacher_id %r for process_id=%s", job.teacher_id, process_id)
            return self._fail(
                job, PipelineErrorCode.INVALID_TEACHER_ID, f"Invalid teacher_id: {job.teacher_id!r}"
            )

        # 4. Fan out into documentation entries
        def _record_progress(written: int) -> None:
            self.tracker.update(
                job.handle, ProcessStatus.CREATING_DOCUMENTATION_ENTRY, records_written=written
            )

        try:
            write_documentation_entries(
                result.analysis_results,
                teacher_id,
                job.observed_at,
                self.entry_service,
                on_entry_written=_record_progress,
                cancel_event=self.cancel_event,
            )
        except FanOutCancelled as e:
            logger.warning("Fan-out cancelled for process_id=%s: %s", process_id, e)
            return self._fail(job, PipelineErrorCode.CANCELLED, str(e), written=e.written)
        except FanOutError as e:
            logger.error(
                "Failed to create documentation entries for process_id=%s: %s", process_id, e
            )
            return self._fail(job, PipelineErrorCode.PERSISTENCE_FAILED, str(e), written=e.written)

        # 5. Done
        self.tracker.update(job.handle, ProcessStatus.COMPLETED, records_written=expected)
        logger.info(
            "Finished audio analysis for process_id=%s: %d documentation entries created",
            process_id,
            expected,
        )
        return {
            "status": str(ProcessStatus.COMPLETED),
            "process_id": process_id,
            "records_written": expected,
            "error_code": None,
        }

    def _fail(
        self,
        job: AnalysisJob,
        error_code: PipelineErrorCode,
        message: str,
        written: int | None = None,
    ) -> dict:
        self.tracker.update(
            job.handle,
            ProcessStatus.FAILED,
            records_written=written,
            error_code=str(error_code),
            error_message=message,
        )
        return {
            "status": str(ProcessStatus.FAILED),
            "process_id": job.process_id,
            "records_written": written or 0,
            "error_code": str(error_code),
        }


def mark_dispatch_failed(tracker: ProgressTracker, job: AnalysisJob, reason: str) -> None:
    """Mark a job failed when it could not be handed to the task queue."""
    tracker.update(
        job.handle,
        ProcessStatus.FAILED,
        error_code=str(PipelineErrorCode.DISPATCH_FAILED),
        error_message=reason,
    )
