"""KitaDoc Audio Pipeline - Process status tracking.

The Process row is the only channel through which an uploading client
learns how its recording was handled. Tracking is best-effort: a database
failure while creating or advancing a Process is logged and absorbed, and
the pipeline carries on without it.

State machine (forward-only):

    starting --> creating_documentation_entry --> completed
       |                    |
       +--------------------+-----------------> failed

completed and failed are terminal; a terminal Process is never modified.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from kitadoc.models import Process, ProcessStatus

logger = logging.getLogger(__name__)


TERMINAL_STATUSES = frozenset({ProcessStatus.COMPLETED, ProcessStatus.FAILED})

# Allowed next states for each non-terminal state
_TRANSITIONS: dict[ProcessStatus, frozenset[ProcessStatus]] = {
    ProcessStatus.STARTING: frozenset(
        {ProcessStatus.CREATING_DOCUMENTATION_ENTRY, ProcessStatus.FAILED}
    ),
    ProcessStatus.CREATING_DOCUMENTATION_ENTRY: frozenset(
        {ProcessStatus.COMPLETED, ProcessStatus.FAILED}
    ),
    ProcessStatus.COMPLETED: frozenset(),
    ProcessStatus.FAILED: frozenset(),
}


class ProcessNotFoundError(Exception):
    """Raised when a Process id does not exist."""

    def __init__(self, process_id: int):
        self.process_id = process_id
        super().__init__(f"Process not found: {process_id}")


# --- Tracking Handles ---


@dataclass(frozen=True)
class Tracked:
    """A run whose progress is recorded in a Process row."""

    process_id: int


@dataclass(frozen=True)
class Untracked:
    """A run that proceeds without a Process row (creation failed)."""

    process_id: None = None


TrackingHandle = Tracked | Untracked


def is_valid_transition(current: str, new: str) -> bool:
    """Check whether a Process may move from current to new status."""
    try:
        allowed = _TRANSITIONS[ProcessStatus(current)]
        return ProcessStatus(new) in allowed
    except ValueError:
        return False


def is_terminal(status: str) -> bool:
    """Check whether a status is terminal (unknown statuses count as terminal)."""
    try:
        return ProcessStatus(status) in TERMINAL_STATUSES
    except ValueError:
        return True


class ProgressTracker:
    """Creates, advances, and reads Process rows.

    Each operation opens its own session so the tracker can be shared
    between the request path and background runs.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, initial_status: ProcessStatus = ProcessStatus.STARTING) -> TrackingHandle:
        """Persist a new Process and return a handle to it.

        Returns:
            Tracked(process_id) on success, Untracked() if the row could
            not be written.
        """
        session = self._session_factory()
        try:
            process = Process(status=str(initial_status), records_written=0)
            session.add(process)
            session.commit()
            logger.info(
                "Created process process_id=%s status=%s", process.process_id, initial_status
            )
            return Tracked(process.process_id)
        except SQLAlchemyError:
            session.rollback()
            logger.error("Failed to create process entry; run will be untracked", exc_info=True)
            return Untracked()
        finally:
            session.close()

    def update(
        self,
        handle: TrackingHandle,
        status: ProcessStatus,
        *,
        records_expected: int | None = None,
        records_written: int | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Advance a Process to a new status (best-effort).

        Counters and error fields are only written when given. Persistence
        failures and refused transitions are logged, never raised.

        Args:
            handle: Handle returned by create().
            status: Target status.
            records_expected: Number of entries the analysis produced.
            records_written: Number of documentation entries persisted so far.
            error_code: Error code for a failed run.
            error_message: Human-readable failure description.

        Returns:
            True if the row was updated, False otherwise.
        """
        if isinstance(handle, Untracked):
            logger.debug("Skipping status update to %s for untracked run", status)
            return False

        process_id = handle.process_id
        session = self._session_factory()
        try:
            process = session.get(Process, process_id)
            if process is None:
                logger.error("Cannot update status: process_id=%s not found", process_id)
                return False

            if process.status != status and not is_valid_transition(process.status, status):
                logger.warning(
                    "Refusing status transition %s -> %s for process_id=%s",
                    process.status,
                    status,
                    process_id,
                )
                return False
            if is_terminal(process.status):
                logger.warning(
                    "Process process_id=%s is terminal (%s); update ignored",
                    process_id,
                    process.status,
                )
                return False

            process.status = str(status)
            if records_expected is not None:
                process.records_expected = records_expected
            if records_written is not None:
                process.records_written = records_written
            if error_code is not None:
                process.error_code = error_code
            if error_message is not None:
                process.error_message = error_message
            session.commit()
            logger.info("Process process_id=%s status=%s", process_id, status)
            return True
        except SQLAlchemyError:
            session.rollback()
            logger.error(
                "Failed to update status of process_id=%s to %s", process_id, status, exc_info=True
            )
            return False
        finally:
            session.close()

    def get_by_id(self, process_id: int) -> Process:
        """Fetch a Process by id.

        Raises:
            ProcessNotFoundError: If no such Process exists.
        """
        session = self._session_factory()
        try:
            process = session.get(Process, process_id)
            if process is None:
                raise ProcessNotFoundError(process_id)
            return process
        finally:
            session.close()
