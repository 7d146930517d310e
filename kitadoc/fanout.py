"""KitaDoc Audio Pipeline - Fan-out of analysis results.

Turns each per-child analysis entry into one documentation entry and
writes them in service order. Writing stops at the first failure; entries
written before it stay in place (no compensating delete).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from datetime import datetime

from pydantic import ValidationError

from kitadoc.entries import DocumentationEntryError, DocumentationEntryService, InvalidEntryError
from kitadoc.schemas import ChildAnalysis, DocumentationEntryCreate

logger = logging.getLogger(__name__)


class FanOutError(Exception):
    """Raised when an entry could not be written.

    Attributes:
        written: Entries persisted before the failure.
        expected: Entries the fan-out was asked to write.
        child_id: Child of the entry that failed (None when cancelled).
    """

    def __init__(self, message: str, written: int, expected: int, child_id: int | None = None):
        self.written = written
        self.expected = expected
        self.child_id = child_id
        super().__init__(f"{message} ({written}/{expected} written)")


class FanOutCancelled(FanOutError):
    """Raised when cancellation was requested between two writes."""


def build_entry(
    analysis: ChildAnalysis, teacher_id: int, observed_at: datetime
) -> DocumentationEntryCreate:
    """Build a complete, unapproved documentation entry from one analysis entry.

    Raises:
        InvalidEntryError: If the resulting entry fails validation.
    """
    try:
        return DocumentationEntryCreate(
            child_id=analysis.child_id,
            documenting_teacher_id=teacher_id,
            category_id=analysis.analysis_category.category_id,
            observation_date=observed_at,
            observation_description=analysis.transcription_summary,
            approved=False,
            approved_by_teacher_id=None,
        )
    except ValidationError as exc:
        raise InvalidEntryError(
            f"Invalid documentation entry for child_id={analysis.child_id}: {exc}"
        ) from exc


def write_documentation_entries(
    entries: Sequence[ChildAnalysis],
    teacher_id: int,
    observed_at: datetime,
    entry_service: DocumentationEntryService,
    on_entry_written: Callable[[int], None] | None = None,
    cancel_event: threading.Event | None = None,
) -> list[int]:
    """Write one documentation entry per analysis entry, in order.

    Args:
        entries: Per-child analysis entries.
        teacher_id: Documenting teacher.
        observed_at: Observation timestamp from the upload.
        entry_service: Persistence boundary for documentation entries.
        on_entry_written: Called with the running count after each write.
        cancel_event: Checked before every write.

    Returns:
        The created entry ids, in entry order.

    Raises:
        FanOutCancelled: If cancel_event was set before a write.
        FanOutError: On the first entry that fails to build or persist.
    """
    expected = len(entries)
    entry_ids: list[int] = []

    for analysis in entries:
        if cancel_event is not None and cancel_event.is_set():
            raise FanOutCancelled("Fan-out cancelled", written=len(entry_ids), expected=expected)

        try:
            entry = build_entry(analysis, teacher_id, observed_at)
            entry_id = entry_service.create(entry)
        except DocumentationEntryError as exc:
            logger.error("Failed to write documentation entry: %s", exc)
            raise FanOutError(
                str(exc), written=len(entry_ids), expected=expected, child_id=analysis.child_id
            ) from exc

        entry_ids.append(entry_id)
        if on_entry_written is not None:
            on_entry_written(len(entry_ids))

    return entry_ids
