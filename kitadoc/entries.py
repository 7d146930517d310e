"""KitaDoc Audio Pipeline - Documentation entry persistence.

Minimal write boundary for documentation entries. The wider application
owns reads, approval, and reporting; the audio pipeline only inserts.
"""

from __future__ import annotations

import logging
from datetime import UTC

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from kitadoc.models import DocumentationEntry
from kitadoc.schemas import DocumentationEntryCreate

logger = logging.getLogger(__name__)


class DocumentationEntryError(Exception):
    """Base exception for documentation entry failures."""


class InvalidEntryError(DocumentationEntryError):
    """Entry data failed validation."""


class EntryPersistenceError(DocumentationEntryError):
    """Entry could not be written to the database."""


class DocumentationEntryService:
    """Inserts documentation entries, one transaction per entry."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def create(self, data: DocumentationEntryCreate) -> int:
        """Insert one documentation entry.

        The observation date is stored in UTC.

        Args:
            data: Validated entry data.

        Returns:
            The new entry_id.

        Raises:
            EntryPersistenceError: If the insert fails.
        """
        entry = DocumentationEntry(
            child_id=data.child_id,
            documenting_teacher_id=data.documenting_teacher_id,
            category_id=data.category_id,
            observation_date=data.observation_date.astimezone(UTC),
            observation_description=data.observation_description,
            approved=data.approved,
            approved_by_teacher_id=data.approved_by_teacher_id,
        )

        session = self._session_factory()
        try:
            session.add(entry)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise EntryPersistenceError(
                f"Failed to insert documentation entry for child_id={data.child_id}: {exc}"
            ) from exc
        finally:
            session.close()

        logger.debug(
            "Created documentation entry entry_id=%s child_id=%s", entry.entry_id, entry.child_id
        )
        return entry.entry_id
