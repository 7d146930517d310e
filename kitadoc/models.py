"""KitaDoc Audio Pipeline - SQLAlchemy ORM models.

Tables written by the audio pipeline:
1. processes
2. documentation_entries
"""

from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(UTC)


class ProcessStatus(StrEnum):
    """Lifecycle states of a Process row.

    starting -> creating_documentation_entry -> completed, with failed
    reachable from either non-terminal state.
    """

    STARTING = "starting"
    CREATING_DOCUMENTATION_ENTRY = "creating_documentation_entry"
    COMPLETED = "completed"
    FAILED = "failed"


class Process(Base):
    """Pollable status record for one audio pipeline run.

    Created before the upload response is sent; mutated only by the
    background run that owns it. Never deleted by the pipeline.
    """

    __tablename__ = "processes"

    # Primary key (handed back to the uploading client)
    process_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)

    # Fan-out progress; records_expected is unknown until analysis returns
    records_expected: Mapped[int | None] = mapped_column(Integer, nullable=True)
    records_written: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Error tracking for failed runs
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    @property
    def is_partial(self) -> bool:
        """True for a failed run that left some documentation entries behind."""
        return self.status == ProcessStatus.FAILED and self.records_written > 0


class DocumentationEntry(Base):
    """Narrative observation record attributed to a child and a teacher.

    The audio pipeline only inserts unapproved entries; approval happens
    elsewhere in the application.
    """

    __tablename__ = "documentation_entries"

    entry_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    child_id: Mapped[int] = mapped_column(Integer, nullable=False)
    documenting_teacher_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(Integer, nullable=False)

    observation_description: Mapped[str] = mapped_column(Text, nullable=False)
    observation_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    approved_by_teacher_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        Index("idx_documentation_child", "child_id"),
        Index("idx_documentation_date", "observation_date"),
        Index("idx_documentation_approved", "approved"),
    )
