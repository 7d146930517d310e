"""KitaDoc Audio Pipeline - Pydantic models for validation.

Request/response models for the upload API, the wire format of the
audio-processing service, and the validated shape of a documentation
entry before it is persisted.
"""

from datetime import datetime  # noqa: I001

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from kitadoc.models import utc_now


# --- Analysis Service Wire Models ---


class AnalysisCategory(BaseModel):
    """Category assigned to one child's observation by the analysis service."""

    model_config = ConfigDict(extra="ignore")

    category_id: int = Field(..., description="Category identifier")
    category_name: str = Field(..., description="Category display name")


class ChildAnalysis(BaseModel):
    """Analysis result for a single child mentioned in a recording."""

    model_config = ConfigDict(extra="ignore")

    child_id: int = Field(..., description="Identifier of the observed child")
    first_name: str = Field(default="", description="Child first name as recognised")
    last_name: str = Field(default="", description="Child last name as recognised")
    transcription_summary: str = Field(..., description="Summary of the observation")
    analysis_category: AnalysisCategory = Field(..., description="Assigned category")


class AnalysisResult(BaseModel):
    """Response of the audio-processing service for one recording.

    number_of_entries must match the length of analysis_results. Zero
    entries is a valid response; the pipeline decides what it means.
    """

    model_config = ConfigDict(extra="ignore")

    number_of_entries: int = Field(..., ge=0, description="Count of child entries")
    analysis_results: list[ChildAnalysis] = Field(
        default_factory=list, description="Per-child entries in service order"
    )

    @model_validator(mode="after")
    def _count_matches_entries(self) -> "AnalysisResult":
        if self.number_of_entries != len(self.analysis_results):
            raise ValueError(
                f"number_of_entries={self.number_of_entries} does not match "
                f"{len(self.analysis_results)} analysis_results"
            )
        return self


# --- Documentation Entry ---


class DocumentationEntryCreate(BaseModel):
    """Validated input for creating a documentation entry."""

    model_config = ConfigDict(extra="forbid")

    child_id: int = Field(..., gt=0)
    documenting_teacher_id: int = Field(..., gt=0)
    category_id: int = Field(..., gt=0)
    observation_date: datetime
    observation_description: str = Field(..., min_length=10)
    approved: bool = False
    approved_by_teacher_id: int | None = None

    @field_validator("observation_date")
    @classmethod
    def _not_in_future(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("observation_date must be timezone-aware")
        if value > utc_now():
            raise ValueError("observation_date must not be in the future")
        return value


# --- Response Models ---


class UploadAcceptedResponse(BaseModel):
    """Response for an accepted audio upload.

    process_id is null when the status record could not be created; the
    upload is still processed but cannot be polled.
    """

    model_config = ConfigDict(extra="forbid")

    process_id: int | None = Field(..., description="Identifier to poll for progress")


class ErrorResponse(BaseModel):
    """Response for rejected requests."""

    model_config = ConfigDict(extra="forbid")

    error: str = Field(..., description="Human-readable error description")


class ProcessStatusResponse(BaseModel):
    """Current state of one pipeline run."""

    model_config = ConfigDict(extra="forbid", from_attributes=True)

    process_id: int
    status: str
    created_at: datetime
    updated_at: datetime
    records_expected: int | None = Field(default=None, description="Entries returned by analysis")
    records_written: int = Field(default=0, description="Documentation entries persisted")
    partial: bool = Field(default=False, description="Failed after writing some entries")
    error_code: str | None = None
    error_message: str | None = None


__all__ = [
    "AnalysisCategory",
    "ChildAnalysis",
    "AnalysisResult",
    "DocumentationEntryCreate",
    "UploadAcceptedResponse",
    "ErrorResponse",
    "ProcessStatusResponse",
]
