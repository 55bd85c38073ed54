from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from scheduleflow.core.exceptions import AppError, FailureKind
from scheduleflow.schemas.draft import Assignment, SessionType

WORKING_DAY_VALUES = {"saturday", "sunday", "monday", "tuesday", "wednesday", "thursday", "friday"}


class GenerationOptions(BaseModel):
    """Operator-tunable knobs; anything left unset falls back to configured defaults."""

    name: str | None = Field(default=None, min_length=1, max_length=200)
    start_date: date | None = None
    end_date: date | None = None
    periods_per_day: int | None = Field(default=None, ge=1, le=12)
    break_periods: list[int] | None = None
    break_duration: int | None = Field(default=None, ge=0, le=120)
    working_days: list[str] | None = None
    session_start_time: str | None = None
    period_duration: int | None = Field(default=None, ge=10, le=180)
    auto_assign_teachers: bool = True
    balance_teacher_load: bool = True
    avoid_teacher_conflicts: bool = True
    prefer_subject_continuity: bool = True
    fetch_diagnostics: bool | None = None


class GenerationRequest(BaseModel):
    academic_year_id: int = Field(ge=1)
    session_type: SessionType
    class_id: int = Field(ge=1)
    section: str = ""
    name: str = Field(min_length=1, max_length=200)
    start_date: date
    end_date: date
    periods_per_day: int = Field(default=6, ge=1, le=12)
    break_periods: list[int] = Field(default_factory=lambda: [3])
    break_duration: int = Field(default=15, ge=0, le=120)
    working_days: list[str] = Field(default_factory=lambda: ["sunday", "monday", "tuesday", "wednesday", "thursday"])
    session_start_time: str = "08:00:00"
    period_duration: int = Field(default=45, ge=10, le=180)
    auto_assign_teachers: bool = True
    balance_teacher_load: bool = True
    avoid_teacher_conflicts: bool = True
    prefer_subject_continuity: bool = True
    preview_only: bool = True

    @field_validator("working_days")
    @classmethod
    def validate_working_days(cls, value: list[str]) -> list[str]:
        cleaned = [day.strip().lower() for day in value if day.strip()]
        invalid = [day for day in cleaned if day not in WORKING_DAY_VALUES]
        if invalid:
            raise ValueError(f"Invalid working day(s): {', '.join(invalid)}")
        if not cleaned:
            raise ValueError("At least one working day is required")
        return cleaned

    @model_validator(mode="after")
    def validate_window(self) -> "GenerationRequest":
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        out_of_range = [p for p in self.break_periods if p < 1 or p > self.periods_per_day]
        if out_of_range:
            raise ValueError("break_periods must fall within periods_per_day")
        return self

    def commit_payload(self) -> dict:
        """The same request with the preview marker removed, for durable persistence."""
        return self.model_dump(mode="json", exclude={"preview_only"})


class GenerationResponse(BaseModel):
    generation_status: str = ""
    total_assignments_created: int = 0
    warnings: list[str] = Field(default_factory=list)
    preview_data: list[dict] | None = None
    summary: dict = Field(default_factory=dict)

    @field_validator("warnings", mode="before")
    @classmethod
    def drop_empty_warnings(cls, value: list | None) -> list:
        if not value:
            return []
        return [str(item) for item in value if item]


class DiagnosticsIssues(BaseModel):
    missing_subjects: list[dict] = Field(default_factory=list)
    missing_teacher_assignments: list[dict] = Field(default_factory=list)


class DiagnosticsReport(BaseModel):
    is_ready_for_generation: bool = False
    issues: DiagnosticsIssues = Field(default_factory=DiagnosticsIssues)
    recommendations: list[str] = Field(default_factory=list)

    @field_validator("recommendations", mode="before")
    @classmethod
    def drop_null_recommendations(cls, value: list | None) -> list:
        if not value:
            return []
        return [str(item) for item in value if item is not None]


class FailureInfo(BaseModel):
    kind: FailureKind
    title: str
    message: str
    status_code: int = 500
    details: dict = Field(default_factory=dict)

    @classmethod
    def from_error(cls, exc: AppError) -> "FailureInfo":
        return cls(
            kind=exc.kind,
            title=exc.title,
            message=exc.message,
            status_code=exc.status_code,
            details=exc.details,
        )


class PreviewResult(BaseModel):
    status: Literal["ready", "soft_failure", "failed", "refused"]
    assignments: list[Assignment] = Field(default_factory=list)
    generation_request: dict | None = None
    total_assignments_created: int = 0
    warnings: list[str] = Field(default_factory=list)
    has_soft_violations: bool = False
    summary: dict = Field(default_factory=dict)
    diagnostics: DiagnosticsReport | None = None
    failure: FailureInfo | None = None
    reason: str | None = None

    @property
    def is_ready(self) -> bool:
        return self.status == "ready"


class CommitResult(BaseModel):
    accepted: bool
    reason: str | None = None
    data: dict | list | None = None


class GenerationPhase(str, Enum):
    idle = "idle"
    generating = "generating"
    preview_ready = "preview_ready"
    failed = "failed"
    publishing = "publishing"
    published = "published"
    publish_failed = "publish_failed"


class GenerationEventKind(str, Enum):
    started = "started"
    progress = "progress"
    finished = "finished"
    failed = "failed"


class GenerationEvent(BaseModel):
    kind: GenerationEventKind
    progress: int = Field(default=0, ge=0, le=100)
    message: str = ""
    result: PreviewResult | None = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in (GenerationEventKind.finished, GenerationEventKind.failed)
