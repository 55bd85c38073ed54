from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class WorkflowStep(str, Enum):
    filter = "filter"
    validate = "validate"
    constraints = "constraints"
    generate = "generate"
    view = "view"
    conflicts = "conflicts"
    export = "export"


# Full ordering, used for "strictly before" comparisons.
STEP_ORDER: tuple[WorkflowStep, ...] = tuple(WorkflowStep)

# The navigable sequence; `conflicts` is only entered from view/export.
MAIN_SEQUENCE: tuple[WorkflowStep, ...] = (
    WorkflowStep.filter,
    WorkflowStep.validate,
    WorkflowStep.constraints,
    WorkflowStep.generate,
    WorkflowStep.view,
    WorkflowStep.export,
)

DOWNSTREAM_OF_FILTER: tuple[WorkflowStep, ...] = STEP_ORDER[1:]


class SessionType(str, Enum):
    morning = "morning"
    evening = "evening"


def empty_step_status() -> dict[WorkflowStep, bool]:
    return {step: False for step in WorkflowStep}


def step_index(step: WorkflowStep) -> int:
    return STEP_ORDER.index(step)


class ScheduleTarget(BaseModel):
    """The class/section a draft is being built for, plus its scoping keys."""

    academic_year_id: int = Field(alias="academicYearId", ge=1)
    session_type: SessionType = Field(alias="sessionType")
    grade_level: str = Field(default="", alias="gradeLevel", max_length=50)
    grade_number: int = Field(default=1, alias="gradeNumber", ge=1, le=12)
    class_id: int = Field(alias="classId", ge=1)
    section: str = Field(default="", max_length=20)

    model_config = ConfigDict(populate_by_name=True)

    def same_target(self, other: ScheduleTarget | None) -> bool:
        if other is None:
            return False
        return (
            self.academic_year_id == other.academic_year_id
            and self.session_type == other.session_type
            and self.grade_level == other.grade_level
            and self.grade_number == other.grade_number
            and self.class_id == other.class_id
            and self.section == other.section
        )


class Assignment(BaseModel):
    id: str
    time_slot_id: int | str | None = None
    day: int = Field(ge=1, le=5)
    period: int = Field(ge=1, le=20)
    subject_id: int | None = None
    subject_name: str
    teacher_id: int | None = None
    teacher_name: str
    room: str | None = None
    notes: str | None = None
    has_conflict: bool = False
    conflict_type: str | None = None

    def to_preview_entry(self) -> dict:
        """Wire shape expected by the schedules service when committing a preview."""
        return {
            "id": self.id,
            "time_slot_id": self.time_slot_id,
            "day_of_week": self.day,
            "period_number": self.period,
            "subject_id": self.subject_id,
            "subject_name": self.subject_name,
            "teacher_id": self.teacher_id,
            "teacher_name": self.teacher_name,
            "room": self.room,
            "notes": self.notes,
        }


class ScheduleDraft(BaseModel):
    """The single in-progress schedule-creation session, as persisted."""

    schedule_data: ScheduleTarget | None = Field(default=None, alias="scheduleData")
    current_step: WorkflowStep = Field(default=WorkflowStep.filter, alias="currentStep")
    step_status: dict[WorkflowStep, bool] = Field(default_factory=empty_step_status, alias="stepStatus")
    preview_assignments: list[Assignment] | None = Field(default=None, alias="previewData")
    committed_assignments: list[Assignment] = Field(default_factory=list, alias="scheduleAssignments")
    generation_request: dict | None = Field(default=None, alias="generationRequest")
    is_preview_mode: bool = Field(default=False, alias="isPreviewMode")
    timestamp: int | None = None
    academic_year_id: int | None = Field(default=None, alias="academicYearId")
    session_type: SessionType | None = Field(default=None, alias="sessionType")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("step_status")
    @classmethod
    def fill_missing_steps(cls, value: dict[WorkflowStep, bool]) -> dict[WorkflowStep, bool]:
        status = empty_step_status()
        status.update(value)
        return status

    @model_validator(mode="after")
    def sync_scope_keys(self) -> "ScheduleDraft":
        if self.schedule_data is not None:
            self.academic_year_id = self.schedule_data.academic_year_id
            self.session_type = self.schedule_data.session_type
        return self

    def matches_context(self, academic_year_id: int | None, session_type: SessionType | str | None) -> bool:
        if academic_year_id is not None and self.academic_year_id != academic_year_id:
            return False
        if session_type and self.session_type != SessionType(session_type):
            return False
        return True

    def has_preview(self) -> bool:
        return bool(self.preview_assignments)
