from __future__ import annotations

from pydantic import BaseModel, Field

from scheduleflow.schemas.conflict import ConflictAnalysis
from scheduleflow.schemas.draft import Assignment, ScheduleTarget, SessionType, WorkflowStep
from scheduleflow.schemas.generator import GenerationPhase, PreviewResult


class WorkflowState(BaseModel):
    current_step: WorkflowStep
    step_status: dict[WorkflowStep, bool]
    target: ScheduleTarget | None = None
    academic_year_id: int | None = None
    session_type: SessionType | None = None
    is_preview_mode: bool = False
    preview_assignments: list[Assignment] = Field(default_factory=list)
    committed_assignments: list[Assignment] = Field(default_factory=list)
    generation_request: dict | None = None
    has_existing_schedule: bool = False
    replace_confirmed: bool = False
    existing_schedule_id: int | None = None
    committed_schedule_id: int | None = None
    has_conflicts: bool = False
    is_publishing: bool = False
    phase: GenerationPhase = GenerationPhase.idle
    can_advance: bool = False
    can_retreat: bool = False
    jumpable_steps: list[WorkflowStep] = Field(default_factory=list)
    cache_age_minutes: float | None = None


class TransitionResult(BaseModel):
    accepted: bool
    state: WorkflowState


class StepCompletion(BaseModel):
    target: ScheduleTarget | None = None
    has_existing_schedule: bool | None = None
    replace_confirmed: bool | None = None
    assignments: list[Assignment] | None = None
    generation_request: dict | None = None


class ExistingScheduleUpdate(BaseModel):
    has_existing_schedule: bool
    replace_confirmed: bool | None = None
    existing_schedule_id: int | None = None


class RestoreRequest(BaseModel):
    academic_year_id: int = Field(ge=1)
    session_type: SessionType


class ContextChange(BaseModel):
    academic_year_id: int | None = Field(default=None, ge=1)
    session_type: SessionType | None = None


class VisibilityChange(BaseModel):
    hidden: bool


class CellRef(BaseModel):
    day: int = Field(ge=1, le=5)
    period: int = Field(ge=1, le=20)


class SwapRequest(BaseModel):
    first: CellRef
    second: CellRef


class ValidationOut(BaseModel):
    accepted: bool
    can_proceed: bool = False
    report: dict = Field(default_factory=dict)
    state: WorkflowState


class GenerationOut(BaseModel):
    applied: bool
    result: PreviewResult
    state: WorkflowState


class CommitOut(BaseModel):
    accepted: bool
    reason: str | None = None
    schedule_id: int | None = None
    analysis: ConflictAnalysis | None = None
    state: WorkflowState
