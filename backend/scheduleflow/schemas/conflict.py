from enum import Enum
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


class ConflictSeverity(str, Enum):
    critical = "critical"
    warning = "warning"
    info = "info"


ConflictType = Literal["teacher_double_booking", "constraint_violation", "room_conflict"]
SeverityFilter = Literal["all", "critical", "warning", "info"]


class AffectedEntities(BaseModel):
    subject_name: Optional[str] = None
    teacher_name: Optional[str] = None
    class_name: Optional[str] = None
    day: Optional[int] = None
    period: Optional[int] = None
    room: Optional[str] = None


class Conflict(BaseModel):
    id: str
    type: ConflictType
    severity: ConflictSeverity
    priority_level: int = Field(default=1, ge=0, le=10)
    description: str
    affected_entities: AffectedEntities = Field(default_factory=AffectedEntities)
    suggested_resolution: str = ""
    can_override: bool = False
    details: Optional[Union[str, dict]] = None


class ConflictAnalysis(BaseModel):
    schedule_id: int
    total_conflicts: int = 0
    critical_count: int = 0
    warning_count: int = 0
    info_count: int = 0
    can_publish: bool = True
    can_save_as_draft: bool = True
    conflicts: List[Conflict] = Field(default_factory=list)
    summary: str = ""

    @model_validator(mode="after")
    def enforce_publish_gate(self) -> "ConflictAnalysis":
        # Only critical conflicts block publication; drafts are always allowed.
        self.can_publish = self.critical_count == 0
        self.can_save_as_draft = True
        return self


class ConflictListOut(BaseModel):
    analysis: ConflictAnalysis
    severity: SeverityFilter
    conflicts: List[Conflict]
    resolved_ids: List[str] = Field(default_factory=list)
    pending_count: int = 0
