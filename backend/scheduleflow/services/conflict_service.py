from __future__ import annotations

import logging
from typing import Dict, List, Set

from scheduleflow.core.exceptions import CollaboratorError
from scheduleflow.schemas.conflict import (
    AffectedEntities,
    Conflict,
    ConflictAnalysis,
    ConflictSeverity,
    SeverityFilter,
)
from scheduleflow.schemas.generator import CommitResult
from scheduleflow.services.schedules_client import SchedulesClient

logger = logging.getLogger(__name__)

SEVERITY_ALIASES: Dict[str, ConflictSeverity] = {
    "critical": ConflictSeverity.critical,
    "high": ConflictSeverity.critical,
    "warning": ConflictSeverity.warning,
    "medium": ConflictSeverity.warning,
    "info": ConflictSeverity.info,
    "low": ConflictSeverity.info,
}

TYPE_ALIASES: Dict[str, str] = {
    "teacher_double_booking": "teacher_double_booking",
    "teacher_conflict": "teacher_double_booking",
    "room_conflict": "room_conflict",
    "resource_conflict": "room_conflict",
    "constraint_violation": "constraint_violation",
}

SEVERITY_RANK = {ConflictSeverity.critical: 0, ConflictSeverity.warning: 1, ConflictSeverity.info: 2}


def normalize_conflict(raw: dict, index: int) -> Conflict:
    if not isinstance(raw, dict):
        raise TypeError(f"conflict {index} is not an object")
    conflict_type = TYPE_ALIASES.get(str(raw.get("type", "")), "constraint_violation")
    severity = SEVERITY_ALIASES.get(str(raw.get("severity", "")).lower(), ConflictSeverity.warning)

    entities = raw.get("affected_entities") or {}
    if not isinstance(entities, dict):
        raise TypeError(f"conflict {index} has malformed affected_entities")
    periods = raw.get("periods") or []
    affected = AffectedEntities(
        subject_name=entities.get("subject_name", raw.get("subject_name")),
        teacher_name=entities.get("teacher_name", raw.get("teacher_name")),
        class_name=entities.get("class_name", raw.get("class_name")),
        day=entities.get("day", raw.get("day")),
        period=entities.get("period", raw.get("period", periods[0] if periods else None)),
        room=entities.get("room", raw.get("room")),
    )

    default_priority = 5 if severity is ConflictSeverity.critical else 3 if severity is ConflictSeverity.warning else 1
    return Conflict(
        id=str(raw.get("id") or f"{conflict_type}-{index}"),
        type=conflict_type,
        severity=severity,
        priority_level=max(0, min(10, int(raw.get("priority_level") or default_priority))),
        description=str(raw.get("description") or ""),
        affected_entities=affected,
        suggested_resolution=str(raw.get("suggested_resolution") or raw.get("suggestion") or ""),
        can_override=bool(raw.get("can_override", severity is not ConflictSeverity.critical)),
        details=raw.get("details"),
    )


def build_analysis(schedule_id: int, raw: dict) -> ConflictAnalysis:
    """Normalize a conflict report into severity counts and publish/save gates.

    Older service versions report hard problems under ``conflicts`` and
    advisory ones under ``warnings``; both lists are folded into one ordering
    (critical first, then by descending priority).
    """
    if not isinstance(raw, dict):
        raise TypeError("conflict report is not an object")
    raw_items: List[dict] = list(raw.get("conflicts") or []) + list(raw.get("warnings") or [])
    conflicts = [normalize_conflict(item, index) for index, item in enumerate(raw_items)]
    conflicts.sort(key=lambda c: (SEVERITY_RANK[c.severity], -c.priority_level))

    counted = {severity: 0 for severity in ConflictSeverity}
    for conflict in conflicts:
        counted[conflict.severity] += 1

    # A truncated list never lowers the counts the service reported.
    critical = max(counted[ConflictSeverity.critical], int(raw.get("critical_count") or 0))
    warning = max(counted[ConflictSeverity.warning], int(raw.get("warning_count") or 0))
    info = max(counted[ConflictSeverity.info], int(raw.get("info_count") or 0))

    summary = raw.get("summary") or (
        f"{critical} critical, {warning} warning, {info} info"
    )
    return ConflictAnalysis(
        schedule_id=schedule_id,
        total_conflicts=max(len(conflicts), critical + warning + info),
        critical_count=critical,
        warning_count=warning,
        info_count=info,
        conflicts=conflicts,
        summary=summary,
    )


def filter_conflicts(conflicts: List[Conflict], severity: SeverityFilter = "all") -> List[Conflict]:
    if severity == "all":
        return list(conflicts)
    return [conflict for conflict in conflicts if conflict.severity.value == severity]


class ConflictClassifier:
    """Fetches and classifies conflicts for a committed schedule and gates publication."""

    def __init__(self, client: SchedulesClient):
        self.client = client
        self.analysis: ConflictAnalysis | None = None
        self._resolved: Set[str] = set()

    async def analyze(self, schedule_id: int) -> ConflictAnalysis:
        raw = await self.client.conflicts(schedule_id)
        try:
            analysis = build_analysis(schedule_id, raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Unexpected conflict report for schedule %s: %s", schedule_id, exc)
            raise CollaboratorError(
                "Schedule service returned an unexpected response",
                details={"path": f"/schedules/{schedule_id}/conflicts", "error": str(exc)},
            ) from exc
        if self.analysis is None or self.analysis.schedule_id != schedule_id:
            self._resolved = set()
        else:
            # Conflicts fixed at the source disappear from the report; drop their acknowledgments.
            present = {conflict.id for conflict in analysis.conflicts}
            self._resolved &= present
        self.analysis = analysis
        logger.info(
            "Schedule %s has %d conflict(s), %d critical",
            schedule_id,
            analysis.total_conflicts,
            analysis.critical_count,
        )
        return analysis

    def mark_resolved(self, conflict_id: str) -> bool:
        if self.analysis is None:
            return False
        conflict = next((c for c in self.analysis.conflicts if c.id == conflict_id), None)
        if conflict is None or not conflict.can_override:
            return False
        self._resolved.add(conflict_id)
        return True

    def is_resolved(self, conflict_id: str) -> bool:
        return conflict_id in self._resolved

    @property
    def resolved_ids(self) -> List[str]:
        return sorted(self._resolved)

    def pending_conflicts(self) -> List[Conflict]:
        if self.analysis is None:
            return []
        return [c for c in self.analysis.conflicts if c.id not in self._resolved]

    def filtered(self, severity: SeverityFilter = "all") -> List[Conflict]:
        if self.analysis is None:
            return []
        return filter_conflicts(self.analysis.conflicts, severity)

    async def publish(self, schedule_id: int) -> CommitResult:
        if self.analysis is None or self.analysis.schedule_id != schedule_id:
            return CommitResult(accepted=False, reason="Conflicts have not been analyzed for this schedule")
        if not self.analysis.can_publish:
            return CommitResult(accepted=False, reason="Critical conflicts must be fixed before publishing")
        data = await self.client.publish(schedule_id)
        return CommitResult(accepted=True, data=data)

    async def save_as_draft(self, schedule_id: int) -> CommitResult:
        data = await self.client.save_as_draft(schedule_id)
        return CommitResult(accepted=True, data=data)

    def reset(self) -> None:
        self.analysis = None
        self._resolved = set()
