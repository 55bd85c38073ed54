from fastapi import APIRouter, Depends

from scheduleflow.api.deps import get_workflow
from scheduleflow.core.exceptions import ResourceNotFoundError
from scheduleflow.schemas.conflict import ConflictListOut, SeverityFilter
from scheduleflow.schemas.workflow import CommitOut, TransitionResult
from scheduleflow.services.workflow import ScheduleWorkflow

router = APIRouter()


def _listing(workflow: ScheduleWorkflow, severity: SeverityFilter) -> ConflictListOut:
    classifier = workflow.classifier
    return ConflictListOut(
        analysis=classifier.analysis,
        severity=severity,
        conflicts=classifier.filtered(severity),
        resolved_ids=classifier.resolved_ids,
        pending_count=len(classifier.pending_conflicts()),
    )


@router.get("", response_model=ConflictListOut)
async def list_conflicts(
    severity: SeverityFilter = "all",
    refresh: bool = False,
    workflow: ScheduleWorkflow = Depends(get_workflow),
) -> ConflictListOut:
    if workflow.committed_schedule_id is None:
        raise ResourceNotFoundError("Committed schedule", "current")
    # Severity tabs are a view over the last analysis; only a refresh re-fetches.
    if refresh or workflow.classifier.analysis is None:
        await workflow.check_conflicts()
    return _listing(workflow, severity)


@router.post("/{conflict_id}/resolve", response_model=ConflictListOut)
async def resolve_conflict(conflict_id: str, workflow: ScheduleWorkflow = Depends(get_workflow)) -> ConflictListOut:
    if workflow.classifier.analysis is None:
        raise ResourceNotFoundError("Conflict analysis", "current")
    if not any(conflict.id == conflict_id for conflict in workflow.classifier.analysis.conflicts):
        raise ResourceNotFoundError("Conflict", conflict_id)
    workflow.mark_conflict_resolved(conflict_id)
    return _listing(workflow, "all")


@router.post("/resolved", response_model=TransitionResult)
async def conflicts_resolved(workflow: ScheduleWorkflow = Depends(get_workflow)) -> TransitionResult:
    accepted = workflow.on_conflicts_resolved()
    return TransitionResult(accepted=accepted, state=workflow.snapshot())


@router.post("/publish", response_model=CommitOut)
async def publish_conflicted(workflow: ScheduleWorkflow = Depends(get_workflow)) -> CommitOut:
    result = await workflow.publish_conflicted()
    return CommitOut(
        accepted=result.accepted,
        reason=result.reason,
        schedule_id=workflow.committed_schedule_id,
        analysis=workflow.classifier.analysis,
        state=workflow.snapshot(),
    )


@router.post("/save-as-draft", response_model=CommitOut)
async def save_conflicted_as_draft(workflow: ScheduleWorkflow = Depends(get_workflow)) -> CommitOut:
    result = await workflow.save_conflicted_as_draft()
    return CommitOut(
        accepted=result.accepted,
        reason=result.reason,
        schedule_id=workflow.committed_schedule_id,
        analysis=workflow.classifier.analysis,
        state=workflow.snapshot(),
    )
