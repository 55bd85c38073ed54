from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse

from scheduleflow.api.deps import get_workflow
from scheduleflow.schemas.draft import WorkflowStep
from scheduleflow.schemas.generator import GenerationOptions
from scheduleflow.schemas.workflow import (
    CommitOut,
    ContextChange,
    ExistingScheduleUpdate,
    GenerationOut,
    RestoreRequest,
    StepCompletion,
    SwapRequest,
    TransitionResult,
    ValidationOut,
    VisibilityChange,
    WorkflowState,
)
from scheduleflow.services.workflow import ScheduleWorkflow

router = APIRouter()

# All handlers are async so the workflow is only touched from the event loop.


def _transition(workflow: ScheduleWorkflow, accepted: bool) -> TransitionResult:
    return TransitionResult(accepted=accepted, state=workflow.snapshot())


@router.get("", response_model=WorkflowState)
async def get_state(workflow: ScheduleWorkflow = Depends(get_workflow)) -> WorkflowState:
    return workflow.snapshot()


@router.post("/restore", response_model=TransitionResult)
async def restore(payload: RestoreRequest, workflow: ScheduleWorkflow = Depends(get_workflow)) -> TransitionResult:
    restored = workflow.restore(payload.academic_year_id, payload.session_type)
    return _transition(workflow, restored)


@router.post("/steps/{step}/complete", response_model=TransitionResult)
async def complete_step(
    step: WorkflowStep,
    payload: StepCompletion | None = None,
    workflow: ScheduleWorkflow = Depends(get_workflow),
) -> TransitionResult:
    return _transition(workflow, workflow.complete_step(step, payload))


@router.post("/steps/{step}/invalidate", response_model=TransitionResult)
async def invalidate_step(step: WorkflowStep, workflow: ScheduleWorkflow = Depends(get_workflow)) -> TransitionResult:
    return _transition(workflow, workflow.invalidate_step(step))


@router.post("/existing-schedule", response_model=TransitionResult)
async def set_existing_schedule(
    payload: ExistingScheduleUpdate,
    workflow: ScheduleWorkflow = Depends(get_workflow),
) -> TransitionResult:
    workflow.set_existing_schedule(
        payload.has_existing_schedule,
        replace_confirmed=payload.replace_confirmed,
        schedule_id=payload.existing_schedule_id,
    )
    return _transition(workflow, True)


@router.post("/existing-schedule/check", response_model=TransitionResult)
async def check_existing_schedule(workflow: ScheduleWorkflow = Depends(get_workflow)) -> TransitionResult:
    found = await workflow.check_existing_schedule()
    return _transition(workflow, found is not None)


@router.post("/validate", response_model=ValidationOut)
async def run_validation(workflow: ScheduleWorkflow = Depends(get_workflow)) -> ValidationOut:
    report = await workflow.run_validation()
    return ValidationOut(
        accepted=report is not None,
        can_proceed=workflow.draft.step_status[WorkflowStep.validate],
        report=report or {},
        state=workflow.snapshot(),
    )


@router.post("/advance", response_model=TransitionResult)
async def advance(workflow: ScheduleWorkflow = Depends(get_workflow)) -> TransitionResult:
    return _transition(workflow, workflow.advance())


@router.post("/retreat", response_model=TransitionResult)
async def retreat(workflow: ScheduleWorkflow = Depends(get_workflow)) -> TransitionResult:
    return _transition(workflow, workflow.retreat())


@router.post("/jump/{step}", response_model=TransitionResult)
async def jump_to(step: WorkflowStep, workflow: ScheduleWorkflow = Depends(get_workflow)) -> TransitionResult:
    return _transition(workflow, workflow.jump_to(step))


@router.post("/generate", response_model=GenerationOut)
async def generate(
    options: GenerationOptions | None = None,
    workflow: ScheduleWorkflow = Depends(get_workflow),
) -> JSONResponse:
    result, applied = await workflow.generate(options)
    out = GenerationOut(applied=applied, result=result, state=workflow.snapshot())
    status_code = result.failure.status_code if result.failure is not None else 200
    return JSONResponse(status_code=status_code, content=out.model_dump(mode="json"))


@router.post("/generate/events")
async def generate_events(
    options: GenerationOptions | None = None,
    workflow: ScheduleWorkflow = Depends(get_workflow),
) -> StreamingResponse:
    async def lines() -> AsyncIterator[str]:
        async for event in workflow.stream_generation(options):
            yield event.model_dump_json() + "\n"

    return StreamingResponse(lines(), media_type="application/x-ndjson")


@router.post("/preview/swap", response_model=TransitionResult)
async def swap_preview_cells(payload: SwapRequest, workflow: ScheduleWorkflow = Depends(get_workflow)) -> TransitionResult:
    return _transition(workflow, workflow.swap_preview_cells(payload.first, payload.second))


@router.post("/committed/refresh", response_model=WorkflowState)
async def refresh_committed(workflow: ScheduleWorkflow = Depends(get_workflow)) -> WorkflowState:
    await workflow.refresh_committed()
    return workflow.snapshot()


@router.post("/publish", response_model=CommitOut)
async def publish(workflow: ScheduleWorkflow = Depends(get_workflow)) -> CommitOut:
    result, analysis = await workflow.publish()
    return CommitOut(
        accepted=result.accepted,
        reason=result.reason,
        schedule_id=workflow.committed_schedule_id if result.accepted else None,
        analysis=analysis,
        state=workflow.snapshot(),
    )


@router.post("/export", response_model=TransitionResult)
async def export(workflow: ScheduleWorkflow = Depends(get_workflow)) -> TransitionResult:
    return _transition(workflow, workflow.export())


@router.post("/reset", response_model=WorkflowState)
async def reset(workflow: ScheduleWorkflow = Depends(get_workflow)) -> WorkflowState:
    workflow.reset()
    return workflow.snapshot()


@router.post("/context", response_model=TransitionResult)
async def context_changed(payload: ContextChange, workflow: ScheduleWorkflow = Depends(get_workflow)) -> TransitionResult:
    reset_done = workflow.handle_context_change(payload.academic_year_id, payload.session_type)
    return _transition(workflow, reset_done)


@router.post("/visibility", response_model=TransitionResult)
async def visibility_changed(
    payload: VisibilityChange,
    workflow: ScheduleWorkflow = Depends(get_workflow),
) -> TransitionResult:
    return _transition(workflow, workflow.on_visibility_change(payload.hidden))
