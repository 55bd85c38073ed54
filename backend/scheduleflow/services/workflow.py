"""Step-sequenced schedule-creation workflow.

The workflow owns the in-memory draft and writes it through the draft cache on
every meaningful change. Invalid transitions are refused (methods return False
or a refused result) rather than raised; only collaborator failures propagate
as ``AppError``.

Responses that resolve after the target or scope has changed are discarded:
every state reset bumps an epoch counter, and async handlers compare the epoch
and target captured before awaiting with the current ones before merging.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable

from scheduleflow.core.exceptions import AppError, ResourceNotFoundError
from scheduleflow.schemas.conflict import ConflictAnalysis
from scheduleflow.schemas.draft import (
    MAIN_SEQUENCE,
    STEP_ORDER,
    Assignment,
    ScheduleDraft,
    ScheduleTarget,
    SessionType,
    WorkflowStep,
    step_index,
)
from scheduleflow.schemas.generator import (
    CommitResult,
    GenerationEvent,
    GenerationEventKind,
    GenerationOptions,
    PreviewResult,
)
from scheduleflow.schemas.workflow import CellRef, StepCompletion, WorkflowState
from scheduleflow.services.conflict_service import ConflictClassifier
from scheduleflow.services.draft_cache import MS_PER_MINUTE, DraftCacheStore, now_ms
from scheduleflow.services.generation import GenerationOrchestrator
from scheduleflow.services.schedules_client import SchedulesClient

logger = logging.getLogger(__name__)

# Fields swapped between two preview cells; identity and slot stay put.
SWAPPABLE_FIELDS = ("subject_id", "subject_name", "teacher_id", "teacher_name", "room", "notes")


def _schedule_id(data: object) -> int | None:
    if isinstance(data, dict):
        for key in ("schedule_id", "id"):
            value = data.get(key)
            if isinstance(value, int):
                return value
        nested = data.get("schedule")
        if isinstance(nested, dict) and isinstance(nested.get("id"), int):
            return nested["id"]
    return None


class ScheduleWorkflow:
    def __init__(
        self,
        store: DraftCacheStore,
        orchestrator: GenerationOrchestrator,
        classifier: ConflictClassifier,
        client: SchedulesClient,
        *,
        hidden_preview_max_minutes: int = 10,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.classifier = classifier
        self.client = client
        self.hidden_preview_max_minutes = hidden_preview_max_minutes
        self._clock = clock

        self.academic_year_id: int | None = None
        self.session_type: SessionType | None = None
        self.draft = ScheduleDraft()
        self.last_result: PreviewResult | None = None
        self.is_publishing = False
        self.hidden_since: int | None = None
        self._epoch = 0
        self._reset_session_flags()

    def _reset_session_flags(self) -> None:
        self.has_existing_schedule = False
        self.replace_confirmed = False
        self.existing_schedule_id: int | None = None
        self.committed_schedule_id: int | None = None
        self.has_conflicts = False
        self.conflicts_entered_from: WorkflowStep | None = None
        self.finalized = False

    def _fresh_draft(self) -> ScheduleDraft:
        return ScheduleDraft(academic_year_id=self.academic_year_id, session_type=self.session_type)

    def _start_over(self) -> None:
        self._epoch += 1
        self.draft = self._fresh_draft()
        self.last_result = None
        self.orchestrator.reset(force=True)
        self.classifier.reset()
        self.is_publishing = False
        self._reset_session_flags()

    @property
    def target(self) -> ScheduleTarget | None:
        return self.draft.schedule_data

    @property
    def current_step(self) -> WorkflowStep:
        return self.draft.current_step

    def _is_current(self, epoch: int, target: ScheduleTarget | None) -> bool:
        if epoch != self._epoch:
            return False
        if target is None:
            return self.target is None
        return target.same_target(self.target)

    def _persist(self) -> None:
        if self.finalized or self.draft.schedule_data is None:
            return
        self.draft = self.store.save(self.draft)

    def restore(self, academic_year_id: int, session_type: SessionType | str) -> bool:
        """Resume the cached draft for this context; start a blank one otherwise."""
        self.academic_year_id = academic_year_id
        self.session_type = SessionType(session_type)
        self.store.invalidate_if_context_changed(academic_year_id, self.session_type)
        cached = self.store.load()
        self._start_over()
        if cached is None or not cached.matches_context(academic_year_id, self.session_type):
            return False

        self.draft = cached
        if cached.is_preview_mode and cached.has_preview():
            self.orchestrator.adopt_preview()
        logger.info("Restored schedule draft at step %s", cached.current_step.value)
        return True

    def snapshot(self) -> WorkflowState:
        draft = self.draft
        return WorkflowState(
            current_step=draft.current_step,
            step_status=dict(draft.step_status),
            target=draft.schedule_data,
            academic_year_id=self.academic_year_id or draft.academic_year_id,
            session_type=self.session_type or draft.session_type,
            is_preview_mode=draft.is_preview_mode,
            preview_assignments=list(draft.preview_assignments or []),
            committed_assignments=list(draft.committed_assignments),
            generation_request=draft.generation_request,
            has_existing_schedule=self.has_existing_schedule,
            replace_confirmed=self.replace_confirmed,
            existing_schedule_id=self.existing_schedule_id,
            committed_schedule_id=self.committed_schedule_id,
            has_conflicts=self.has_conflicts,
            is_publishing=self.is_publishing,
            phase=self.orchestrator.phase,
            can_advance=self.can_advance(),
            can_retreat=self.current_step is not WorkflowStep.filter,
            jumpable_steps=[step for step in STEP_ORDER if self.can_jump_to(step)],
            cache_age_minutes=self.store.cache_age_minutes(),
        )

    # Navigation

    @staticmethod
    def _next_step(step: WorkflowStep) -> WorkflowStep | None:
        if step is WorkflowStep.conflicts:
            return WorkflowStep.export
        position = MAIN_SEQUENCE.index(step)
        if position + 1 < len(MAIN_SEQUENCE):
            return MAIN_SEQUENCE[position + 1]
        return None

    def _replace_gate_open(self) -> bool:
        return not self.has_existing_schedule or self.replace_confirmed

    def can_advance(self) -> bool:
        step = self.current_step
        if self.orchestrator.busy or self._next_step(step) is None:
            return False
        if not self.draft.step_status[step]:
            return False
        if step is WorkflowStep.filter and not self._replace_gate_open():
            return False
        return True

    def advance(self) -> bool:
        if not self.can_advance():
            logger.debug("Advance refused at step %s", self.current_step.value)
            return False
        self.draft.current_step = self._next_step(self.current_step)
        self._persist()
        return True

    def retreat(self) -> bool:
        step = self.current_step
        if step is WorkflowStep.filter:
            return False
        if step is WorkflowStep.conflicts:
            previous = self.conflicts_entered_from or WorkflowStep.view
        else:
            previous = MAIN_SEQUENCE[MAIN_SEQUENCE.index(step) - 1]
        self.draft.current_step = previous
        self._persist()
        return True

    def can_jump_to(self, step: WorkflowStep) -> bool:
        current = self.current_step
        if step is current:
            return False
        if step is WorkflowStep.conflicts:
            return (
                self.has_conflicts
                and self.committed_schedule_id is not None
                and current in (WorkflowStep.view, WorkflowStep.export)
            )
        if not self.draft.step_status[step] and step_index(step) >= step_index(current):
            return False
        if current is WorkflowStep.filter and not self._replace_gate_open():
            return False
        return True

    def jump_to(self, step: WorkflowStep) -> bool:
        if not self.can_jump_to(step):
            return False
        if step is WorkflowStep.conflicts:
            self.conflicts_entered_from = self.current_step
        self.draft.current_step = step
        self._persist()
        return True

    # Step completion

    def _ancestors_complete(self, step: WorkflowStep) -> bool:
        sequence = MAIN_SEQUENCE if step in MAIN_SEQUENCE else MAIN_SEQUENCE[: MAIN_SEQUENCE.index(WorkflowStep.view) + 1]
        ancestors = sequence[: sequence.index(step)] if step in sequence else sequence
        return all(self.draft.step_status[ancestor] for ancestor in ancestors)

    def complete_step(self, step: WorkflowStep, payload: StepCompletion | None = None) -> bool:
        payload = payload or StepCompletion()
        if step is WorkflowStep.filter:
            return self._complete_filter(payload)
        if not self._ancestors_complete(step):
            logger.debug("Step %s refused: an earlier step is incomplete", step.value)
            return False
        if step is WorkflowStep.generate:
            if payload.assignments:
                return self.on_generated(payload.assignments, payload.generation_request)
            if not self.draft.has_preview():
                return False
        if step is WorkflowStep.view and not (self.draft.has_preview() or self.draft.committed_assignments):
            return False
        self.draft.step_status[step] = True
        self._persist()
        return True

    def _complete_filter(self, payload: StepCompletion) -> bool:
        target = payload.target or self.target
        if target is None:
            return False
        if self.academic_year_id is not None and target.academic_year_id != self.academic_year_id:
            return False
        if self.session_type is not None and target.session_type != self.session_type:
            return False

        if not target.same_target(self.target):
            # A new class invalidates everything downstream of the filter.
            self._start_over()
            self.draft.schedule_data = target
            self.draft.academic_year_id = target.academic_year_id
            self.draft.session_type = target.session_type
            logger.info("Schedule target set to class %s section %r", target.class_id, target.section)

        if payload.has_existing_schedule is not None:
            self.has_existing_schedule = payload.has_existing_schedule
        if payload.replace_confirmed is not None:
            self.replace_confirmed = payload.replace_confirmed
        self.finalized = False
        self.draft.step_status[WorkflowStep.filter] = True
        self._persist()
        return True

    def invalidate_step(self, step: WorkflowStep) -> bool:
        """Withdraw a step's completion and that of every later step."""
        changed = False
        for later in STEP_ORDER[step_index(step):]:
            if self.draft.step_status[later]:
                self.draft.step_status[later] = False
                changed = True
        if changed:
            self._persist()
        return changed

    def set_existing_schedule(
        self,
        has_existing: bool,
        replace_confirmed: bool | None = None,
        schedule_id: int | None = None,
    ) -> None:
        if schedule_id != self.existing_schedule_id or not has_existing:
            self.replace_confirmed = False
        self.has_existing_schedule = has_existing
        self.existing_schedule_id = schedule_id if has_existing else None
        if replace_confirmed is not None:
            self.replace_confirmed = replace_confirmed

    async def check_existing_schedule(self) -> bool | None:
        target = self.target
        if target is None:
            return None
        epoch = self._epoch
        schedules = await self.client.list_schedules(
            academic_year_id=target.academic_year_id,
            session_type=target.session_type.value,
            class_id=target.class_id,
            section=target.section,
        )
        if not self._is_current(epoch, target):
            logger.info("Discarding existing-schedule lookup for a previous target")
            return None
        schedule_id = _schedule_id(schedules[0]) if schedules else None
        self.set_existing_schedule(bool(schedules), schedule_id=schedule_id)
        return self.has_existing_schedule

    async def run_validation(self) -> dict | None:
        """Ask the schedules service whether the class is ready for generation."""
        target = self.target
        if target is None or not self.draft.step_status[WorkflowStep.filter]:
            return None
        epoch = self._epoch
        report = await self.client.validate(
            academic_year_id=target.academic_year_id,
            class_id=target.class_id,
            section=target.section,
            session_type=target.session_type.value,
        )
        if not self._is_current(epoch, target):
            logger.info("Discarding validation report for a previous target")
            return None
        if report.get("can_proceed", report.get("is_valid", False)):
            self.draft.step_status[WorkflowStep.validate] = True
            self._persist()
        else:
            self.invalidate_step(WorkflowStep.validate)
        return report

    # Generation

    def _generation_refusal(self) -> str | None:
        if self.target is None:
            return "No class selected"
        if not self._ancestors_complete(WorkflowStep.generate):
            return "Complete the earlier steps first"
        if self.is_publishing:
            return "A publish call is in progress"
        return None

    async def stream_generation(self, options: GenerationOptions | None = None) -> AsyncIterator[GenerationEvent]:
        refusal = self._generation_refusal()
        if refusal is not None:
            result = PreviewResult(status="refused", reason=refusal)
            self.last_result = result
            yield GenerationEvent(kind=GenerationEventKind.failed, message=refusal, result=result)
            return

        epoch = self._epoch
        target = self.target
        async for event in self.orchestrator.stream_preview(target, options):
            if event.is_terminal and event.result is not None:
                self._apply_generation_result(event.result, epoch, target)
            yield event

    async def generate(self, options: GenerationOptions | None = None) -> tuple[PreviewResult, bool]:
        """Run a preview generation; returns the result and whether it was applied."""
        result: PreviewResult | None = None
        epoch = self._epoch
        async for event in self.stream_generation(options):
            if event.is_terminal:
                result = event.result
        if result is None:
            result = PreviewResult(status="refused", reason="Generation ended without a result")
        applied = result.status != "refused" and epoch == self._epoch
        return result, applied

    def _apply_generation_result(self, result: PreviewResult, epoch: int, target: ScheduleTarget) -> bool:
        if not self._is_current(epoch, target):
            logger.info("Discarding generation result for a draft that is no longer current")
            return False
        self.last_result = result
        if result.is_ready:
            return self.on_generated(result.assignments, result.generation_request)
        # Soft and hard failures leave the workflow at the generate step.
        return True

    def on_generated(self, assignments: list[Assignment], generation_request: dict | None) -> bool:
        if self.target is None or not assignments:
            return False
        draft = self.draft
        draft.preview_assignments = list(assignments)
        draft.generation_request = generation_request
        draft.is_preview_mode = True
        draft.committed_assignments = []
        draft.step_status[WorkflowStep.generate] = True
        draft.step_status[WorkflowStep.view] = True
        draft.step_status[WorkflowStep.conflicts] = False
        draft.step_status[WorkflowStep.export] = False
        draft.current_step = WorkflowStep.view
        self.finalized = False
        self.committed_schedule_id = None
        self.has_conflicts = False
        self.classifier.reset()
        self.orchestrator.adopt_preview()
        self._persist()
        logger.info("Preview with %d period(s) ready for review", len(assignments))
        return True

    def view_assignments(self) -> list[Assignment]:
        if self.draft.is_preview_mode:
            return list(self.draft.preview_assignments or [])
        return list(self.draft.committed_assignments)

    def swap_preview_cells(self, first: CellRef, second: CellRef) -> bool:
        """Swap the lessons of two preview cells, or move one into an empty cell."""
        if not self.draft.is_preview_mode or not self.draft.has_preview():
            return False
        if (first.day, first.period) == (second.day, second.period):
            return False
        preview = self.draft.preview_assignments
        first_index = next((i for i, a in enumerate(preview) if (a.day, a.period) == (first.day, first.period)), None)
        second_index = next((i for i, a in enumerate(preview) if (a.day, a.period) == (second.day, second.period)), None)
        if first_index is None and second_index is None:
            return False

        if first_index is not None and second_index is not None:
            left, right = preview[first_index], preview[second_index]
            preview[first_index] = left.model_copy(update={f: getattr(right, f) for f in SWAPPABLE_FIELDS})
            preview[second_index] = right.model_copy(update={f: getattr(left, f) for f in SWAPPABLE_FIELDS})
        elif first_index is not None:
            preview[first_index] = preview[first_index].model_copy(update={"day": second.day, "period": second.period})
        else:
            preview[second_index] = preview[second_index].model_copy(update={"day": first.day, "period": first.period})
        self._persist()
        return True

    async def refresh_committed(self) -> list[Assignment]:
        """Replace the committed assignments with the server's current copy."""
        target = self.target
        if target is None:
            return []
        epoch = self._epoch
        entries = await self.client.list_schedules(
            academic_year_id=target.academic_year_id,
            session_type=target.session_type.value,
            class_id=target.class_id,
            section=target.section,
        )
        if not entries:
            raise ResourceNotFoundError("Schedule", f"class {target.class_id}")
        assignments = await self.orchestrator.map_to_assignments(entries)
        if not self._is_current(epoch, target):
            logger.info("Discarding committed assignments for a previous target")
            return assignments
        self.draft.committed_assignments = assignments
        if self.committed_schedule_id is None:
            self.committed_schedule_id = next(
                (e["schedule_id"] for e in entries if isinstance(e.get("schedule_id"), int)),
                None,
            )
        self._persist()
        return assignments

    # Terminal transitions

    async def publish(self) -> tuple[CommitResult, ConflictAnalysis | None]:
        if self.is_publishing:
            return CommitResult(accepted=False, reason="A publish call is already in progress"), None
        if not self.draft.is_preview_mode or not self.draft.has_preview():
            return CommitResult(accepted=False, reason="No preview to publish"), None

        epoch = self._epoch
        target = self.target
        self.is_publishing = True
        try:
            result = await self.orchestrator.commit_preview(
                self.draft.generation_request or {},
                list(self.draft.preview_assignments),
            )
        finally:
            if epoch == self._epoch:
                self.is_publishing = False
        if not result.accepted:
            return result, None
        if not self._is_current(epoch, target):
            logger.info("Publish completed for a draft that is no longer current")
            return result, None

        draft = self.draft
        draft.preview_assignments = None
        draft.is_preview_mode = False
        draft.current_step = WorkflowStep.view
        self.has_existing_schedule = True
        self.replace_confirmed = False
        self.committed_schedule_id = _schedule_id(result.data)
        self.store.clear()
        self.finalized = True

        try:
            await self.refresh_committed()
        except AppError as exc:
            logger.warning("Published schedule could not be reloaded: %s", exc.message)

        analysis = None
        if self.committed_schedule_id is not None:
            try:
                analysis = await self.check_conflicts()
            except AppError as exc:
                logger.warning("Conflict analysis unavailable after publish: %s", exc.message)
        return result, analysis

    def export(self) -> bool:
        if self.current_step is not WorkflowStep.export:
            return False
        if self.draft.is_preview_mode or not self.draft.committed_assignments:
            return False
        self.draft.step_status[WorkflowStep.export] = True
        self.store.clear()
        self.finalized = True
        return True

    async def check_conflicts(self) -> ConflictAnalysis | None:
        schedule_id = self.committed_schedule_id
        if schedule_id is None:
            return None
        epoch = self._epoch
        analysis = await self.classifier.analyze(schedule_id)
        if epoch == self._epoch:
            self.has_conflicts = analysis.total_conflicts > 0
        return analysis

    def enter_conflicts(self) -> bool:
        return self.jump_to(WorkflowStep.conflicts)

    def mark_conflict_resolved(self, conflict_id: str) -> bool:
        return self.classifier.mark_resolved(conflict_id)

    def _leave_conflicts(self) -> None:
        self.draft.step_status[WorkflowStep.conflicts] = True
        self.draft.current_step = WorkflowStep.export
        self._persist()

    def on_conflicts_resolved(self) -> bool:
        analysis = self.classifier.analysis
        if self.current_step is not WorkflowStep.conflicts or analysis is None:
            return False
        if not analysis.can_publish:
            return False
        self._leave_conflicts()
        return True

    async def publish_conflicted(self) -> CommitResult:
        if self.committed_schedule_id is None:
            return CommitResult(accepted=False, reason="No committed schedule")
        result = await self.classifier.publish(self.committed_schedule_id)
        if result.accepted:
            self._leave_conflicts()
            self.store.clear()
            self.finalized = True
        return result

    async def save_conflicted_as_draft(self) -> CommitResult:
        if self.committed_schedule_id is None:
            return CommitResult(accepted=False, reason="No committed schedule")
        result = await self.classifier.save_as_draft(self.committed_schedule_id)
        if result.accepted:
            self._leave_conflicts()
        return result

    # Environment signals

    def handle_context_change(
        self,
        academic_year_id: int | None,
        session_type: SessionType | str | None,
    ) -> bool:
        """Apply a new academic-year/session selection; True when in-memory state was reset."""
        if academic_year_id is not None:
            self.academic_year_id = academic_year_id
        if session_type is not None:
            self.session_type = SessionType(session_type)
        cleared = self.store.invalidate_if_context_changed(academic_year_id, session_type)
        if cleared or not self.draft.matches_context(self.academic_year_id, self.session_type):
            self._start_over()
            logger.info("Workflow reset for academic year %s / %s", self.academic_year_id, self.session_type)
            return True
        return False

    def on_visibility_change(self, hidden: bool) -> bool:
        """Track tab visibility; True when a stale preview was discarded on return."""
        if hidden:
            self.hidden_since = self._clock()
            return False
        if self.hidden_since is None:
            return False
        hidden_ms = self._clock() - self.hidden_since
        self.hidden_since = None
        if hidden_ms <= self.hidden_preview_max_minutes * MS_PER_MINUTE or not self.draft.has_preview():
            return False

        draft = self.draft
        draft.preview_assignments = None
        draft.is_preview_mode = False
        draft.current_step = WorkflowStep.generate
        for step in (WorkflowStep.generate, WorkflowStep.view, WorkflowStep.export):
            draft.step_status[step] = False
        self.orchestrator.reset()
        self._persist()
        logger.info("Preview discarded after %.0f minutes hidden", hidden_ms / MS_PER_MINUTE)
        return True

    def reset(self) -> None:
        self.store.clear()
        self._start_over()
