from __future__ import annotations

import asyncio
import calendar
import logging
from collections.abc import AsyncIterator, Iterable
from datetime import date

from pydantic import ValidationError

from scheduleflow.core.config import Settings
from scheduleflow.core.exceptions import (
    AppError,
    CollaboratorError,
    DuplicateScheduleNameError,
    EmptyPreviewError,
)
from scheduleflow.schemas.draft import Assignment, ScheduleTarget, SessionType
from scheduleflow.schemas.generator import (
    CommitResult,
    DiagnosticsReport,
    FailureInfo,
    GenerationEvent,
    GenerationEventKind,
    GenerationOptions,
    GenerationPhase,
    GenerationRequest,
    PreviewResult,
)
from scheduleflow.services.schedules_client import SchedulesClient, is_duplicate_name

logger = logging.getLogger(__name__)

UNKNOWN_SUBJECT = "Unknown subject"
UNKNOWN_TEACHER = "Unknown teacher"

# Warnings that describe soft-constraint overruns rather than generation problems.
SOFT_VIOLATION_MARKERS = ("consecutive", "متتالية", "تجاوزات")

SESSION_LABELS = {
    SessionType.morning: "Morning schedule",
    SessionType.evening: "Evening schedule",
}


def _add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year = day.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)


def generation_window(today: date, months: int) -> tuple[date, date]:
    """First day of the current month through the last day `months - 1` months later."""
    start = today.replace(day=1)
    last_month = _add_months(start, max(months, 1) - 1)
    end = last_month.replace(day=calendar.monthrange(last_month.year, last_month.month)[1])
    return start, end


def build_generation_request(
    target: ScheduleTarget,
    options: GenerationOptions | None,
    settings: Settings,
    *,
    today: date | None = None,
) -> GenerationRequest:
    options = options or GenerationOptions()
    today = today or date.today()
    start, end = generation_window(today, settings.generation_window_months)
    session = SessionType(target.session_type)
    default_start_time = settings.morning_start_time if session is SessionType.morning else settings.evening_start_time
    return GenerationRequest(
        academic_year_id=target.academic_year_id,
        session_type=session,
        class_id=target.class_id,
        section=target.section,
        name=options.name or f"{SESSION_LABELS[session]} - {today.year}",
        start_date=options.start_date or start,
        end_date=options.end_date or end,
        periods_per_day=options.periods_per_day or settings.default_periods_per_day,
        break_periods=options.break_periods if options.break_periods is not None else settings.default_break_periods,
        break_duration=(
            options.break_duration if options.break_duration is not None else settings.default_break_duration
        ),
        working_days=options.working_days or settings.default_working_days,
        session_start_time=options.session_start_time or default_start_time,
        period_duration=options.period_duration or settings.default_period_duration,
        auto_assign_teachers=options.auto_assign_teachers,
        balance_teacher_load=options.balance_teacher_load,
        avoid_teacher_conflicts=options.avoid_teacher_conflicts,
        prefer_subject_continuity=options.prefer_subject_continuity,
        preview_only=True,
    )


def _first_present(*values):
    for value in values:
        if value not in (None, ""):
            return value
    return None


def _nested(entry: dict, key: str, field: str):
    value = entry.get(key)
    if isinstance(value, dict):
        return value.get(field)
    return None


def normalize_entry(
    entry: dict,
    index: int,
    subjects: dict[int, str],
    teachers: dict[int, str],
) -> Assignment | None:
    """Map one server entry onto an Assignment.

    Names resolve in order: flat field, nested object, lookup table, then the
    "unknown" label. Entries without a usable day/period are skipped.
    """
    day = _first_present(entry.get("day_of_week"), entry.get("day"))
    period = _first_present(entry.get("period_number"), entry.get("period"))
    if day is None or period is None:
        logger.warning("Skipping schedule entry %s without day/period", entry.get("id", index))
        return None

    subject_id = _first_present(entry.get("subject_id"), _nested(entry, "subject", "id"))
    teacher_id = _first_present(entry.get("teacher_id"), _nested(entry, "teacher", "id"))
    subject_name = _first_present(
        entry.get("subject_name"),
        _nested(entry, "subject", "subject_name"),
        subjects.get(subject_id) if subject_id is not None else None,
    )
    teacher_name = _first_present(
        entry.get("teacher_name"),
        _nested(entry, "teacher", "full_name"),
        teachers.get(teacher_id) if teacher_id is not None else None,
    )
    assignment_id = _first_present(
        entry.get("id"),
        entry.get("assignment_id"),
    ) or f"{entry.get('class_id')}-{day}-{period}-{subject_id}-{index}"

    try:
        return Assignment(
            id=str(assignment_id),
            time_slot_id=_first_present(entry.get("time_slot_id"), entry.get("id"), index + 1),
            day=day,
            period=period,
            subject_id=subject_id,
            subject_name=subject_name or UNKNOWN_SUBJECT,
            teacher_id=teacher_id,
            teacher_name=teacher_name or UNKNOWN_TEACHER,
            room=entry.get("room"),
            notes=entry.get("notes"),
            has_conflict=bool(entry.get("has_conflict", False)),
            conflict_type=entry.get("conflict_type"),
        )
    except ValidationError:
        logger.warning("Skipping schedule entry %s with out-of-range slot (%s, %s)", assignment_id, day, period)
        return None


def has_soft_violations(warnings: Iterable[str]) -> bool:
    return any(marker in warning for warning in warnings for marker in SOFT_VIOLATION_MARKERS)


class GenerationOrchestrator:
    """Runs one preview-generation / publish cycle against the schedules service.

    Phases: idle -> generating -> {preview_ready | failed};
    preview_ready -> publishing -> {published | publish_failed}.

    Every call records the run it started in. A forced reset starts a new run,
    so a call still in flight can no longer move the phase.
    """

    def __init__(self, client: SchedulesClient, settings: Settings):
        self.client = client
        self.settings = settings
        self.phase = GenerationPhase.idle
        self._run = 0

    @property
    def busy(self) -> bool:
        return self.phase in (GenerationPhase.generating, GenerationPhase.publishing)

    @property
    def can_commit(self) -> bool:
        return self.phase in (GenerationPhase.preview_ready, GenerationPhase.publish_failed)

    def adopt_preview(self) -> None:
        """Resume at preview_ready for a preview restored from the draft cache."""
        if not self.busy:
            self.phase = GenerationPhase.preview_ready

    def reset(self, force: bool = False) -> None:
        if self.busy and not force:
            return
        self._run += 1
        self.phase = GenerationPhase.idle

    def _begin(self, phase: GenerationPhase) -> int:
        self._run += 1
        self.phase = phase
        return self._run

    def _settle(self, run: int, phase: GenerationPhase) -> None:
        if run == self._run:
            self.phase = phase

    def _abandon(self, run: int, busy_phase: GenerationPhase, failed_phase: GenerationPhase) -> None:
        if run == self._run and self.phase is busy_phase:
            logger.warning("Call abandoned while %s", busy_phase.value)
            self.phase = failed_phase

    async def stream_preview(
        self,
        target: ScheduleTarget,
        options: GenerationOptions | None = None,
    ) -> AsyncIterator[GenerationEvent]:
        if self.busy:
            yield GenerationEvent(
                kind=GenerationEventKind.failed,
                message="A generation or publish call is already in progress",
                result=PreviewResult(status="refused", reason="busy"),
            )
            return

        options = options or GenerationOptions()
        try:
            request = build_generation_request(target, options, self.settings)
        except ValidationError as exc:
            yield GenerationEvent(
                kind=GenerationEventKind.failed,
                message="Invalid generation options",
                result=PreviewResult(status="refused", reason=str(exc)),
            )
            return

        request_payload = request.model_dump(mode="json")
        fetch_diagnostics = (
            options.fetch_diagnostics
            if options.fetch_diagnostics is not None
            else self.settings.fetch_diagnostics_on_failure
        )

        run = self._begin(GenerationPhase.generating)
        try:
            yield GenerationEvent(kind=GenerationEventKind.started, message="Generation request sent")
            try:
                response = await self.client.generate(request)
            except AppError as exc:
                self._settle(run, GenerationPhase.failed)
                logger.warning("Preview generation failed for class %s: %s", target.class_id, exc.message)
                diagnostics = None
                if fetch_diagnostics and not isinstance(exc, DuplicateScheduleNameError):
                    report = await self.fetch_diagnostics(target)
                    if report is not None and not report.is_ready_for_generation:
                        diagnostics = report
                result = PreviewResult(
                    status="failed",
                    generation_request=request_payload,
                    failure=FailureInfo.from_error(exc),
                    diagnostics=diagnostics,
                )
                yield GenerationEvent(kind=GenerationEventKind.failed, message=exc.message, result=result)
                return

            yield GenerationEvent(kind=GenerationEventKind.progress, progress=50, message="Response received")

            if response.total_assignments_created == 0 and response.warnings:
                # Nothing could be placed: upstream data problem, not a generator error.
                self._settle(run, GenerationPhase.failed)
                diagnostics = await self.fetch_diagnostics(target) if fetch_diagnostics else None
                result = PreviewResult(
                    status="soft_failure",
                    generation_request=request_payload,
                    warnings=response.warnings,
                    summary=response.summary,
                    diagnostics=diagnostics,
                )
                yield GenerationEvent(
                    kind=GenerationEventKind.failed,
                    message=f"{len(response.warnings)} problem(s) prevented generation",
                    result=result,
                )
                return

            assignments = await self.map_to_assignments(response.preview_data or [])
            if not assignments:
                self._settle(run, GenerationPhase.failed)
                error = EmptyPreviewError(details={"generation_status": response.generation_status})
                result = PreviewResult(
                    status="failed",
                    generation_request=request_payload,
                    warnings=response.warnings,
                    failure=FailureInfo.from_error(error),
                )
                yield GenerationEvent(kind=GenerationEventKind.failed, message=error.message, result=result)
                return

            yield GenerationEvent(kind=GenerationEventKind.progress, progress=90, message="Preview mapped")
            self._settle(run, GenerationPhase.preview_ready)
            result = PreviewResult(
                status="ready",
                assignments=assignments,
                generation_request=request_payload,
                total_assignments_created=response.total_assignments_created or len(assignments),
                warnings=response.warnings,
                has_soft_violations=has_soft_violations(response.warnings),
                summary=response.summary,
            )
            yield GenerationEvent(
                kind=GenerationEventKind.finished,
                progress=100,
                message=f"{len(assignments)} period(s) ready for review",
                result=result,
            )
        finally:
            self._abandon(run, GenerationPhase.generating, GenerationPhase.failed)

    async def generate_preview(
        self,
        target: ScheduleTarget,
        options: GenerationOptions | None = None,
    ) -> PreviewResult:
        result: PreviewResult | None = None
        async for event in self.stream_preview(target, options):
            if event.is_terminal:
                result = event.result
        if result is None:
            return PreviewResult(status="refused", reason="Generation ended without a result")
        return result

    async def fetch_diagnostics(self, target: ScheduleTarget) -> DiagnosticsReport | None:
        try:
            return await self.client.diagnostics(target.academic_year_id, SessionType(target.session_type).value)
        except AppError as exc:
            # Diagnostics only enrich the failure report.
            logger.warning("Diagnostics unavailable: %s", exc.message)
            return None

    async def _lookup_tables(self) -> tuple[dict[int, str], dict[int, str]]:
        subjects_raw, teachers_raw = await asyncio.gather(
            self.client.list_subjects(),
            self.client.list_teachers(),
            return_exceptions=True,
        )
        subjects: dict[int, str] = {}
        teachers: dict[int, str] = {}
        if isinstance(subjects_raw, AppError):
            logger.warning("Subject names unavailable: %s", subjects_raw.message)
        elif isinstance(subjects_raw, BaseException):
            raise subjects_raw
        else:
            subjects = {s["id"]: s.get("subject_name") for s in subjects_raw if "id" in s}
        if isinstance(teachers_raw, AppError):
            logger.warning("Teacher names unavailable: %s", teachers_raw.message)
        elif isinstance(teachers_raw, BaseException):
            raise teachers_raw
        else:
            teachers = {t["id"]: t.get("full_name") for t in teachers_raw if "id" in t}
        return subjects, teachers

    async def map_to_assignments(self, raw_entries: list[dict]) -> list[Assignment]:
        if not raw_entries:
            return []
        subjects, teachers = await self._lookup_tables()
        assignments = []
        for index, entry in enumerate(raw_entries):
            assignment = normalize_entry(entry, index, subjects, teachers)
            if assignment is not None:
                assignments.append(assignment)
        return assignments

    async def commit_preview(
        self,
        request: GenerationRequest | dict,
        preview_assignments: list[Assignment],
    ) -> CommitResult:
        """Durably persist a reviewed preview. Refused outside preview_ready/publish_failed."""
        if not self.can_commit:
            return CommitResult(accepted=False, reason=f"Cannot publish while {self.phase.value}")
        if not preview_assignments:
            return CommitResult(accepted=False, reason="No preview to publish")
        try:
            generation_request = GenerationRequest.model_validate(request)
        except ValidationError:
            return CommitResult(accepted=False, reason="Stored generation request is invalid")

        run = self._begin(GenerationPhase.publishing)
        try:
            data = await self.client.save_preview(
                generation_request.commit_payload(),
                [assignment.to_preview_entry() for assignment in preview_assignments],
            )
            if isinstance(data, dict) and data.get("generation_status") == "failed":
                warnings = data.get("warnings") or []
                message = str(warnings[0]) if warnings else "The schedule service could not save the schedule"
                if is_duplicate_name(message):
                    raise DuplicateScheduleNameError(message)
                raise CollaboratorError(message, details={"warnings": warnings})
        except AppError:
            self._settle(run, GenerationPhase.publish_failed)
            raise
        finally:
            self._abandon(run, GenerationPhase.publishing, GenerationPhase.publish_failed)

        self._settle(run, GenerationPhase.published)
        logger.info(
            "Published %d period(s) for class %s",
            len(preview_assignments),
            generation_request.class_id,
        )
        return CommitResult(accepted=True, data=data)
