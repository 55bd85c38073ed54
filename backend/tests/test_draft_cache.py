import json

from scheduleflow.models.draft_store import DraftStoreEntry
from scheduleflow.schemas.draft import Assignment, ScheduleDraft, ScheduleTarget, WorkflowStep


def _draft(target, **overrides):
    values = {"schedule_data": target, "current_step": WorkflowStep.validate}
    values.update(overrides)
    draft = ScheduleDraft(**values)
    draft.step_status[WorkflowStep.filter] = True
    return draft


def _raw(session_factory, key="schedule_creation_autosave"):
    with session_factory() as db:
        entry = db.get(DraftStoreEntry, key)
        return entry.payload if entry is not None else None


def _write_raw(session_factory, payload, key="schedule_creation_autosave"):
    with session_factory() as db:
        db.add(DraftStoreEntry(storage_key=key, payload=payload))
        db.commit()


def test_save_stamps_timestamp_and_round_trips(store, target, clock, session_factory):
    saved = store.save(_draft(target))
    assert saved.timestamp == clock.now

    stored = json.loads(_raw(session_factory))
    assert stored["academicYearId"] == 2025
    assert stored["sessionType"] == "morning"
    assert stored["currentStep"] == "validate"
    assert stored["stepStatus"]["filter"] is True
    assert stored["scheduleData"]["classId"] == 3

    loaded = store.load()
    assert loaded is not None
    assert loaded.schedule_data.same_target(target)
    assert loaded.current_step is WorkflowStep.validate


def test_load_discards_draft_older_than_a_day(store, target, clock, session_factory):
    store.save(_draft(target))
    clock.advance(24 * 60 + 1)

    assert store.load() is None
    assert _raw(session_factory) is None


def test_load_keeps_draft_just_inside_the_age_limit(store, target, clock):
    store.save(_draft(target))
    clock.advance(24 * 60 - 1)
    assert store.load() is not None


def test_load_purges_unparseable_entry(store, session_factory):
    _write_raw(session_factory, "{not json")

    assert store.load() is None
    assert _raw(session_factory) is None


def test_load_purges_entry_missing_required_fields(store, session_factory, clock):
    _write_raw(session_factory, json.dumps({"timestamp": clock.now, "stepStatus": {}, "scheduleData": None}))

    assert store.load() is None
    assert _raw(session_factory) is None


def test_load_purges_entry_that_fails_model_validation(store, session_factory, clock):
    payload = {
        "timestamp": clock.now,
        "scheduleData": {"academicYearId": 2025, "sessionType": "night", "classId": 3},
        "stepStatus": {"filter": True},
    }
    _write_raw(session_factory, json.dumps(payload))

    assert store.load() is None
    assert _raw(session_factory) is None


def test_clear_is_idempotent(store, target):
    store.save(_draft(target))

    assert store.clear() is True
    assert store.load() is None
    assert store.clear() is False
    assert store.load() is None


def test_context_change_clears_draft_from_another_year(store, session_factory, clock):
    old_target = ScheduleTarget(academic_year_id=2024, session_type="morning", class_id=3)
    store.save(_draft(old_target))

    assert store.invalidate_if_context_changed(2025, "morning") is True
    assert _raw(session_factory) is None
    assert store.load() is None


def test_context_change_clears_draft_from_another_session(store, target):
    store.save(_draft(target))

    assert store.invalidate_if_context_changed(2025, "evening") is True
    assert store.load() is None


def test_matching_context_keeps_draft(store, target):
    store.save(_draft(target))

    assert store.invalidate_if_context_changed(2025, "morning") is False
    loaded = store.load()
    assert loaded is not None
    assert (loaded.academic_year_id, loaded.session_type.value) == (2025, "morning")


def test_context_check_without_context_is_a_no_op(store, target):
    store.save(_draft(target))
    assert store.invalidate_if_context_changed(None, None) is False
    assert store.load() is not None


def test_context_check_purges_corrupt_entry_without_reporting_a_reset(store, session_factory):
    _write_raw(session_factory, "[]")

    assert store.invalidate_if_context_changed(2025, "morning") is False
    assert _raw(session_factory) is None


def test_cache_age_minutes(store, target, clock):
    assert store.cache_age_minutes() is None
    store.save(_draft(target))
    clock.advance(15)
    assert store.cache_age_minutes() == 15


def test_validate_consistency_reports_mismatch(store, target):
    assert store.validate_consistency(2025, "morning").reason == "No cache found"

    store.save(_draft(target))
    ok = store.validate_consistency(2025, "morning")
    assert ok.is_valid
    assert ok.draft is not None

    wrong_year = store.validate_consistency(2026, "morning")
    assert not wrong_year.is_valid
    assert "Academic year mismatch" in wrong_year.reason

    wrong_session = store.validate_consistency(2025, "evening")
    assert not wrong_session.is_valid
    assert "Session type mismatch" in wrong_session.reason


def test_reset_fields_keeps_only_named_fields(store, target):
    preview = [Assignment(id="1", day=1, period=1, subject_name="Mathematics", teacher_name="Mr. Adel")]
    store.save(
        _draft(
            target,
            current_step=WorkflowStep.view,
            preview_assignments=preview,
            is_preview_mode=True,
            generation_request={"name": "Morning schedule - 2025"},
        )
    )

    store.reset_fields(["scheduleData"])

    loaded = store.load()
    assert loaded is not None
    assert loaded.schedule_data.same_target(target)
    assert loaded.current_step is WorkflowStep.filter
    assert loaded.preview_assignments is None
    assert loaded.generation_request is None
    assert not any(loaded.step_status.values())


def test_reset_fields_without_kept_fields_clears(store, target, session_factory):
    store.save(_draft(target))
    store.reset_fields([])
    assert _raw(session_factory) is None
