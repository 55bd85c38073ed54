"""Persistence of the single in-progress schedule draft.

The store survives reloads and restarts of the presentation layer but is not
durable storage: anything stale, malformed, or scoped to another academic
year/session is purged instead of being handed back to the workflow.
"""
from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from scheduleflow.core.config import Settings
from scheduleflow.models.draft_store import DraftStoreEntry
from scheduleflow.schemas.draft import ScheduleDraft, SessionType, WorkflowStep, empty_step_status

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60_000
REQUIRED_FIELDS = ("scheduleData", "stepStatus")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class CacheConsistency:
    is_valid: bool
    reason: str | None = None
    draft: ScheduleDraft | None = None


class DraftCacheStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        storage_key: str = "schedule_creation_autosave",
        max_age_minutes: int = 24 * 60,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._session_factory = session_factory
        self.storage_key = storage_key
        self.max_age_minutes = max_age_minutes
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        session_factory: sessionmaker[Session],
        settings: Settings,
        clock: Callable[[], int] = now_ms,
    ) -> "DraftCacheStore":
        return cls(
            session_factory,
            storage_key=settings.draft_storage_key,
            max_age_minutes=settings.draft_max_age_minutes,
            clock=clock,
        )

    def _read_raw(self) -> str | None:
        with self._session_factory() as db:
            entry = db.get(DraftStoreEntry, self.storage_key)
            return entry.payload if entry is not None else None

    def _write_raw(self, payload: str) -> None:
        with self._session_factory() as db:
            entry = db.get(DraftStoreEntry, self.storage_key)
            if entry is None:
                db.add(DraftStoreEntry(storage_key=self.storage_key, payload=payload))
            else:
                entry.payload = payload
            db.commit()

    def save(self, draft: ScheduleDraft) -> ScheduleDraft:
        """Persist the whole draft with a fresh timestamp and return the stamped copy."""
        stamped = draft.model_copy(update={"timestamp": self._clock()})
        payload = stamped.model_dump(mode="json", by_alias=True)
        self._write_raw(json.dumps(payload, ensure_ascii=False))
        return stamped

    def load(self) -> ScheduleDraft | None:
        raw = self._read_raw()
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable schedule draft under %s", self.storage_key)
            self.clear()
            return None

        reason = self.validation_error(data)
        if reason is not None:
            logger.info("Discarding cached schedule draft: %s", reason)
            self.clear()
            return None

        try:
            return ScheduleDraft.model_validate(data)
        except ValidationError as exc:
            logger.warning("Discarding malformed schedule draft: %d validation error(s)", exc.error_count())
            self.clear()
            return None

    def clear(self) -> bool:
        """Remove the stored draft. Returns whether anything was removed."""
        with self._session_factory() as db:
            entry = db.get(DraftStoreEntry, self.storage_key)
            if entry is None:
                return False
            db.delete(entry)
            db.commit()
        return True

    def validation_error(self, data: object) -> str | None:
        if not isinstance(data, dict):
            return "stored value is not an object"
        timestamp = data.get("timestamp")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool) or timestamp <= 0:
            return "missing timestamp"
        age_minutes = (self._clock() - timestamp) / MS_PER_MINUTE
        if age_minutes > self.max_age_minutes:
            return f"expired after {age_minutes:.0f} minutes"
        missing = [name for name in REQUIRED_FIELDS if data.get(name) is None]
        if missing:
            return f"missing {', '.join(missing)}"
        return None

    def is_valid(self, data: object) -> bool:
        return self.validation_error(data) is None

    def invalidate_if_context_changed(
        self,
        current_academic_year_id: int | None,
        current_session_type: SessionType | str | None,
    ) -> bool:
        """Clear the draft when it belongs to another academic year or session.

        Returns True only when a scoped draft was removed, so the caller knows
        to reset its in-memory state as well.
        """
        if not current_academic_year_id and not current_session_type:
            return False
        raw = self._read_raw()
        if raw is None:
            return False
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable schedule draft under %s", self.storage_key)
            self.clear()
            return False
        if not isinstance(data, dict):
            self.clear()
            return False

        cached_year = data.get("academicYearId")
        cached_session = data.get("sessionType")
        if current_academic_year_id and cached_year != current_academic_year_id:
            logger.info(
                "Schedule draft cleared: academic year changed from %s to %s",
                cached_year,
                current_academic_year_id,
            )
            self.clear()
            return True
        session_value = SessionType(current_session_type).value if current_session_type else None
        if session_value and cached_session != session_value:
            logger.info(
                "Schedule draft cleared: session type changed from %s to %s",
                cached_session,
                session_value,
            )
            self.clear()
            return True
        return False

    def cache_age_minutes(self) -> float | None:
        raw = self._read_raw()
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return (self._clock() - data["timestamp"]) / MS_PER_MINUTE
        except (json.JSONDecodeError, KeyError, TypeError):
            return None

    def validate_consistency(
        self,
        current_academic_year_id: int | None,
        current_session_type: SessionType | str | None,
    ) -> CacheConsistency:
        cached = self.load()
        if cached is None:
            return CacheConsistency(False, "No cache found")
        if current_academic_year_id and cached.academic_year_id != current_academic_year_id:
            return CacheConsistency(
                False,
                f"Academic year mismatch: cached={cached.academic_year_id}, current={current_academic_year_id}",
            )
        if current_session_type:
            current = SessionType(current_session_type)
            if cached.session_type != current:
                cached_value = cached.session_type.value if cached.session_type else None
                return CacheConsistency(
                    False,
                    f"Session type mismatch: cached={cached_value}, current={current.value}",
                )
        return CacheConsistency(True, draft=cached)

    def reset_fields(self, fields_to_keep: Iterable[str]) -> None:
        """Rewrite the entry back to a blank draft, keeping only the named (stored) fields."""
        cached = self.load()
        if cached is None:
            return
        data = cached.model_dump(mode="json", by_alias=True)
        kept = {name: data[name] for name in fields_to_keep if name in data}
        if not kept:
            self.clear()
            return

        reset = {
            "scheduleData": None,
            "currentStep": WorkflowStep.filter.value,
            "stepStatus": {step.value: done for step, done in empty_step_status().items()},
            "previewData": None,
            "scheduleAssignments": [],
            "generationRequest": None,
            "isPreviewMode": False,
            "timestamp": self._clock(),
            "academicYearId": data.get("academicYearId"),
            "sessionType": data.get("sessionType"),
        }
        reset.update(kept)
        self._write_raw(json.dumps(reset, ensure_ascii=False))
