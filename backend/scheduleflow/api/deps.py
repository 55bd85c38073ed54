from collections.abc import Generator

from fastapi import Depends, Request
from sqlalchemy.orm import Session, sessionmaker

from scheduleflow.core.config import get_settings
from scheduleflow.db.session import SessionLocal
from scheduleflow.services.conflict_service import ConflictClassifier
from scheduleflow.services.draft_cache import DraftCacheStore
from scheduleflow.services.generation import GenerationOrchestrator
from scheduleflow.services.schedules_client import SchedulesClient
from scheduleflow.services.workflow import ScheduleWorkflow


def get_session_factory() -> sessionmaker[Session]:
    return SessionLocal


def get_db(session_factory: sessionmaker[Session] = Depends(get_session_factory)) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def get_schedules_client(request: Request) -> SchedulesClient:
    client = getattr(request.app.state, "schedules_client", None)
    if client is None:
        client = SchedulesClient.from_settings(get_settings())
        request.app.state.schedules_client = client
    return client


def get_workflow(
    request: Request,
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
    client: SchedulesClient = Depends(get_schedules_client),
) -> ScheduleWorkflow:
    """The single active workflow, created on first use and kept on the app."""
    workflow = getattr(request.app.state, "workflow", None)
    if workflow is None:
        settings = get_settings()
        workflow = ScheduleWorkflow(
            DraftCacheStore.from_settings(session_factory, settings),
            GenerationOrchestrator(client, settings),
            ConflictClassifier(client),
            client,
            hidden_preview_max_minutes=settings.hidden_preview_max_minutes,
        )
        request.app.state.workflow = workflow
    return workflow
