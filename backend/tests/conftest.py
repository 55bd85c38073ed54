import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import scheduleflow.models  # noqa: F401
from scheduleflow.api.deps import get_schedules_client, get_session_factory
from scheduleflow.core.config import Settings
from scheduleflow.db.base import Base
from scheduleflow.schemas.draft import ScheduleTarget, WorkflowStep
from scheduleflow.schemas.workflow import StepCompletion
from scheduleflow.main import app
from scheduleflow.services.conflict_service import ConflictClassifier
from scheduleflow.services.draft_cache import DraftCacheStore
from scheduleflow.services.generation import GenerationOrchestrator
from scheduleflow.services.schedules_client import SchedulesClient
from scheduleflow.services.workflow import ScheduleWorkflow

REMOTE_BASE_URL = "http://schedules.test/api"
START_MS = 1_760_000_000_000


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += int(minutes * 60_000)


class FakeSchedulesService:
    """Stands in for the remote schedules API behind an httpx.MockTransport."""

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, method: str, path: str, response=None, *, status_code: int = 200) -> None:
        # `response` may be a JSON body or a callable taking the request.
        self.routes[(method, path)] = (status_code, response)

    def called(self, method: str, path: str) -> list[httpx.Request]:
        return [request for request in self.calls if (request.method, self._path(request)) == (method, path)]

    @staticmethod
    def _path(request: httpx.Request) -> str:
        return request.url.path.removeprefix("/api")

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        route = self.routes.get((request.method, self._path(request)))
        if route is None:
            return httpx.Response(404, json={"detail": "Not Found"})
        status_code, response = route
        if callable(response):
            response = response(request)
            if hasattr(response, "__await__"):
                response = await response
            if isinstance(response, httpx.Response):
                return response
        return httpx.Response(status_code, json=response)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture()
def remote():
    service = FakeSchedulesService()
    service.on("GET", "/subjects/", [{"id": 1, "subject_name": "Mathematics"}, {"id": 2, "subject_name": "Science"}])
    service.on("GET", "/teachers/", [{"id": 7, "full_name": "Mr. Adel"}, {"id": 8, "full_name": "Ms. Huda"}])
    return service


@pytest.fixture()
def schedules_client(remote):
    return SchedulesClient(REMOTE_BASE_URL, transport=httpx.MockTransport(remote.handler))


@pytest.fixture()
def settings():
    return Settings(_env_file=None)


@pytest.fixture()
def store(session_factory, clock):
    return DraftCacheStore(session_factory, clock=clock)


@pytest.fixture()
def orchestrator(schedules_client, settings):
    return GenerationOrchestrator(schedules_client, settings)


@pytest.fixture()
def workflow(store, orchestrator, schedules_client, clock):
    return ScheduleWorkflow(
        store,
        orchestrator,
        ConflictClassifier(schedules_client),
        schedules_client,
        hidden_preview_max_minutes=10,
        clock=clock,
    )


@pytest.fixture()
def client(session_factory, schedules_client):
    app.state.workflow = None
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_schedules_client] = lambda: schedules_client

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    app.state.workflow = None


@pytest.fixture()
def target():
    return ScheduleTarget(
        academic_year_id=2025,
        session_type="morning",
        grade_level="primary",
        grade_number=3,
        class_id=3,
        section="A",
    )


@pytest.fixture()
def preview_response():
    return {
        "success": True,
        "data": {
            "generation_status": "preview",
            "total_assignments_created": 3,
            "warnings": [],
            "preview_data": [
                {"id": 101, "day_of_week": 1, "period_number": 1, "subject_id": 1, "teacher_id": 7, "class_id": 3},
                {
                    "day_of_week": 1,
                    "period_number": 2,
                    "subject": {"id": 2, "subject_name": "Science"},
                    "teacher_name": "Ms. Huda",
                    "class_id": 3,
                },
                {"id": 103, "day_of_week": 2, "period_number": 1, "subject_id": 99, "teacher_id": 99, "class_id": 3},
            ],
            "summary": {"classes": 1},
        },
    }


@pytest.fixture()
def at_generate(workflow, target):
    """A workflow walked through filter, validate and constraints."""
    workflow.restore(2025, "morning")
    assert workflow.complete_step(WorkflowStep.filter, StepCompletion(target=target))
    assert workflow.advance()
    assert workflow.complete_step(WorkflowStep.validate)
    assert workflow.advance()
    assert workflow.complete_step(WorkflowStep.constraints)
    assert workflow.advance()
    assert workflow.current_step is WorkflowStep.generate
    return workflow
