from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from scheduleflow.api.routes import conflicts, health, workflow
from scheduleflow.core.config import configure_logging, get_settings
from scheduleflow.core.exceptions import AppError
from scheduleflow.db.bootstrap import ensure_runtime_schema

settings = get_settings()
configure_logging(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    ensure_runtime_schema()
    yield
    client = getattr(app.state, "schedules_client", None)
    if client is not None:
        await client.aclose()
        app.state.schedules_client = None


async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


app = FastAPI(title=settings.project_name, lifespan=lifespan)
app.add_exception_handler(AppError, app_error_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix=settings.api_prefix, tags=["health"])
app.include_router(workflow.router, prefix=f"{settings.api_prefix}/workflow", tags=["workflow"])
app.include_router(conflicts.router, prefix=f"{settings.api_prefix}/workflow/conflicts", tags=["conflicts"])
