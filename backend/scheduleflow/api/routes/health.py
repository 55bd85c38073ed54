from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from scheduleflow.api.deps import get_db
from scheduleflow.core.config import get_settings
from scheduleflow.db.bootstrap import missing_schema

router = APIRouter()

settings = get_settings()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/health/live")
def health_live() -> dict:
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/health/ready")
def health_ready(db: Session = Depends(get_db)) -> JSONResponse:
    db_ok = True
    missing_tables: list[str] = []
    missing_columns: dict[str, list[str]] = {}
    db_error: str | None = None

    try:
        db.execute(text("SELECT 1"))
        missing_tables, missing_columns = missing_schema(db.get_bind())
    except Exception as exc:  # pragma: no cover - environment dependent
        db_ok = False
        db_error = str(exc)

    schema_ok = not missing_tables and not missing_columns
    remote_configured = bool(settings.remote_api_base_url)
    ready = db_ok and schema_ok and remote_configured

    payload = {
        "status": "ok" if ready else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "database": {
            "ok": db_ok,
            "schema_ok": schema_ok,
            "missing_tables": missing_tables,
            "missing_columns": missing_columns,
            "error": db_error,
        },
        "schedule_service": {
            "configured": remote_configured,
            "base_url": settings.remote_api_base_url,
            "authenticated": bool(settings.remote_api_token),
            "timeout_seconds": settings.remote_api_timeout_seconds,
        },
    }
    return JSONResponse(status_code=200 if ready else 503, content=payload)
