from __future__ import annotations

import logging

from sqlalchemy import inspect
from sqlalchemy.engine import Engine

import scheduleflow.models  # noqa: F401
from scheduleflow.db.base import Base
from scheduleflow.db.session import engine as default_engine

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "draft_store": {"storage_key", "payload", "updated_at"},
}


def missing_schema(bind: Engine) -> tuple[list[str], dict[str, list[str]]]:
    missing_tables: list[str] = []
    missing_columns: dict[str, list[str]] = {}
    with bind.connect() as connection:
        inspector = inspect(connection)
        table_names = set(inspector.get_table_names())
        for table_name, columns in REQUIRED_COLUMNS.items():
            if table_name not in table_names:
                missing_tables.append(table_name)
                continue
            existing = {item["name"] for item in inspector.get_columns(table_name)}
            missing = sorted(columns - existing)
            if missing:
                missing_columns[table_name] = missing
    return missing_tables, missing_columns


def ensure_runtime_schema(bind: Engine | None = None) -> None:
    bind = bind or default_engine
    try:
        # Ensure missing tables are present; column changes go through Alembic.
        Base.metadata.create_all(bind=bind)
        missing_tables, missing_columns = missing_schema(bind)
    except Exception as exc:  # pragma: no cover - runtime environment dependent
        logger.exception("Runtime schema bootstrap failed")
        raise RuntimeError("Runtime schema bootstrap failed") from exc
    if missing_tables or missing_columns:
        raise RuntimeError(
            f"Database schema is out of date (tables: {missing_tables}, columns: {missing_columns}); "
            "run `alembic upgrade head`"
        )
