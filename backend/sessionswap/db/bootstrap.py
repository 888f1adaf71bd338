from __future__ import annotations

import logging

from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

import sessionswap.models  # noqa: F401
from sessionswap.db.base import Base

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "meeting_templates": {"id", "code", "tutor_id", "subject", "weekday", "start_time", "capacity", "occupancy"},
    "meetings": {"id", "tutor_id", "subject", "start_at", "end_at", "student_ids", "status", "rescheduled_from"},
    "enrollments": {"id", "student_id", "template_id", "status"},
    "substitution_requests": {
        "id",
        "requester_id",
        "origin_meeting_id",
        "origin_template_id",
        "kind",
        "status",
        "chosen_alternative_id",
    },
}


def _ensure_meetings_rescheduled_from_column(engine: Engine) -> None:
    with engine.begin() as connection:
        inspector = inspect(connection)
        if "meetings" not in set(inspector.get_table_names()):
            return
        column_names = {item["name"] for item in inspector.get_columns("meetings")}
        if "rescheduled_from" in column_names:
            return
        column_type = "TIMESTAMP WITH TIME ZONE" if connection.dialect.name == "postgresql" else "DATETIME"
        connection.execute(text(f"ALTER TABLE meetings ADD COLUMN rescheduled_from {column_type}"))
        logger.info("Added meetings.rescheduled_from column")


def missing_schema_items(engine: Engine) -> tuple[list[str], dict[str, list[str]]]:
    with engine.connect() as connection:
        inspector = inspect(connection)
        table_names = set(inspector.get_table_names())
        missing_tables = sorted(name for name in REQUIRED_COLUMNS if name not in table_names)
        missing_columns: dict[str, list[str]] = {}
        for table_name, required in REQUIRED_COLUMNS.items():
            if table_name not in table_names:
                continue
            existing = {item["name"] for item in inspector.get_columns(table_name)}
            missing = sorted(required - existing)
            if missing:
                missing_columns[table_name] = missing
    return missing_tables, missing_columns


def ensure_runtime_schema_compatibility(engine: Engine) -> None:
    try:
        Base.metadata.create_all(bind=engine)
        _ensure_meetings_rescheduled_from_column(engine)
        missing_tables, missing_columns = missing_schema_items(engine)
    except Exception as exc:  # pragma: no cover - runtime environment dependent
        logger.exception("Runtime schema compatibility bootstrap failed")
        raise RuntimeError("Runtime schema compatibility bootstrap failed") from exc

    if missing_tables:
        raise RuntimeError(f"Missing required tables: {', '.join(missing_tables)}")
    if missing_columns:
        flattened = [f"{table}.{column}" for table, columns in missing_columns.items() for column in columns]
        raise RuntimeError(f"Missing required columns: {', '.join(flattened)}")
