from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from sessionswap.core.config import get_settings
from sessionswap.db.bootstrap import missing_schema_items
from sessionswap.db.session import check_db_connection, engine

router = APIRouter()

settings = get_settings()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.get("/health/live")
def health_live() -> dict:
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/health/ready")
def health_ready() -> JSONResponse:
    db_ok = check_db_connection()
    missing_tables: list[str] = []
    missing_columns: dict[str, list[str]] = {}
    db_error: str | None = None

    if db_ok:
        try:
            missing_tables, missing_columns = missing_schema_items(engine)
        except Exception as exc:  # pragma: no cover - environment dependent
            db_ok = False
            db_error = str(exc)
    else:
        db_error = "Database connection failed"

    schema_ok = db_ok and not missing_tables and not missing_columns
    ready = db_ok and schema_ok

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
        "scheduling": {
            "timezone": settings.schedule_timezone,
            "standalone_meeting_capacity": settings.standalone_meeting_capacity,
            "alternatives_limit": settings.alternatives_limit,
        },
    }
    return JSONResponse(status_code=200 if ready else 503, content=payload)
