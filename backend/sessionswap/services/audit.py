from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from sessionswap.models.activity_log import ActivityLog

logger = logging.getLogger(__name__)


def log_activity(
    db: Session,
    *,
    actor_id: str | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict | None = None,
) -> ActivityLog:
    """Stage an audit row; it commits or rolls back with the caller's transaction."""
    record = ActivityLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=dict(details or {}),
    )
    db.add(record)
    logger.debug("Activity %s on %s %s by %s", action, entity_type, entity_id, actor_id or "system")
    return record
