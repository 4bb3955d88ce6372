from __future__ import annotations

from sqlalchemy.orm import Session

from .models import ActivityLog

DEFAULT_LIMIT = 100


def add_activity(db: Session, message: str) -> ActivityLog:
    """Stage an entry in the caller's transaction; the caller commits."""
    entry = ActivityLog(message=message)
    db.add(entry)
    return entry


def log_activity(db: Session, message: str) -> ActivityLog:
    entry = add_activity(db, message)
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise
    return entry


def get_activity_log(db: Session, limit: int = DEFAULT_LIMIT) -> list[ActivityLog]:
    return (
        db.query(ActivityLog)
        .order_by(ActivityLog.created.desc(), ActivityLog.id.desc())
        .limit(limit)
        .all()
    )
