"""Activity log for progression milestones, content imports and manual operations."""

from datetime import datetime, timezone

from sqlalchemy.orm import Session

from app.models import ActivityLog


def log_activity(
    db: Session,
    event_type: str,
    summary: str,
    detail: dict | None = None,
    commit: bool = True,
) -> ActivityLog:
    entry = ActivityLog(
        event_type=event_type,
        summary=summary,
        detail_json=detail,
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    if commit:
        db.commit()
    return entry


def recent_activity(db: Session, event_type: str | None = None, limit: int = 20) -> list[ActivityLog]:
    query = db.query(ActivityLog)
    if event_type:
        query = query.filter(ActivityLog.event_type == event_type)
    return query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).all()
