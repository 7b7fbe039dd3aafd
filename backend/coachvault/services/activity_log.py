"""Audit log for data-protection decisions, restores, and backup runs."""

from sqlalchemy.orm import Session

from coachvault.models import ActivityLog


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
    )
    db.add(entry)
    if commit:
        db.commit()
    return entry


def recent_activity(db: Session, event_type: str | None = None, limit: int = 50) -> list[ActivityLog]:
    q = db.query(ActivityLog)
    if event_type:
        q = q.filter(ActivityLog.event_type == event_type)
    return q.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc()).limit(limit).all()
