"""Persistence for daily training sessions (one row per calendar date)."""

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.models import TrainingSession
from app.schemas import SessionResult, SessionState
from app.services.drill_addressing import (
    FixedDrillRef,
    InvalidDrillId,
    ReviewDrillRef,
    parse_drill_id,
)

logger = logging.getLogger(__name__)

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"


def get_session_for_date(db: Session, date: str) -> Optional[TrainingSession]:
    return db.query(TrainingSession).filter(TrainingSession.date == date).first()


def get_open_session_for_date(db: Session, date: str) -> Optional[TrainingSession]:
    return (
        db.query(TrainingSession)
        .filter(TrainingSession.date == date, TrainingSession.status == STATUS_IN_PROGRESS)
        .first()
    )


def get_completed_session_for_date(db: Session, date: str) -> Optional[TrainingSession]:
    return (
        db.query(TrainingSession)
        .filter(TrainingSession.date == date, TrainingSession.status == STATUS_COMPLETED)
        .first()
    )


def create_session(db: Session, state: SessionState) -> TrainingSession:
    plan = state.plan
    row = TrainingSession(
        date=plan.date,
        planned_lesson_id=plan.lesson_id,
        planned_grammar_id=plan.grammar_id,
        planned_level=plan.level,
        status=STATUS_IN_PROGRESS,
        state_json=state.model_dump(mode="json"),
        started_at=datetime.now(timezone.utc),
    )
    db.add(row)
    db.commit()
    return row


def save_session(db: Session, row: TrainingSession, state: SessionState) -> None:
    row.state_json = state.model_dump(mode="json")
    db.commit()


def complete_session(
    db: Session,
    row: TrainingSession,
    state: SessionState,
    result: SessionResult,
    commit: bool = True,
) -> None:
    row.state_json = state.model_dump(mode="json")
    row.result_json = result.model_dump(mode="json")
    row.stars = result.stars
    row.status = STATUS_COMPLETED
    row.finished_at = datetime.now(timezone.utc)
    if commit:
        db.commit()
    else:
        db.flush()


def parse_state(row: TrainingSession) -> SessionState:
    return SessionState.model_validate(row.state_json)


def parse_result(row: TrainingSession) -> Optional[SessionResult]:
    if not row.result_json:
        return None
    try:
        return SessionResult.model_validate(row.result_json)
    except ValidationError:
        logger.warning("Unreadable result_json on session %s", row.id)
        return None


def get_recent_completed_sessions(
    db: Session,
    limit: Optional[int] = None,
    lesson_id: Optional[int] = None,
    before_date: Optional[str] = None,
) -> list[TrainingSession]:
    """Completed sessions, newest date first, optionally only those dated before `before_date`."""
    query = db.query(TrainingSession).filter(TrainingSession.status == STATUS_COMPLETED)
    if lesson_id is not None:
        query = query.filter(TrainingSession.planned_lesson_id == lesson_id)
    if before_date is not None:
        query = query.filter(TrainingSession.date < before_date)
    query = query.order_by(TrainingSession.date.desc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def get_completed_drill_ids(db: Session, grammar_id: int) -> set[str]:
    """Fixed drill ids of `grammar_id` answered in any completed session."""
    rows = (
        db.query(TrainingSession)
        .filter(TrainingSession.status == STATUS_COMPLETED)
        .all()
    )
    completed: set[str] = set()
    for row in rows:
        try:
            state = parse_state(row)
        except ValidationError:
            logger.warning("Unreadable state_json on session %s", row.id)
            continue
        for answer in state.plan.step1.answers + state.plan.step2.answers:
            if answer.skipped:
                continue
            try:
                ref = parse_drill_id(answer.question_id)
            except InvalidDrillId:
                continue
            if isinstance(ref, FixedDrillRef) and ref.grammar_id == grammar_id:
                completed.add(answer.question_id)
            elif isinstance(ref, ReviewDrillRef) and ref.grammar_id == grammar_id:
                completed.add(ref.original_id)
    return completed
