"""Learner progress: the singleton UserProgress row, per-item state lookups,
and the end-of-session progression rules (level, streak, lesson unlock)."""

import logging
from datetime import date as date_cls, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models import UserGrammarState, UserProgress, UserVocabState
from app.schemas import LessonProgressOut, SessionResult
from app.services.activity_log import log_activity
from app.services.content_service import get_lesson, get_next_lesson_id
from app.services.interaction_logger import log_interaction
from app.services.scorer import session_accuracy
from app.services.session_store import get_recent_completed_sessions, parse_result

logger = logging.getLogger(__name__)

PROGRESS_ID = 1


def get_user_progress(db: Session) -> UserProgress:
    """The singleton progress row, created on first access."""
    progress = db.get(UserProgress, PROGRESS_ID)
    if progress is None:
        progress = UserProgress(
            id=PROGRESS_ID,
            current_lesson_id=settings.default_lesson_id,
            current_grammar_index=0,
            current_level=1,
            streak_days=0,
            max_streak_days=0,
        )
        db.add(progress)
        db.commit()
    return progress


def update_user_progress(db: Session, commit: bool = True, **fields) -> UserProgress:
    progress = get_user_progress(db)
    for key, value in fields.items():
        if not hasattr(UserProgress, key):
            raise AttributeError(f"UserProgress has no field {key!r}")
        setattr(progress, key, value)
    if commit:
        db.commit()
    else:
        db.flush()
    return progress


def get_grammar_state(db: Session, grammar_id: int) -> Optional[UserGrammarState]:
    return db.get(UserGrammarState, grammar_id)


def get_vocab_state(db: Session, vocab_id: int) -> Optional[UserVocabState]:
    return db.get(UserVocabState, vocab_id)


def get_vocab_states(db: Session, vocab_ids: list[int]) -> dict[int, UserVocabState]:
    if not vocab_ids:
        return {}
    rows = db.query(UserVocabState).filter(UserVocabState.vocab_id.in_(vocab_ids)).all()
    return {r.vocab_id: r for r in rows}


def get_recent_accuracies(db: Session, limit: int, before_date: Optional[str] = None) -> list[float]:
    """Session accuracy of the latest completed sessions, newest first.

    Sessions dated on or after `before_date` and sessions with nothing scored
    are left out.
    """
    accuracies: list[float] = []
    for row in get_recent_completed_sessions(db, before_date=before_date):
        result = parse_result(row)
        if result is None:
            continue
        accuracy = session_accuracy(result)
        if accuracy is not None:
            accuracies.append(accuracy)
        if len(accuracies) == limit:
            break
    return accuracies


def apply_session_result(db: Session, result: SessionResult, session_date: str, commit: bool = True) -> UserProgress:
    """Apply the level verdict and the daily streak for a finished session."""
    progress = get_user_progress(db)

    old_level = progress.current_level
    if result.level_change == "up":
        progress.current_level = min(settings.max_level, old_level + 1)
    elif result.level_change == "down":
        progress.current_level = max(1, old_level - 1)

    if progress.last_active_date != session_date:
        yesterday = (date_cls.fromisoformat(session_date) - timedelta(days=1)).isoformat()
        if progress.last_active_date == yesterday:
            progress.streak_days = (progress.streak_days or 0) + 1
        else:
            progress.streak_days = 1
        progress.last_active_date = session_date
    progress.max_streak_days = max(progress.max_streak_days or 0, progress.streak_days)

    if progress.current_level != old_level:
        log_activity(
            db,
            "level_changed",
            f"Level {old_level} -> {progress.current_level}",
            {"from": old_level, "to": progress.current_level, "date": session_date},
            commit=False,
        )

    if commit:
        db.commit()
    else:
        db.flush()
    return progress


def _grammar_accuracy(result: SessionResult) -> Optional[float]:
    if result.grammar.total == 0:
        return None
    return result.grammar.correct / result.grammar.total


def _has_accuracy_streak(db: Session, lesson_id: int) -> bool:
    needed = settings.unlock_streak_sessions
    rows = get_recent_completed_sessions(db, needed, lesson_id=lesson_id)
    if len(rows) < needed:
        return False
    for row in rows:
        result = parse_result(row)
        accuracy = _grammar_accuracy(result) if result else None
        if accuracy is None or accuracy < settings.unlock_min_grammar_accuracy:
            return False
    return True


def check_and_advance_progress(db: Session, commit: bool = True) -> Optional[int]:
    """Move the grammar cursor past mastered points and unlock the next lesson when earned.

    Returns the newly unlocked lesson id, or None.
    """
    progress = get_user_progress(db)
    lesson = get_lesson(db, progress.current_lesson_id)
    if lesson is None or not lesson.grammar_ids:
        return None

    threshold = settings.mastery_threshold
    masteries = {}
    for grammar_id in lesson.grammar_ids:
        state = get_grammar_state(db, grammar_id)
        masteries[grammar_id] = state.mastery if state else 0

    index = progress.current_grammar_index or 0
    last = len(lesson.grammar_ids) - 1
    while index < last and masteries[lesson.grammar_ids[index]] >= threshold:
        index += 1
    progress.current_grammar_index = min(index, last)

    lesson_mastered = all(m >= threshold for m in masteries.values())
    unlocked = None
    if lesson_mastered or _has_accuracy_streak(db, lesson.lesson_id):
        next_id = get_next_lesson_id(db, lesson.lesson_id)
        if next_id is not None:
            progress.current_lesson_id = next_id
            progress.current_grammar_index = 0
            unlocked = next_id
            reason = "mastered" if lesson_mastered else "accuracy_streak"
            log_activity(
                db,
                "lesson_unlocked",
                f"Unlocked lesson {next_id} after lesson {lesson.lesson_id}",
                {"from": lesson.lesson_id, "to": next_id, "reason": reason},
                commit=False,
            )
            log_interaction("lesson_unlocked", lesson_id=next_id, previous_lesson_id=lesson.lesson_id, reason=reason)
            logger.info("Unlocked lesson %d (%s)", next_id, reason)

    if commit:
        db.commit()
    else:
        db.flush()
    return unlocked


def jump_to_lesson(db: Session, lesson_id: int) -> UserProgress:
    """Move the learner to `lesson_id`. Raises LookupError if it has no grammar content."""
    lesson = get_lesson(db, lesson_id)
    if lesson is None or not lesson.grammar_ids:
        raise LookupError(f"Lesson {lesson_id} has no grammar content")
    progress = update_user_progress(db, commit=False, current_lesson_id=lesson_id, current_grammar_index=0)
    log_activity(db, "lesson_jump", f"Jumped to lesson {lesson_id}", {"to": lesson_id}, commit=False)
    db.commit()
    return progress


def get_lesson_progress(db: Session, lesson_id: int) -> Optional[LessonProgressOut]:
    lesson = get_lesson(db, lesson_id)
    if lesson is None:
        return None
    masteries = []
    for grammar_id in lesson.grammar_ids:
        state = get_grammar_state(db, grammar_id)
        masteries.append(state.mastery if state else 0)
    return LessonProgressOut(
        lesson_id=lesson_id,
        grammar_count=len(masteries),
        mastered_count=sum(1 for m in masteries if m >= settings.mastery_threshold),
        avg_mastery=round(sum(masteries) / len(masteries), 1) if masteries else 0.0,
    )
