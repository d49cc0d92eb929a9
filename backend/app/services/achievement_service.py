"""Achievement catalogue and idempotent unlock checks, run after every finished session."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.models import GrammarPoint, TrainingSession, UserAchievement, UserGrammarState, UserVocabState
from app.schemas import AchievementOut
from app.services.progress_service import get_user_progress
from app.services.session_store import STATUS_COMPLETED

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementStats:
    best_streak: int
    completed_sessions: int
    five_star_sessions: int
    mastered_grammar: int
    first_lesson_mastered: bool
    seen_vocab: int
    review_sessions: int
    level: int


@dataclass(frozen=True)
class AchievementDef:
    achievement_id: str
    category: str
    name: str
    description: str
    check: Callable[[AchievementStats], bool]


ACHIEVEMENTS: list[AchievementDef] = [
    AchievementDef("streak_3", "streak", "Three in a Row", "Practice 3 days in a row", lambda s: s.best_streak >= 3),
    AchievementDef("streak_7", "streak", "Full Week", "Practice 7 days in a row", lambda s: s.best_streak >= 7),
    AchievementDef("streak_14", "streak", "Fortnight", "Practice 14 days in a row", lambda s: s.best_streak >= 14),
    AchievementDef("streak_30", "streak", "Moon Cycle", "Practice 30 days in a row", lambda s: s.best_streak >= 30),
    AchievementDef("streak_60", "streak", "Unbroken", "Practice 60 days in a row", lambda s: s.best_streak >= 60),
    AchievementDef("streak_100", "streak", "Hundred Days", "Practice 100 days in a row", lambda s: s.best_streak >= 100),

    AchievementDef("stars_first5", "session", "Perfect Session", "Earn 5 stars in a session", lambda s: s.five_star_sessions > 0),
    AchievementDef("sessions_10", "session", "Regular", "Complete 10 sessions", lambda s: s.completed_sessions >= 10),
    AchievementDef("sessions_50", "session", "Veteran", "Complete 50 sessions", lambda s: s.completed_sessions >= 50),
    AchievementDef("sessions_100", "session", "Centurion", "Complete 100 sessions", lambda s: s.completed_sessions >= 100),

    AchievementDef("grammar_first", "mastery", "First Pattern", "Master your first grammar point", lambda s: s.mastered_grammar >= 1),
    AchievementDef("grammar_10", "mastery", "Pattern Collector", "Master 10 grammar points", lambda s: s.mastered_grammar >= 10),
    AchievementDef("grammar_30", "mastery", "Grammar Scholar", "Master 30 grammar points", lambda s: s.mastered_grammar >= 30),
    AchievementDef("lesson_first", "mastery", "First Lesson", "Master every grammar point of the first lesson", lambda s: s.first_lesson_mastered),

    AchievementDef("vocab_50", "vocab", "Word Gatherer", "Practice 50 words", lambda s: s.seen_vocab >= 50),
    AchievementDef("vocab_100", "vocab", "Word Hunter", "Practice 100 words", lambda s: s.seen_vocab >= 100),
    AchievementDef("vocab_200", "vocab", "Wordsmith", "Practice 200 words", lambda s: s.seen_vocab >= 200),

    AchievementDef("first_review", "special", "Looking Back", "Complete a session with review drills", lambda s: s.review_sessions > 0),
    AchievementDef("level_5", "special", "Intermediate", "Reach level 5", lambda s: s.level >= 5),
    AchievementDef("level_10", "special", "Final Form", "Reach level 10", lambda s: s.level >= 10),
]

ACHIEVEMENT_MAP = {a.achievement_id: a for a in ACHIEVEMENTS}


def _count_review_sessions(db: Session) -> int:
    rows = db.query(TrainingSession.state_json).filter(TrainingSession.status == STATUS_COMPLETED).all()
    count = 0
    for (state,) in rows:
        step1 = (state or {}).get("plan", {}).get("step1", {})
        if any(str(a.get("question_id", "")).startswith("rev_") for a in step1.get("answers", [])):
            count += 1
    return count


def _first_lesson_mastered(db: Session) -> bool:
    grammar_ids = [
        gid for (gid,) in
        db.query(GrammarPoint.grammar_id).filter(GrammarPoint.lesson_id == settings.default_lesson_id).all()
    ]
    if not grammar_ids:
        return False
    mastered = (
        db.query(func.count(UserGrammarState.grammar_id))
        .filter(
            UserGrammarState.grammar_id.in_(grammar_ids),
            UserGrammarState.mastery >= settings.mastery_threshold,
        )
        .scalar()
    )
    return mastered == len(grammar_ids)


def gather_stats(db: Session) -> AchievementStats:
    progress = get_user_progress(db)
    completed = db.query(TrainingSession).filter(TrainingSession.status == STATUS_COMPLETED)
    return AchievementStats(
        best_streak=max(progress.streak_days or 0, progress.max_streak_days or 0),
        completed_sessions=completed.count(),
        five_star_sessions=completed.filter(TrainingSession.stars == 5).count(),
        mastered_grammar=(
            db.query(func.count(UserGrammarState.grammar_id))
            .filter(UserGrammarState.mastery >= settings.mastery_threshold)
            .scalar()
        ),
        first_lesson_mastered=_first_lesson_mastered(db),
        seen_vocab=(
            db.query(func.count(UserVocabState.vocab_id))
            .filter(UserVocabState.last_seen_at.isnot(None))
            .scalar()
        ),
        review_sessions=_count_review_sessions(db),
        level=progress.current_level,
    )


def check_achievements(db: Session, commit: bool = True) -> list[AchievementDef]:
    """Unlock every earned achievement not yet unlocked. Returns the new ones."""
    unlocked = {a for (a,) in db.query(UserAchievement.achievement_id).all()}
    stats = gather_stats(db)
    now = datetime.now(timezone.utc)

    newly: list[AchievementDef] = []
    for achievement in ACHIEVEMENTS:
        if achievement.achievement_id in unlocked or not achievement.check(stats):
            continue
        db.add(UserAchievement(
            achievement_id=achievement.achievement_id,
            category=achievement.category,
            unlocked_at=now,
        ))
        newly.append(achievement)

    if newly:
        logger.info("Unlocked achievements: %s", ", ".join(a.achievement_id for a in newly))
    if commit:
        db.commit()
    else:
        db.flush()
    return newly


def list_achievements(db: Session) -> list[AchievementOut]:
    unlocked_at = {r.achievement_id: r.unlocked_at for r in db.query(UserAchievement).all()}
    return [
        AchievementOut(
            achievement_id=a.achievement_id,
            category=a.category,
            name=a.name,
            description=a.description,
            unlocked_at=unlocked_at.get(a.achievement_id),
        )
        for a in ACHIEVEMENTS
    ]
