from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Text, DateTime, JSON, Boolean
)

from app.database import Base


# --- Content (read-only after import) ---


class Lesson(Base):
    __tablename__ = "lessons"

    lesson_id = Column(Integer, primary_key=True)
    title = Column(Text, nullable=False, default="")
    goal = Column(Text, nullable=False, default="")
    order_index = Column(Integer, default=0)
    grammar_ids_json = Column(JSON, nullable=False, default=list)  # ordered grammar_point ids
    vocab_pack_ids_json = Column(JSON, nullable=False, default=list)  # ordered vocab_pack ids; first is primary
    tags_json = Column(JSON, nullable=True)


class GrammarPoint(Base):
    __tablename__ = "grammar_points"

    grammar_id = Column(Integer, primary_key=True)
    lesson_id = Column(Integer, nullable=False, index=True)
    name = Column(Text, nullable=False)
    core_rule = Column(Text, nullable=False)
    structure = Column(Text, default="")
    mnemonic = Column(Text, default="")
    examples_json = Column(JSON, nullable=False, default=list)  # [{"text", "hint"}]
    counter_examples_json = Column(JSON, nullable=False, default=list)  # [{"text", "hint"}]
    drills_json = Column(JSON, nullable=False, default=list)  # ordered fixed drills
    level = Column(Integer, default=1)
    tags_json = Column(JSON, nullable=True)


class Vocab(Base):
    __tablename__ = "vocab"

    vocab_id = Column(Integer, primary_key=True)
    surface = Column(Text, nullable=False)
    reading = Column(Text, nullable=False, default="")
    meanings_json = Column(JSON, nullable=False, default=list)
    level = Column(Integer, default=1, index=True)
    tags_json = Column(JSON, nullable=False, default=list)  # may include "fun"


class VocabPack(Base):
    __tablename__ = "vocab_packs"

    pack_id = Column(Integer, primary_key=True)
    name = Column(Text, nullable=False, default="")
    pack_type = Column(String(20), default="lesson")  # lesson/immersive/blocking/review
    lesson_id = Column(Integer, nullable=True, index=True)
    vocab_ids_json = Column(JSON, nullable=False, default=list)
    level = Column(Integer, default=1)


class Sentence(Base):
    __tablename__ = "sentences"

    sentence_id = Column(Integer, primary_key=True)
    text = Column(Text, nullable=False)
    translation = Column(Text, nullable=True)
    style_tag = Column(String(20), nullable=False, index=True)  # immersive/textbook/...
    lesson_id = Column(Integer, nullable=True, index=True)
    level = Column(Integer, default=1)
    grammar_ids_json = Column(JSON, nullable=False, default=list)
    key_points_json = Column(JSON, nullable=False, default=list)  # [{"id", "label"}]
    blocking_vocab_ids_json = Column(JSON, nullable=False, default=list)


# --- Learner state ---


class UserProgress(Base):
    __tablename__ = "user_progress"

    id = Column(Integer, primary_key=True)  # singleton row, id=1
    current_lesson_id = Column(Integer, nullable=False)
    current_grammar_index = Column(Integer, nullable=False, default=0)
    current_level = Column(Integer, nullable=False, default=1)
    streak_days = Column(Integer, nullable=False, default=0)
    max_streak_days = Column(Integer, nullable=False, default=0)
    last_active_date = Column(String(10), nullable=True)  # YYYY-MM-DD


class UserGrammarState(Base):
    __tablename__ = "user_grammar_state"

    grammar_id = Column(Integer, primary_key=True)
    mastery = Column(Integer, nullable=False, default=0)  # 0-100
    last_seen_at = Column(DateTime, nullable=True)
    next_review_at = Column(DateTime, nullable=True, index=True)
    last_wrong_at = Column(DateTime, nullable=True)
    wrong_count_7d = Column(Integer, nullable=False, default=0)
    correct_streak = Column(Integer, nullable=False, default=0)


class UserVocabState(Base):
    __tablename__ = "user_vocab_state"

    vocab_id = Column(Integer, primary_key=True)
    strength = Column(Integer, nullable=False, default=0)  # 0-100
    last_seen_at = Column(DateTime, nullable=True)
    next_review_at = Column(DateTime, nullable=True, index=True)
    last_wrong_at = Column(DateTime, nullable=True)
    is_blocking = Column(Boolean, nullable=False, default=False, server_default="0")
    wrong_count_7d = Column(Integer, nullable=False, default=0)


class TrainingSession(Base):
    __tablename__ = "training_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    date = Column(String(10), unique=True, nullable=False)  # YYYY-MM-DD, one session per day
    planned_lesson_id = Column(Integer, nullable=False)
    planned_grammar_id = Column(Integer, nullable=False, index=True)
    planned_level = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="in_progress", index=True)  # in_progress/completed
    state_json = Column(JSON, nullable=False)
    result_json = Column(JSON, nullable=True)
    stars = Column(Integer, nullable=True)
    started_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    finished_at = Column(DateTime, nullable=True)


class UserAchievement(Base):
    __tablename__ = "user_achievements"

    achievement_id = Column(String(50), primary_key=True)
    category = Column(String(20), nullable=False)
    unlocked_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))


class ActivityLog(Base):
    __tablename__ = "activity_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_type = Column(String(50), nullable=False, index=True)  # level_changed, lesson_unlocked, content_imported, ...
    summary = Column(Text, nullable=False)
    detail_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
