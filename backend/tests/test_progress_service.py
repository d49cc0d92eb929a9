"""Tests for learner progress: level, streak and lesson unlocks."""

import pytest

from app.models import ActivityLog, UserGrammarState, UserProgress
from app.schemas import (
    CoachResult,
    GrammarResult,
    SentenceResult,
    SessionResult,
    TransferResult,
    VocabResult,
)
from app.services.progress_service import (
    apply_session_result,
    check_and_advance_progress,
    get_lesson_progress,
    get_recent_accuracies,
    get_user_progress,
    jump_to_lesson,
    update_user_progress,
)


def _result(level_change="pause"):
    return SessionResult(
        stars=3,
        grammar=GrammarResult(correct=2, total=3),
        transfer=TransferResult(correct=1, total=2),
        vocab=VocabResult(accuracy=0.5, avg_rt_ms=2000),
        sentence=SentenceResult(passed=1, total=2, key_point_hit_rate=0.5),
        level_change=level_change,
        coach=CoachResult(source="offline", summary=""),
    )


def _mastery(db, **masteries):
    for key, value in masteries.items():
        db.add(UserGrammarState(grammar_id=int(key[1:]), mastery=value))
    db.commit()


def _progress(db, **fields):
    defaults = dict(
        id=1, current_lesson_id=25, current_grammar_index=0, current_level=1,
        streak_days=0, max_streak_days=0,
    )
    defaults.update(fields)
    db.add(UserProgress(**defaults))
    db.commit()


class TestUserProgress:
    def test_created_lazily_with_defaults(self, db_session):
        progress = get_user_progress(db_session)
        assert progress.id == 1
        assert progress.current_lesson_id == 25
        assert progress.current_grammar_index == 0
        assert progress.current_level == 1
        assert db_session.query(UserProgress).count() == 1
        assert get_user_progress(db_session) is progress

    def test_update_rejects_unknown_fields(self, db_session):
        update_user_progress(db_session, current_level=4)
        assert get_user_progress(db_session).current_level == 4
        with pytest.raises(AttributeError):
            update_user_progress(db_session, favourite_colour="blue")


class TestApplySessionResult:
    def test_first_session_starts_streak(self, db_session):
        progress = apply_session_result(db_session, _result(), "2026-10-18")
        assert progress.streak_days == 1
        assert progress.max_streak_days == 1
        assert progress.last_active_date == "2026-10-18"

    def test_consecutive_day_extends_streak(self, db_session):
        _progress(db_session, streak_days=6, max_streak_days=6, last_active_date="2026-10-17")
        progress = apply_session_result(db_session, _result(), "2026-10-18")
        assert progress.streak_days == 7
        assert progress.max_streak_days == 7

    def test_gap_resets_streak_but_keeps_max(self, db_session):
        _progress(db_session, streak_days=6, max_streak_days=9, last_active_date="2026-10-15")
        progress = apply_session_result(db_session, _result(), "2026-10-18")
        assert progress.streak_days == 1
        assert progress.max_streak_days == 9

    def test_same_day_does_not_double_count(self, db_session):
        _progress(db_session, streak_days=3, max_streak_days=3, last_active_date="2026-10-18")
        progress = apply_session_result(db_session, _result(), "2026-10-18")
        assert progress.streak_days == 3

    def test_level_up_and_cap(self, db_session):
        _progress(db_session, current_level=9)
        assert apply_session_result(db_session, _result("up"), "2026-10-18").current_level == 10
        assert apply_session_result(db_session, _result("up"), "2026-10-19").current_level == 10

        logged = db_session.query(ActivityLog).filter(ActivityLog.event_type == "level_changed").all()
        assert len(logged) == 1
        assert logged[0].detail_json == {"from": 9, "to": 10, "date": "2026-10-18"}

    def test_level_down_floor(self, db_session):
        _progress(db_session, current_level=1)
        assert apply_session_result(db_session, _result("down"), "2026-10-18").current_level == 1


class TestRecentAccuracies:
    def test_newest_first_before_date(self, db_session, sessions):
        sessions.completed("2026-10-15", grammar=(1, 2))
        sessions.completed("2026-10-16", grammar=(3, 4))
        sessions.completed("2026-10-17", grammar=(0, 0))
        sessions.completed("2026-10-18", grammar=(1, 1))

        assert get_recent_accuracies(db_session, 2, before_date="2026-10-18") == [0.75, 0.5]

    def test_mixes_transfer_and_sentences(self, db_session, sessions):
        sessions.completed("2026-10-16", grammar=(2, 3), transfer=(1, 2), sentences=(1, 1))
        assert get_recent_accuracies(db_session, 5) == [pytest.approx(4 / 6)]


class TestCheckAndAdvance:
    def test_moves_grammar_cursor_past_mastered(self, db_session, content):
        content.lesson(25, grammar_ids=[101, 102, 103])
        _progress(db_session)
        _mastery(db_session, g101=60, g102=55)

        assert check_and_advance_progress(db_session) is None
        assert get_user_progress(db_session).current_grammar_index == 2

    def test_unlocks_next_lesson_when_mastered(self, db_session, content):
        content.lesson(25, grammar_ids=[101, 102])
        content.lesson(26)
        content.lesson(27, grammar_ids=[301])
        _progress(db_session, current_grammar_index=1)
        _mastery(db_session, g101=60, g102=80)

        assert check_and_advance_progress(db_session) == 27
        progress = get_user_progress(db_session)
        assert progress.current_lesson_id == 27
        assert progress.current_grammar_index == 0

        entry = db_session.query(ActivityLog).filter(ActivityLog.event_type == "lesson_unlocked").one()
        assert entry.detail_json["reason"] == "mastered"

    def test_unlocks_after_accuracy_streak(self, db_session, content, sessions):
        content.lesson(25, grammar_ids=[101, 102])
        content.lesson(26, grammar_ids=[201])
        _progress(db_session)
        for day in ("2026-10-15", "2026-10-16", "2026-10-17"):
            sessions.completed(day, grammar=(3, 3))

        assert check_and_advance_progress(db_session) == 26
        entry = db_session.query(ActivityLog).filter(ActivityLog.event_type == "lesson_unlocked").one()
        assert entry.detail_json["reason"] == "accuracy_streak"

    def test_streak_broken_by_low_accuracy(self, db_session, content, sessions):
        content.lesson(25, grammar_ids=[101])
        content.lesson(26, grammar_ids=[201])
        _progress(db_session)
        sessions.completed("2026-10-15", grammar=(3, 3))
        sessions.completed("2026-10-16", grammar=(2, 3))
        sessions.completed("2026-10-17", grammar=(3, 3))

        assert check_and_advance_progress(db_session) is None
        assert get_user_progress(db_session).current_lesson_id == 25

    def test_streak_counts_only_current_lesson(self, db_session, content, sessions):
        content.lesson(25, grammar_ids=[101])
        content.lesson(26, grammar_ids=[201])
        _progress(db_session)
        sessions.completed("2026-10-15", lesson_id=24, grammar=(3, 3))
        sessions.completed("2026-10-16", grammar=(3, 3))
        sessions.completed("2026-10-17", grammar=(3, 3))

        assert check_and_advance_progress(db_session) is None

    def test_last_lesson_stays(self, db_session, content):
        content.lesson(25, grammar_ids=[101])
        _progress(db_session)
        _mastery(db_session, g101=90)

        assert check_and_advance_progress(db_session) is None
        assert get_user_progress(db_session).current_lesson_id == 25


class TestJumpAndLessonProgress:
    def test_jump(self, db_session, content):
        content.lesson(30, grammar_ids=[401])
        _progress(db_session, current_grammar_index=2)

        progress = jump_to_lesson(db_session, 30)
        assert progress.current_lesson_id == 30
        assert progress.current_grammar_index == 0
        assert db_session.query(ActivityLog).filter(ActivityLog.event_type == "lesson_jump").count() == 1

    def test_jump_to_empty_lesson_rejected(self, db_session, content):
        content.lesson(31)
        with pytest.raises(LookupError):
            jump_to_lesson(db_session, 31)
        with pytest.raises(LookupError):
            jump_to_lesson(db_session, 99)

    def test_lesson_progress(self, db_session, content):
        content.lesson(25, grammar_ids=[101, 102, 103])
        _mastery(db_session, g101=80, g102=20)

        summary = get_lesson_progress(db_session, 25)
        assert summary.grammar_count == 3
        assert summary.mastered_count == 1
        assert summary.avg_mastery == pytest.approx(33.3)
        assert get_lesson_progress(db_session, 99) is None
