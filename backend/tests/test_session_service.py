"""Tests for the daily session state machine."""

import json
import random
from datetime import datetime, timedelta, timezone

import pytest

from app.models import GrammarPoint, TrainingSession, UserGrammarState, UserProgress, UserVocabState
from app.services.session_service import (
    SessionStateError,
    get_open_machine,
    get_or_create_session,
    get_session_history,
)

from tests.conftest import count_commits, drill_dict

NOW = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


def _seed(content, vocab=True, sentences=True):
    content.lesson(25, grammar_ids=[101], pack_ids=[501] if vocab else [])
    content.grammar(101, drills=5)
    if vocab:
        for vid in (1, 2, 3, 4):
            content.vocab(vid)
        content.pack(501, [1, 2, 3, 4])
    if sentences:
        content.sentence(1, grammar_ids=[101], key_points=3, blocking=[3])


def _start(db_session, now=NOW):
    return get_or_create_session(db_session, now=now, rng=random.Random(0))


def _answer_questions(machine, selected="a"):
    """Answer and continue through the current Step1/Step2 phase."""
    step = machine.current_step
    while machine.current_step == step:
        machine.answer_question(selected, 1500)
        machine.continue_()


def _wrong_option(question):
    return next(o.id for o in question.options if o.id != question.correct_id)


class TestCreateAndResume:
    def test_creates_session_at_step1(self, db_session, content):
        _seed(content)
        machine = _start(db_session)

        assert machine.current_step == 1
        assert not machine.is_completed
        assert machine.state.plan.date == "2026-10-18"
        assert machine.state.plan.step1.question_ids == ["g101_q0", "g101_q1", "g101_q2"]
        assert db_session.query(TrainingSession).count() == 1

        item = machine.current_item()
        assert item.kind == "drill"
        assert item.drill.drill_id == "g101_q0"

    def test_resume_returns_same_session(self, db_session, content):
        _seed(content)
        first = _start(db_session)
        first.answer_question("a", 1000)

        resumed = _start(db_session, now=NOW + timedelta(hours=3))
        assert resumed.session_id == first.session_id
        assert resumed.current_step == 1
        assert len(resumed.state.plan.step1.answers) == 1
        assert resumed.state.plan.step1.current_index == 0
        assert db_session.query(TrainingSession).count() == 1

    def test_resume_does_not_replan(self, db_session, content):
        _seed(content)
        first = _start(db_session)
        content.grammar(102, drills=5)
        db_session.get(GrammarPoint, 101).drills_json = []
        db_session.commit()

        resumed = _start(db_session)
        assert resumed.state.plan.step1.question_ids == first.state.plan.step1.question_ids

    def test_unreadable_open_state_is_replanned(self, db_session, content):
        _seed(content)
        first = _start(db_session)
        first.row.state_json = {"garbage": True}
        db_session.commit()

        resumed = _start(db_session)
        assert resumed.session_id == first.session_id
        assert resumed.state.plan.grammar_id == 101
        assert resumed.current_step == 1

    def test_new_day_creates_new_session(self, db_session, content):
        _seed(content)
        first = _start(db_session)
        second = _start(db_session, now=NOW + timedelta(days=1))

        assert second.session_id != first.session_id
        assert second.state.plan.date == "2026-10-19"
        assert db_session.query(TrainingSession).count() == 2

    def test_open_machine_requires_session(self, db_session, content):
        _seed(content)
        with pytest.raises(SessionStateError):
            get_open_machine(db_session, now=NOW)
        created = _start(db_session)
        assert get_open_machine(db_session, now=NOW).session_id == created.session_id


class TestQuestionPhases:
    def test_answer_records_without_moving_cursor(self, db_session, content):
        _seed(content)
        machine = _start(db_session)

        out = machine.answer_question("a", 1200)
        assert out.is_correct
        assert out.correct_id == "a"
        assert out.can_continue
        assert out.current_step == 1
        assert machine.state.plan.step1.current_index == 0
        assert db_session.get(UserGrammarState, 101).mastery == 3

    def test_wrong_answer(self, db_session, content):
        _seed(content)
        machine = _start(db_session)

        out = machine.answer_question("c", 1200)
        assert not out.is_correct
        assert out.correct_id == "a"
        state = db_session.get(UserGrammarState, 101)
        assert state.mastery == 0
        assert state.wrong_count_7d == 1

    def test_answer_commits_once(self, db_session, content):
        _seed(content)
        machine = _start(db_session)
        with count_commits(db_session) as counter:
            machine.answer_question("a", 1200)
        assert counter["count"] == 1

    def test_double_answer_rejected(self, db_session, content):
        _seed(content)
        machine = _start(db_session)
        machine.answer_question("a")
        with pytest.raises(SessionStateError):
            machine.answer_question("b")

    def test_concurrent_machines_see_each_others_answers(self, db_session, content):
        _seed(content)
        _start(db_session)
        first = get_open_machine(db_session, now=NOW)
        second = get_open_machine(db_session, now=NOW)

        first.answer_question("a", 900)
        with pytest.raises(SessionStateError):
            second.answer_question("a", 900)

        assert db_session.get(UserGrammarState, 101).mastery == 3
        assert len(second.state.plan.step1.answers) == 1

        first.continue_()
        second.answer_question("a", 900)
        assert db_session.get(UserGrammarState, 101).mastery == 6
        with pytest.raises(SessionStateError):
            first.answer_question("a", 900)
        assert len(first.state.plan.step1.answers) == 2

    def test_continue_requires_answer(self, db_session, content):
        _seed(content)
        machine = _start(db_session)
        with pytest.raises(SessionStateError):
            machine.continue_()

    def test_continue_moves_to_next_question_then_step(self, db_session, content):
        _seed(content)
        machine = _start(db_session)

        for expected_index in (1, 2):
            machine.answer_question("a")
            out = machine.continue_()
            assert not out.advanced_phase
            assert machine.state.plan.step1.current_index == expected_index

        machine.answer_question("a")
        out = machine.continue_()
        assert out.advanced_phase
        assert out.current_step == 2
        assert machine.current_item().drill.drill_id == "g101_q3"

    def test_events_for_other_steps_rejected(self, db_session, content):
        _seed(content)
        machine = _start(db_session)
        with pytest.raises(SessionStateError):
            machine.submit_vocab_answer("a")
        with pytest.raises(SessionStateError):
            machine.submit_sentence(["k0"])

    def test_missing_drill_is_skipped_on_continue(self, db_session, content):
        _seed(content)
        machine = _start(db_session)
        db_session.get(GrammarPoint, 101).drills_json = [drill_dict(101, n) for n in range(1, 5)]
        db_session.commit()

        assert machine.current_item().kind == "empty"
        machine.continue_()

        answers = machine.state.plan.step1.answers
        assert len(answers) == 1
        assert answers[0].skipped
        assert answers[0].question_id == "g101_q0"
        assert machine.state.plan.step1.current_index == 1

    def test_missing_drill_answer_is_skipped(self, db_session, content):
        _seed(content)
        machine = _start(db_session)
        db_session.get(GrammarPoint, 101).drills_json = []
        db_session.commit()

        out = machine.answer_question("a")
        assert out.skipped
        assert not out.is_correct
        assert db_session.get(UserGrammarState, 101) is None

    def test_vocab_sense_id_in_question_step_is_skipped(self, db_session, content):
        _seed(content)
        machine = _start(db_session)
        state = dict(machine.row.state_json)
        plan = dict(state["plan"])
        plan["step1"] = {**plan["step1"], "question_ids": ["rev_v1_sense", "g101_q1"]}
        machine.row.state_json = {**state, "plan": plan}
        db_session.commit()

        machine = get_open_machine(db_session, now=NOW)
        assert machine.current_item().kind == "empty"
        out = machine.answer_question("a", 900)
        assert out.skipped
        assert db_session.get(UserVocabState, 1) is None
        assert db_session.get(UserGrammarState, 101) is None

    def test_review_drill_updates_its_own_grammar(self, db_session, content):
        _seed(content)
        content.grammar(7, lesson_id=24, drills=1)
        db_session.add(UserGrammarState(
            grammar_id=7, mastery=40, next_review_at=(NOW - timedelta(days=1)).replace(tzinfo=None),
        ))
        db_session.commit()

        machine = _start(db_session)
        assert machine.state.plan.step1.question_ids == ["g101_q0", "g101_q1", "rev_g7_g7_q0"]
        for _ in range(2):
            machine.answer_question("a")
            machine.continue_()
        machine.answer_question("a")

        assert db_session.get(UserGrammarState, 7).mastery == 43
        assert db_session.get(UserGrammarState, 101).mastery == 6


class TestVocabAndSentences:
    def test_vocab_phase_auto_advances(self, db_session, content):
        _seed(content)
        machine = _start(db_session)
        _answer_questions(machine)
        _answer_questions(machine)
        assert machine.current_step == 3

        item = machine.current_item()
        assert item.kind == "vocab"
        out = machine.submit_vocab_answer(item.vocab_question.correct_id, 1000)
        assert out.is_correct
        assert out.can_continue
        assert machine.state.plan.step3.current_index == 1

        for _ in range(3):
            question = machine.current_item().vocab_question
            out = machine.submit_vocab_answer(_wrong_option(question), 5000)
            assert not out.is_correct

        assert not out.can_continue
        assert machine.current_step == 4
        step3 = machine.state.plan.step3
        assert (step3.correct, step3.wrong) == (1, 3)
        assert step3.avg_rt_ms == pytest.approx(4000)
        assert db_session.get(UserVocabState, 1).strength == 3

    def test_empty_vocab_step_is_skipped(self, db_session, content):
        _seed(content, vocab=False)
        machine = _start(db_session)
        _answer_questions(machine)
        _answer_questions(machine)
        assert machine.current_step == 4
        assert machine.current_item().kind == "sentence"

    def test_empty_steps_finish_session(self, db_session, content):
        _seed(content, vocab=False, sentences=False)
        machine = _start(db_session)
        _answer_questions(machine)
        machine.answer_question("a")
        out = machine.continue_()
        assert not out.advanced_phase
        machine.answer_question("a")
        out = machine.continue_()

        assert out.advanced_phase
        assert out.current_step == 5
        assert out.result is not None
        assert out.result.stars == 5
        assert machine.is_completed

    def test_sentence_submit_scores_and_finishes(self, db_session, content):
        _seed(content, vocab=False)
        machine = _start(db_session)
        _answer_questions(machine)
        _answer_questions(machine)

        out = machine.submit_sentence(["k0", "k1", "k1", "bogus"])
        assert out.hit_rate == pytest.approx(0.6667)
        assert not out.passed
        assert not out.can_continue
        assert out.current_step == 5
        assert out.result is not None
        assert out.result.sentence.passed == 0
        assert out.result.sentence.total == 1


class TestFinish:
    def test_full_session(self, db_session, content, tmp_path):
        _seed(content)
        machine = _start(db_session)
        _answer_questions(machine)
        _answer_questions(machine)
        while machine.current_step == 3:
            question = machine.current_item().vocab_question
            machine.submit_vocab_answer(question.correct_id, 1000)

        out = machine.submit_sentence(["k0", "k1", "k2"])
        result = out.result
        assert out.passed
        assert result.stars == 5
        assert result.level_change == "up"
        assert result.grammar.correct == 3 and result.grammar.total == 3
        assert result.transfer.correct == 2 and result.transfer.total == 2
        assert result.vocab.accuracy == 1.0
        assert result.coach.source == "offline"

        row = db_session.get(TrainingSession, machine.session_id)
        assert row.status == "completed"
        assert row.stars == 5
        assert row.finished_at is not None

        progress = db_session.get(UserProgress, 1)
        assert progress.current_level == 2
        assert progress.streak_days == 1
        assert progress.last_active_date == "2026-10-18"
        # 5 correct drills plus the passed sentence
        assert db_session.get(UserGrammarState, 101).mastery == 16

        events = []
        for log_file in (tmp_path / "logs").glob("interactions_*.jsonl"):
            events += [json.loads(line)["event"] for line in log_file.read_text().splitlines()]
        assert "session_created" in events
        assert events.count("answer") == 5
        assert events.count("vocab_answer") == 4
        assert events[-1] == "session_complete"

    def test_completed_session_is_read_only(self, db_session, content):
        _seed(content, vocab=False, sentences=False)
        machine = _start(db_session)
        _answer_questions(machine)
        _answer_questions(machine)
        assert machine.is_completed

        resumed = _start(db_session)
        assert resumed.session_id == machine.session_id
        assert resumed.is_completed
        assert resumed.current_item().kind == "summary"
        assert resumed.finish_session().stars == machine.result.stars
        with pytest.raises(SessionStateError):
            resumed.answer_question("a")
        with pytest.raises(SessionStateError):
            resumed.continue_()

    def test_finish_before_summary_rejected(self, db_session, content):
        _seed(content)
        machine = _start(db_session)
        with pytest.raises(SessionStateError):
            machine.finish_session()

    def test_poor_session_lowers_level_and_flags_vocab(self, db_session, content, sessions):
        _seed(content)
        db_session.add(UserProgress(
            id=1, current_lesson_id=25, current_grammar_index=0, current_level=3,
            streak_days=4, max_streak_days=4, last_active_date="2026-10-17",
        ))
        db_session.commit()
        sessions.completed("2026-10-16", grammar=(1, 5))
        sessions.completed("2026-10-17", grammar=(2, 5))

        machine = _start(db_session)
        _answer_questions(machine, selected="d")
        _answer_questions(machine, selected="d")
        while machine.current_step == 3:
            question = machine.current_item().vocab_question
            machine.submit_vocab_answer(_wrong_option(question), 4000)
        result = machine.submit_sentence([]).result

        assert result.stars == 0
        assert result.level_change == "down"
        assert result.vocab.new_blocking_count == 1
        assert result.grammar.top_mistake_grammar_id == 101

        progress = db_session.get(UserProgress, 1)
        assert progress.current_level == 2
        assert progress.streak_days == 5
        assert progress.max_streak_days == 5
        assert db_session.get(UserVocabState, 3).is_blocking

    def test_history(self, db_session, content):
        _seed(content, vocab=False, sentences=False)
        machine = _start(db_session)
        assert get_session_history(db_session, "2026-10-18") is None

        _answer_questions(machine)
        _answer_questions(machine)

        history = get_session_history(db_session, "2026-10-18")
        assert history.status == "completed"
        assert history.current_step == 5
        assert history.result.stars == 5
        assert get_session_history(db_session, "2026-10-17") is None
