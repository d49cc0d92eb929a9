"""Daily session state machine.

A session walks Step1 -> Step2 -> Step3 -> Step4 -> Step5 (summary), never
backwards. The whole SessionState lives in training_sessions.state_json and
is saved after every event, so a restarted process resumes exactly where the
learner stopped; nothing is re-planned on resume.

Step1/Step2: answer_question() records the current slot, then continue_()
moves to the next slot, or to the next step after the last one.
Step3/Step4: each submission moves the cursor; the step auto-advances when
its list is exhausted. Reaching Step5 finishes the session.

A slot whose drill, word or sentence can no longer be resolved is recorded
as skipped and left out of scoring.

All mutations for the (single) learner are serialized through one lock.
"""

import logging
import random
import threading
import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.models import TrainingSession
from app.schemas import (
    AnswerOut,
    AnswerRecord,
    ContinueOut,
    CurrentItemOut,
    QuestionPhaseState,
    SentenceSubmission,
    SentenceSubmitOut,
    SessionOut,
    SessionResult,
    SessionState,
    StepProgressOut,
)
from app.services.assessment_service import apply_llm_assessment, apply_offline_assessment
from app.services.achievement_service import check_achievements
from app.services.content_service import get_sentence
from app.services.drill_addressing import (
    VocabSenseRef,
    grammar_id_of,
    parse_drill_id,
    resolve_drill,
)
from app.services.generation_service import DrillGenerator
from app.services.interaction_logger import log_interaction
from app.services.plan_service import generate_daily_plan
from app.services.progress_service import (
    apply_session_result,
    check_and_advance_progress,
    get_recent_accuracies,
)
from app.services.review_scheduler import record_grammar_attempt, record_vocab_attempt
from app.services.scorer import LEVEL_DOWN_DAYS, calculate_session_result, score_sentence_submission
from app.services.session_store import (
    STATUS_COMPLETED,
    complete_session,
    create_session,
    get_session_for_date,
    parse_result,
    parse_state,
    save_session,
)
from app.services.vocab_quiz import build_sense_question

logger = logging.getLogger(__name__)

SUMMARY_STEP = 5

_learner_lock = threading.RLock()


class SessionStateError(Exception):
    """An event that is not legal in the session's current state."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def today_for(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


class SessionMachine:
    def __init__(self, db: Session, row: TrainingSession, generator: Optional[DrillGenerator] = None):
        self.db = db
        self.row = row
        self.generator = generator
        self.state: SessionState = parse_state(row)

    # --- read side ---

    @property
    def session_id(self) -> int:
        return self.row.id

    @property
    def is_completed(self) -> bool:
        return self.row.status == STATUS_COMPLETED

    @property
    def current_step(self) -> int:
        return self.state.current_step

    @property
    def result(self) -> Optional[SessionResult]:
        return parse_result(self.row)

    def _cache(self):
        return self.generator.cache if self.generator is not None else None

    def _question_phase(self) -> QuestionPhaseState:
        return self.state.plan.step1 if self.current_step == 1 else self.state.plan.step2

    def step_progress(self) -> StepProgressOut:
        plan = self.state.plan
        if self.current_step in (1, 2):
            phase = self._question_phase()
            return StepProgressOut(current=phase.current_index, total=len(phase.question_ids))
        if self.current_step == 3:
            return StepProgressOut(current=plan.step3.current_index, total=len(plan.step3.items))
        if self.current_step == 4:
            return StepProgressOut(current=plan.step4.current_index, total=len(plan.step4.sentence_ids))
        return StepProgressOut(current=0, total=0)

    def to_out(self) -> SessionOut:
        return SessionOut(
            session_id=self.session_id,
            date=self.row.date,
            status=self.row.status,
            current_step=self.current_step,
            progress=self.step_progress(),
            plan=self.state.plan,
            result=self.result,
        )

    def current_item(self) -> CurrentItemOut:
        step = self.current_step
        if self.is_completed or step == SUMMARY_STEP:
            return CurrentItemOut(step=step, kind="summary")

        plan = self.state.plan
        if step in (1, 2):
            phase = self._question_phase()
            if phase.current_index >= len(phase.question_ids):
                return CurrentItemOut(step=step, kind="empty")
            question_id = phase.question_ids[phase.current_index]
            drill = resolve_drill(self.db, question_id, self._cache())
            if drill:
                return CurrentItemOut(step=step, kind="drill", drill=drill)
            return CurrentItemOut(step=step, kind="empty")

        if step == 3:
            if plan.step3.current_index >= len(plan.step3.items):
                return CurrentItemOut(step=step, kind="empty")
            vocab_id = plan.step3.items[plan.step3.current_index]
            question = build_sense_question(self.db, vocab_id, plan.date)
            if question:
                return CurrentItemOut(step=step, kind="vocab", vocab_question=question)
            return CurrentItemOut(step=step, kind="empty")

        if plan.step4.current_index >= len(plan.step4.sentence_ids):
            return CurrentItemOut(step=step, kind="empty")
        sentence = get_sentence(self.db, plan.step4.sentence_ids[plan.step4.current_index])
        if sentence:
            return CurrentItemOut(step=step, kind="sentence", sentence=sentence)
        return CurrentItemOut(step=step, kind="empty")

    # --- helpers ---

    def _reload(self) -> None:
        """Re-read the persisted state; another request may have advanced it."""
        self.db.refresh(self.row)
        self.state = parse_state(self.row)

    def _require_open(self, *steps: int) -> None:
        self._reload()
        if self.is_completed:
            raise SessionStateError("Session is already completed")
        if self.current_step not in steps:
            raise SessionStateError(f"Event not allowed in step {self.current_step}")

    def _save(self) -> None:
        self.state.timing.elapsed_ms = max(0, _now_ms() - self.state.timing.started_at_ms)
        save_session(self.db, self.row, self.state)

    def _enter_step(self, step: int) -> Optional[SessionResult]:
        """Move to `step`, skipping steps with nothing to do. Finishes on the summary step."""
        plan = self.state.plan
        if step == 3 and not plan.step3.items:
            step = 4
        if step == 4 and not plan.step4.sentence_ids:
            step = SUMMARY_STEP
        previous = self.state.current_step
        self.state.current_step = step
        log_interaction("phase_advance", session_id=self.session_id, step=step, from_step=previous)
        if step == SUMMARY_STEP:
            return self._finish()
        self._save()
        return None

    # --- Step1 / Step2 ---

    def _grade_question(self, question_id: str, selected_id: str, time_ms: int) -> tuple[AnswerRecord, str]:
        drill = resolve_drill(self.db, question_id, self._cache())
        if drill is None:
            return self._skipped_record(question_id, selected_id, time_ms), ""

        if drill.correct_id is not None:
            correct = drill.correct_id
            is_correct = selected_id == correct
        else:
            correct = drill.correct_answer or ""
            is_correct = selected_id.strip() == correct.strip()

        grammar_id = grammar_id_of(parse_drill_id(question_id)) or drill.grammar_id
        record_grammar_attempt(self.db, grammar_id, is_correct, commit=False)
        return AnswerRecord(
            question_id=question_id, selected_id=selected_id, correct_id=correct,
            is_correct=is_correct, time_ms=time_ms,
        ), drill.explanation

    @staticmethod
    def _skipped_record(question_id: str, selected_id: str, time_ms: int) -> AnswerRecord:
        logger.warning("Content for %s is missing, recording slot as skipped", question_id)
        return AnswerRecord(
            question_id=question_id, selected_id=selected_id, correct_id="",
            is_correct=False, time_ms=time_ms, skipped=True,
        )

    def answer_question(self, selected_id: str, time_ms: int = 0) -> AnswerOut:
        with _learner_lock:
            self._require_open(1, 2)
            phase = self._question_phase()
            if phase.current_index >= len(phase.question_ids):
                raise SessionStateError("No question left in this step")
            if len(phase.answers) > phase.current_index:
                raise SessionStateError("Current question is already answered")

            question_id = phase.question_ids[phase.current_index]
            record, explanation = self._grade_question(question_id, selected_id, time_ms)
            phase.answers.append(record)
            can_continue = phase.current_index + 1 < len(phase.question_ids)
            self._save()

            log_interaction(
                "answer",
                session_id=self.session_id,
                step=self.current_step,
                question_id=question_id,
                is_correct=None if record.skipped else record.is_correct,
                response_ms=time_ms,
                skipped=record.skipped or None,
            )
            return AnswerOut(
                is_correct=record.is_correct,
                correct_id=record.correct_id,
                explanation=explanation,
                can_continue=can_continue,
                skipped=record.skipped,
                current_step=self.current_step,
            )

    def continue_(self) -> ContinueOut:
        """Next question in Step1/Step2, or the next step after the last one."""
        with _learner_lock:
            self._require_open(1, 2)
            phase = self._question_phase()
            if phase.current_index < len(phase.question_ids) and len(phase.answers) <= phase.current_index:
                item = self.current_item()
                if item.kind != "empty":
                    raise SessionStateError("Current question has not been answered")
                question_id = phase.question_ids[phase.current_index]
                phase.answers.append(self._skipped_record(question_id, "", 0))

            if phase.current_index + 1 < len(phase.question_ids):
                phase.current_index += 1
                self._save()
                return ContinueOut(current_step=self.current_step, advanced_phase=False)

            phase.current_index = len(phase.question_ids)
            result = self._enter_step(self.current_step + 1)
            return ContinueOut(current_step=self.current_step, advanced_phase=True, result=result)

    # --- Step3 ---

    def submit_vocab_answer(self, selected_id: str, time_ms: int = 0) -> AnswerOut:
        with _learner_lock:
            self._require_open(3)
            step3 = self.state.plan.step3
            if step3.current_index >= len(step3.items):
                raise SessionStateError("No vocabulary item left")

            vocab_id = step3.items[step3.current_index]
            question_id = VocabSenseRef(vocab_id).encode()
            question = build_sense_question(self.db, vocab_id, self.state.plan.date)
            if question is None:
                record = self._skipped_record(question_id, selected_id, time_ms)
            else:
                is_correct = selected_id == question.correct_id
                record = AnswerRecord(
                    question_id=question_id, selected_id=selected_id, correct_id=question.correct_id,
                    is_correct=is_correct, time_ms=time_ms,
                )
                answered = step3.correct + step3.wrong
                step3.avg_rt_ms = (step3.avg_rt_ms * answered + time_ms) / (answered + 1)
                if is_correct:
                    step3.correct += 1
                else:
                    step3.wrong += 1
                record_vocab_attempt(self.db, vocab_id, is_correct, time_ms, commit=False)

            step3.answers.append(record)
            step3.current_index += 1
            can_continue = step3.current_index < len(step3.items)

            log_interaction(
                "vocab_answer",
                session_id=self.session_id,
                step=3,
                question_id=question_id,
                vocab_id=vocab_id,
                is_correct=None if record.skipped else record.is_correct,
                response_ms=time_ms,
                skipped=record.skipped or None,
            )
            if can_continue:
                self._save()
            else:
                self._enter_step(4)

            return AnswerOut(
                is_correct=record.is_correct,
                correct_id=record.correct_id,
                explanation="",
                can_continue=can_continue,
                skipped=record.skipped,
                current_step=self.current_step,
            )

    # --- Step4 ---

    def submit_sentence(self, checked_key_point_ids: list[str]) -> SentenceSubmitOut:
        with _learner_lock:
            self._require_open(4)
            step4 = self.state.plan.step4
            if step4.current_index >= len(step4.sentence_ids):
                raise SessionStateError("No sentence left")

            sentence_id = step4.sentence_ids[step4.current_index]
            sentence = get_sentence(self.db, sentence_id)
            if sentence is None:
                logger.warning("Sentence %d is missing, recording slot as skipped", sentence_id)
                submission = SentenceSubmission(
                    sentence_id=sentence_id, checked_key_point_ids=checked_key_point_ids,
                    hit_count=0, total_count=0, passed=False, skipped=True,
                )
                hit_rate = 0.0
            else:
                score = score_sentence_submission(checked_key_point_ids, sentence.key_points)
                submission = SentenceSubmission(
                    sentence_id=sentence_id, checked_key_point_ids=checked_key_point_ids,
                    hit_count=score.hit_count, total_count=score.total_count, passed=score.passed,
                )
                hit_rate = score.hit_rate

            step4.submissions.append(submission)
            step4.current_index += 1
            can_continue = step4.current_index < len(step4.sentence_ids)

            log_interaction(
                "sentence_submit",
                session_id=self.session_id,
                step=4,
                sentence_id=sentence_id,
                hit_count=submission.hit_count,
                total_count=submission.total_count,
                passed=submission.passed,
                skipped=submission.skipped or None,
            )
            result = None
            if can_continue:
                self._save()
            else:
                result = self._enter_step(SUMMARY_STEP)

            return SentenceSubmitOut(
                hit_rate=round(hit_rate, 4),
                passed=submission.passed,
                can_continue=can_continue,
                skipped=submission.skipped,
                current_step=self.current_step,
                result=result,
            )

    # --- Step5 ---

    def _finish(self) -> SessionResult:
        db = self.db
        now = datetime.now(timezone.utc)
        plan = self.state.plan

        new_blocking = apply_offline_assessment(db, self.state, now)
        recent = get_recent_accuracies(db, LEVEL_DOWN_DAYS, before_date=plan.date)
        result = calculate_session_result(self.state, recent, new_blocking)
        result = apply_llm_assessment(db, self.state, result, now)

        self.state.timing.elapsed_ms = max(0, _now_ms() - self.state.timing.started_at_ms)
        complete_session(db, self.row, self.state, result, commit=False)
        apply_session_result(db, result, plan.date, commit=False)
        unlocked = check_and_advance_progress(db, commit=False)
        check_achievements(db, commit=False)
        db.commit()

        log_interaction(
            "session_complete",
            session_id=self.session_id,
            step=SUMMARY_STEP,
            grammar_id=plan.grammar_id,
            stars=result.stars,
            level_change=result.level_change,
            unlocked_lesson_id=unlocked,
            elapsed_ms=self.state.timing.elapsed_ms,
        )
        logger.info("Session %d complete: %d stars, level %s", self.session_id, result.stars, result.level_change)
        return result

    def finish_session(self) -> SessionResult:
        """Finish a session that has reached the summary step (idempotent once completed)."""
        with _learner_lock:
            self._reload()
            if self.is_completed:
                return self.result
            if self.current_step != SUMMARY_STEP:
                raise SessionStateError("Session has not reached the summary step")
            return self._finish()


def get_or_create_session(
    db: Session,
    now: Optional[datetime] = None,
    generator: Optional[DrillGenerator] = None,
    rng: Optional[random.Random] = None,
) -> SessionMachine:
    """Today's session: resumed if it exists (open or completed), planned otherwise.

    Raises NoGrammarContentError when a new plan is needed but no grammar exists.
    """
    now = now or datetime.now(timezone.utc)
    today = today_for(now)
    with _learner_lock:
        row = get_session_for_date(db, today)
        if row is not None:
            try:
                parse_state(row)
            except ValidationError:
                if row.status == STATUS_COMPLETED:
                    raise
                logger.warning("Session %d for %s has unreadable state, planning afresh", row.id, today)
                state = generate_daily_plan(db, now=now, rng=rng, generator=generator)
                save_session(db, row, state)
            else:
                log_interaction("session_resumed", session_id=row.id, step=row.state_json.get("current_step"))
            return SessionMachine(db, row, generator)

        state = generate_daily_plan(db, now=now, rng=rng, generator=generator)
        row = create_session(db, state)
        log_interaction(
            "session_created",
            session_id=row.id,
            grammar_id=state.plan.grammar_id,
            lesson_id=state.plan.lesson_id,
            level=state.plan.level,
        )
        logger.info("Created session %d for %s (grammar %d)", row.id, today, state.plan.grammar_id)
        return SessionMachine(db, row, generator)


def get_open_machine(db: Session, now: Optional[datetime] = None, generator: Optional[DrillGenerator] = None) -> SessionMachine:
    """Today's existing session without planning a new one. Raises SessionStateError if none."""
    now = now or datetime.now(timezone.utc)
    row = get_session_for_date(db, today_for(now))
    if row is None:
        raise SessionStateError("No session started today")
    return SessionMachine(db, row, generator)


def get_session_history(db: Session, date: str) -> Optional[SessionOut]:
    """Read-only view of a completed session."""
    row = get_session_for_date(db, date)
    if row is None or row.status != STATUS_COMPLETED:
        return None
    return SessionMachine(db, row).to_out()
