"""End-of-session mastery assessment.

The offline pass always runs: each passed Step4 sentence is worth +1 mastery
on the plan grammar, a failed one pulls that grammar's next review to
tomorrow and flags the sentence's blocking vocabulary.

When an LLM is configured, apply_llm_assessment() may additionally nudge
mastery (deltas clamped to +/-10, only for grammar tested today) and replace
the offline coach text. Any LLM failure leaves the offline result untouched.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.schemas import CoachResult, MasteryAssessResponse, SessionResult, SessionState
from app.services import llm
from app.services.content_service import get_sentence
from app.services.drill_addressing import InvalidDrillId, grammar_id_of, parse_drill_id
from app.services.review_scheduler import adjust_grammar_mastery, mark_vocab_blocking

logger = logging.getLogger(__name__)

PASSED_SENTENCE_BONUS = 1
FAILED_SENTENCE_REVIEW_DAYS = 1
MAX_LLM_DELTA = 10
MIN_LLM_CONFIDENCE = 0.5


def apply_offline_assessment(db: Session, state: SessionState, now: Optional[datetime] = None) -> int:
    """Apply sentence outcomes to mastery and blocking flags. Returns newly blocked vocab count."""
    now = now or datetime.now(timezone.utc)
    grammar_id = state.plan.grammar_id
    blocking_ids: list[int] = []

    for submission in state.plan.step4.submissions:
        if submission.skipped:
            continue
        if submission.passed:
            adjust_grammar_mastery(db, grammar_id, PASSED_SENTENCE_BONUS, now=now, commit=False)
        else:
            adjust_grammar_mastery(
                db, grammar_id, 0, now=now,
                review_in_days=FAILED_SENTENCE_REVIEW_DAYS, commit=False,
            )
            sentence = get_sentence(db, submission.sentence_id)
            if sentence:
                blocking_ids.extend(sentence.blocking_vocab_ids)

    if not blocking_ids:
        return 0
    return mark_vocab_blocking(db, blocking_ids, now=now, commit=False)


def tested_grammar_ids(state: SessionState) -> set[int]:
    ids = {state.plan.grammar_id}
    for answer in state.plan.step1.answers + state.plan.step2.answers:
        try:
            grammar_id = grammar_id_of(parse_drill_id(answer.question_id))
        except InvalidDrillId:
            continue
        if grammar_id is not None:
            ids.add(grammar_id)
    return ids


def _session_summary(state: SessionState, result: SessionResult) -> dict:
    return {
        "grammar_id": state.plan.grammar_id,
        "level": state.plan.level,
        "grammar_answers": [
            {"question_id": a.question_id, "correct": a.is_correct}
            for a in state.plan.step1.answers + state.plan.step2.answers
            if not a.skipped
        ],
        "vocab": result.vocab.model_dump(),
        "sentences": result.sentence.model_dump(),
        "stars": result.stars,
    }


def apply_llm_assessment(
    db: Session,
    state: SessionState,
    result: SessionResult,
    now: Optional[datetime] = None,
) -> SessionResult:
    """Ask the LLM for mastery nudges and a coach summary; returns the (possibly) updated result."""
    if not llm.is_configured():
        return result
    now = now or datetime.now(timezone.utc)

    try:
        raw = llm.request_mastery_assessment(_session_summary(state, result))
        assessment = MasteryAssessResponse.model_validate(raw)
    except (llm.LLMError, ValidationError, ValueError) as e:
        logger.warning("LLM mastery assessment unavailable, keeping offline result: %s", e)
        return result

    if assessment.confidence < MIN_LLM_CONFIDENCE:
        logger.info("Ignoring low-confidence assessment (%.2f)", assessment.confidence)
        return result

    allowed = tested_grammar_ids(state)
    for adjustment in assessment.mastery_adjustments:
        if adjustment.grammar_id not in allowed:
            continue
        delta = max(-MAX_LLM_DELTA, min(MAX_LLM_DELTA, adjustment.suggested_delta))
        if delta:
            adjust_grammar_mastery(db, adjustment.grammar_id, delta, now=now, commit=False)

    summary = assessment.summary.strip()
    if not summary:
        return result
    return result.model_copy(update={"coach": CoachResult(source="llm", summary=summary)})
