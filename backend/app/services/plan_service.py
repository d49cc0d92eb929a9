"""Daily session planner.

generate_daily_plan() builds the four content phases for today:

  Step1  3 grammar drills: fresh drills of the current grammar plus up to 2
         review drills borrowed from other due grammar points
  Step2  2 transfer questions (later fixed drills, or synthesized templates)
  Step3  up to 15 vocab items: 12 ranked overdue > due > new, plus fun words
  Step4  up to 2 application sentences via a four-tier fallback cascade

Every tier that can come up empty has a fallback; the only hard failure is
NoGrammarContentError when no lesson with grammar content exists at all.
Randomness (review drill picks, fun word order) comes from an injected
random.Random.
"""

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, TypeVar

from sqlalchemy.orm import Session

from app.config import settings
from app.schemas import (
    GrammarPointOut,
    LessonOut,
    Plan,
    QuestionPhaseState,
    SentenceOut,
    SentencePhaseState,
    SessionState,
    Timing,
    VocabPhaseState,
)
from app.services.content_service import (
    STYLE_IMMERSIVE,
    STYLE_TEXTBOOK,
    get_fun_vocab,
    get_grammar_point,
    get_lesson,
    get_sentences_by_grammar,
    get_sentences_by_lesson,
    get_vocab_pack,
)
from app.services.drill_addressing import (
    TRANSFER_COUNTER,
    TRANSFER_MEANING,
    ReviewDrillRef,
    TransferDrillRef,
)
from app.services.generation_service import DrillGenerator, DrillRequest, difficulty_for_mastery
from app.services.progress_service import get_grammar_state, get_user_progress, get_vocab_states
from app.services.review_scheduler import due_grammar, is_due, is_overdue, overdue_first, review_sort_key
from app.services.session_store import get_completed_drill_ids

logger = logging.getLogger(__name__)

STEP1_TOTAL = 3
STEP1_MAX_REVIEWS = 2
STEP2_TOTAL = 2
STEP3_RANKED_LIMIT = 12
STEP3_MAX_FUN = 5
STEP3_TOTAL_LIMIT = 15
STEP4_LIMIT = 2
DUE_GRAMMAR_SCAN = 20

T = TypeVar("T")


class NoGrammarContentError(RuntimeError):
    """No lesson with grammar points is reachable; a plan cannot be built."""


@dataclass(frozen=True)
class GrammarSelection:
    lesson_id: int
    grammar_id: int
    grammar_index: int


def first_non_empty(strategies: Iterable[Callable[[], list[T]]]) -> list[T]:
    """Evaluate strategies in order and return the first non-empty result (or [])."""
    for strategy in strategies:
        result = strategy()
        if result:
            return result
    return []


def _lesson_with_grammar(db: Session, lesson_id: int) -> LessonOut:
    lesson = get_lesson(db, lesson_id)
    if lesson is not None and lesson.grammar_ids:
        return lesson
    logger.warning("Lesson %d has no grammar content, falling back to lesson %d",
                   lesson_id, settings.default_lesson_id)
    lesson = get_lesson(db, settings.default_lesson_id)
    if lesson is None or not lesson.grammar_ids:
        raise NoGrammarContentError("No grammar points available")
    return lesson


def select_current_grammar(db: Session, lesson_id: int, grammar_index: int) -> GrammarSelection:
    """First grammar point from `grammar_index` on whose mastery is below threshold.

    Wraps to the lesson's first grammar point when all of them are mastered.
    """
    lesson = _lesson_with_grammar(db, lesson_id)
    if lesson.lesson_id != lesson_id:
        grammar_index = 0

    for index in range(max(0, grammar_index), len(lesson.grammar_ids)):
        grammar_id = lesson.grammar_ids[index]
        state = get_grammar_state(db, grammar_id)
        if state is None or state.mastery < settings.mastery_threshold:
            return GrammarSelection(lesson.lesson_id, grammar_id, index)

    return GrammarSelection(lesson.lesson_id, lesson.grammar_ids[0], 0)


# --- Step 1 ---


def _review_candidates(db: Session, exclude_grammar_id: int, now: datetime) -> list[GrammarPointOut]:
    """Due grammar points other than `exclude_grammar_id` that have drills, overdue first."""
    states = overdue_first(due_grammar(db, now, DUE_GRAMMAR_SCAN), now)
    candidates = []
    for state in states:
        if state.grammar_id == exclude_grammar_id:
            continue
        grammar = get_grammar_point(db, state.grammar_id)
        if grammar is not None and grammar.drills:
            candidates.append(grammar)
    return candidates


def _fresh_drill_ids(
    db: Session,
    grammar: GrammarPointOut,
    count: int,
    generator: Optional[DrillGenerator],
) -> list[str]:
    completed = get_completed_drill_ids(db, grammar.grammar_id)
    picked = [d.drill_id for d in grammar.drills if d.drill_id not in completed][:count]

    shortfall = count - len(picked)
    if shortfall > 0 and generator is not None and generator.is_available():
        state = get_grammar_state(db, grammar.grammar_id)
        difficulty = difficulty_for_mastery(state.mastery if state else 0)
        generated = generator.generate_drills(DrillRequest(grammar, shortfall, difficulty))
        picked.extend(d.drill_id for d in generated[:shortfall])

    # Repeat already-completed drills rather than leave slots empty.
    for drill in grammar.drills:
        if len(picked) >= count:
            break
        if drill.drill_id not in picked:
            picked.append(drill.drill_id)
    return picked


def generate_step1(
    db: Session,
    grammar: GrammarPointOut,
    now: datetime,
    rng: random.Random,
    generator: Optional[DrillGenerator] = None,
) -> QuestionPhaseState:
    reviews = _review_candidates(db, grammar.grammar_id, now)[:STEP1_MAX_REVIEWS]
    fresh = _fresh_drill_ids(db, grammar, STEP1_TOTAL - len(reviews), generator)

    review_ids = []
    for review_grammar in reviews:
        drill = rng.choice(review_grammar.drills)
        review_ids.append(ReviewDrillRef(review_grammar.grammar_id, drill.drill_id).encode())

    question_ids = fresh + review_ids
    if not question_ids:
        logger.warning("Step1 for grammar %d has no questions", grammar.grammar_id)
    return QuestionPhaseState(question_ids=question_ids)


# --- Step 2 ---


def generate_step2(db: Session, grammar: GrammarPointOut, exclude_ids: Iterable[str] = ()) -> QuestionPhaseState:
    later = [d.drill_id for d in grammar.drills[2:]]
    if len(later) < STEP2_TOTAL:
        return QuestionPhaseState(question_ids=[
            TransferDrillRef(grammar.grammar_id, TRANSFER_MEANING).encode(),
            TransferDrillRef(grammar.grammar_id, TRANSFER_COUNTER).encode(),
        ])

    used = get_completed_drill_ids(db, grammar.grammar_id) | set(exclude_ids)
    picked = [d for d in later if d not in used][:STEP2_TOTAL]
    for drill_id in later:
        if len(picked) >= STEP2_TOTAL:
            break
        if drill_id not in picked:
            picked.append(drill_id)
    return QuestionPhaseState(question_ids=picked)


# --- Step 3 ---


def _lesson_vocab_ids(db: Session, lesson: LessonOut) -> list[int]:
    """Previous lesson's vocab, then the current lesson's primary pack, de-duplicated."""
    gathered: list[int] = []
    previous = get_lesson(db, lesson.lesson_id - 1)
    if previous is not None:
        for pack_id in previous.vocab_pack_ids:
            pack = get_vocab_pack(db, pack_id)
            if pack:
                gathered.extend(pack.vocab_ids)
    if lesson.vocab_pack_ids:
        pack = get_vocab_pack(db, lesson.vocab_pack_ids[0])
        if pack:
            gathered.extend(pack.vocab_ids)
    return list(dict.fromkeys(gathered))


def _rank_vocab(db: Session, vocab_ids: list[int], now: datetime) -> list[int]:
    """Overdue, then due-not-overdue, then never-seen. Seen items not yet due are dropped."""
    states = get_vocab_states(db, vocab_ids)
    overdue, due, new = [], [], []
    for vocab_id in vocab_ids:
        state = states.get(vocab_id)
        if state is None:
            new.append(vocab_id)
        elif is_overdue(state.next_review_at, now):
            overdue.append(state)
        elif is_due(state.next_review_at, now):
            due.append(state)

    overdue.sort(key=lambda s: review_sort_key(s.next_review_at))
    due.sort(key=lambda s: review_sort_key(s.next_review_at))
    return [s.vocab_id for s in overdue] + [s.vocab_id for s in due] + new


def generate_step3(
    db: Session,
    lesson: LessonOut,
    level: int,
    now: datetime,
    rng: random.Random,
) -> VocabPhaseState:
    pack_id = lesson.vocab_pack_ids[0] if lesson.vocab_pack_ids else settings.default_vocab_pack_id
    vocab_ids = _lesson_vocab_ids(db, lesson)
    if not vocab_ids:
        logger.info("No vocab for lesson %d, Step3 will be empty", lesson.lesson_id)
        return VocabPhaseState(pack_id=settings.default_vocab_pack_id, items=[])

    items = _rank_vocab(db, vocab_ids, now)[:STEP3_RANKED_LIMIT]

    room = min(STEP3_MAX_FUN, STEP3_TOTAL_LIMIT - len(items))
    if room > 0:
        fun = [v.vocab_id for v in get_fun_vocab(db, level + 1) if v.vocab_id not in items]
        rng.shuffle(fun)
        items.extend(fun[:room])

    return VocabPhaseState(pack_id=pack_id, items=items)


# --- Step 4 ---


def generate_step4(db: Session, grammar: GrammarPointOut, level: int) -> SentencePhaseState:
    gid = grammar.grammar_id
    candidates: list[SentenceOut] = first_non_empty([
        lambda: get_sentences_by_grammar(db, gid, STYLE_IMMERSIVE),
        lambda: get_sentences_by_grammar(db, gid, STYLE_TEXTBOOK),
        lambda: get_sentences_by_grammar(db, gid),
        lambda: get_sentences_by_lesson(db, grammar.lesson_id),
    ])

    eligible = [s for s in candidates if abs(s.level - level) <= 1] or candidates
    selected = eligible[:STEP4_LIMIT]
    if not selected:
        logger.warning("Step4 has no sentences for grammar %d", gid)
    return SentencePhaseState(sentence_ids=[s.sentence_id for s in selected])


# --- Daily plan ---


def generate_daily_plan(
    db: Session,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    generator: Optional[DrillGenerator] = None,
) -> SessionState:
    """Build a fresh SessionState for the calendar day of `now` (UTC)."""
    now = now or datetime.now(timezone.utc)
    rng = rng or random.Random()

    progress = get_user_progress(db)
    selection = select_current_grammar(db, progress.current_lesson_id, progress.current_grammar_index)
    grammar = get_grammar_point(db, selection.grammar_id)
    if grammar is None:
        raise NoGrammarContentError(f"Grammar {selection.grammar_id} is listed but missing")
    lesson = get_lesson(db, selection.lesson_id)
    level = progress.current_level

    step1 = generate_step1(db, grammar, now, rng, generator)
    step2 = generate_step2(db, grammar, exclude_ids=step1.question_ids)
    step3 = generate_step3(db, lesson, level, now, rng)
    step4 = generate_step4(db, grammar, level)

    plan = Plan(
        date=now.strftime("%Y-%m-%d"),
        lesson_id=selection.lesson_id,
        grammar_id=selection.grammar_id,
        level=level,
        step1=step1,
        step2=step2,
        step3=step3,
        step4=step4,
    )
    return SessionState(
        current_step=1,
        plan=plan,
        timing=Timing(started_at_ms=int(time.time() * 1000)),
    )
