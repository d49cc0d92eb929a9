"""Spaced-repetition scheduling for grammar mastery and vocabulary strength.

Both entities share one policy: an additive, asymmetric score update clamped to
[0, 100] followed by an interval lookup on the updated score. Mistakes cost more
than correct answers earn, so weak items come back sooner.

Interval policy (days), applied to the post-update score:
- correct: <30 -> 1, <60 -> 3, <80 -> 7, <95 -> 14, else 21
- wrong: 1

Due/overdue: an item is due once next_review_at <= now (or unset) and overdue
once next_review_at < now - OVERDUE_DAYS.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.models import UserGrammarState, UserVocabState

logger = logging.getLogger(__name__)

OVERDUE_DAYS = 3

GRAMMAR_CORRECT_DELTA = 3
GRAMMAR_WRONG_DELTA = -5
VOCAB_CORRECT_DELTA = 2
VOCAB_FAST_BONUS = 1
VOCAB_WRONG_DELTA = -4
FAST_RESPONSE_MS = 3000

INTERVAL_TIERS = [(30, 1), (60, 3), (80, 7), (95, 14)]
MAX_INTERVAL_DAYS = 21
WRONG_INTERVAL_DAYS = 1

WRONG_WINDOW_DAYS = 7
BLOCKING_WRONG_COUNT = 3


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _naive(dt: datetime) -> datetime:
    """UTC wall time without tzinfo, matching how SQLite stores DateTime columns."""
    return _as_utc(dt).replace(tzinfo=None)


def clamp_score(value: int) -> int:
    return max(0, min(100, value))


def is_due(next_review_at: Optional[datetime], now: datetime) -> bool:
    if next_review_at is None:
        return True
    return _as_utc(next_review_at) <= _as_utc(now)


def is_overdue(next_review_at: Optional[datetime], now: datetime) -> bool:
    if next_review_at is None:
        return False
    return _as_utc(next_review_at) < _as_utc(now) - timedelta(days=OVERDUE_DAYS)


def next_interval(score: int, was_correct: bool) -> int:
    """Days until the next review for an item whose updated score is `score`.

    Non-decreasing in `score` when correct and always >= 1; a wrong answer
    resets to WRONG_INTERVAL_DAYS regardless of score.
    """
    if not was_correct:
        return WRONG_INTERVAL_DAYS
    for upper, days in INTERVAL_TIERS:
        if score < upper:
            return days
    return MAX_INTERVAL_DAYS


def grammar_delta(was_correct: bool) -> int:
    return GRAMMAR_CORRECT_DELTA if was_correct else GRAMMAR_WRONG_DELTA


def vocab_delta(was_correct: bool, response_ms: Optional[int] = None) -> int:
    if not was_correct:
        return VOCAB_WRONG_DELTA
    if response_ms is not None and response_ms < FAST_RESPONSE_MS:
        return VOCAB_CORRECT_DELTA + VOCAB_FAST_BONUS
    return VOCAB_CORRECT_DELTA


def review_sort_key(next_review_at: Optional[datetime]) -> datetime:
    """Sort key placing the oldest review date first and unset dates last."""
    if next_review_at is None:
        return datetime.max.replace(tzinfo=timezone.utc)
    return _as_utc(next_review_at)


def overdue_first(rows: list, now: datetime) -> list:
    """Stable partition: overdue rows, then the rest, each keeping input order."""
    overdue = [r for r in rows if is_overdue(r.next_review_at, now)]
    rest = [r for r in rows if not is_overdue(r.next_review_at, now)]
    return overdue + rest


def due_grammar(db: Session, now: datetime, limit: int) -> list[UserGrammarState]:
    """Grammar states due at `now`, most overdue first; unset review dates sort last."""
    return (
        db.query(UserGrammarState)
        .filter(or_(
            UserGrammarState.next_review_at.is_(None),
            UserGrammarState.next_review_at <= _naive(now),
        ))
        .order_by(
            UserGrammarState.next_review_at.asc().nulls_last(),
            UserGrammarState.grammar_id,
        )
        .limit(limit)
        .all()
    )


def due_vocab(db: Session, now: datetime, limit: int) -> list[UserVocabState]:
    """Vocab states due at `now`, most overdue first; unset review dates sort last."""
    return (
        db.query(UserVocabState)
        .filter(or_(
            UserVocabState.next_review_at.is_(None),
            UserVocabState.next_review_at <= _naive(now),
        ))
        .order_by(
            UserVocabState.next_review_at.asc().nulls_last(),
            UserVocabState.vocab_id,
        )
        .limit(limit)
        .all()
    )


def _rolled_wrong_count(count: int, last_wrong_at: Optional[datetime], now: datetime) -> int:
    if last_wrong_at is None:
        return 0
    if _as_utc(now) - _as_utc(last_wrong_at) > timedelta(days=WRONG_WINDOW_DAYS):
        return 0
    return count or 0


def upsert_grammar_state(db: Session, grammar_id: int, **initial) -> UserGrammarState:
    """Existing state row for `grammar_id`, or a new zeroed one seeded with `initial`."""
    state = db.get(UserGrammarState, grammar_id)
    if state is None:
        fields = dict(mastery=0, wrong_count_7d=0, correct_streak=0)
        fields.update(initial)
        state = UserGrammarState(grammar_id=grammar_id, **fields)
        db.add(state)
    return state


def upsert_vocab_state(db: Session, vocab_id: int, **initial) -> UserVocabState:
    state = db.get(UserVocabState, vocab_id)
    if state is None:
        fields = dict(strength=0, wrong_count_7d=0, is_blocking=False)
        fields.update(initial)
        state = UserVocabState(vocab_id=vocab_id, **fields)
        db.add(state)
    return state


def record_grammar_attempt(
    db: Session,
    grammar_id: int,
    was_correct: bool,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> UserGrammarState:
    """Apply one answered drill to the grammar's mastery and review date."""
    now = now or datetime.now(timezone.utc)
    state = upsert_grammar_state(db, grammar_id)

    wrong_count = _rolled_wrong_count(state.wrong_count_7d, state.last_wrong_at, now)
    state.mastery = clamp_score((state.mastery or 0) + grammar_delta(was_correct))
    if was_correct:
        state.correct_streak = (state.correct_streak or 0) + 1
    else:
        state.correct_streak = 0
        wrong_count += 1
        state.last_wrong_at = now
    state.wrong_count_7d = wrong_count
    state.last_seen_at = now
    state.next_review_at = now + timedelta(days=next_interval(state.mastery, was_correct))

    if commit:
        db.commit()
    else:
        db.flush()
    return state


def record_vocab_attempt(
    db: Session,
    vocab_id: int,
    was_correct: bool,
    response_ms: Optional[int] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> UserVocabState:
    """Apply one answered vocab item to its strength, review date and blocking flag."""
    now = now or datetime.now(timezone.utc)
    state = upsert_vocab_state(db, vocab_id)

    wrong_count = _rolled_wrong_count(state.wrong_count_7d, state.last_wrong_at, now)
    state.strength = clamp_score((state.strength or 0) + vocab_delta(was_correct, response_ms))
    if not was_correct:
        wrong_count += 1
        state.last_wrong_at = now
    state.wrong_count_7d = wrong_count
    if wrong_count >= BLOCKING_WRONG_COUNT:
        state.is_blocking = True
    state.last_seen_at = now
    state.next_review_at = now + timedelta(days=next_interval(state.strength, was_correct))

    if commit:
        db.commit()
    else:
        db.flush()
    return state


def adjust_grammar_mastery(
    db: Session,
    grammar_id: int,
    delta: int,
    now: Optional[datetime] = None,
    review_in_days: Optional[int] = None,
    commit: bool = True,
) -> UserGrammarState:
    """End-of-session mastery adjustment; optionally pulls the next review closer.

    `review_in_days` only ever moves next_review_at earlier.
    """
    now = now or datetime.now(timezone.utc)
    state = upsert_grammar_state(
        db, grammar_id, last_seen_at=now, next_review_at=now + timedelta(days=next_interval(0, True)),
    )

    state.mastery = clamp_score((state.mastery or 0) + delta)
    if review_in_days is not None:
        pulled = now + timedelta(days=review_in_days)
        if state.next_review_at is None or _as_utc(state.next_review_at) > pulled:
            state.next_review_at = pulled

    if commit:
        db.commit()
    else:
        db.flush()
    return state


def mark_vocab_blocking(
    db: Session,
    vocab_ids: list[int],
    now: Optional[datetime] = None,
    commit: bool = True,
) -> int:
    """Flag words that impeded sentence comprehension. Returns how many were newly flagged."""
    now = now or datetime.now(timezone.utc)
    newly = 0
    for vocab_id in dict.fromkeys(vocab_ids):
        state = upsert_vocab_state(db, vocab_id, next_review_at=now + timedelta(days=WRONG_INTERVAL_DAYS))
        if not state.is_blocking:
            state.is_blocking = True
            newly += 1
    if commit:
        db.commit()
    else:
        db.flush()
    if newly:
        logger.info("Flagged %d blocking vocab items", newly)
    return newly
