"""Offline scoring: sentence key-point checks and the end-of-session result."""

from dataclasses import dataclass
from typing import Optional

from app.config import settings
from app.schemas import (
    AnswerRecord,
    CoachResult,
    GrammarResult,
    KeyPoint,
    SentenceResult,
    SessionResult,
    SessionState,
    TransferResult,
    VocabResult,
)
from app.services.drill_addressing import InvalidDrillId, grammar_id_of, parse_drill_id

LEVEL_UP_ACCURACY = 0.85
LEVEL_DOWN_ACCURACY = 0.6
LEVEL_DOWN_DAYS = 2

STAR_CUTOFFS = [(0.95, 5), (0.85, 4), (0.70, 3), (0.50, 2), (0.30, 1)]


@dataclass(frozen=True)
class SentencePassPolicy:
    """A sentence passes when enough key points were hit, by count or by rate."""

    min_hits: int = 3
    min_hit_rate: float = 0.7

    @classmethod
    def from_settings(cls) -> "SentencePassPolicy":
        return cls(
            min_hits=settings.sentence_pass_min_hits,
            min_hit_rate=settings.sentence_pass_min_hit_rate,
        )

    def passed(self, hit_count: int, hit_rate: float) -> bool:
        return hit_count >= self.min_hits or hit_rate >= self.min_hit_rate


@dataclass(frozen=True)
class SentenceScore:
    hit_count: int
    total_count: int
    hit_rate: float
    passed: bool


def score_sentence_submission(
    checked_ids: list[str],
    key_points: list[KeyPoint],
    policy: Optional[SentencePassPolicy] = None,
) -> SentenceScore:
    """Count checked ids that are real key points of the sentence (duplicates once)."""
    policy = policy or SentencePassPolicy.from_settings()
    expected = {kp.id for kp in key_points}
    hit_count = len(expected.intersection(checked_ids))
    total = len(key_points)
    hit_rate = hit_count / total if total else 0.0
    return SentenceScore(
        hit_count=hit_count,
        total_count=total,
        hit_rate=hit_rate,
        passed=policy.passed(hit_count, hit_rate),
    )


def _scored(answers: list[AnswerRecord]) -> list[AnswerRecord]:
    return [a for a in answers if not a.skipped]


def _top_mistake_grammar_id(answers: list[AnswerRecord]) -> Optional[int]:
    for answer in answers:
        if answer.is_correct:
            continue
        try:
            return grammar_id_of(parse_drill_id(answer.question_id))
        except InvalidDrillId:
            continue
    return None


def session_accuracy(result: SessionResult) -> Optional[float]:
    """Share of correct grammar, transfer and sentence items; None when nothing was scored."""
    total = result.grammar.total + result.transfer.total + result.sentence.total
    if total == 0:
        return None
    correct = result.grammar.correct + result.transfer.correct + result.sentence.passed
    return correct / total


def calculate_stars(parts: list[float]) -> int:
    if not parts:
        return 0
    average = sum(parts) / len(parts)
    for cutoff, stars in STAR_CUTOFFS:
        if average >= cutoff:
            return stars
    return 0


def level_verdict(accuracy: Optional[float], recent_accuracies: list[float]) -> str:
    if accuracy is None:
        return "pause"
    if accuracy >= LEVEL_UP_ACCURACY:
        return "up"
    recent = recent_accuracies[:LEVEL_DOWN_DAYS]
    if (
        accuracy < LEVEL_DOWN_ACCURACY
        and len(recent) == LEVEL_DOWN_DAYS
        and all(a < LEVEL_DOWN_ACCURACY for a in recent)
    ):
        return "down"
    return "pause"


def offline_coach_summary(
    stars: int,
    grammar: GrammarResult,
    vocab_accuracy: Optional[float],
    sentence: SentenceResult,
) -> str:
    parts: list[str] = []
    if stars >= 4:
        parts.append("Excellent work today!")
    elif stars >= 3:
        parts.append("Good session, keep it up!")
    elif stars >= 2:
        parts.append("Some rough spots; today's material will come back tomorrow.")
    else:
        parts.append("A tough day. Go over the core grammar rule once more.")

    if grammar.total:
        rate = grammar.correct / grammar.total
        if rate < 0.7:
            parts.append("The grammar drills need more practice.")
        elif rate == 1:
            parts.append("Every grammar drill correct!")

    if vocab_accuracy is not None:
        if vocab_accuracy < 0.7:
            parts.append("Try to recognise the vocabulary a little faster.")
        elif vocab_accuracy >= 0.9:
            parts.append("Vocabulary recognition was fluent.")

    if sentence.total and sentence.passed < sentence.total:
        parts.append("Pay closer attention to the key grammar points in each sentence.")

    return " ".join(parts)


def calculate_session_result(
    state: SessionState,
    recent_accuracies: list[float],
    new_blocking_count: int = 0,
) -> SessionResult:
    """Score a finished session. Skipped slots are left out of every aggregate."""
    plan = state.plan

    step1 = _scored(plan.step1.answers)
    grammar = GrammarResult(
        correct=sum(1 for a in step1 if a.is_correct),
        total=len(step1),
        top_mistake_grammar_id=_top_mistake_grammar_id(step1),
    )

    step2 = _scored(plan.step2.answers)
    transfer = TransferResult(correct=sum(1 for a in step2 if a.is_correct), total=len(step2))

    vocab_answered = plan.step3.correct + plan.step3.wrong
    vocab_accuracy = plan.step3.correct / vocab_answered if vocab_answered else None
    vocab = VocabResult(
        accuracy=round(vocab_accuracy or 0.0, 4),
        avg_rt_ms=round(plan.step3.avg_rt_ms, 1),
        new_blocking_count=new_blocking_count,
    )

    submissions = [s for s in plan.step4.submissions if not s.skipped]
    rated = [s.hit_count / s.total_count for s in submissions if s.total_count]
    hit_rate = sum(rated) / len(rated) if rated else None
    sentence = SentenceResult(
        passed=sum(1 for s in submissions if s.passed),
        total=len(submissions),
        key_point_hit_rate=round(hit_rate or 0.0, 4),
    )

    partial = SessionResult(
        stars=0,
        grammar=grammar,
        transfer=transfer,
        vocab=vocab,
        sentence=sentence,
        level_change="pause",
        coach=CoachResult(source="offline", summary=""),
    )
    accuracy = session_accuracy(partial)
    stars = calculate_stars([p for p in (accuracy, vocab_accuracy, hit_rate) if p is not None])

    return partial.model_copy(update={
        "stars": stars,
        "level_change": level_verdict(accuracy, recent_accuracies),
        "coach": CoachResult(
            source="offline",
            summary=offline_coach_summary(stars, grammar, vocab_accuracy, sentence),
        ),
    })
