"""Meaning questions for vocabulary items (Step3 and rev_v{vid}_sense ids)."""

import logging
import random
from typing import Optional

from sqlalchemy.orm import Session

from app.schemas import DrillOption, VocabQuestionOut
from app.services.content_service import FUN_TAG, get_vocab_item, get_vocab_near_level
from app.services.drill_addressing import VocabSenseRef

logger = logging.getLogger(__name__)

OPTION_IDS = "abcd"

# Used only when the vocabulary table is too small to supply three distractors.
FILLER_MEANINGS = ["mountain", "to sleep", "yesterday", "quiet", "umbrella"]


def build_sense_question(db: Session, vocab_id: int, seed: str) -> Optional[VocabQuestionOut]:
    """4-option "what does this word mean" question, or None if the word is unknown.

    Distractors and option order come from a generator seeded with
    (seed, vocab_id), so the same plan always yields the same question.
    """
    vocab = get_vocab_item(db, vocab_id)
    if vocab is None or not vocab.meanings:
        logger.warning("No vocab meaning available for %d", vocab_id)
        return None

    rng = random.Random(f"{seed}:{vocab_id}")
    correct = vocab.meanings[0]

    seen = {correct}
    pool = []
    for other in get_vocab_near_level(db, vocab.level, exclude_id=vocab_id):
        if other.meanings and other.meanings[0] not in seen:
            seen.add(other.meanings[0])
            pool.append(other.meanings[0])
    distractors = rng.sample(pool, min(3, len(pool)))
    if len(distractors) < 3:
        fillers = [m for m in FILLER_MEANINGS if m not in seen]
        distractors += fillers[: 3 - len(distractors)]

    texts = [correct] + distractors
    rng.shuffle(texts)
    options = [DrillOption(id=OPTION_IDS[i], text=t) for i, t in enumerate(texts)]
    correct_id = OPTION_IDS[texts.index(correct)]

    return VocabQuestionOut(
        question_id=VocabSenseRef(vocab_id).encode(),
        vocab_id=vocab_id,
        surface=vocab.surface,
        reading=vocab.reading,
        options=options,
        correct_id=correct_id,
        is_fun=FUN_TAG in vocab.tags,
    )
