"""Read-only content repository: lessons, grammar points, vocabulary, sentences.

Every lookup reports absence as None / an empty list and never raises for a
missing id. Also hosts the dataset importer used by scripts/import_content.py.
"""

import json
import logging
from typing import Optional

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models import GrammarPoint, Lesson, Sentence, Vocab, VocabPack
from app.schemas import (
    Drill,
    Example,
    GrammarPointOut,
    KeyPoint,
    LessonOut,
    SentenceOut,
    VocabOut,
    VocabPackOut,
)

logger = logging.getLogger(__name__)

STYLE_IMMERSIVE = "immersive"
STYLE_TEXTBOOK = "textbook"
FUN_TAG = "fun"


def parse_json_column(data, default=None):
    """Safely parse a JSON column that may be dict, list, str, None, or corrupted."""
    if default is None:
        default = []
    if data is None:
        return default
    if isinstance(data, (dict, list)):
        return data
    try:
        return json.loads(data)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Corrupted JSON column data, returning default")
        return default


def _parse_items(model, raw_items, context: str) -> list:
    items = []
    for raw in parse_json_column(raw_items):
        try:
            items.append(model.model_validate(raw))
        except ValidationError:
            logger.warning("Skipping malformed %s entry in %s", model.__name__, context)
    return items


def _lesson_out(row: Lesson) -> LessonOut:
    return LessonOut(
        lesson_id=row.lesson_id,
        title=row.title or "",
        goal=row.goal or "",
        grammar_ids=parse_json_column(row.grammar_ids_json),
        vocab_pack_ids=parse_json_column(row.vocab_pack_ids_json),
    )


def _grammar_out(row: GrammarPoint) -> GrammarPointOut:
    context = f"grammar {row.grammar_id}"
    return GrammarPointOut(
        grammar_id=row.grammar_id,
        lesson_id=row.lesson_id,
        name=row.name,
        core_rule=row.core_rule,
        structure=row.structure or "",
        mnemonic=row.mnemonic or "",
        examples=_parse_items(Example, row.examples_json, context),
        counter_examples=_parse_items(Example, row.counter_examples_json, context),
        drills=_parse_items(Drill, row.drills_json, context),
        level=row.level or 1,
    )


def _vocab_out(row: Vocab) -> VocabOut:
    return VocabOut(
        vocab_id=row.vocab_id,
        surface=row.surface,
        reading=row.reading or "",
        meanings=parse_json_column(row.meanings_json),
        level=row.level or 1,
        tags=parse_json_column(row.tags_json),
    )


def _sentence_out(row: Sentence) -> SentenceOut:
    return SentenceOut(
        sentence_id=row.sentence_id,
        text=row.text,
        translation=row.translation,
        style_tag=row.style_tag,
        lesson_id=row.lesson_id,
        level=row.level or 1,
        grammar_ids=parse_json_column(row.grammar_ids_json),
        key_points=_parse_items(KeyPoint, row.key_points_json, f"sentence {row.sentence_id}"),
        blocking_vocab_ids=parse_json_column(row.blocking_vocab_ids_json),
    )


def get_lesson(db: Session, lesson_id: int) -> Optional[LessonOut]:
    row = db.get(Lesson, lesson_id)
    return _lesson_out(row) if row else None


def get_next_lesson_id(db: Session, lesson_id: int) -> Optional[int]:
    """Smallest lesson id after `lesson_id` that has grammar content."""
    rows = (
        db.query(Lesson)
        .filter(Lesson.lesson_id > lesson_id)
        .order_by(Lesson.lesson_id)
        .all()
    )
    for row in rows:
        if parse_json_column(row.grammar_ids_json):
            return row.lesson_id
    return None


def get_grammar_point(db: Session, grammar_id: int) -> Optional[GrammarPointOut]:
    row = db.get(GrammarPoint, grammar_id)
    return _grammar_out(row) if row else None


def get_vocab_pack(db: Session, pack_id: int) -> Optional[VocabPackOut]:
    row = db.get(VocabPack, pack_id)
    if not row:
        return None
    return VocabPackOut(
        pack_id=row.pack_id,
        name=row.name or "",
        lesson_id=row.lesson_id,
        vocab_ids=parse_json_column(row.vocab_ids_json),
        level=row.level or 1,
    )


def get_vocab(db: Session, vocab_ids: list[int]) -> list[VocabOut]:
    """Vocab rows for `vocab_ids`, in the order requested; unknown ids are dropped."""
    if not vocab_ids:
        return []
    rows = db.query(Vocab).filter(Vocab.vocab_id.in_(vocab_ids)).all()
    by_id = {r.vocab_id: r for r in rows}
    return [_vocab_out(by_id[vid]) for vid in vocab_ids if vid in by_id]


def get_vocab_item(db: Session, vocab_id: int) -> Optional[VocabOut]:
    row = db.get(Vocab, vocab_id)
    return _vocab_out(row) if row else None


def get_fun_vocab(db: Session, max_level: int) -> list[VocabOut]:
    """Vocab tagged "fun" at or below `max_level`, ordered by id."""
    rows = (
        db.query(Vocab)
        .filter(Vocab.level <= max_level)
        .order_by(Vocab.vocab_id)
        .all()
    )
    return [_vocab_out(r) for r in rows if FUN_TAG in parse_json_column(r.tags_json)]


def get_vocab_near_level(db: Session, level: int, exclude_id: int, limit: int = 30) -> list[VocabOut]:
    """Up to `limit` words within one level of `level`, closest ids first.

    Widens to every level when fewer than three words are that close.
    """
    by_distance = (func.abs(Vocab.vocab_id - exclude_id), Vocab.vocab_id)
    rows = (
        db.query(Vocab)
        .filter(Vocab.vocab_id != exclude_id, Vocab.level.between(level - 1, level + 1))
        .order_by(*by_distance)
        .limit(limit)
        .all()
    )
    if len(rows) < 3:
        rows = (
            db.query(Vocab)
            .filter(Vocab.vocab_id != exclude_id)
            .order_by(*by_distance)
            .limit(limit)
            .all()
        )
    return [_vocab_out(r) for r in rows]


def get_sentence(db: Session, sentence_id: int) -> Optional[SentenceOut]:
    row = db.get(Sentence, sentence_id)
    return _sentence_out(row) if row else None


def get_sentences_by_grammar(
    db: Session, grammar_id: int, style_tag: Optional[str] = None
) -> list[SentenceOut]:
    """Sentences annotated with `grammar_id`, optionally of one style, ordered by level then id."""
    query = db.query(Sentence)
    if style_tag:
        query = query.filter(Sentence.style_tag == style_tag)
    rows = query.order_by(Sentence.level, Sentence.sentence_id).all()
    return [
        _sentence_out(r) for r in rows
        if grammar_id in parse_json_column(r.grammar_ids_json)
    ]


def get_sentences_by_lesson(db: Session, lesson_id: int) -> list[SentenceOut]:
    rows = (
        db.query(Sentence)
        .filter(Sentence.lesson_id == lesson_id)
        .order_by(Sentence.level, Sentence.sentence_id)
        .all()
    )
    return [_sentence_out(r) for r in rows]


def import_dataset(db: Session, dataset: dict[str, list[dict]], commit: bool = True) -> dict[str, int]:
    """Upsert a content dataset. Keys: lessons, grammar_points, vocab, vocab_packs, sentences.

    Each entry is validated against the matching *Out schema before writing.
    Returns the number of rows written per key.
    """
    counts: dict[str, int] = {}

    lessons = dataset.get("lessons", [])
    for raw in lessons:
        item = LessonOut.model_validate(raw)
        db.merge(Lesson(
            lesson_id=item.lesson_id,
            title=item.title,
            goal=item.goal,
            order_index=raw.get("order_index", 0),
            grammar_ids_json=item.grammar_ids,
            vocab_pack_ids_json=item.vocab_pack_ids,
            tags_json=raw.get("tags", []),
        ))
    counts["lessons"] = len(lessons)

    grammar_points = [GrammarPointOut.model_validate(x) for x in dataset.get("grammar_points", [])]
    for gp in grammar_points:
        db.merge(GrammarPoint(
            grammar_id=gp.grammar_id,
            lesson_id=gp.lesson_id,
            name=gp.name,
            core_rule=gp.core_rule,
            structure=gp.structure,
            mnemonic=gp.mnemonic,
            examples_json=[e.model_dump() for e in gp.examples],
            counter_examples_json=[e.model_dump() for e in gp.counter_examples],
            drills_json=[d.model_dump(exclude_none=True) for d in gp.drills],
            level=gp.level,
        ))
    counts["grammar_points"] = len(grammar_points)

    vocab = [VocabOut.model_validate(x) for x in dataset.get("vocab", [])]
    for v in vocab:
        db.merge(Vocab(
            vocab_id=v.vocab_id,
            surface=v.surface,
            reading=v.reading,
            meanings_json=v.meanings,
            level=v.level,
            tags_json=v.tags,
        ))
    counts["vocab"] = len(vocab)

    packs = [VocabPackOut.model_validate(x) for x in dataset.get("vocab_packs", [])]
    for p in packs:
        db.merge(VocabPack(
            pack_id=p.pack_id,
            name=p.name,
            lesson_id=p.lesson_id,
            vocab_ids_json=p.vocab_ids,
            level=p.level,
        ))
    counts["vocab_packs"] = len(packs)

    sentences = [SentenceOut.model_validate(x) for x in dataset.get("sentences", [])]
    for s in sentences:
        db.merge(Sentence(
            sentence_id=s.sentence_id,
            text=s.text,
            translation=s.translation,
            style_tag=s.style_tag,
            lesson_id=s.lesson_id,
            level=s.level,
            grammar_ids_json=s.grammar_ids,
            key_points_json=[k.model_dump(exclude_none=True) for k in s.key_points],
            blocking_vocab_ids_json=s.blocking_vocab_ids,
        ))
    counts["sentences"] = len(sentences)

    if commit:
        db.commit()
    else:
        db.flush()
    return counts
