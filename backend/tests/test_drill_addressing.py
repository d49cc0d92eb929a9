"""Tests for question id parsing and drill resolution."""

import pytest

from app.schemas import Drill
from app.services.drill_addressing import (
    FixedDrillRef,
    GeneratedDrillRef,
    InvalidDrillId,
    ReviewDrillRef,
    TransferDrillRef,
    VocabSenseRef,
    clean_option_text,
    grammar_id_of,
    normalize_judge_drill,
    parse_drill_id,
    resolve_drill,
)
from app.services.generation_service import DrillCache

from tests.conftest import drill_dict

EXAMPLES = [
    {"text": "○ 私は学生です。", "hint": "topic marker"},
    {"text": "○ これはペンです。", "hint": ""},
    {"text": "◯ 田中さんは先生です。", "hint": ""},
    {"text": "○ 今日は月曜日です。", "hint": ""},
]
COUNTER_EXAMPLES = [{"text": "× 私が学生は。", "hint": "は marks the topic, not the predicate"}]


class TestParse:
    @pytest.mark.parametrize("drill_id,expected", [
        ("g101_q3", FixedDrillRef(101, 3)),
        ("rev_g7_g7_q0", ReviewDrillRef(7, "g7_q0")),
        ("transfer_g101_meaning", TransferDrillRef(101, "meaning")),
        ("transfer_g101_counter", TransferDrillRef(101, "counter")),
        ("ai_g101_3f9a", GeneratedDrillRef(101, "3f9a")),
        ("ai_legacy42", GeneratedDrillRef(None, "legacy42")),
        ("rev_v55_sense", VocabSenseRef(55)),
    ])
    def test_parse_namespaces(self, drill_id, expected):
        ref = parse_drill_id(drill_id)
        assert ref == expected
        assert ref.encode() == drill_id

    @pytest.mark.parametrize("drill_id", ["", "g101", "q3", "rev_x1_q0", "g1_qx", "hello"])
    def test_invalid_ids_raise(self, drill_id):
        with pytest.raises(InvalidDrillId):
            parse_drill_id(drill_id)

    def test_invalid_id_is_value_error(self):
        with pytest.raises(ValueError):
            parse_drill_id("nope")

    def test_grammar_id_of(self):
        assert grammar_id_of(parse_drill_id("rev_g7_g7_q0")) == 7
        assert grammar_id_of(parse_drill_id("ai_legacy42")) is None
        assert grammar_id_of(parse_drill_id("rev_v55_sense")) is None


def test_clean_option_text():
    assert clean_option_text("○ 私は学生です。") == "私は学生です。"
    assert clean_option_text(" ×✕ だめ ") == "だめ"
    assert clean_option_text("普通の文") == "普通の文"


class TestNormalizeJudge:
    def test_true_judge_becomes_choice_a(self):
        drill = Drill.model_validate(drill_dict(101, 0, kind="judge", correct="true"))
        normalized = normalize_judge_drill(drill)
        assert normalized.kind == "choice"
        assert [o.id for o in normalized.options] == ["a", "b"]
        assert normalized.correct_id == "a"
        assert drill.kind == "judge"

    def test_false_judge_becomes_choice_b(self):
        drill = Drill.model_validate(drill_dict(101, 0, kind="judge", correct="false"))
        assert normalize_judge_drill(drill).correct_id == "b"

    def test_choice_untouched(self):
        drill = Drill.model_validate(drill_dict(101, 0))
        assert normalize_judge_drill(drill) is drill


class TestResolve:
    def test_fixed_drill(self, db_session, content):
        content.grammar(101, drills=3)
        drill = resolve_drill(db_session, "g101_q1")
        assert drill.drill_id == "g101_q1"
        assert drill.correct_id == "a"

    def test_fixed_judge_is_normalized(self, db_session, content):
        content.grammar(101, drill_list=[drill_dict(101, 0, kind="judge", correct="false")])
        drill = resolve_drill(db_session, "g101_q0")
        assert drill.kind == "choice"
        assert drill.correct_id == "b"

    def test_review_drill_resolves_original(self, db_session, content):
        content.grammar(7, drills=2)
        drill = resolve_drill(db_session, "rev_g7_g7_q1")
        assert drill.drill_id == "g7_q1"
        assert drill.grammar_id == 7

    def test_missing_content_returns_none(self, db_session, content):
        content.grammar(101, drills=1)
        assert resolve_drill(db_session, "g101_q5") is None
        assert resolve_drill(db_session, "g999_q0") is None
        assert resolve_drill(db_session, "rev_g999_g999_q0") is None
        assert resolve_drill(db_session, "transfer_g999_meaning") is None
        assert resolve_drill(db_session, "garbage") is None

    def test_vocab_sense_is_not_a_drill(self, db_session, content):
        content.vocab(55)
        assert resolve_drill(db_session, "rev_v55_sense") is None

    def test_transfer_meaning(self, db_session, content):
        content.grammar(101)
        drill = resolve_drill(db_session, "transfer_g101_meaning")
        assert drill.kind == "choice"
        assert len(drill.options) == 4
        assert drill.correct_id == "a"
        assert drill.options[0].text == "core rule 101"

    def test_transfer_unknown_type_uses_meaning_template(self, db_session, content):
        content.grammar(101)
        drill = resolve_drill(db_session, "transfer_g101_mystery")
        assert drill.options[0].text == "core rule 101"
        assert drill.drill_id == "transfer_g101_meaning"

    def test_transfer_counter_with_counter_example(self, db_session, content):
        content.grammar(101, examples=EXAMPLES, counter_examples=COUNTER_EXAMPLES)
        drill = resolve_drill(db_session, "transfer_g101_counter")
        assert drill.correct_id == "a"
        assert [o.text for o in drill.options] == [
            "私が学生は。", "私は学生です。", "これはペンです。", "田中さんは先生です。",
        ]
        assert drill.explanation == "は marks the topic, not the predicate"

    @pytest.mark.parametrize("worked", [0, 1])
    def test_transfer_counter_padded_to_four_options(self, db_session, content, worked):
        content.grammar(101, examples=EXAMPLES[:worked], counter_examples=COUNTER_EXAMPLES)
        drill = resolve_drill(db_session, "transfer_g101_counter")

        texts = [o.text for o in drill.options]
        assert [o.id for o in drill.options] == ["a", "b", "c", "d"]
        assert len(set(texts)) == 4
        assert texts[0] == "私が学生は。"
        assert drill.correct_id == "a"
        if worked:
            assert texts[1] == "私は学生です。"

    def test_transfer_counter_without_counter_example(self, db_session, content):
        content.grammar(101, examples=EXAMPLES)
        drill = resolve_drill(db_session, "transfer_g101_counter")
        assert drill.kind == "choice"
        assert drill.correct_id == "a"
        assert "私は学生です。" in drill.stem
        assert "○" not in drill.stem

    def test_transfer_counter_without_any_examples_falls_back_to_meaning(self, db_session, content):
        content.grammar(101)
        drill = resolve_drill(db_session, "transfer_g101_counter")
        assert drill.options[0].text == "core rule 101"

    def test_generated_drill_from_cache(self, db_session, content):
        content.grammar(101)
        cache = DrillCache(ttl_s=60)
        generated = Drill.model_validate({**drill_dict(101, 0, kind="judge", correct="true"), "drill_id": "ai_g101_abc"})
        cache.set(generated)

        drill = resolve_drill(db_session, "ai_g101_abc", cache)
        assert drill.drill_id == "ai_g101_abc"
        assert drill.kind == "choice"

    def test_generated_drill_falls_back_to_first_fixed(self, db_session, content):
        content.grammar(101, drills=2)
        drill = resolve_drill(db_session, "ai_g101_gone", DrillCache(ttl_s=60))
        assert drill.drill_id == "g101_q0"

    def test_generated_drill_without_grammar_or_cache(self, db_session, content):
        content.grammar(101, drills=0)
        assert resolve_drill(db_session, "ai_legacy") is None
        assert resolve_drill(db_session, "ai_g101_gone") is None
