"""Question identifiers and their resolution to renderable drills.

Every question in a session is addressed by one string in one of five
namespaces:

    g{gid}_q{n}              fixed drill stored on grammar point `gid`
    rev_g{gid}_{orig}        fixed drill `orig` of grammar `gid`, borrowed for review
    transfer_g{gid}_{type}   transfer drill synthesized from the grammar point itself
    ai_g{gid}_{token}        drill generated on demand, held in the DrillCache
    rev_v{vid}_sense         vocabulary meaning item (see vocab_quiz, not a Drill)

parse_drill_id() turns a string into one of the *Ref dataclasses below; each
Ref's encode() gives the string back.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy.orm import Session

from app.schemas import Drill, DrillOption, GrammarPointOut
from app.services.content_service import get_grammar_point

logger = logging.getLogger(__name__)

TRANSFER_MEANING = "meaning"
TRANSFER_COUNTER = "counter"

JUDGE_OPTIONS = [
    DrillOption(id="a", text="○ correct"),
    DrillOption(id="b", text="× wrong"),
]

# Shared distractors for the "meaning" transfer drill; the correct option is
# always the grammar point's own core rule.
MEANING_DISTRACTORS = [
    "Marks an action that is still continuing",
    "Describes something the speaker has experienced before",
    "Expresses a guess about what will happen",
]

# Well-formed filler sentences for counter-example drills whose grammar point
# has fewer than three worked examples.
COUNTER_FILLERS = [
    "駅はあそこです。",
    "毎朝コーヒーを飲みます。",
    "昨日は雨でした。",
    "この本はとても面白いです。",
]

_FIXED_RE = re.compile(r"^g(\d+)_q(\d+)$")
_REVIEW_RE = re.compile(r"^rev_g(\d+)_(.+)$")
_VOCAB_SENSE_RE = re.compile(r"^rev_v(\d+)_sense$")
_TRANSFER_RE = re.compile(r"^transfer_g(\d+)_(.+)$")
_GENERATED_RE = re.compile(r"^ai_g(\d+)_(.+)$")
_GENERATED_BARE_RE = re.compile(r"^ai_(.+)$")
_LEADING_MARKS_RE = re.compile(r"^[\s○◯×✕✗✓]+")


class InvalidDrillId(ValueError):
    pass


@dataclass(frozen=True)
class FixedDrillRef:
    grammar_id: int
    number: int

    def encode(self) -> str:
        return f"g{self.grammar_id}_q{self.number}"


@dataclass(frozen=True)
class ReviewDrillRef:
    grammar_id: int
    original_id: str

    def encode(self) -> str:
        return f"rev_g{self.grammar_id}_{self.original_id}"


@dataclass(frozen=True)
class TransferDrillRef:
    grammar_id: int
    transfer_type: str

    def encode(self) -> str:
        return f"transfer_g{self.grammar_id}_{self.transfer_type}"


@dataclass(frozen=True)
class GeneratedDrillRef:
    grammar_id: Optional[int]
    token: str

    def encode(self) -> str:
        if self.grammar_id is None:
            return f"ai_{self.token}"
        return f"ai_g{self.grammar_id}_{self.token}"


@dataclass(frozen=True)
class VocabSenseRef:
    vocab_id: int

    def encode(self) -> str:
        return f"rev_v{self.vocab_id}_sense"


DrillRef = Union[FixedDrillRef, ReviewDrillRef, TransferDrillRef, GeneratedDrillRef, VocabSenseRef]


def parse_drill_id(drill_id: str) -> DrillRef:
    """Parse a question id into its namespace. Raises InvalidDrillId if none matches."""
    if m := _REVIEW_RE.match(drill_id):
        return ReviewDrillRef(int(m.group(1)), m.group(2))
    if m := _VOCAB_SENSE_RE.match(drill_id):
        return VocabSenseRef(int(m.group(1)))
    if m := _TRANSFER_RE.match(drill_id):
        return TransferDrillRef(int(m.group(1)), m.group(2))
    if m := _GENERATED_RE.match(drill_id):
        return GeneratedDrillRef(int(m.group(1)), m.group(2))
    if m := _GENERATED_BARE_RE.match(drill_id):
        return GeneratedDrillRef(None, m.group(1))
    if m := _FIXED_RE.match(drill_id):
        return FixedDrillRef(int(m.group(1)), int(m.group(2)))
    raise InvalidDrillId(f"Unrecognised drill id: {drill_id!r}")


def grammar_id_of(ref: DrillRef) -> Optional[int]:
    return getattr(ref, "grammar_id", None)


def clean_option_text(text: str) -> str:
    """Strip leading correctness marks (○, ×, ...) from an example sentence."""
    return _LEADING_MARKS_RE.sub("", text).strip()


def normalize_judge_drill(drill: Drill) -> Drill:
    """Render a true/false judge drill as a two-option choice drill."""
    if drill.kind != "judge":
        return drill
    is_true = (drill.correct_answer or "").strip() == "true"
    return drill.model_copy(update={
        "kind": "choice",
        "options": [o.model_copy() for o in JUDGE_OPTIONS],
        "correct_id": "a" if is_true else "b",
    })


def _meaning_drill(grammar: GrammarPointOut) -> Drill:
    options = [DrillOption(id="a", text=grammar.core_rule)]
    for option_id, text in zip("bcd", MEANING_DISTRACTORS):
        options.append(DrillOption(id=option_id, text=text))
    return Drill(
        drill_id=TransferDrillRef(grammar.grammar_id, TRANSFER_MEANING).encode(),
        kind="choice",
        stem=f"What is the core rule of 「{grammar.name}」?",
        options=options,
        correct_id="a",
        explanation=grammar.core_rule,
        grammar_id=grammar.grammar_id,
    )


def _counter_drill(grammar: GrammarPointOut) -> Drill:
    drill_id = TransferDrillRef(grammar.grammar_id, TRANSFER_COUNTER).encode()
    if grammar.counter_examples:
        counter = grammar.counter_examples[0]
        options = [DrillOption(id="a", text=clean_option_text(counter.text))]
        valid = [clean_option_text(e.text) for e in grammar.examples]
        valid = [t for t in dict.fromkeys(valid) if t and t != options[0].text][:3]
        valid += [t for t in COUNTER_FILLERS if t not in valid and t != options[0].text][: 3 - len(valid)]
        for option_id, text in zip("bcd", valid):
            options.append(DrillOption(id=option_id, text=text))
        return Drill(
            drill_id=drill_id,
            kind="choice",
            stem="Which sentence uses the pattern incorrectly?",
            options=options,
            correct_id="a",
            explanation=counter.hint,
            grammar_id=grammar.grammar_id,
        )

    if grammar.examples:
        example = clean_option_text(grammar.examples[0].text)
        # Worked examples are valid uses of the rule by construction.
        return normalize_judge_drill(Drill(
            drill_id=drill_id,
            kind="judge",
            stem=f"Is this a correct use of 「{grammar.name}」?\n{example}",
            correct_answer="true",
            explanation=grammar.examples[0].hint or grammar.core_rule,
            grammar_id=grammar.grammar_id,
        ))

    return _meaning_drill(grammar)


def build_transfer_drill(grammar: GrammarPointOut, transfer_type: str) -> Drill:
    """Deterministic transfer drill for a grammar point; unknown types use the meaning template."""
    if transfer_type == TRANSFER_COUNTER:
        return _counter_drill(grammar)
    return _meaning_drill(grammar)


def _find_fixed(grammar: Optional[GrammarPointOut], drill_id: str) -> Optional[Drill]:
    if grammar is None:
        return None
    for drill in grammar.drills:
        if drill.drill_id == drill_id:
            return normalize_judge_drill(drill)
    return None


def resolve_drill(db: Session, drill_id: str, cache=None) -> Optional[Drill]:
    """Resolve a question id to a choice-normalized Drill, or None when it cannot be found.

    Vocabulary sense ids always return None here; they are answered through
    vocab_quiz.build_sense_question.
    """
    try:
        ref = parse_drill_id(drill_id)
    except InvalidDrillId:
        logger.warning("Cannot resolve malformed drill id %r", drill_id)
        return None

    if isinstance(ref, FixedDrillRef):
        return _find_fixed(get_grammar_point(db, ref.grammar_id), drill_id)

    if isinstance(ref, ReviewDrillRef):
        return _find_fixed(get_grammar_point(db, ref.grammar_id), ref.original_id)

    if isinstance(ref, TransferDrillRef):
        grammar = get_grammar_point(db, ref.grammar_id)
        return build_transfer_drill(grammar, ref.transfer_type) if grammar else None

    if isinstance(ref, GeneratedDrillRef):
        cached = cache.get(drill_id) if cache is not None else None
        if cached is not None:
            return normalize_judge_drill(cached)
        if ref.grammar_id is None:
            return None
        grammar = get_grammar_point(db, ref.grammar_id)
        if grammar is None or not grammar.drills:
            return None
        logger.info("Generated drill %s no longer cached, using first fixed drill", drill_id)
        return normalize_judge_drill(grammar.drills[0])

    return None
