from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, Field


# --- Content ---


class Example(BaseModel):
    text: str
    hint: str = ""


class DrillOption(BaseModel):
    id: str
    text: str


class Drill(BaseModel):
    drill_id: str
    kind: Literal["choice", "fill", "reorder", "judge"]
    stem: str
    options: Optional[list[DrillOption]] = None
    correct_id: Optional[str] = None
    correct_answer: Optional[str] = None
    explanation: str = ""
    grammar_id: int


class KeyPoint(BaseModel):
    id: str
    label: str
    expected_value: Optional[str] = None
    hint: Optional[str] = None


class LessonOut(BaseModel):
    lesson_id: int
    title: str
    goal: str = ""
    grammar_ids: list[int]
    vocab_pack_ids: list[int]


class GrammarPointOut(BaseModel):
    grammar_id: int
    lesson_id: int
    name: str
    core_rule: str
    structure: str = ""
    mnemonic: str = ""
    examples: list[Example] = []
    counter_examples: list[Example] = []
    drills: list[Drill] = []
    level: int = 1


class VocabOut(BaseModel):
    vocab_id: int
    surface: str
    reading: str
    meanings: list[str]
    level: int = 1
    tags: list[str] = []


class VocabPackOut(BaseModel):
    pack_id: int
    name: str = ""
    lesson_id: Optional[int] = None
    vocab_ids: list[int]
    level: int = 1


class SentenceOut(BaseModel):
    sentence_id: int
    text: str
    translation: Optional[str] = None
    style_tag: str
    lesson_id: Optional[int] = None
    level: int = 1
    grammar_ids: list[int] = []
    key_points: list[KeyPoint] = []
    blocking_vocab_ids: list[int] = []


# --- Session state (persisted as JSON on training_sessions.state_json) ---


class AnswerRecord(BaseModel):
    question_id: str
    selected_id: str
    correct_id: str
    is_correct: bool
    time_ms: int
    skipped: bool = False  # slot content was missing; excluded from scoring


class QuestionPhaseState(BaseModel):
    question_ids: list[str]
    current_index: int = 0
    answers: list[AnswerRecord] = []


class VocabPhaseState(BaseModel):
    pack_id: int
    items: list[int]
    current_index: int = 0
    correct: int = 0
    wrong: int = 0
    avg_rt_ms: float = 0.0
    answers: list[AnswerRecord] = []


class SentenceSubmission(BaseModel):
    sentence_id: int
    checked_key_point_ids: list[str]
    hit_count: int
    total_count: int
    passed: bool
    skipped: bool = False


class SentencePhaseState(BaseModel):
    sentence_ids: list[int]
    current_index: int = 0
    submissions: list[SentenceSubmission] = []


class Plan(BaseModel):
    date: str
    lesson_id: int
    grammar_id: int
    level: int
    step1: QuestionPhaseState
    step2: QuestionPhaseState
    step3: VocabPhaseState
    step4: SentencePhaseState


class Timing(BaseModel):
    started_at_ms: int
    elapsed_ms: int = 0


class SessionState(BaseModel):
    current_step: int = Field(1, ge=1, le=5)
    plan: Plan
    timing: Timing


# --- Session result ---


class GrammarResult(BaseModel):
    correct: int
    total: int
    top_mistake_grammar_id: Optional[int] = None


class TransferResult(BaseModel):
    correct: int
    total: int


class VocabResult(BaseModel):
    accuracy: float
    avg_rt_ms: float
    new_blocking_count: int = 0


class SentenceResult(BaseModel):
    passed: int
    total: int
    key_point_hit_rate: float


class CoachResult(BaseModel):
    source: Literal["offline", "llm"]
    summary: str


class SessionResult(BaseModel):
    stars: int = Field(ge=0, le=5)
    grammar: GrammarResult
    transfer: TransferResult
    vocab: VocabResult
    sentence: SentenceResult
    level_change: Literal["pause", "up", "down"]
    coach: CoachResult


# --- LLM responses ---


class GenerateDrillsResponse(BaseModel):
    drills: list[Drill]
    confidence: float = Field(ge=0, le=1)


class MasteryAdjustment(BaseModel):
    grammar_id: int
    suggested_delta: int
    reason: str = ""


class MasteryAssessResponse(BaseModel):
    mastery_adjustments: list[MasteryAdjustment]
    level_recommendation: Literal["maintain", "up", "down"]
    summary: str
    confidence: float = Field(ge=0, le=1)


# --- HTTP payloads ---


class VocabQuestionOut(BaseModel):
    question_id: str
    vocab_id: int
    surface: str
    reading: str
    options: list[DrillOption]
    correct_id: str
    is_fun: bool = False


class AnswerIn(BaseModel):
    selected_id: str
    time_ms: int = Field(0, ge=0)


class AnswerOut(BaseModel):
    is_correct: bool
    correct_id: str
    explanation: str = ""
    can_continue: bool
    skipped: bool = False
    current_step: int


class SentenceSubmitIn(BaseModel):
    checked_key_point_ids: list[str] = []


class SentenceSubmitOut(BaseModel):
    hit_rate: float
    passed: bool
    can_continue: bool
    skipped: bool = False
    current_step: int
    result: Optional[SessionResult] = None


class StepProgressOut(BaseModel):
    current: int
    total: int


class SessionOut(BaseModel):
    session_id: int
    date: str
    status: str
    current_step: int
    progress: StepProgressOut
    plan: Plan
    result: Optional[SessionResult] = None


class CurrentItemOut(BaseModel):
    step: int
    kind: Literal["drill", "vocab", "sentence", "empty", "summary"]
    drill: Optional[Drill] = None
    vocab_question: Optional[VocabQuestionOut] = None
    sentence: Optional[SentenceOut] = None


class ContinueOut(BaseModel):
    current_step: int
    advanced_phase: bool
    result: Optional[SessionResult] = None


class ProgressOut(BaseModel):
    current_lesson_id: int
    current_grammar_index: int
    current_level: int
    streak_days: int
    max_streak_days: int
    last_active_date: Optional[str] = None
    model_config = {"from_attributes": True}


class DueGrammarOut(BaseModel):
    grammar_id: int
    mastery: int
    next_review_at: Optional[datetime] = None
    overdue: bool
    model_config = {"from_attributes": True}


class DueVocabOut(BaseModel):
    vocab_id: int
    strength: int
    next_review_at: Optional[datetime] = None
    overdue: bool
    is_blocking: bool
    model_config = {"from_attributes": True}


class ReviewQueueOut(BaseModel):
    grammar: list[DueGrammarOut]
    vocab: list[DueVocabOut]


class LessonProgressOut(BaseModel):
    lesson_id: int
    grammar_count: int
    mastered_count: int
    avg_mastery: float


class JumpIn(BaseModel):
    lesson_id: int


class AchievementOut(BaseModel):
    achievement_id: str
    category: str
    name: str
    description: str
    unlocked_at: Optional[datetime] = None
