import os
import pytest
from contextlib import contextmanager
from sqlalchemy import create_engine, event, StaticPool
from sqlalchemy.orm import sessionmaker

os.environ["YOMU_SKIP_MIGRATIONS"] = "1"

from app.config import settings
from app.database import Base, get_db
from app.main import app
from app.models import GrammarPoint, Lesson, Sentence, TrainingSession, Vocab, VocabPack
from app.schemas import (
    AnswerRecord,
    CoachResult,
    GrammarResult,
    Plan,
    QuestionPhaseState,
    SentencePhaseState,
    SentenceResult,
    SessionResult,
    SessionState,
    Timing,
    TransferResult,
    VocabPhaseState,
    VocabResult,
)

LLM_KEY_ENVS = ["GEMINI_KEY", "OPENAI_KEY", "ANTHROPIC_API_KEY"]


@contextmanager
def count_commits(db_session):
    """Context manager that counts DB commits."""
    counter = {"count": 0}

    def _after_commit(session):
        counter["count"] += 1

    event.listen(db_session, "after_commit", _after_commit)
    try:
        yield counter
    finally:
        event.remove(db_session, "after_commit", _after_commit)


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path, monkeypatch):
    """Write logs under tmp_path and keep every LLM provider unconfigured."""
    monkeypatch.setattr(settings, "log_dir", tmp_path / "logs")
    for name in ("gemini_key", "openai_key", "anthropic_api_key", "anthropic_key"):
        monkeypatch.setattr(settings, name, "")
    for env in LLM_KEY_ENVS:
        monkeypatch.delenv(env, raising=False)


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db_session):
    from fastapi.testclient import TestClient

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def drill_dict(grammar_id: int, n: int, kind: str = "choice", correct: str = "a") -> dict:
    drill = {
        "drill_id": f"g{grammar_id}_q{n}",
        "kind": kind,
        "stem": f"Question {n} for grammar {grammar_id}",
        "explanation": f"Because of rule {grammar_id}",
        "grammar_id": grammar_id,
    }
    if kind == "judge":
        drill["correct_answer"] = correct
    else:
        drill["options"] = [{"id": i, "text": f"option {i}"} for i in "abcd"]
        drill["correct_id"] = correct
    return drill


class ContentFactory:
    """Inserts content rows with sensible defaults."""

    def __init__(self, db):
        self.db = db

    def lesson(self, lesson_id, grammar_ids=(), pack_ids=()):
        self.db.add(Lesson(
            lesson_id=lesson_id,
            title=f"Lesson {lesson_id}",
            goal="",
            grammar_ids_json=list(grammar_ids),
            vocab_pack_ids_json=list(pack_ids),
        ))
        self.db.commit()

    def grammar(self, grammar_id, lesson_id=25, drills=3, examples=None, counter_examples=None, level=1, drill_list=None):
        self.db.add(GrammarPoint(
            grammar_id=grammar_id,
            lesson_id=lesson_id,
            name=f"pattern {grammar_id}",
            core_rule=f"core rule {grammar_id}",
            structure="N + は + N + です",
            examples_json=examples if examples is not None else [],
            counter_examples_json=counter_examples if counter_examples is not None else [],
            drills_json=drill_list if drill_list is not None else [drill_dict(grammar_id, n) for n in range(drills)],
            level=level,
        ))
        self.db.commit()

    def vocab(self, vocab_id, level=1, tags=(), meaning=None):
        self.db.add(Vocab(
            vocab_id=vocab_id,
            surface=f"語{vocab_id}",
            reading=f"ご{vocab_id}",
            meanings_json=[meaning or f"meaning {vocab_id}"],
            level=level,
            tags_json=list(tags),
        ))
        self.db.commit()

    def pack(self, pack_id, vocab_ids, lesson_id=None):
        self.db.add(VocabPack(pack_id=pack_id, name=f"pack {pack_id}", lesson_id=lesson_id, vocab_ids_json=list(vocab_ids)))
        self.db.commit()

    def sentence(self, sentence_id, grammar_ids=(), style="immersive", lesson_id=25, level=1, key_points=3, blocking=()):
        self.db.add(Sentence(
            sentence_id=sentence_id,
            text=f"文{sentence_id}",
            translation=f"sentence {sentence_id}",
            style_tag=style,
            lesson_id=lesson_id,
            level=level,
            grammar_ids_json=list(grammar_ids),
            key_points_json=[{"id": f"k{i}", "label": f"point {i}"} for i in range(key_points)],
            blocking_vocab_ids_json=list(blocking),
        ))
        self.db.commit()


@pytest.fixture
def content(db_session):
    return ContentFactory(db_session)


class SessionFactory:
    """Inserts finished training sessions with a chosen result."""

    def __init__(self, db):
        self.db = db

    def completed(
        self,
        date,
        lesson_id=25,
        grammar_id=101,
        answered=(),
        grammar=(0, 0),
        transfer=(0, 0),
        sentences=(0, 0),
        stars=3,
    ):
        answers = [
            AnswerRecord(question_id=q, selected_id="a", correct_id="a", is_correct=True, time_ms=1000)
            for q in answered
        ]
        state = SessionState(
            current_step=5,
            plan=Plan(
                date=date,
                lesson_id=lesson_id,
                grammar_id=grammar_id,
                level=1,
                step1=QuestionPhaseState(question_ids=list(answered), current_index=len(answered), answers=answers),
                step2=QuestionPhaseState(question_ids=[]),
                step3=VocabPhaseState(pack_id=501, items=[]),
                step4=SentencePhaseState(sentence_ids=[]),
            ),
            timing=Timing(started_at_ms=0),
        )
        result = SessionResult(
            stars=stars,
            grammar=GrammarResult(correct=grammar[0], total=grammar[1]),
            transfer=TransferResult(correct=transfer[0], total=transfer[1]),
            vocab=VocabResult(accuracy=0.0, avg_rt_ms=0.0),
            sentence=SentenceResult(passed=sentences[0], total=sentences[1], key_point_hit_rate=0.0),
            level_change="pause",
            coach=CoachResult(source="offline", summary=""),
        )
        row = TrainingSession(
            date=date,
            planned_lesson_id=lesson_id,
            planned_grammar_id=grammar_id,
            planned_level=1,
            status="completed",
            state_json=state.model_dump(mode="json"),
            result_json=result.model_dump(mode="json"),
            stars=stars,
        )
        self.db.add(row)
        self.db.commit()
        return row


@pytest.fixture
def sessions(db_session):
    return SessionFactory(db_session)
