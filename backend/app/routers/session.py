import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas import (
    AnswerIn,
    AnswerOut,
    ContinueOut,
    CurrentItemOut,
    SentenceSubmitIn,
    SentenceSubmitOut,
    SessionOut,
)
from app.services.generation_service import DrillGenerator, build_default_generator
from app.services.plan_service import NoGrammarContentError
from app.services.session_service import (
    SessionStateError,
    get_open_machine,
    get_or_create_session,
    get_session_history,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/session", tags=["session"])


def get_drill_generator(request: Request) -> DrillGenerator:
    generator = getattr(request.app.state, "drill_generator", None)
    if generator is None:
        generator = build_default_generator()
        request.app.state.drill_generator = generator
    return generator


def _open_machine(db: Session, generator: DrillGenerator):
    try:
        return get_open_machine(db, generator=generator)
    except SessionStateError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/today", response_model=SessionOut)
def today(
    db: Session = Depends(get_db),
    generator: DrillGenerator = Depends(get_drill_generator),
):
    """Get today's session, planning it on first call."""
    try:
        machine = get_or_create_session(db, generator=generator)
    except NoGrammarContentError as e:
        logger.error("Cannot plan a session: %s", e)
        raise HTTPException(status_code=503, detail=str(e))
    return machine.to_out()


@router.get("/current", response_model=CurrentItemOut)
def current(
    db: Session = Depends(get_db),
    generator: DrillGenerator = Depends(get_drill_generator),
):
    return _open_machine(db, generator).current_item()


@router.post("/answer", response_model=AnswerOut)
def answer(
    body: AnswerIn,
    db: Session = Depends(get_db),
    generator: DrillGenerator = Depends(get_drill_generator),
):
    machine = _open_machine(db, generator)
    try:
        return machine.answer_question(body.selected_id, body.time_ms)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/vocab", response_model=AnswerOut)
def vocab(
    body: AnswerIn,
    db: Session = Depends(get_db),
    generator: DrillGenerator = Depends(get_drill_generator),
):
    machine = _open_machine(db, generator)
    try:
        return machine.submit_vocab_answer(body.selected_id, body.time_ms)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/sentence", response_model=SentenceSubmitOut)
def sentence(
    body: SentenceSubmitIn,
    db: Session = Depends(get_db),
    generator: DrillGenerator = Depends(get_drill_generator),
):
    machine = _open_machine(db, generator)
    try:
        return machine.submit_sentence(body.checked_key_point_ids)
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/continue", response_model=ContinueOut)
def continue_session(
    db: Session = Depends(get_db),
    generator: DrillGenerator = Depends(get_drill_generator),
):
    machine = _open_machine(db, generator)
    try:
        return machine.continue_()
    except SessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/history/{date}", response_model=SessionOut)
def history(date: str, db: Session = Depends(get_db)):
    """Read-only view of a completed session (YYYY-MM-DD)."""
    session = get_session_history(db, date)
    if session is None:
        raise HTTPException(status_code=404, detail=f"No completed session for {date}")
    return session
