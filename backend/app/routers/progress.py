from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.schemas import (
    AchievementOut,
    DueGrammarOut,
    DueVocabOut,
    JumpIn,
    LessonProgressOut,
    ProgressOut,
    ReviewQueueOut,
)
from app.services.achievement_service import list_achievements
from app.services.progress_service import get_lesson_progress, get_user_progress, jump_to_lesson
from app.services.review_scheduler import due_grammar, due_vocab, is_overdue

router = APIRouter(prefix="/api/progress", tags=["progress"])


@router.get("", response_model=ProgressOut)
def progress(db: Session = Depends(get_db)):
    return get_user_progress(db)


@router.get("/review", response_model=ReviewQueueOut)
def review_queue(
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Grammar points and words due for review, most overdue first."""
    now = datetime.now(timezone.utc)
    return ReviewQueueOut(
        grammar=[
            DueGrammarOut(
                grammar_id=s.grammar_id,
                mastery=s.mastery,
                next_review_at=s.next_review_at,
                overdue=is_overdue(s.next_review_at, now),
            )
            for s in due_grammar(db, now, limit)
        ],
        vocab=[
            DueVocabOut(
                vocab_id=s.vocab_id,
                strength=s.strength,
                next_review_at=s.next_review_at,
                overdue=is_overdue(s.next_review_at, now),
                is_blocking=s.is_blocking,
            )
            for s in due_vocab(db, now, limit)
        ],
    )


@router.get("/lessons/{lesson_id}", response_model=LessonProgressOut)
def lesson_progress(lesson_id: int, db: Session = Depends(get_db)):
    result = get_lesson_progress(db, lesson_id)
    if result is None:
        raise HTTPException(status_code=404, detail=f"Lesson {lesson_id} not found")
    return result


@router.post("/jump", response_model=ProgressOut)
def jump(body: JumpIn, db: Session = Depends(get_db)):
    try:
        return jump_to_lesson(db, body.lesson_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/achievements", response_model=list[AchievementOut])
def achievements(db: Session = Depends(get_db)):
    return list_achievements(db)
