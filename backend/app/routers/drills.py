from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.database import get_db
from app.routers.session import get_drill_generator
from app.schemas import Drill
from app.services.drill_addressing import InvalidDrillId, VocabSenseRef, parse_drill_id, resolve_drill
from app.services.generation_service import DrillGenerator

router = APIRouter(prefix="/api/drills", tags=["drills"])


@router.get("/{drill_id}", response_model=Drill)
def get_drill(
    drill_id: str,
    db: Session = Depends(get_db),
    generator: DrillGenerator = Depends(get_drill_generator),
):
    """Resolve any grammar question id to a choice-normalized drill."""
    try:
        ref = parse_drill_id(drill_id)
    except InvalidDrillId as e:
        raise HTTPException(status_code=400, detail=str(e))
    if isinstance(ref, VocabSenseRef):
        raise HTTPException(status_code=400, detail="Vocabulary items are not drills")

    drill = resolve_drill(db, drill_id, generator.cache)
    if drill is None:
        raise HTTPException(status_code=404, detail=f"Drill {drill_id} not found")
    return drill
