from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.database import get_db
from app.services.activity_log import recent_activity

router = APIRouter(prefix="/api/activity", tags=["activity"])


@router.get("")
def list_activity(
    event_type: Optional[str] = None,
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    return [
        {
            "id": e.id,
            "event_type": e.event_type,
            "summary": e.summary,
            "detail_json": e.detail_json,
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in recent_activity(db, event_type=event_type, limit=limit)
    ]
