"""Inventory API — critical items for purchasing."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..database import get_db
from ..schemas.sync import CriticalItemsResponse
from ..services.critical_items import critical_summary, get_critical_items

router = APIRouter(tags=["inventory"])


@router.get("/api/inventory/critical", response_model=CriticalItemsResponse)
def api_critical_items(limit: int = Query(100, ge=1, le=1000), db: Session = Depends(get_db)):
    return CriticalItemsResponse(
        items=get_critical_items(db, limit),
        summary=critical_summary(db),
    )
