from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from fulfillment.db.session import get_db, get_db_transactional
from fulfillment.dependencies.auth_d import require_admin
from fulfillment.errors import raise_http_error_from_exception
from fulfillment.services.admission_s import (
    list_pending_order_events,
    mark_order_event_dispatched,
)

router = APIRouter()


@router.get("/admin/order-events/pending")
def get_pending_order_events(
    limit: int = Query(100, gt=0, le=500),
    _: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        events = list_pending_order_events(db, limit=limit)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {"data": events}


@router.post("/admin/order-events/{event_id}/dispatched")
def post_order_event_dispatched(
    event_id: int,
    _: dict = Depends(require_admin),
    db: Session = Depends(get_db_transactional),
):
    try:
        event = mark_order_event_dispatched(event_id, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {"data": event}
