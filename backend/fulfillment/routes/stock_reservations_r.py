from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fulfillment.dependencies.auth_d import require_admin
from fulfillment.db.session import get_db_transactional
from fulfillment.errors import raise_http_error_from_exception
from fulfillment.schemas.stock_reservations_s import ExpireReservationsResponse
from fulfillment.services.payment_claims_s import escalate_stale_claims
from fulfillment.services.reservations_s import expire_reservations

router = APIRouter()


@router.post("/admin/stock-reservations/expire")
def expire_stock_reservations(
    _: dict = Depends(require_admin),
    db: Session = Depends(get_db_transactional),
):
    now = datetime.utcnow()
    try:
        expired_count = expire_reservations(now=now, db=db)
        escalated_claims = escalate_stale_claims(now=now, db=db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)
    summary = ExpireReservationsResponse(
        expired_count=int(expired_count),
        escalated_claims=int(escalated_claims),
    )
    return {"data": summary.model_dump()}
