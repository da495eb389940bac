from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from fulfillment.db.session import get_db, get_db_transactional
from fulfillment.dependencies.auth_d import require_admin
from fulfillment.errors import raise_http_error_from_exception
from fulfillment.schemas.stock_s import SetStockLineRequest
from fulfillment.services.stock_ledger_s import get_stock_line, set_total_on_hand

router = APIRouter()


@router.get("/admin/stock-lines/{product_id}")
def get_admin_stock_line(
    product_id: str,
    _: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        line = get_stock_line(product_id, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {"data": line}


@router.put("/admin/stock-lines/{product_id}")
def put_admin_stock_line(
    product_id: str,
    payload: SetStockLineRequest,
    _: dict = Depends(require_admin),
    db: Session = Depends(get_db_transactional),
):
    try:
        line = set_total_on_hand(product_id, payload.total_on_hand, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {"data": line}
