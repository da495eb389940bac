from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from fulfillment.db.session import get_db, get_db_transactional
from fulfillment.dependencies.auth_d import get_operator_id, require_admin
from fulfillment.errors import raise_http_error_from_exception
from fulfillment.schemas.payment_claims_s import ManualReviewRequest
from fulfillment.services.payment_claims_s import (
    get_claim,
    list_manual_review_claims,
    record_manual_review,
)

router = APIRouter()


@router.get("/admin/payment-claims/manual-review")
def get_manual_review_claims(
    include_reviewed: bool = Query(False),
    _: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        claims = list_manual_review_claims(db, include_reviewed=include_reviewed)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {"data": claims, "meta": {"count": len(claims)}}


@router.get("/admin/payment-claims/{claim_id}")
def get_admin_payment_claim(
    claim_id: int,
    _: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    try:
        claim = get_claim(claim_id, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {"data": claim}


@router.post("/admin/payment-claims/{claim_id}/review")
def post_manual_review(
    claim_id: int,
    payload: ManualReviewRequest,
    reviewer: str = Depends(get_operator_id),
    db: Session = Depends(get_db_transactional),
):
    try:
        claim = record_manual_review(
            claim_id,
            reviewer=reviewer,
            note=payload.note,
            db=db,
        )
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {"data": claim}
