from fastapi import APIRouter, Depends, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from fulfillment.db.config import get_catalog_service_url
from fulfillment.db.session import get_db
from fulfillment.dependencies.auth_d import get_cart_owner_id
from fulfillment.errors import raise_http_error_from_exception
from fulfillment.schemas.checkout_s import ConfirmPaymentRequest, StartCheckoutRequest
from fulfillment.schemas.stock_reservations_s import ReservationResponse
from fulfillment.services.admission_s import (
    AdmissionResult,
    cancel_checkout,
    confirm_payment,
    get_order_for_reservation,
    retry_payment,
    start_checkout,
)
from fulfillment.services.catalog_client import get_available_to_promise
from fulfillment.services.payment_claims_s import (
    VERDICT_DUPLICATE,
    VERDICT_RETRY_LATER,
    get_claim_for_owner,
)
from fulfillment.services.reservations_s import get_reservation_for_owner

router = APIRouter()

_VERDICT_STATUS_CODES = {
    VERDICT_RETRY_LATER: status.HTTP_202_ACCEPTED,
    VERDICT_DUPLICATE: status.HTTP_409_CONFLICT,
}


def _admission_response(result: AdmissionResult) -> JSONResponse:
    verdict = result.verdict
    if result.admitted:
        status_code = status.HTTP_201_CREATED
    else:
        status_code = _VERDICT_STATUS_CODES.get(
            verdict.status,
            status.HTTP_422_UNPROCESSABLE_ENTITY,
        )
    content = {
        "data": {
            "verdict": verdict.status,
            "reason_code": verdict.reason_code,
            "message": verdict.message,
            "manual_review": verdict.manual_review,
            "payment_claim": verdict.claim,
            "order": result.order,
        }
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(content))


@router.post("/checkout/reservations", status_code=status.HTTP_201_CREATED)
def create_reservation(
    payload: StartCheckoutRequest,
    cart_owner_id: str = Depends(get_cart_owner_id),
    db: Session = Depends(get_db),
):
    catalog = get_available_to_promise if get_catalog_service_url() else None

    try:
        reservation = start_checkout(
            cart_owner_id,
            [line.model_dump() for line in payload.lines],
            db,
            amount_due=payload.amount_due,
            catalog=catalog,
        )
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {"data": ReservationResponse.model_validate(reservation).model_dump()}


@router.get("/checkout/reservations/{reservation_id}")
def get_reservation(
    reservation_id: int,
    cart_owner_id: str = Depends(get_cart_owner_id),
    db: Session = Depends(get_db),
):
    try:
        reservation = get_reservation_for_owner(reservation_id, cart_owner_id, db)
        order = get_order_for_reservation(reservation_id, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {
        "data": ReservationResponse.model_validate(reservation).model_dump(),
        "meta": {"order": order},
    }


@router.delete("/checkout/reservations/{reservation_id}")
def delete_reservation(
    reservation_id: int,
    cart_owner_id: str = Depends(get_cart_owner_id),
    db: Session = Depends(get_db),
):
    try:
        reservation = cancel_checkout(cart_owner_id, reservation_id, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {"data": ReservationResponse.model_validate(reservation).model_dump()}


@router.post("/checkout/reservations/{reservation_id}/payment")
def post_reservation_payment(
    reservation_id: int,
    payload: ConfirmPaymentRequest,
    cart_owner_id: str = Depends(get_cart_owner_id),
    db: Session = Depends(get_db),
):
    try:
        result = confirm_payment(
            cart_owner_id,
            reservation_id,
            payload.model_dump(),
            db,
        )
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return _admission_response(result)


@router.post("/checkout/payment-claims/{claim_id}/retry")
def post_payment_claim_retry(
    claim_id: int,
    cart_owner_id: str = Depends(get_cart_owner_id),
    db: Session = Depends(get_db),
):
    try:
        result = retry_payment(cart_owner_id, claim_id, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return _admission_response(result)


@router.get("/checkout/payment-claims/{claim_id}")
def get_payment_claim(
    claim_id: int,
    cart_owner_id: str = Depends(get_cart_owner_id),
    db: Session = Depends(get_db),
):
    try:
        claim = get_claim_for_owner(claim_id, cart_owner_id, db)
    except Exception as exc:
        raise_http_error_from_exception(exc, db=db)

    return {"data": claim}
