import logging

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from fulfillment.services.admission_errors import (
    CatalogUnavailableError,
    InsufficientStockError,
    InvalidReservationStateError,
    LedgerInvariantError,
    PaymentVerifiedHoldExpiredError,
)

logger = logging.getLogger(__name__)


def raise_http_error_from_exception(exc: Exception, db: Session | None = None) -> None:
    if db is not None and isinstance(exc, (IntegrityError, SQLAlchemyError, LedgerInvariantError)):
        db.rollback()

    if isinstance(exc, InsufficientStockError):
        raise HTTPException(
            status_code=409,
            detail={
                "code": "insufficient_stock",
                "message": str(exc),
                "product_id": exc.product_id,
                "requested": exc.requested,
                "available": exc.available,
            },
        ) from exc
    if isinstance(exc, PaymentVerifiedHoldExpiredError):
        raise HTTPException(
            status_code=409,
            detail={
                "code": "payment_verified_hold_expired",
                "message": str(exc),
                "reservation_id": exc.reservation_id,
                "payment_claim_id": exc.claim_id,
            },
        ) from exc
    if isinstance(exc, InvalidReservationStateError):
        raise HTTPException(
            status_code=409,
            detail={"code": "invalid_reservation_state", "message": str(exc)},
        ) from exc
    if isinstance(exc, CatalogUnavailableError):
        raise HTTPException(status_code=503, detail="catalog service unavailable") from exc
    if isinstance(exc, LedgerInvariantError):
        logger.error("event=ledger_invariant_violation error=%s", str(exc))
        raise HTTPException(status_code=500, detail="stock ledger error") from exc
    if isinstance(exc, LookupError):
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, IntegrityError):
        raise HTTPException(
            status_code=409,
            detail="database constraint violation",
        ) from exc
    if isinstance(exc, SQLAlchemyError):
        raise HTTPException(
            status_code=500,
            detail="database error",
        ) from exc

    raise exc
