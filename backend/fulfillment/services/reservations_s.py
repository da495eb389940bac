from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

from sqlalchemy.orm import Session, joinedload

from fulfillment.db.config import RESERVATION_TTL_SECONDS
from fulfillment.db.models import PaymentClaim, Reservation, StockHold
from fulfillment.services.admission_errors import (
    InsufficientStockError,
    InvalidReservationStateError,
    ReservationExpiredError,
)
from fulfillment.services.stock_ledger_s import (
    CatalogLookup,
    commit_hold,
    is_stock_tracked,
    release_hold,
    try_hold,
)

RESERVATION_TTL = timedelta(seconds=RESERVATION_TTL_SECONDS)
RESERVATION_HELD = "held"
RESERVATION_COMMITTED = "committed"
RESERVATION_RELEASED = "released"
RESERVATION_EXPIRED = "expired"
CLAIM_VERIFIED = "verified"

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.utcnow()


def _reservation_to_dict(reservation: Reservation) -> dict:
    return {
        "id": reservation.id,
        "cart_owner_id": reservation.cart_owner_id,
        "status": reservation.status,
        "amount_due": (
            str(reservation.amount_due) if reservation.amount_due is not None else None
        ),
        "lines": [
            {
                "hold_id": hold.id,
                "product_id": hold.product_id,
                "quantity": int(hold.quantity),
                "status": hold.status,
            }
            for hold in sorted(reservation.holds, key=lambda x: (x.product_id, x.id))
        ],
        "expires_at": reservation.expires_at,
        "committed_at": reservation.committed_at,
        "released_at": reservation.released_at,
        "reason": reservation.reason,
        "created_at": reservation.created_at,
        "updated_at": reservation.updated_at,
    }


def _reservation_query(db: Session):
    return db.query(Reservation).options(joinedload(Reservation.holds))


def _lock_reservation(reservation_id: int, db: Session) -> Reservation:
    reservation = (
        db.query(Reservation)
        .filter(Reservation.id == reservation_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if reservation is None:
        raise LookupError("reservation not found")
    return reservation


def _load_reservation_dict(reservation_id: int, db: Session) -> dict:
    reservation = (
        _reservation_query(db)
        .filter(Reservation.id == reservation_id)
        .populate_existing()
        .first()
    )
    if reservation is None:
        raise LookupError("reservation not found")
    return _reservation_to_dict(reservation)


def _normalize_lines(lines: list[dict]) -> list[tuple[str, int]]:
    if not lines:
        raise ValueError("at least one cart line is required")

    merged: dict[str, int] = {}
    for line in lines:
        raw_product_id = line.get("product_id")
        product_id = str(raw_product_id).strip() if raw_product_id is not None else ""
        if not product_id:
            raise ValueError("product_id is required for every cart line")
        try:
            quantity = int(line.get("quantity"))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid quantity for product {product_id}") from exc
        if quantity <= 0:
            raise ValueError(f"quantity for product {product_id} must be greater than 0")
        merged[product_id] = merged.get(product_id, 0) + quantity

    # Ascending product id is the global lock acquisition order.
    return sorted(merged.items(), key=lambda item: item[0])


def _normalize_amount_due(amount_due: object) -> Decimal | None:
    if amount_due is None:
        return None
    try:
        amount = Decimal(str(amount_due)).quantize(Decimal("0.01"))
    except InvalidOperation as exc:
        raise ValueError("amount_due must be a decimal amount") from exc
    if amount <= 0:
        raise ValueError("amount_due must be greater than 0")
    return amount


def _settle_holds(reservation: Reservation, *, commit: bool, now: datetime, db: Session) -> None:
    holds = (
        db.query(StockHold)
        .filter(StockHold.reservation_id == reservation.id)
        .order_by(StockHold.product_id.asc(), StockHold.id.asc())
        .all()
    )
    for hold in holds:
        if commit:
            commit_hold(int(hold.id), db, now=now)
        else:
            release_hold(int(hold.id), db, now=now)


def _close_reservation(
    reservation: Reservation,
    *,
    status: str,
    reason: str,
    now: datetime,
    db: Session,
) -> None:
    _settle_holds(reservation, commit=False, now=now, db=db)
    reservation.status = status
    reservation.released_at = now
    reservation.reason = reason
    db.flush()


def _supersede_held_reservations(cart_owner_id: str, *, now: datetime, db: Session) -> int:
    previous = (
        db.query(Reservation)
        .filter(
            Reservation.cart_owner_id == cart_owner_id,
            Reservation.status == RESERVATION_HELD,
        )
        .order_by(Reservation.id.asc())
        .with_for_update()
        .all()
    )
    for reservation in previous:
        _close_reservation(
            reservation,
            status=RESERVATION_RELEASED,
            reason="superseded",
            now=now,
            db=db,
        )
    return len(previous)


def open_reservation(
    cart_owner_id: str,
    lines: list[dict],
    db: Session,
    *,
    amount_due: object = None,
    catalog: CatalogLookup | None = None,
    now: datetime | None = None,
) -> dict:
    owner = str(cart_owner_id).strip() if cart_owner_id is not None else ""
    if not owner:
        raise ValueError("cart_owner_id is required")
    normalized_lines = _normalize_lines(lines)
    normalized_amount_due = _normalize_amount_due(amount_due)
    opened_at = now or _utc_now()

    superseded = _supersede_held_reservations(owner, now=opened_at, db=db)
    if superseded:
        logger.info(
            "event=reservations_superseded cart_owner_id=%s count=%s",
            owner,
            superseded,
        )

    acquired: list[dict] = []
    try:
        for product_id, quantity in normalized_lines:
            if not is_stock_tracked(product_id):
                continue
            acquired.append(try_hold(product_id, quantity, db, catalog=catalog))
    except InsufficientStockError as exc:
        for hold in acquired:
            release_hold(int(hold["id"]), db, now=opened_at)
        logger.warning(
            "event=reservation_rejected cart_owner_id=%s product_id=%s requested=%s available=%s",
            owner,
            exc.product_id,
            exc.requested,
            exc.available,
        )
        raise
    except Exception:
        for hold in acquired:
            release_hold(int(hold["id"]), db, now=opened_at)
        raise

    reservation = Reservation(
        cart_owner_id=owner,
        status=RESERVATION_HELD,
        amount_due=normalized_amount_due,
        expires_at=opened_at + RESERVATION_TTL,
        created_at=opened_at,
        updated_at=opened_at,
    )
    db.add(reservation)
    db.flush()

    if acquired:
        db.query(StockHold).filter(
            StockHold.id.in_([int(hold["id"]) for hold in acquired])
        ).update(
            {StockHold.reservation_id: reservation.id},
            synchronize_session="fetch",
        )
        db.flush()

    logger.info(
        "event=reservation_opened reservation_id=%s cart_owner_id=%s lines=%s expires_at=%s",
        reservation.id,
        owner,
        len(acquired),
        reservation.expires_at.isoformat(),
    )
    return _load_reservation_dict(int(reservation.id), db)


def _has_verified_claim(reservation_id: int, db: Session) -> bool:
    return (
        db.query(PaymentClaim.id)
        .filter(
            PaymentClaim.reservation_id == reservation_id,
            PaymentClaim.status == CLAIM_VERIFIED,
        )
        .first()
        is not None
    )


def commit_reservation(
    reservation_id: int,
    db: Session,
    *,
    now: datetime | None = None,
) -> dict:
    committed_at = now or _utc_now()
    reservation = _lock_reservation(reservation_id, db)

    if reservation.status == RESERVATION_COMMITTED:
        return _load_reservation_dict(reservation_id, db)

    if reservation.status != RESERVATION_HELD:
        logger.error(
            "event=invalid_reservation_transition reservation_id=%s from_status=%s to_status=%s",
            reservation_id,
            reservation.status,
            RESERVATION_COMMITTED,
        )
        raise InvalidReservationStateError(
            f"reservation {reservation_id} cannot be committed from status {reservation.status}"
        )

    if reservation.expires_at < committed_at:
        _close_reservation(
            reservation,
            status=RESERVATION_EXPIRED,
            reason="reservation_expired",
            now=committed_at,
            db=db,
        )
        logger.warning(
            "event=reservation_expired_on_commit reservation_id=%s expires_at=%s",
            reservation_id,
            reservation.expires_at.isoformat(),
        )
        raise ReservationExpiredError(f"reservation {reservation_id} expired before commit")

    if not _has_verified_claim(reservation_id, db):
        logger.error(
            "event=invalid_reservation_transition reservation_id=%s reason=no_verified_claim",
            reservation_id,
        )
        raise InvalidReservationStateError(
            f"reservation {reservation_id} has no verified payment claim"
        )

    _settle_holds(reservation, commit=True, now=committed_at, db=db)
    reservation.status = RESERVATION_COMMITTED
    reservation.committed_at = committed_at
    reservation.reason = "payment_verified"
    db.flush()

    logger.info("event=reservation_committed reservation_id=%s", reservation_id)
    return _load_reservation_dict(reservation_id, db)


def release_reservation(
    reservation_id: int,
    db: Session,
    *,
    reason: str = "cancelled",
    now: datetime | None = None,
) -> dict:
    released_at = now or _utc_now()
    reservation = _lock_reservation(reservation_id, db)

    if reservation.status in {RESERVATION_RELEASED, RESERVATION_EXPIRED}:
        return _load_reservation_dict(reservation_id, db)
    if reservation.status == RESERVATION_COMMITTED:
        logger.error(
            "event=invalid_reservation_transition reservation_id=%s from_status=%s to_status=%s",
            reservation_id,
            reservation.status,
            RESERVATION_RELEASED,
        )
        raise InvalidReservationStateError(
            f"reservation {reservation_id} is already committed"
        )

    _close_reservation(
        reservation,
        status=RESERVATION_RELEASED,
        reason=reason,
        now=released_at,
        db=db,
    )
    logger.info(
        "event=reservation_released reservation_id=%s reason=%s",
        reservation_id,
        reason,
    )
    return _load_reservation_dict(reservation_id, db)


def expire_reservations(now: datetime, db: Session) -> int:
    expiring = (
        db.query(Reservation)
        .filter(
            Reservation.status == RESERVATION_HELD,
            Reservation.expires_at < now,
        )
        .order_by(Reservation.id.asc())
        .with_for_update()
        .all()
    )
    for reservation in expiring:
        _close_reservation(
            reservation,
            status=RESERVATION_EXPIRED,
            reason="reservation_expired",
            now=now,
            db=db,
        )
        logger.info(
            "event=reservation_expired reservation_id=%s cart_owner_id=%s",
            reservation.id,
            reservation.cart_owner_id,
        )
    return len(expiring)


def get_reservation(reservation_id: int, db: Session) -> dict:
    return _load_reservation_dict(reservation_id, db)


def get_reservation_for_owner(reservation_id: int, cart_owner_id: str, db: Session) -> dict:
    reservation = _load_reservation_dict(reservation_id, db)
    if reservation["cart_owner_id"] != str(cart_owner_id):
        raise LookupError("reservation not found")
    return reservation
