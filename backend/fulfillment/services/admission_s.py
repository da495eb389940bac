from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from fulfillment.db.models import AdmittedOrder, OrderEvent, PaymentClaim
from fulfillment.services.admission_errors import (
    InvalidReservationStateError,
    PaymentVerifiedHoldExpiredError,
)
from fulfillment.services.payment_claims_s import (
    GatewayVerify,
    PaymentVerdict,
    get_claim_for_owner,
    retry_payment_claim,
    submit_payment_claim,
)
from fulfillment.services.reservations_s import (
    commit_reservation,
    get_reservation_for_owner,
    open_reservation,
    release_reservation,
)
from fulfillment.services.stock_ledger_s import CatalogLookup

ORDER_ADMITTED_EVENT = "order_admitted"
EVENT_PENDING = "pending"
EVENT_DISPATCHED = "dispatched"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionResult:
    verdict: PaymentVerdict
    order: dict | None = None

    @property
    def admitted(self) -> bool:
        return self.order is not None


def _order_to_dict(order: AdmittedOrder) -> dict:
    return {
        "id": order.id,
        "reservation_id": order.reservation_id,
        "payment_claim_id": order.payment_claim_id,
        "cart_owner_id": order.cart_owner_id,
        "amount": str(order.amount),
        "created_at": order.created_at,
    }


def _event_to_dict(event: OrderEvent) -> dict:
    return {
        "id": event.id,
        "event_type": event.event_type,
        "order_id": event.order_id,
        "payload": json.loads(event.payload),
        "status": event.status,
        "created_at": event.created_at,
        "dispatched_at": event.dispatched_at,
    }


def start_checkout(
    cart_owner_id: str,
    lines: list[dict],
    db: Session,
    *,
    amount_due: object = None,
    catalog: CatalogLookup | None = None,
    now: datetime | None = None,
) -> dict:
    try:
        reservation = open_reservation(
            cart_owner_id,
            lines,
            db,
            amount_due=amount_due,
            catalog=catalog,
            now=now,
        )
    except Exception:
        db.rollback()
        raise
    db.commit()
    return reservation


def cancel_checkout(cart_owner_id: str, reservation_id: int, db: Session) -> dict:
    get_reservation_for_owner(reservation_id, cart_owner_id, db)
    reservation = release_reservation(reservation_id, db, reason="cancelled")
    db.commit()
    return reservation


def _admit(verdict: PaymentVerdict, db: Session, *, now: datetime | None = None) -> AdmissionResult:
    claim_id = int(verdict.claim["id"])
    reservation_id = int(verdict.claim["reservation_id"])

    existing = (
        db.query(AdmittedOrder)
        .filter(AdmittedOrder.reservation_id == reservation_id)
        .first()
    )
    if existing is not None:
        return AdmissionResult(verdict=verdict, order=_order_to_dict(existing))

    try:
        reservation = commit_reservation(reservation_id, db, now=now)
    except InvalidReservationStateError as exc:
        # Persist the expiry edge taken during commit; the verified claim stays
        # as it is and is never replayed against reallocated stock.
        db.commit()
        logger.error(
            "event=payment_verified_hold_expired reservation_id=%s claim_id=%s error=%s",
            reservation_id,
            claim_id,
            str(exc),
        )
        raise PaymentVerifiedHoldExpiredError(reservation_id, claim_id) from exc

    order = AdmittedOrder(
        reservation_id=reservation_id,
        payment_claim_id=claim_id,
        cart_owner_id=reservation["cart_owner_id"],
        amount=Decimal(verdict.claim["verified_amount"] or verdict.claim["claimed_amount"]),
    )
    db.add(order)
    db.flush()

    db.query(PaymentClaim).filter(PaymentClaim.id == claim_id).update(
        {PaymentClaim.order_id: order.id},
        synchronize_session="fetch",
    )
    payload = {
        "order_id": order.id,
        "reservation_id": reservation_id,
        "payment_claim_id": claim_id,
        "cart_owner_id": reservation["cart_owner_id"],
        "amount": str(order.amount),
        "reference_number": verdict.claim["reference_number"],
        "lines": [
            {"product_id": line["product_id"], "quantity": line["quantity"]}
            for line in reservation["lines"]
        ],
    }
    db.add(
        OrderEvent(
            event_type=ORDER_ADMITTED_EVENT,
            order_id=order.id,
            payload=json.dumps(payload, separators=(",", ":"), ensure_ascii=True),
            status=EVENT_PENDING,
        )
    )
    db.flush()
    db.commit()

    logger.info(
        "event=order_admitted order_id=%s reservation_id=%s claim_id=%s",
        order.id,
        reservation_id,
        claim_id,
    )
    return AdmissionResult(verdict=verdict, order=_order_to_dict(order))


def confirm_payment(
    cart_owner_id: str,
    reservation_id: int,
    fields: dict,
    db: Session,
    *,
    verify: GatewayVerify | None = None,
    now: datetime | None = None,
) -> AdmissionResult:
    get_reservation_for_owner(reservation_id, cart_owner_id, db)
    verdict = submit_payment_claim(reservation_id, fields, db, verify=verify, now=now)
    if not verdict.verified:
        return AdmissionResult(verdict=verdict)
    return _admit(verdict, db, now=now)


def retry_payment(
    cart_owner_id: str,
    claim_id: int,
    db: Session,
    *,
    verify: GatewayVerify | None = None,
    now: datetime | None = None,
) -> AdmissionResult:
    get_claim_for_owner(claim_id, cart_owner_id, db)
    verdict = retry_payment_claim(claim_id, db, verify=verify, now=now)
    if not verdict.verified:
        return AdmissionResult(verdict=verdict)
    return _admit(verdict, db, now=now)


def get_order_for_reservation(reservation_id: int, db: Session) -> dict | None:
    order = (
        db.query(AdmittedOrder)
        .filter(AdmittedOrder.reservation_id == reservation_id)
        .first()
    )
    if order is None:
        return None
    return _order_to_dict(order)


def list_pending_order_events(db: Session, *, limit: int = 100) -> list[dict]:
    events = (
        db.query(OrderEvent)
        .filter(OrderEvent.status == EVENT_PENDING)
        .order_by(OrderEvent.created_at.asc(), OrderEvent.id.asc())
        .limit(limit)
        .all()
    )
    return [_event_to_dict(event) for event in events]


def mark_order_event_dispatched(event_id: int, db: Session) -> dict:
    event = (
        db.query(OrderEvent)
        .filter(OrderEvent.id == event_id)
        .with_for_update()
        .first()
    )
    if event is None:
        raise LookupError("order event not found")
    if event.status != EVENT_DISPATCHED:
        event.status = EVENT_DISPATCHED
        event.dispatched_at = datetime.utcnow()
        db.flush()
    return _event_to_dict(event)
