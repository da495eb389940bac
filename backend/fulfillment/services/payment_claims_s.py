from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fulfillment.db.config import get_bank_timezone
from fulfillment.db.models import PaymentClaim, Reservation, VerificationAttempt
from fulfillment.services import bdv_client
from fulfillment.services.bdv_client import (
    OUTCOME_ALREADY_SETTLED,
    OUTCOME_NOT_FOUND,
    OUTCOME_REJECTED_REQUEST,
    GatewayResult,
)
from fulfillment.services.pago_movil_s import CENTS, normalize_claim_fields, parse_amount

MAX_VERIFICATION_ATTEMPTS = 3
STALE_VERIFYING_AFTER = timedelta(minutes=30)

CLAIM_SUBMITTED = "submitted"
CLAIM_VERIFYING = "verifying"
CLAIM_VERIFIED = "verified"
CLAIM_REJECTED = "rejected"
CLAIM_DUPLICATE = "duplicate"

VERDICT_VERIFIED = "verified"
VERDICT_REJECTED = "rejected"
VERDICT_DUPLICATE = "duplicate"
VERDICT_RETRY_LATER = "retry_later"

REASON_MESSAGES = {
    "duplicate_reference": "This payment reference was already used.",
    "reservation_not_held": "Your stock reservation is no longer active. Start checkout again before paying.",
    "reservation_already_paid": "This checkout already has a verified payment.",
    "claim_in_progress": "Another payment for this checkout is still being verified.",
    "amount_due_mismatch": "The claimed amount does not match the amount due for this checkout.",
    "amount_mismatch": "The amount reported by the bank does not match the claimed amount.",
    "date_mismatch": "The payment date reported by the bank does not match the claimed date.",
    "reference_not_found": "The bank has no payment with this reference, date, amount and phone.",
    "already_settled": "The bank reports this payment was already settled for another purchase.",
    "gateway_rejected_claim": "The bank rejected the payment data. Check every field and submit again.",
    "gateway_unavailable": "The bank could not be reached. Your payment was sent to manual review.",
    "verification_abandoned": "Verification did not finish. Your payment was sent to manual review.",
    "verification_pending": "The bank could not be reached. Try again in a few moments.",
}

GatewayVerify = Callable[[dict], GatewayResult]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentVerdict:
    status: str
    claim: dict
    reason_code: str | None = None
    message: str | None = None
    manual_review: bool = False

    @property
    def verified(self) -> bool:
        return self.status == VERDICT_VERIFIED

    @property
    def retry_later(self) -> bool:
        return self.status == VERDICT_RETRY_LATER


def _utc_now() -> datetime:
    return datetime.utcnow()


def _bank_today(now: datetime) -> date:
    return now.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(get_bank_timezone())).date()


def _attempt_count(claim_id: int, db: Session) -> int:
    count = (
        db.query(func.count(VerificationAttempt.id))
        .filter(VerificationAttempt.claim_id == claim_id)
        .scalar()
    )
    return int(count or 0)


def _claim_to_dict(claim: PaymentClaim, *, attempt_count: int = 0) -> dict:
    return {
        "id": claim.id,
        "reservation_id": claim.reservation_id,
        "order_id": claim.order_id,
        "payer_phone": claim.payer_phone,
        "payer_id_number": claim.payer_id_number,
        "origin_bank_code": claim.origin_bank_code,
        "reference_number": claim.reference_number,
        "claimed_amount": str(Decimal(claim.claimed_amount).quantize(CENTS)),
        "claimed_date": claim.claimed_date,
        "receipt_image_ref": claim.receipt_image_ref,
        "status": claim.status,
        "reason_code": claim.reason_code,
        "reason_message": claim.reason_message,
        "manual_review": bool(claim.manual_review),
        "gateway_reference_code": claim.gateway_reference_code,
        "verified_amount": (
            str(Decimal(claim.verified_amount).quantize(CENTS))
            if claim.verified_amount is not None
            else None
        ),
        "attempt_count": attempt_count,
        "reviewed_at": claim.reviewed_at,
        "reviewed_by": claim.reviewed_by,
        "review_note": claim.review_note,
        "created_at": claim.created_at,
        "updated_at": claim.updated_at,
    }


def _serialize_claim(claim: PaymentClaim, db: Session) -> dict:
    return _claim_to_dict(claim, attempt_count=_attempt_count(int(claim.id), db))


def _load_claim(claim_id: int, db: Session, *, lock: bool = False) -> PaymentClaim:
    query = db.query(PaymentClaim).filter(PaymentClaim.id == claim_id)
    if lock:
        query = query.with_for_update()
    claim = query.populate_existing().first()
    if claim is None:
        raise LookupError("payment claim not found")
    return claim


def _verdict_from_claim(claim: PaymentClaim, db: Session) -> PaymentVerdict:
    if claim.status == CLAIM_VERIFIED:
        status = VERDICT_VERIFIED
    elif claim.status == CLAIM_REJECTED:
        status = VERDICT_REJECTED
    elif claim.status == CLAIM_DUPLICATE:
        status = VERDICT_DUPLICATE
    else:
        status = VERDICT_RETRY_LATER

    reason_code = claim.reason_code
    message = claim.reason_message
    if status == VERDICT_RETRY_LATER:
        reason_code = reason_code or "verification_pending"
        message = message or REASON_MESSAGES["verification_pending"]
    return PaymentVerdict(
        status=status,
        claim=_serialize_claim(claim, db),
        reason_code=reason_code,
        message=message,
        manual_review=bool(claim.manual_review),
    )


def _reject(
    claim: PaymentClaim,
    *,
    reason_code: str,
    now: datetime,
    unlock_reference: bool = False,
    manual_review: bool = False,
) -> None:
    claim.status = CLAIM_REJECTED
    claim.reason_code = reason_code
    claim.reason_message = REASON_MESSAGES[reason_code]
    claim.manual_review = manual_review
    if unlock_reference:
        claim.reference_locked = False
    claim.updated_at = now


def _store_duplicate(reservation_id: int, fields: dict, *, now: datetime, db: Session) -> PaymentVerdict:
    claim = PaymentClaim(
        reservation_id=reservation_id,
        status=CLAIM_DUPLICATE,
        reference_locked=False,
        reason_code="duplicate_reference",
        reason_message=REASON_MESSAGES["duplicate_reference"],
        created_at=now,
        updated_at=now,
        **fields,
    )
    db.add(claim)
    db.flush()
    db.commit()
    logger.warning(
        "event=claim_duplicate_reference claim_id=%s reservation_id=%s reference_number=%s",
        claim.id,
        reservation_id,
        fields["reference_number"],
    )
    return _verdict_from_claim(claim, db)


def _pre_gateway_rejection(claim: PaymentClaim, reservation: Reservation, *, now: datetime, db: Session) -> str | None:
    if reservation.status != "held" or reservation.expires_at < now:
        return "reservation_not_held"

    sibling_statuses = {
        status
        for (status,) in db.query(PaymentClaim.status)
        .filter(
            PaymentClaim.reservation_id == reservation.id,
            PaymentClaim.id != claim.id,
            PaymentClaim.status.in_([CLAIM_SUBMITTED, CLAIM_VERIFYING, CLAIM_VERIFIED]),
        )
        .all()
    }
    if CLAIM_VERIFIED in sibling_statuses:
        return "reservation_already_paid"
    if sibling_statuses:
        return "claim_in_progress"

    if reservation.amount_due is not None:
        amount_due = Decimal(reservation.amount_due).quantize(CENTS)
        if Decimal(claim.claimed_amount).quantize(CENTS) != amount_due:
            return "amount_due_mismatch"
    return None


def _gateway_request(claim: PaymentClaim) -> dict:
    return {
        "payer_phone": claim.payer_phone,
        "payer_id_number": claim.payer_id_number,
        "origin_bank_code": claim.origin_bank_code,
        "reference_number": claim.reference_number,
        "claimed_amount": Decimal(claim.claimed_amount).quantize(CENTS),
        "claimed_date": claim.claimed_date,
    }


def _parse_bank_date(raw_date: str) -> date | None:
    raw = raw_date.strip()
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        parsed = None
    if parsed is not None:
        if parsed.tzinfo is not None:
            return parsed.astimezone(ZoneInfo(get_bank_timezone())).date()
        return parsed.date()
    for pattern in ("%d/%m/%Y", "%d-%m-%Y"):
        try:
            return datetime.strptime(raw[:10], pattern).date()
        except ValueError:
            continue
    return None


def _same_bank_day(claimed_date: date, raw_date: str | None) -> bool:
    # The bank lookup already filters by fechaPago; a missing or unreadable
    # date in the answer does not contradict the claim.
    if raw_date is None:
        return True
    bank_date = _parse_bank_date(raw_date)
    if bank_date is None:
        logger.warning("event=bdv_unreadable_date raw_date=%s", raw_date)
        return True
    return bank_date == claimed_date


def _apply_gateway_result(
    claim: PaymentClaim,
    result: GatewayResult,
    *,
    attempt_number: int,
    now: datetime,
) -> None:
    if result.matched:
        bank_amount = parse_amount(result.raw_amount)
        if bank_amount != Decimal(claim.claimed_amount).quantize(CENTS):
            _reject(claim, reason_code="amount_mismatch", now=now)
            return
        if not _same_bank_day(claim.claimed_date, result.raw_date):
            _reject(claim, reason_code="date_mismatch", now=now)
            return
        claim.status = CLAIM_VERIFIED
        claim.reason_code = None
        claim.reason_message = None
        claim.verified_amount = bank_amount
        claim.gateway_reference_code = result.gateway_reference_code
        claim.updated_at = now
        return

    if result.outcome == OUTCOME_NOT_FOUND:
        _reject(claim, reason_code="reference_not_found", now=now)
        return
    if result.outcome == OUTCOME_ALREADY_SETTLED:
        _reject(claim, reason_code="already_settled", now=now)
        return
    if result.outcome == OUTCOME_REJECTED_REQUEST:
        _reject(claim, reason_code="gateway_rejected_claim", now=now)
        return

    if not result.is_transient or attempt_number >= MAX_VERIFICATION_ATTEMPTS:
        _reject(claim, reason_code="gateway_unavailable", now=now, manual_review=True)
        return
    claim.reason_code = "verification_pending"
    claim.reason_message = REASON_MESSAGES["verification_pending"]
    claim.updated_at = now


def _run_attempt(claim_id: int, db: Session, *, verify: GatewayVerify, now: datetime) -> PaymentVerdict:
    claim = _load_claim(claim_id, db)
    attempt_number = _attempt_count(claim_id, db) + 1
    request = _gateway_request(claim)
    # Release the read transaction so no row lock survives the bank call.
    db.commit()

    result = verify(request)

    claim = _load_claim(claim_id, db, lock=True)
    db.add(
        VerificationAttempt(
            claim_id=claim_id,
            attempt_number=attempt_number,
            request_payload=json.dumps(result.request_payload, separators=(",", ":"), ensure_ascii=True, default=str),
            response_code=result.response_code,
            outcome=result.outcome,
            created_at=now,
        )
    )
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.warning(
            "event=claim_attempt_conflict claim_id=%s attempt_number=%s",
            claim_id,
            attempt_number,
        )
        return _verdict_from_claim(_load_claim(claim_id, db), db)

    if claim.status == CLAIM_VERIFYING:
        _apply_gateway_result(claim, result, attempt_number=attempt_number, now=now)
    db.flush()
    db.commit()

    verdict = _verdict_from_claim(claim, db)
    if verdict.verified:
        logger.info(
            "event=claim_verified claim_id=%s reservation_id=%s attempt=%s gateway_reference=%s",
            claim_id,
            claim.reservation_id,
            attempt_number,
            claim.gateway_reference_code,
        )
    elif verdict.retry_later:
        logger.warning(
            "event=claim_verification_deferred claim_id=%s attempt=%s outcome=%s",
            claim_id,
            attempt_number,
            result.outcome,
        )
    else:
        logger.warning(
            "event=claim_rejected claim_id=%s attempt=%s outcome=%s reason=%s manual_review=%s",
            claim_id,
            attempt_number,
            result.outcome,
            verdict.reason_code,
            verdict.manual_review,
        )
    return verdict


def submit_payment_claim(
    reservation_id: int,
    fields: dict,
    db: Session,
    *,
    verify: GatewayVerify | None = None,
    now: datetime | None = None,
) -> PaymentVerdict:
    submitted_at = now or _utc_now()
    gateway = verify or bdv_client.verify_payment
    normalized = normalize_claim_fields(fields, today=_bank_today(submitted_at))

    if db.query(Reservation.id).filter(Reservation.id == reservation_id).first() is None:
        raise LookupError("reservation not found")

    claim = PaymentClaim(
        reservation_id=reservation_id,
        status=CLAIM_SUBMITTED,
        reference_locked=True,
        manual_review=False,
        created_at=submitted_at,
        updated_at=submitted_at,
        **normalized,
    )
    db.add(claim)
    try:
        db.flush()
        db.commit()
    except IntegrityError:
        # The partial unique index on locked references is the exactly-once gate.
        db.rollback()
        return _store_duplicate(reservation_id, normalized, now=submitted_at, db=db)

    claim_id = int(claim.id)
    # The reservation row lock serializes sibling checks, so at most one claim
    # per reservation leaves SUBMITTED for the bank.
    reservation = (
        db.query(Reservation)
        .filter(Reservation.id == reservation_id)
        .with_for_update()
        .populate_existing()
        .one()
    )
    claim = _load_claim(claim_id, db, lock=True)
    rejection = _pre_gateway_rejection(claim, reservation, now=submitted_at, db=db)
    if rejection is not None:
        _reject(claim, reason_code=rejection, now=submitted_at, unlock_reference=True)
        db.flush()
        db.commit()
        logger.warning(
            "event=claim_rejected_before_gateway claim_id=%s reservation_id=%s reason=%s",
            claim_id,
            reservation_id,
            rejection,
        )
        return _verdict_from_claim(claim, db)

    claim.status = CLAIM_VERIFYING
    claim.updated_at = submitted_at
    db.flush()
    db.commit()
    logger.info(
        "event=claim_verifying claim_id=%s reservation_id=%s reference_number=%s",
        claim_id,
        reservation_id,
        claim.reference_number,
    )
    return _run_attempt(claim_id, db, verify=gateway, now=submitted_at)


def retry_payment_claim(
    claim_id: int,
    db: Session,
    *,
    verify: GatewayVerify | None = None,
    now: datetime | None = None,
) -> PaymentVerdict:
    retried_at = now or _utc_now()
    gateway = verify or bdv_client.verify_payment
    claim = _load_claim(claim_id, db, lock=True)
    if claim.status != CLAIM_VERIFYING:
        verdict = _verdict_from_claim(claim, db)
        db.commit()
        return verdict

    if _attempt_count(claim_id, db) >= MAX_VERIFICATION_ATTEMPTS:
        _reject(claim, reason_code="gateway_unavailable", now=retried_at, manual_review=True)
        db.flush()
        db.commit()
        logger.warning("event=claim_retry_budget_exhausted claim_id=%s", claim_id)
        return _verdict_from_claim(claim, db)

    return _run_attempt(claim_id, db, verify=gateway, now=retried_at)


def escalate_stale_claims(now: datetime, db: Session) -> int:
    stale = (
        db.query(PaymentClaim)
        .filter(
            PaymentClaim.status.in_([CLAIM_SUBMITTED, CLAIM_VERIFYING]),
            PaymentClaim.updated_at <= now - STALE_VERIFYING_AFTER,
        )
        .order_by(PaymentClaim.id.asc())
        .with_for_update()
        .all()
    )
    for claim in stale:
        _reject(claim, reason_code="verification_abandoned", now=now, manual_review=True)
        logger.warning(
            "event=claim_escalated_to_manual_review claim_id=%s reservation_id=%s",
            claim.id,
            claim.reservation_id,
        )
    if stale:
        db.flush()
    return len(stale)


def get_claim(claim_id: int, db: Session) -> dict:
    return _serialize_claim(_load_claim(claim_id, db), db)


def get_claim_for_owner(claim_id: int, cart_owner_id: str, db: Session) -> dict:
    claim = (
        db.query(PaymentClaim)
        .join(Reservation, Reservation.id == PaymentClaim.reservation_id)
        .filter(
            PaymentClaim.id == claim_id,
            Reservation.cart_owner_id == str(cart_owner_id),
        )
        .populate_existing()
        .first()
    )
    if claim is None:
        raise LookupError("payment claim not found")
    return _serialize_claim(claim, db)


def list_manual_review_claims(db: Session, *, include_reviewed: bool = False) -> list[dict]:
    query = db.query(PaymentClaim).filter(PaymentClaim.manual_review.is_(True))
    if not include_reviewed:
        query = query.filter(PaymentClaim.reviewed_at.is_(None))
    claims = query.order_by(PaymentClaim.updated_at.asc(), PaymentClaim.id.asc()).all()
    return [_serialize_claim(claim, db) for claim in claims]


def record_manual_review(
    claim_id: int,
    *,
    reviewer: str,
    note: str,
    db: Session,
    now: datetime | None = None,
) -> dict:
    normalized_note = str(note).strip()
    if not normalized_note:
        raise ValueError("review note is required")
    claim = _load_claim(claim_id, db, lock=True)
    if not claim.manual_review:
        raise ValueError("payment claim is not queued for manual review")

    claim.reviewed_at = now or _utc_now()
    claim.reviewed_by = str(reviewer)
    claim.review_note = normalized_note
    db.flush()
    logger.info(
        "event=claim_manual_review_recorded claim_id=%s reviewer=%s",
        claim_id,
        reviewer,
    )
    return _serialize_claim(claim, db)
