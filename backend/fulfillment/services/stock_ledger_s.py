from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fulfillment.db.models import StockHold, StockLine
from fulfillment.services.admission_errors import (
    InsufficientStockError,
    LedgerInvariantError,
)

HOLD_HELD = "held"
HOLD_COMMITTED = "committed"
HOLD_RELEASED = "released"
NON_STOCKED_PRODUCT_PREFIXES = ("gift-card-", "wallet-recharge-")

CatalogLookup = Callable[[str], int]

logger = logging.getLogger(__name__)


def _stock_line_to_dict(line: StockLine) -> dict:
    total_on_hand = int(line.total_on_hand)
    reserved = int(line.reserved)
    return {
        "product_id": line.product_id,
        "total_on_hand": total_on_hand,
        "reserved": reserved,
        "available": total_on_hand - reserved,
        "created_at": line.created_at,
        "updated_at": line.updated_at,
    }


def _hold_to_dict(hold: StockHold) -> dict:
    return {
        "id": hold.id,
        "product_id": hold.product_id,
        "reservation_id": hold.reservation_id,
        "quantity": int(hold.quantity),
        "status": hold.status,
        "created_at": hold.created_at,
        "settled_at": hold.settled_at,
    }


def _normalize_product_id(product_id: object) -> str:
    normalized = str(product_id).strip() if product_id is not None else ""
    if not normalized:
        raise ValueError("product_id is required")
    return normalized


def _load_stock_line(product_id: str, db: Session) -> StockLine | None:
    return (
        db.query(StockLine)
        .filter(StockLine.product_id == product_id)
        .populate_existing()
        .first()
    )


def _load_hold(hold_id: int, db: Session) -> StockHold | None:
    return (
        db.query(StockHold)
        .filter(StockHold.id == hold_id)
        .populate_existing()
        .first()
    )


def is_stock_tracked(product_id: str) -> bool:
    return not str(product_id).startswith(NON_STOCKED_PRODUCT_PREFIXES)


def ensure_stock_line(
    product_id: str,
    db: Session,
    *,
    catalog: CatalogLookup | None = None,
) -> dict:
    normalized_id = _normalize_product_id(product_id)
    line = _load_stock_line(normalized_id, db)
    if line is not None:
        return _stock_line_to_dict(line)
    if catalog is None:
        raise LookupError(f"stock line for product {normalized_id} not found")

    seed_total = int(catalog(normalized_id))
    if seed_total < 0:
        raise ValueError("catalog returned a negative stock value")

    try:
        with db.begin_nested():
            db.add(
                StockLine(
                    product_id=normalized_id,
                    total_on_hand=seed_total,
                    reserved=0,
                )
            )
            db.flush()
        logger.info(
            "event=stock_line_seeded product_id=%s total_on_hand=%s",
            normalized_id,
            seed_total,
        )
    except IntegrityError:
        # Another request seeded the line first.
        pass

    line = _load_stock_line(normalized_id, db)
    if line is None:
        raise LookupError(f"stock line for product {normalized_id} not found")
    return _stock_line_to_dict(line)


def get_stock_line(product_id: str, db: Session) -> dict:
    normalized_id = _normalize_product_id(product_id)
    line = _load_stock_line(normalized_id, db)
    if line is None:
        raise LookupError(f"stock line for product {normalized_id} not found")
    return _stock_line_to_dict(line)


def set_total_on_hand(product_id: str, total_on_hand: int, db: Session) -> dict:
    normalized_id = _normalize_product_id(product_id)
    total = int(total_on_hand)
    if total < 0:
        raise ValueError("total_on_hand must be greater than or equal to 0")

    line = (
        db.query(StockLine)
        .filter(StockLine.product_id == normalized_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if line is None:
        line = StockLine(product_id=normalized_id, total_on_hand=total, reserved=0)
        db.add(line)
        db.flush()
        return _stock_line_to_dict(line)

    if total < int(line.reserved):
        raise ValueError(
            f"total_on_hand cannot be lower than the {int(line.reserved)} units currently held"
        )
    line.total_on_hand = total
    db.flush()
    return _stock_line_to_dict(line)


def try_hold(
    product_id: str,
    quantity: int,
    db: Session,
    *,
    catalog: CatalogLookup | None = None,
) -> dict:
    normalized_id = _normalize_product_id(product_id)
    qty = int(quantity)
    if qty <= 0:
        raise ValueError("quantity must be greater than 0")

    ensure_stock_line(normalized_id, db, catalog=catalog)

    # The conditional UPDATE is the per-product serialization point: it either
    # row-locks the line and adds the hold, or matches nothing.
    updated = (
        db.query(StockLine)
        .filter(
            StockLine.product_id == normalized_id,
            StockLine.total_on_hand - StockLine.reserved >= qty,
        )
        .update(
            {StockLine.reserved: StockLine.reserved + qty},
            synchronize_session="fetch",
        )
    )
    if int(updated or 0) != 1:
        line = _load_stock_line(normalized_id, db)
        available = 0
        if line is not None:
            available = int(line.total_on_hand) - int(line.reserved)
        raise InsufficientStockError(normalized_id, qty, max(0, available))

    hold = StockHold(product_id=normalized_id, quantity=qty, status=HOLD_HELD)
    db.add(hold)
    db.flush()
    return _hold_to_dict(hold)


def _settle_hold(hold_id: int, *, next_status: str, now: datetime, db: Session) -> StockHold | None:
    flipped = (
        db.query(StockHold)
        .filter(StockHold.id == hold_id, StockHold.status == HOLD_HELD)
        .update(
            {StockHold.status: next_status, StockHold.settled_at: now},
            synchronize_session="fetch",
        )
    )
    if int(flipped or 0) != 1:
        return None
    return _load_hold(hold_id, db)


def release_hold(hold_id: int, db: Session, *, now: datetime | None = None) -> bool:
    """Return the held units to available; False when the hold was already settled."""
    settled_at = now or datetime.utcnow()
    hold = _settle_hold(hold_id, next_status=HOLD_RELEASED, now=settled_at, db=db)
    if hold is None:
        return False

    qty = int(hold.quantity)
    updated = (
        db.query(StockLine)
        .filter(
            StockLine.product_id == hold.product_id,
            StockLine.reserved >= qty,
        )
        .update(
            {StockLine.reserved: StockLine.reserved - qty},
            synchronize_session="fetch",
        )
    )
    if int(updated or 0) != 1:
        logger.error(
            "event=ledger_invariant_violation operation=release hold_id=%s product_id=%s quantity=%s",
            hold_id,
            hold.product_id,
            qty,
        )
        raise LedgerInvariantError(f"stock line {hold.product_id} has fewer reserved units than hold {hold_id}")
    return True


def commit_hold(hold_id: int, db: Session, *, now: datetime | None = None) -> bool:
    """Turn the held units into a permanent deduction; False when already settled."""
    settled_at = now or datetime.utcnow()
    hold = _settle_hold(hold_id, next_status=HOLD_COMMITTED, now=settled_at, db=db)
    if hold is None:
        return False

    qty = int(hold.quantity)
    updated = (
        db.query(StockLine)
        .filter(
            StockLine.product_id == hold.product_id,
            StockLine.reserved >= qty,
            StockLine.total_on_hand >= qty,
        )
        .update(
            {
                StockLine.reserved: StockLine.reserved - qty,
                StockLine.total_on_hand: StockLine.total_on_hand - qty,
            },
            synchronize_session="fetch",
        )
    )
    if int(updated or 0) != 1:
        logger.error(
            "event=ledger_invariant_violation operation=commit hold_id=%s product_id=%s quantity=%s",
            hold_id,
            hold.product_id,
            qty,
        )
        raise LedgerInvariantError(f"stock line {hold.product_id} cannot absorb commit of hold {hold_id}")
    return True
