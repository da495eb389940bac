from __future__ import annotations


class AdmissionError(Exception):
    """Base error for stock admission and payment claim failures."""


class InsufficientStockError(AdmissionError):
    """A hold could not be taken because available stock is below the request."""

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"insufficient stock for product {product_id}: "
            f"requested {requested}, available {available}"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class ClaimValidationError(ValueError):
    """Payment claim fields are malformed; raised before any gateway call."""


class InvalidReservationStateError(AdmissionError):
    """A reservation transition was requested from a state that forbids it."""


class ReservationExpiredError(InvalidReservationStateError):
    """The reservation TTL elapsed before the transition was requested."""


class PaymentVerifiedHoldExpiredError(AdmissionError):
    """The payment claim was verified but the stock hold is no longer active."""

    def __init__(self, reservation_id: int, claim_id: int) -> None:
        super().__init__("payment verified but hold expired")
        self.reservation_id = reservation_id
        self.claim_id = claim_id


class LedgerInvariantError(AdmissionError):
    """A stock line would break reserved <= total_on_hand."""


class CatalogUnavailableError(AdmissionError):
    """The catalog service could not be reached to seed a stock line."""
