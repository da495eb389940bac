from fulfillment.schemas.checkout_s import (
    CartLineRequest,
    ConfirmPaymentRequest,
    StartCheckoutRequest,
)
from fulfillment.schemas.payment_claims_s import ManualReviewRequest
from fulfillment.schemas.stock_reservations_s import (
    ExpireReservationsResponse,
    ReservationLineResponse,
    ReservationResponse,
)
from fulfillment.schemas.stock_s import SetStockLineRequest

__all__ = [
    "CartLineRequest",
    "StartCheckoutRequest",
    "ConfirmPaymentRequest",
    "SetStockLineRequest",
    "ManualReviewRequest",
    "ReservationLineResponse",
    "ReservationResponse",
    "ExpireReservationsResponse",
]
