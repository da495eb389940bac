from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict


class ReservationLineResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hold_id: int
    product_id: str
    quantity: int
    status: Literal["held", "committed", "released"]


class ReservationResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: int
    cart_owner_id: str
    status: Literal["held", "committed", "released", "expired"]
    amount_due: str | None = None
    lines: list[ReservationLineResponse]
    expires_at: datetime
    committed_at: datetime | None = None
    released_at: datetime | None = None
    reason: str | None = None
    created_at: datetime
    updated_at: datetime


class ExpireReservationsResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    expired_count: int
    escalated_claims: int
