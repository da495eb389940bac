from datetime import date
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class CartLineRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    product_id: str = Field(min_length=1, max_length=120)
    quantity: int = Field(gt=0)


class StartCheckoutRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    lines: list[CartLineRequest] = Field(min_length=1)
    amount_due: Decimal | None = Field(default=None, gt=0, max_digits=12, decimal_places=2)


class ConfirmPaymentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    payer_phone: str = Field(min_length=1, max_length=20)
    payer_id_number: str | None = Field(default=None, max_length=20)
    origin_bank_code: str = Field(min_length=4, max_length=4, pattern=r"^\d{4}$")
    reference_number: str = Field(min_length=1, max_length=20)
    claimed_amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    claimed_date: date
    receipt_image_ref: str | None = Field(default=None, max_length=500)
