from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from fulfillment.services.admission_errors import ClaimValidationError

# Source: Banco Central de Venezuela participant codes for Pago Movil.
VENEZUELAN_BANKS = [
    {"code": "0102", "name": "Banco de Venezuela", "short_name": "Venezuela"},
    {"code": "0104", "name": "Venezolano de Crédito", "short_name": "Venezolano de Crédito"},
    {"code": "0105", "name": "Mercantil", "short_name": "Mercantil"},
    {"code": "0108", "name": "Provincial", "short_name": "Provincial"},
    {"code": "0114", "name": "Bancaribe", "short_name": "Bancaribe"},
    {"code": "0115", "name": "Exterior", "short_name": "Exterior"},
    {"code": "0128", "name": "Caroní", "short_name": "Caroní"},
    {"code": "0134", "name": "Banesco", "short_name": "Banesco"},
    {"code": "0137", "name": "Sofitasa", "short_name": "Sofitasa"},
    {"code": "0138", "name": "Banco Plaza", "short_name": "Plaza"},
    {"code": "0146", "name": "Banco de la Gente Emprendedora", "short_name": "Bangente"},
    {"code": "0151", "name": "Fondo Común", "short_name": "Fondo Común"},
    {"code": "0156", "name": "100% Banco", "short_name": "100% Banco"},
    {"code": "0157", "name": "Delsur", "short_name": "Delsur"},
    {"code": "0163", "name": "Del Tesoro", "short_name": "Tesoro"},
    {"code": "0166", "name": "Agrícola de Venezuela", "short_name": "Agrícola"},
    {"code": "0168", "name": "Bancrecer", "short_name": "Bancrecer"},
    {"code": "0169", "name": "Mi Banco", "short_name": "Mi Banco"},
    {"code": "0171", "name": "Activo", "short_name": "Activo"},
    {"code": "0172", "name": "Bancamiga", "short_name": "Bancamiga"},
    {"code": "0173", "name": "Internacional de Desarrollo", "short_name": "BID"},
    {"code": "0174", "name": "Banplus", "short_name": "Banplus"},
    {"code": "0175", "name": "Bicentenario", "short_name": "Bicentenario"},
    {"code": "0177", "name": "BANFANB", "short_name": "BANFANB"},
    {"code": "0191", "name": "BNC", "short_name": "BNC"},
]
_BANKS_BY_CODE = {bank["code"]: bank for bank in VENEZUELAN_BANKS}

_PHONE_PATTERN = re.compile(r"^04\d{9}$")
_ID_NUMBER_PATTERN = re.compile(r"^[VE]\d{6,9}$")
_REFERENCE_PATTERN = re.compile(r"^\d{4,8}$")
_SEPARATORS = re.compile(r"[-\s]")
CENTS = Decimal("0.01")


def list_banks() -> list[dict]:
    return [dict(bank) for bank in VENEZUELAN_BANKS]


def get_bank_by_code(code: str) -> dict | None:
    bank = _BANKS_BY_CODE.get(str(code).strip())
    return dict(bank) if bank is not None else None


def format_phone_for_api(phone: str) -> str:
    return _SEPARATORS.sub("", str(phone))


def is_valid_phone(phone: str) -> bool:
    return bool(_PHONE_PATTERN.match(format_phone_for_api(phone)))


def format_id_number_for_api(id_number: str) -> str:
    cleaned = _SEPARATORS.sub("", str(id_number)).upper()
    if cleaned[:1].isdigit():
        return "V" + cleaned
    return cleaned


def is_valid_id_number(id_number: str) -> bool:
    return bool(_ID_NUMBER_PATTERN.match(format_id_number_for_api(id_number)))


def format_reference(reference: str) -> str:
    return re.sub(r"\s", "", str(reference))


def is_valid_reference(reference: str) -> bool:
    return bool(_REFERENCE_PATTERN.match(format_reference(reference)))


def format_date_for_api(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def format_amount_for_api(amount: Decimal) -> str:
    return f"{Decimal(amount).quantize(CENTS)}"


def parse_amount(value: object) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(CENTS)


def _parse_claimed_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip() if value is not None else ""
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise ClaimValidationError("claimed_date must be a YYYY-MM-DD date") from exc


def normalize_claim_fields(fields: dict, *, today: date | None = None) -> dict:
    required = ("payer_phone", "origin_bank_code", "reference_number", "claimed_amount", "claimed_date")
    missing = [
        name
        for name in required
        if fields.get(name) is None or not str(fields.get(name)).strip()
    ]
    if missing:
        raise ClaimValidationError(f"missing claim fields: {', '.join(missing)}")

    payer_phone = format_phone_for_api(fields["payer_phone"])
    if not is_valid_phone(payer_phone):
        raise ClaimValidationError("payer_phone must look like 04121234567")

    origin_bank_code = str(fields["origin_bank_code"]).strip()
    if get_bank_by_code(origin_bank_code) is None:
        raise ClaimValidationError(f"unknown origin bank code {origin_bank_code}")

    reference_number = format_reference(fields["reference_number"])
    if not is_valid_reference(reference_number):
        raise ClaimValidationError("reference_number must have between 4 and 8 digits")

    claimed_amount = parse_amount(fields["claimed_amount"])
    if claimed_amount is None or claimed_amount <= 0:
        raise ClaimValidationError("claimed_amount must be a positive amount")

    claimed_date = _parse_claimed_date(fields["claimed_date"])
    if today is not None and claimed_date > today:
        raise ClaimValidationError("claimed_date cannot be in the future")

    payer_id_number = fields.get("payer_id_number")
    if payer_id_number is not None and str(payer_id_number).strip():
        payer_id_number = format_id_number_for_api(payer_id_number)
        if not is_valid_id_number(payer_id_number):
            raise ClaimValidationError("payer_id_number must look like V12345678")
    else:
        payer_id_number = None

    receipt_image_ref = fields.get("receipt_image_ref")
    if receipt_image_ref is not None:
        receipt_image_ref = str(receipt_image_ref).strip() or None

    return {
        "payer_phone": payer_phone,
        "payer_id_number": payer_id_number,
        "origin_bank_code": origin_bank_code,
        "reference_number": reference_number,
        "claimed_amount": claimed_amount,
        "claimed_date": claimed_date,
        "receipt_image_ref": receipt_image_ref,
    }
