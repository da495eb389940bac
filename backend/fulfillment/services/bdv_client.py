from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests

from fulfillment.db.config import (
    get_bdv_api_key,
    get_bdv_api_url,
    get_bdv_merchant_phone,
    get_bdv_timeout_seconds,
)
from fulfillment.services.pago_movil_s import (
    format_amount_for_api,
    format_date_for_api,
    format_id_number_for_api,
    format_phone_for_api,
    parse_amount,
)

BDV_CODE_SUCCESS = 1000
BDV_CODE_NOT_FOUND = 1010
BDV_CODE_BAD_REQUEST = 400

OUTCOME_MATCHED = "matched"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_ALREADY_SETTLED = "already_settled"
OUTCOME_REJECTED_REQUEST = "rejected_request"
OUTCOME_UNAVAILABLE = "unavailable"
OUTCOME_MALFORMED = "malformed"
TRANSIENT_OUTCOMES = {OUTCOME_UNAVAILABLE, OUTCOME_MALFORMED}

_ALREADY_USED_MARKERS = ("ya fue utilizada", "duplicada", "usada anteriormente", "already used")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    outcome: str
    request_payload: dict
    response_code: int | None = None
    message: str | None = None
    gateway_reference_code: str | None = None
    raw_amount: str | None = None
    raw_date: str | None = None
    raw_response: Any = field(default=None, compare=False)

    @property
    def matched(self) -> bool:
        return self.outcome == OUTCOME_MATCHED

    @property
    def is_transient(self) -> bool:
        return self.outcome in TRANSIENT_OUTCOMES


def build_verification_payload(claim: dict, *, merchant_phone: str) -> dict:
    payer_id_number = claim.get("payer_id_number")
    return {
        "cedulaPagador": format_id_number_for_api(payer_id_number) if payer_id_number else "",
        "telefonoPagador": format_phone_for_api(claim["payer_phone"]),
        "telefonoDestino": format_phone_for_api(merchant_phone),
        "referencia": str(claim["reference_number"]).strip(),
        "fechaPago": format_date_for_api(claim["claimed_date"]),
        "importe": format_amount_for_api(claim["claimed_amount"]),
        "bancoOrigen": str(claim["origin_bank_code"]).strip(),
        "reqCed": bool(payer_id_number),
    }


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _to_int_or_none(value: object) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def interpret_response(status_code: int, body: object, *, request_payload: dict) -> GatewayResult:
    if status_code in {401, 403}:
        return GatewayResult(
            outcome=OUTCOME_UNAVAILABLE,
            request_payload=request_payload,
            response_code=status_code,
            message="bank credentials rejected",
            raw_response=body,
        )
    if status_code >= 500:
        return GatewayResult(
            outcome=OUTCOME_UNAVAILABLE,
            request_payload=request_payload,
            response_code=status_code,
            message="bank service unavailable",
            raw_response=body,
        )
    if not isinstance(body, dict):
        return GatewayResult(
            outcome=OUTCOME_MALFORMED,
            request_payload=request_payload,
            response_code=status_code,
            message="bank response is not a JSON object",
            raw_response=body,
        )

    code = _to_int_or_none(body.get("code"))
    message = _optional_str(body.get("message"))
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    if code == BDV_CODE_SUCCESS:
        raw_amount = _optional_str(data.get("amount"))
        if raw_amount is None or parse_amount(raw_amount) is None:
            return GatewayResult(
                outcome=OUTCOME_MALFORMED,
                request_payload=request_payload,
                response_code=code,
                message="bank confirmed the movement without a usable amount",
                raw_response=body,
            )
        return GatewayResult(
            outcome=OUTCOME_MATCHED,
            request_payload=request_payload,
            response_code=code,
            message=message,
            gateway_reference_code=_optional_str(
                data.get("reference") or data.get("referencia") or data.get("id")
            ),
            raw_amount=raw_amount,
            raw_date=_optional_str(data.get("date") or data.get("fecha") or data.get("fechaPago")),
            raw_response=body,
        )

    if code == BDV_CODE_NOT_FOUND:
        lower_message = (message or "").lower()
        outcome = OUTCOME_NOT_FOUND
        if any(marker in lower_message for marker in _ALREADY_USED_MARKERS):
            outcome = OUTCOME_ALREADY_SETTLED
        return GatewayResult(
            outcome=outcome,
            request_payload=request_payload,
            response_code=code,
            message=message,
            raw_response=body,
        )

    if code == BDV_CODE_BAD_REQUEST or status_code in {400, 422}:
        return GatewayResult(
            outcome=OUTCOME_REJECTED_REQUEST,
            request_payload=request_payload,
            response_code=code if code is not None else status_code,
            message=message,
            raw_response=body,
        )

    if code in {401, 403}:
        return GatewayResult(
            outcome=OUTCOME_UNAVAILABLE,
            request_payload=request_payload,
            response_code=code,
            message=message or "bank credentials rejected",
            raw_response=body,
        )

    return GatewayResult(
        outcome=OUTCOME_MALFORMED,
        request_payload=request_payload,
        response_code=code if code is not None else status_code,
        message=message or "unexpected bank response code",
        raw_response=body,
    )


def verify_payment(claim: dict, *, http: Any = None) -> GatewayResult:
    """Ask the bank once whether the claimed movement exists.

    No retry happens here: retrying a financial lookup is the claim
    processor's decision. Every failure comes back as a ``GatewayResult``.
    """
    api_key = get_bdv_api_key()
    merchant_phone = get_bdv_merchant_phone()
    request_payload = build_verification_payload(claim, merchant_phone=merchant_phone)

    if not api_key or not merchant_phone:
        logger.error("event=bdv_not_configured missing_api_key=%s missing_merchant_phone=%s", not api_key, not merchant_phone)
        return GatewayResult(
            outcome=OUTCOME_UNAVAILABLE,
            request_payload=request_payload,
            message="bank verification is not configured",
        )

    client = http or requests
    logger.info(
        "event=bdv_verification_requested referencia=%s banco_origen=%s fecha_pago=%s importe=%s",
        request_payload["referencia"],
        request_payload["bancoOrigen"],
        request_payload["fechaPago"],
        request_payload["importe"],
    )
    try:
        response = client.post(
            get_bdv_api_url(),
            json=request_payload,
            headers={"Content-Type": "application/json", "X-API-KEY": api_key},
            timeout=get_bdv_timeout_seconds(),
        )
    except requests.exceptions.Timeout as exc:
        logger.warning("event=bdv_timeout referencia=%s error=%s", request_payload["referencia"], str(exc))
        return GatewayResult(
            outcome=OUTCOME_UNAVAILABLE,
            request_payload=request_payload,
            message="bank verification timed out",
        )
    except requests.exceptions.RequestException as exc:
        logger.warning("event=bdv_request_failed referencia=%s error=%s", request_payload["referencia"], str(exc))
        return GatewayResult(
            outcome=OUTCOME_UNAVAILABLE,
            request_payload=request_payload,
            message="bank verification request failed",
        )

    try:
        body = response.json()
    except ValueError:
        body = None

    result = interpret_response(
        int(response.status_code),
        body,
        request_payload=request_payload,
    )
    logger.info(
        "event=bdv_verification_answered referencia=%s http_status=%s code=%s outcome=%s",
        request_payload["referencia"],
        response.status_code,
        result.response_code,
        result.outcome,
    )
    return result
