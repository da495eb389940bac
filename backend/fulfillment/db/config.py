from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(dotenv_path=ENV_PATH)

RESERVATION_TTL_SECONDS = 15 * 60

BDV_API_URL_PRODUCTION = "https://bdvconciliacion.banvenez.com/getMovement"
BDV_API_URL_QUALITY = "https://bdvconciliacionqa.banvenez.com:444/getMovement/v2"


def get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if database_url and database_url.strip():
        return database_url.strip()
    raise RuntimeError("DATABASE_URL is required")


def get_bdv_api_key() -> str:
    return os.getenv("BDV_API_KEY", "").strip()


def get_bdv_merchant_phone() -> str:
    return os.getenv("BDV_MERCHANT_PHONE", "").strip()


def get_bdv_env() -> str:
    env = os.getenv("BDV_ENV", "production").strip().lower()
    if env not in {"production", "quality"}:
        raise RuntimeError("BDV_ENV must be 'production' or 'quality'")
    return env


def get_bdv_api_url() -> str:
    if get_bdv_env() == "quality":
        return BDV_API_URL_QUALITY
    return BDV_API_URL_PRODUCTION


def get_bdv_timeout_seconds() -> int:
    raw_timeout = os.getenv("BDV_TIMEOUT_SECONDS", "10").strip()
    timeout = int(raw_timeout)
    if timeout <= 0:
        raise RuntimeError("BDV_TIMEOUT_SECONDS must be greater than 0")
    return timeout


def get_bank_timezone() -> str:
    return os.getenv("BANK_TIMEZONE", "America/Caracas").strip() or "America/Caracas"


def get_sweep_interval_seconds() -> int:
    raw_interval = os.getenv("RESERVATION_SWEEP_INTERVAL_SECONDS", "60").strip()
    interval = int(raw_interval)
    if interval <= 0:
        raise RuntimeError("RESERVATION_SWEEP_INTERVAL_SECONDS must be greater than 0")
    if interval >= RESERVATION_TTL_SECONDS:
        raise RuntimeError(
            "RESERVATION_SWEEP_INTERVAL_SECONDS must be shorter than the reservation TTL"
        )
    return interval


def get_catalog_service_url() -> str:
    return os.getenv("CATALOG_SERVICE_URL", "").strip().rstrip("/")


def get_catalog_timeout_seconds() -> int:
    raw_timeout = os.getenv("CATALOG_TIMEOUT_SECONDS", "5").strip()
    timeout = int(raw_timeout)
    if timeout <= 0:
        raise RuntimeError("CATALOG_TIMEOUT_SECONDS must be greater than 0")
    return timeout
