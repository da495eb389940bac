from __future__ import annotations

import logging

import requests

from fulfillment.db.config import get_catalog_service_url, get_catalog_timeout_seconds
from fulfillment.services.admission_errors import CatalogUnavailableError

logger = logging.getLogger(__name__)


def get_available_to_promise(product_id: str) -> int:
    """Return the catalog's on-hand quantity used to seed a new stock line."""
    base_url = get_catalog_service_url()
    if not base_url:
        raise CatalogUnavailableError("CATALOG_SERVICE_URL is not configured")

    try:
        response = requests.get(
            f"{base_url}/products/{product_id}",
            timeout=get_catalog_timeout_seconds(),
        )
    except requests.exceptions.RequestException as exc:
        logger.warning(
            "event=catalog_lookup_failed product_id=%s error=%s",
            product_id,
            str(exc),
        )
        raise CatalogUnavailableError("catalog service is unavailable") from exc

    if response.status_code == 404:
        raise LookupError(f"product {product_id} not found")
    if response.status_code != 200:
        raise CatalogUnavailableError(
            f"catalog lookup failed with status {response.status_code}"
        )

    try:
        payload = response.json()
    except ValueError as exc:
        raise CatalogUnavailableError("catalog returned an invalid payload") from exc

    data = payload.get("data", payload) if isinstance(payload, dict) else None
    if not isinstance(data, dict) or data.get("stock") is None:
        raise CatalogUnavailableError("catalog payload is missing stock")

    try:
        stock = int(data["stock"])
    except (TypeError, ValueError) as exc:
        raise CatalogUnavailableError("catalog stock is not an integer") from exc
    return max(0, stock)
