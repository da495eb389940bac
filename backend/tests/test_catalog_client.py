import os
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from fulfillment.services import catalog_client
from fulfillment.services.admission_errors import CatalogUnavailableError

CATALOG_ENV = {"CATALOG_SERVICE_URL": "http://catalog.local/", "CATALOG_TIMEOUT_SECONDS": "3"}


def _response(status_code: int, body=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    return response


class CatalogClientTests(unittest.TestCase):
    def setUp(self) -> None:
        patcher = patch.dict(os.environ, CATALOG_ENV)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_reads_stock_from_data_envelope(self) -> None:
        with patch.object(catalog_client.requests, "get", return_value=_response(200, {"data": {"stock": 12}})) as get:
            stock = catalog_client.get_available_to_promise("sku-a")

        self.assertEqual(stock, 12)
        get.assert_called_once_with("http://catalog.local/products/sku-a", timeout=3)

    def test_negative_stock_is_clamped_to_zero(self) -> None:
        with patch.object(catalog_client.requests, "get", return_value=_response(200, {"stock": -4})):
            self.assertEqual(catalog_client.get_available_to_promise("sku-a"), 0)

    def test_unknown_product_is_lookup_error(self) -> None:
        with patch.object(catalog_client.requests, "get", return_value=_response(404)):
            with self.assertRaises(LookupError):
                catalog_client.get_available_to_promise("sku-a")

    def test_failures_are_catalog_unavailable(self) -> None:
        with patch.object(
            catalog_client.requests,
            "get",
            side_effect=requests.exceptions.ConnectionError("refused"),
        ):
            with self.assertRaises(CatalogUnavailableError):
                catalog_client.get_available_to_promise("sku-a")

        with patch.object(catalog_client.requests, "get", return_value=_response(500)):
            with self.assertRaises(CatalogUnavailableError):
                catalog_client.get_available_to_promise("sku-a")

        with patch.object(catalog_client.requests, "get", return_value=_response(200, {"data": {}})):
            with self.assertRaises(CatalogUnavailableError):
                catalog_client.get_available_to_promise("sku-a")

    def test_unconfigured_catalog_is_unavailable(self) -> None:
        with patch.dict(os.environ, {"CATALOG_SERVICE_URL": ""}):
            with self.assertRaises(CatalogUnavailableError):
                catalog_client.get_available_to_promise("sku-a")


if __name__ == "__main__":
    unittest.main()
