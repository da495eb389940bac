import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from fulfillment.errors import raise_http_error_from_exception
from fulfillment.services.admission_errors import (
    CatalogUnavailableError,
    ClaimValidationError,
    InsufficientStockError,
    InvalidReservationStateError,
    LedgerInvariantError,
    PaymentVerifiedHoldExpiredError,
    ReservationExpiredError,
)


class HttpErrorMappingTests(unittest.TestCase):
    def _status_for(self, exc: Exception, db=None) -> HTTPException:
        with self.assertRaises(HTTPException) as ctx:
            raise_http_error_from_exception(exc, db=db)
        return ctx.exception

    def test_insufficient_stock_is_conflict_with_availability(self) -> None:
        error = self._status_for(InsufficientStockError("sku-a", 3, 2))

        self.assertEqual(error.status_code, 409)
        self.assertEqual(error.detail["product_id"], "sku-a")
        self.assertEqual(error.detail["available"], 2)

    def test_hold_expired_after_payment_has_its_own_message(self) -> None:
        error = self._status_for(PaymentVerifiedHoldExpiredError(4, 9))

        self.assertEqual(error.status_code, 409)
        self.assertEqual(error.detail["message"], "payment verified but hold expired")
        self.assertEqual(error.detail["payment_claim_id"], 9)

    def test_reservation_state_errors_are_conflicts(self) -> None:
        self.assertEqual(self._status_for(InvalidReservationStateError("x")).status_code, 409)
        self.assertEqual(self._status_for(ReservationExpiredError("x")).status_code, 409)

    def test_lookup_and_validation_errors(self) -> None:
        self.assertEqual(self._status_for(LookupError("reservation not found")).status_code, 404)
        self.assertEqual(self._status_for(ClaimValidationError("bad phone")).status_code, 400)

    def test_catalog_unavailable_is_service_unavailable(self) -> None:
        self.assertEqual(self._status_for(CatalogUnavailableError("down")).status_code, 503)

    def test_database_errors_roll_back_the_session(self) -> None:
        db = MagicMock()

        integrity = self._status_for(IntegrityError("INSERT", {}, Exception("dup")), db=db)
        database = self._status_for(SQLAlchemyError("boom"), db=db)
        ledger = self._status_for(LedgerInvariantError("broken"), db=db)

        self.assertEqual(integrity.status_code, 409)
        self.assertEqual(database.status_code, 500)
        self.assertEqual(ledger.status_code, 500)
        self.assertEqual(db.rollback.call_count, 3)

    def test_unknown_errors_propagate(self) -> None:
        with self.assertRaises(RuntimeError):
            raise_http_error_from_exception(RuntimeError("unexpected"))


if __name__ == "__main__":
    unittest.main()
