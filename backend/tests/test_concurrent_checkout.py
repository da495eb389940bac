import sys
import tempfile
import threading
import unittest
from datetime import date, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from fulfillment.db.init_db import init_db
from fulfillment.db.models import Base, PaymentClaim, StockHold
from fulfillment.services import payment_claims_s
from fulfillment.services.admission_errors import InsufficientStockError
from fulfillment.services.admission_s import start_checkout
from fulfillment.services.bdv_client import GatewayResult
from fulfillment.services.payment_claims_s import submit_payment_claim
from fulfillment.services.stock_ledger_s import get_stock_line, set_total_on_hand

NOW = datetime(2026, 5, 10, 15, 0, 0)
CLAIM_AT = NOW + timedelta(minutes=2)


class MatchingGateway:
    def __init__(self, amount: str = "150.00") -> None:
        self.amount = amount
        self.requests: list[dict] = []
        self._lock = threading.Lock()

    def __call__(self, request: dict) -> GatewayResult:
        with self._lock:
            self.requests.append(request)
        return GatewayResult(
            outcome="matched",
            request_payload=dict(request),
            response_code=1000,
            gateway_reference_code=f"BDV-{request['reference_number']}",
            raw_amount=self.amount,
            raw_date="2026-05-10",
        )


def claim_fields(reference_number: str) -> dict:
    return {
        "payer_phone": "04121234567",
        "payer_id_number": "V12345678",
        "origin_bank_code": "0134",
        "reference_number": reference_number,
        "claimed_amount": "150.00",
        "claimed_date": date(2026, 5, 10),
    }


class ConcurrentCheckoutTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        # Each session needs its own connection, so the database lives on disk.
        cls.tmpdir = tempfile.TemporaryDirectory()
        cls.engine = create_engine(
            f"sqlite:///{Path(cls.tmpdir.name) / 'checkout.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        cls.TestSession = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=cls.engine,
        )

    @classmethod
    def tearDownClass(cls) -> None:
        cls.engine.dispose()
        cls.tmpdir.cleanup()

    def setUp(self) -> None:
        Base.metadata.drop_all(bind=self.engine)
        init_db(self.engine)

    def _seed_line(self, product_id: str, total_on_hand: int) -> None:
        session = self.TestSession()
        try:
            set_total_on_hand(product_id, total_on_hand, session)
            session.commit()
        finally:
            session.close()

    def _open(self, owner: str) -> int:
        session = self.TestSession()
        try:
            reservation = start_checkout(
                owner,
                [{"product_id": "sku-a", "quantity": 1}],
                session,
                now=NOW,
            )
            return int(reservation["id"])
        finally:
            session.close()

    def _run_concurrently(self, calls: list) -> list[tuple[str, object]]:
        barrier = threading.Barrier(len(calls), timeout=10)
        results: list[tuple[str, object] | None] = [None] * len(calls)

        def worker(index: int, call) -> None:
            session = self.TestSession()
            try:
                barrier.wait()
                results[index] = ("ok", call(session))
            except Exception as exc:
                session.rollback()
                results[index] = ("error", exc)
            finally:
                session.close()

        threads = [
            threading.Thread(target=worker, args=(index, call))
            for index, call in enumerate(calls)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
            self.assertFalse(thread.is_alive())
        return results

    def _stock(self) -> tuple[dict, int]:
        session = self.TestSession()
        try:
            line = get_stock_line("sku-a", session)
            held = sum(
                int(hold.quantity)
                for hold in session.query(StockHold)
                .filter(StockHold.product_id == "sku-a", StockHold.status == "held")
                .all()
            )
        finally:
            session.close()
        return line, held

    def test_two_simultaneous_checkouts_for_three_of_five_units(self) -> None:
        self._seed_line("sku-a", 5)

        def checkout(owner: str):
            return lambda session: start_checkout(
                owner,
                [{"product_id": "sku-a", "quantity": 3}],
                session,
                now=NOW,
            )

        results = self._run_concurrently([checkout("shopper-1"), checkout("shopper-2")])

        outcomes = sorted(kind for kind, _ in results)
        self.assertEqual(outcomes, ["error", "ok"])
        failure = next(value for kind, value in results if kind == "error")
        self.assertIsInstance(failure, InsufficientStockError)
        self.assertEqual(failure.available, 2)

        line, held = self._stock()
        self.assertEqual(line["reserved"], 3)
        self.assertEqual(line["available"], 2)
        self.assertEqual(held, 3)

    def test_concurrent_checkouts_never_hold_more_than_on_hand(self) -> None:
        self._seed_line("sku-a", 5)

        calls = [
            (
                lambda session, owner=f"shopper-{index}": start_checkout(
                    owner,
                    [{"product_id": "sku-a", "quantity": 1}],
                    session,
                    now=NOW,
                )
            )
            for index in range(8)
        ]
        results = self._run_concurrently(calls)

        successes = [value for kind, value in results if kind == "ok"]
        failures = [value for kind, value in results if kind == "error"]
        self.assertEqual(len(successes), 5)
        self.assertEqual(len(failures), 3)
        for failure in failures:
            self.assertIsInstance(failure, InsufficientStockError)

        line, held = self._stock()
        self.assertEqual(line["total_on_hand"], 5)
        self.assertEqual(line["reserved"], 5)
        self.assertEqual(line["available"], 0)
        self.assertEqual(held, 5)

    def test_same_reference_submitted_simultaneously_reaches_bank_once(self) -> None:
        self._seed_line("sku-a", 5)
        first_reservation = self._open("shopper-1")
        second_reservation = self._open("shopper-2")
        gateway = MatchingGateway()

        def submit(reservation_id: int):
            return lambda session: submit_payment_claim(
                reservation_id,
                claim_fields("445566"),
                session,
                verify=gateway,
                now=CLAIM_AT,
            )

        results = self._run_concurrently([submit(first_reservation), submit(second_reservation)])

        self.assertEqual([kind for kind, _ in results], ["ok", "ok"])
        self.assertEqual(
            sorted(verdict.status for _, verdict in results),
            ["duplicate", "verified"],
        )
        self.assertEqual(len(gateway.requests), 1)

        session = self.TestSession()
        try:
            locked = (
                session.query(PaymentClaim)
                .filter(
                    PaymentClaim.reference_number == "445566",
                    PaymentClaim.reference_locked.is_(True),
                )
                .count()
            )
        finally:
            session.close()
        self.assertEqual(locked, 1)

    def test_sibling_claim_arriving_during_check_never_reaches_bank(self) -> None:
        self._seed_line("sku-a", 5)
        reservation_id = self._open("shopper-1")
        gateway = MatchingGateway()
        original_check = payment_claims_s._pre_gateway_rejection
        sibling: dict = {}

        def submit_sibling() -> None:
            session = self.TestSession()
            try:
                sibling["verdict"] = submit_payment_claim(
                    reservation_id,
                    claim_fields("222222"),
                    session,
                    verify=gateway,
                    now=CLAIM_AT,
                )
            finally:
                session.close()

        def check_then_admit_sibling(claim, reservation, *, now, db):
            rejection = original_check(claim, reservation, now=now, db=db)
            if not sibling:
                # The first claim has passed its check but is still SUBMITTED.
                sibling["started"] = True
                submit_sibling()
            return rejection

        session = self.TestSession()
        try:
            with patch.object(
                payment_claims_s,
                "_pre_gateway_rejection",
                side_effect=check_then_admit_sibling,
            ):
                first = submit_payment_claim(
                    reservation_id,
                    claim_fields("111111"),
                    session,
                    verify=gateway,
                    now=CLAIM_AT,
                )
        finally:
            session.close()

        second = sibling["verdict"]
        self.assertTrue(first.verified)
        self.assertEqual(second.status, "rejected")
        self.assertEqual(second.reason_code, "claim_in_progress")
        self.assertEqual(
            [request["reference_number"] for request in gateway.requests],
            ["111111"],
        )

        session = self.TestSession()
        try:
            verified = (
                session.query(PaymentClaim)
                .filter(
                    PaymentClaim.reservation_id == reservation_id,
                    PaymentClaim.status == "verified",
                )
                .count()
            )
            sibling_claim = (
                session.query(PaymentClaim)
                .filter(PaymentClaim.reference_number == "222222")
                .one()
            )
        finally:
            session.close()
        self.assertEqual(verified, 1)
        self.assertFalse(sibling_claim.reference_locked)


if __name__ == "__main__":
    unittest.main()
