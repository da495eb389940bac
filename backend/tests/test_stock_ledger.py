import sys
import unittest
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from fulfillment.db.init_db import init_db
from fulfillment.db.models import Base, StockHold, StockLine
from fulfillment.services.admission_errors import InsufficientStockError
from fulfillment.services.stock_ledger_s import (
    commit_hold,
    ensure_stock_line,
    get_stock_line,
    is_stock_tracked,
    release_hold,
    set_total_on_hand,
    try_hold,
)


class StockLedgerTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.engine = create_engine("sqlite:///:memory:")
        cls.TestSession = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=cls.engine,
        )
        Base.metadata.create_all(bind=cls.engine)

    @classmethod
    def tearDownClass(cls) -> None:
        cls.engine.dispose()

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

    def _line(self, product_id: str) -> dict:
        session = self.TestSession()
        try:
            return get_stock_line(product_id, session)
        finally:
            session.close()

    def test_try_hold_moves_units_from_available_to_reserved(self) -> None:
        self._seed_line("sku-a", 5)

        session = self.TestSession()
        try:
            hold = try_hold("sku-a", 3, session)
            session.commit()
        finally:
            session.close()

        self.assertEqual(hold["status"], "held")
        self.assertEqual(hold["quantity"], 3)
        line = self._line("sku-a")
        self.assertEqual(line["total_on_hand"], 5)
        self.assertEqual(line["reserved"], 3)
        self.assertEqual(line["available"], 2)

    def test_try_hold_rejects_when_available_is_short(self) -> None:
        self._seed_line("sku-a", 5)

        session = self.TestSession()
        try:
            try_hold("sku-a", 3, session)
            with self.assertRaises(InsufficientStockError) as ctx:
                try_hold("sku-a", 3, session)
            session.commit()
        finally:
            session.close()

        self.assertEqual(ctx.exception.product_id, "sku-a")
        self.assertEqual(ctx.exception.requested, 3)
        self.assertEqual(ctx.exception.available, 2)
        self.assertEqual(self._line("sku-a")["reserved"], 3)

    def test_try_hold_can_take_exactly_the_last_units(self) -> None:
        self._seed_line("sku-a", 2)

        session = self.TestSession()
        try:
            try_hold("sku-a", 2, session)
            session.commit()
        finally:
            session.close()

        self.assertEqual(self._line("sku-a")["available"], 0)

    def test_try_hold_requires_positive_quantity(self) -> None:
        self._seed_line("sku-a", 2)

        session = self.TestSession()
        try:
            with self.assertRaises(ValueError):
                try_hold("sku-a", 0, session)
        finally:
            session.close()

    def test_try_hold_unknown_product_without_catalog_raises_lookup_error(self) -> None:
        session = self.TestSession()
        try:
            with self.assertRaises(LookupError):
                try_hold("missing", 1, session)
        finally:
            session.close()

    def test_ensure_stock_line_seeds_from_catalog_once(self) -> None:
        calls = []

        def catalog(product_id: str) -> int:
            calls.append(product_id)
            return 7

        session = self.TestSession()
        try:
            first = ensure_stock_line("sku-new", session, catalog=catalog)
            second = ensure_stock_line("sku-new", session, catalog=catalog)
            session.commit()
        finally:
            session.close()

        self.assertEqual(first["total_on_hand"], 7)
        self.assertEqual(second["total_on_hand"], 7)
        self.assertEqual(calls, ["sku-new"])

    def test_release_hold_is_idempotent(self) -> None:
        self._seed_line("sku-a", 4)

        session = self.TestSession()
        try:
            hold = try_hold("sku-a", 3, session)
            first = release_hold(hold["id"], session)
            second = release_hold(hold["id"], session)
            session.commit()
        finally:
            session.close()

        self.assertTrue(first)
        self.assertFalse(second)
        line = self._line("sku-a")
        self.assertEqual(line["reserved"], 0)
        self.assertEqual(line["total_on_hand"], 4)

    def test_commit_hold_deducts_on_hand_once(self) -> None:
        self._seed_line("sku-a", 4)

        session = self.TestSession()
        try:
            hold = try_hold("sku-a", 3, session)
            first = commit_hold(hold["id"], session)
            second = commit_hold(hold["id"], session)
            released_after_commit = release_hold(hold["id"], session)
            session.commit()
        finally:
            session.close()

        self.assertTrue(first)
        self.assertFalse(second)
        self.assertFalse(released_after_commit)
        line = self._line("sku-a")
        self.assertEqual(line["total_on_hand"], 1)
        self.assertEqual(line["reserved"], 0)

    def test_unknown_hold_settles_as_no_op(self) -> None:
        session = self.TestSession()
        try:
            self.assertFalse(release_hold(999, session))
            self.assertFalse(commit_hold(999, session))
        finally:
            session.close()

    def test_reserved_equals_sum_of_held_quantities(self) -> None:
        self._seed_line("sku-a", 10)

        session = self.TestSession()
        try:
            first = try_hold("sku-a", 2, session)
            second = try_hold("sku-a", 3, session)
            third = try_hold("sku-a", 4, session)
            release_hold(first["id"], session)
            commit_hold(second["id"], session)
            session.commit()

            held_sum = sum(
                int(hold.quantity)
                for hold in session.query(StockHold)
                .filter(StockHold.product_id == "sku-a", StockHold.status == "held")
                .all()
            )
            line = session.query(StockLine).filter(StockLine.product_id == "sku-a").one()
            self.assertEqual(int(line.reserved), held_sum)
            self.assertEqual(held_sum, 4)
            self.assertEqual(int(line.total_on_hand), 7)
            self.assertEqual(third["quantity"], 4)
        finally:
            session.close()

    def test_set_total_on_hand_cannot_drop_below_reserved(self) -> None:
        self._seed_line("sku-a", 5)

        session = self.TestSession()
        try:
            try_hold("sku-a", 4, session)
            with self.assertRaises(ValueError):
                set_total_on_hand("sku-a", 3, session)
            updated = set_total_on_hand("sku-a", 6, session)
            session.commit()
        finally:
            session.close()

        self.assertEqual(updated["total_on_hand"], 6)
        self.assertEqual(updated["available"], 2)

    def test_gift_cards_and_wallet_recharges_are_not_stock_tracked(self) -> None:
        self.assertFalse(is_stock_tracked("gift-card-50"))
        self.assertFalse(is_stock_tracked("wallet-recharge-10"))
        self.assertTrue(is_stock_tracked("sku-a"))


if __name__ == "__main__":
    unittest.main()
