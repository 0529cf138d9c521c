import sys
import unittest
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from types import SimpleNamespace

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from closet_test_base import make_session_factory, seed_bin, seed_item

from sqlalchemy import func, select

from models.closet_models import ActivityLog, Checkout, Item
from services.checkout_service import (
    available_quantity,
    build_checkout_groups,
    check_in_group,
    create_checkout,
    display_status,
    fold_group_status,
    list_checkout_groups,
    list_open_issues,
    report_loss,
    resolve_issue,
)
from services.errors import AvailabilityError, NotFoundError


class CheckoutFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_session_factory()
        self.db = self.Session()

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _checkout_count(self) -> int:
        return int(self.db.execute(select(func.count(Checkout.id))).scalar() or 0)

    def _reload_item(self, item_id) -> Item:
        self.db.expire_all()
        return self.db.get(Item, item_id)

    def test_available_is_on_hand_minus_active_checkouts(self):
        cords = seed_item(self.db, "Extension cord", 10)
        create_checkout(self.db, "Robotics club", [(cords.id, 3)])
        self.db.commit()
        self.assertEqual(available_quantity(self.db, cords), 7)

        group = list_checkout_groups(self.db)[0]
        check_in_group(
            self.db,
            group["id"],
            [{"checkout_id": group["lines"][0]["id"], "ok": 3}],
        )
        self.db.commit()
        self.assertEqual(available_quantity(self.db, self._reload_item(cords.id)), 10)

    def test_available_never_goes_negative_when_stock_is_cut(self):
        cords = seed_item(self.db, "Extension cord", 5)
        create_checkout(self.db, "Robotics club", [(cords.id, 4)])
        self.db.commit()

        item = self.db.get(Item, cords.id)
        item.quantity_on_hand = 1
        self.db.commit()
        self.assertEqual(available_quantity(self.db, self._reload_item(cords.id)), 0)

    def test_over_request_is_rejected_and_writes_nothing(self):
        cords = seed_item(self.db, "Extension cord", 5)
        create_checkout(self.db, "Drama club", [(cords.id, 4)])
        self.db.commit()

        with self.assertRaises(AvailabilityError) as ctx:
            create_checkout(self.db, "Chess club", [(cords.id, 1), (cords.id, 1)])
        self.db.rollback()

        self.assertEqual(
            str(ctx.exception),
            "Extension cord only has 1 available right now. You tried to check out 2.",
        )
        self.assertEqual(self._checkout_count(), 1)

    def test_requires_an_item_or_a_bin(self):
        with self.assertRaises(ValueError) as ctx:
            create_checkout(self.db, "Someone", [])
        self.assertEqual(str(ctx.exception), "Add at least one item or select a bin.")

    def test_requires_a_borrower(self):
        cords = seed_item(self.db, "Extension cord", 5)
        with self.assertRaises(ValueError):
            create_checkout(self.db, "   ", [(cords.id, 1)])

    def test_bin_cannot_be_checked_out_twice(self):
        bin_row = seed_bin(self.db, "Costume bin")
        create_checkout(self.db, "Drama club", [], bin_id=bin_row.id)
        self.db.commit()

        with self.assertRaises(AvailabilityError) as ctx:
            create_checkout(self.db, "Dance club", [], bin_id=bin_row.id)
        self.db.rollback()
        self.assertEqual(str(ctx.exception), "That bin is already checked out to someone else.")
        self.assertEqual(self._checkout_count(), 1)

    def test_batch_shares_one_id_and_bin_row_has_no_quantity(self):
        bin_row = seed_bin(self.db, "Cable bin")
        cords = seed_item(self.db, "Extension cord", 5)
        tape = seed_item(self.db, "Gaffer tape", 8)
        batch_id = create_checkout(
            self.db,
            "AV team",
            [(cords.id, 2), (tape.id, 1)],
            bin_id=bin_row.id,
            club_name="AV",
        )
        self.db.commit()

        rows = self.db.execute(select(Checkout).where(Checkout.checkout_batch_id == batch_id)).scalars().all()
        self.assertEqual(len(rows), 3)
        bin_rows = [row for row in rows if row.bin_id == bin_row.id]
        self.assertEqual(len(bin_rows), 1)
        self.assertIsNone(bin_rows[0].item_id)
        self.assertIsNone(bin_rows[0].quantity)

        log = self.db.execute(select(ActivityLog).where(ActivityLog.action == "checkout_created")).scalars().one()
        self.assertEqual(log.entity_id, batch_id)
        self.assertIn('"items_count": 2', log.details)

    def test_check_in_totals_must_match_line_quantity(self):
        cords = seed_item(self.db, "Extension cord", 10)
        batch_id = create_checkout(self.db, "AV team", [(cords.id, 5)])
        self.db.commit()
        line_id = list_checkout_groups(self.db)[0]["lines"][0]["id"]

        with self.assertRaises(ValueError) as ctx:
            check_in_group(self.db, batch_id, [{"checkout_id": line_id, "ok": 3, "lost": 1}])
        self.db.rollback()
        self.assertEqual(str(ctx.exception), 'For "5 × Extension cord", the totals must add up to 5.')
        self.assertEqual(self.db.get(Checkout, line_id).status, "checked_out")

    def test_check_in_records_breakdown_and_reduces_stock(self):
        cords = seed_item(self.db, "Extension cord", 10)
        batch_id = create_checkout(self.db, "AV team", [(cords.id, 4)], notes="For the spring show")
        self.db.commit()
        line_id = list_checkout_groups(self.db)[0]["lines"][0]["id"]

        check_in_group(
            self.db,
            batch_id,
            [{"checkout_id": line_id, "ok": 1, "lost": 1, "broken": 1, "used": 1}],
            notes="Came back late",
        )
        self.db.commit()

        row = self.db.get(Checkout, line_id)
        self.assertEqual(row.status, "returned")
        self.assertEqual(row.issue_type, "broken")
        self.assertIsNotNone(row.checked_in_at)
        self.assertEqual(
            row.notes,
            "For the spring show\n\n[Check-in] Returned OK: 1, Lost: 1, Broken: 1, Used: 1 – Came back late",
        )
        self.assertEqual(self._reload_item(cords.id).quantity_on_hand, 7)

    def test_check_in_stock_never_goes_below_zero(self):
        cords = seed_item(self.db, "Extension cord", 5)
        batch_id = create_checkout(self.db, "AV team", [(cords.id, 5)])
        self.db.commit()
        line_id = list_checkout_groups(self.db)[0]["lines"][0]["id"]

        item = self.db.get(Item, cords.id)
        item.quantity_on_hand = 2
        self.db.commit()

        check_in_group(self.db, batch_id, [{"checkout_id": line_id, "lost": 5}])
        self.db.commit()
        self.assertEqual(self._reload_item(cords.id).quantity_on_hand, 0)

    def test_bin_line_check_in_uses_choice(self):
        bin_row = seed_bin(self.db, "Costume bin")
        batch_id = create_checkout(self.db, "Drama club", [], bin_id=bin_row.id)
        self.db.commit()
        line_id = list_checkout_groups(self.db)[0]["lines"][0]["id"]

        check_in_group(self.db, batch_id, [{"checkout_id": line_id, "choice": "broken"}], notes="Lid cracked")
        self.db.commit()

        row = self.db.get(Checkout, line_id)
        self.assertEqual(row.status, "lost")
        self.assertEqual(row.issue_type, "broken")
        self.assertEqual(row.notes, "[Check-in] Lid cracked")

    def test_line_cannot_be_checked_in_twice(self):
        bin_row = seed_bin(self.db, "Costume bin")
        batch_id = create_checkout(self.db, "Drama club", [], bin_id=bin_row.id)
        self.db.commit()
        line_id = list_checkout_groups(self.db)[0]["lines"][0]["id"]
        check_in_group(self.db, batch_id, [{"checkout_id": line_id, "choice": "ok"}])
        self.db.commit()

        with self.assertRaises(ValueError):
            check_in_group(self.db, batch_id, [{"checkout_id": line_id, "choice": "ok"}])

    def test_check_in_of_unknown_group_is_not_found(self):
        with self.assertRaises(NotFoundError):
            check_in_group(self.db, uuid.uuid4(), [{"checkout_id": uuid.uuid4(), "choice": "ok"}])

    def test_loss_report_clamps_to_stock_and_opens_issue(self):
        tape = seed_item(self.db, "Gaffer tape", 3)
        row = report_loss(self.db, tape.id, 10, "lost", notes="Counted during cleanup")
        self.db.commit()

        self.assertEqual(row.quantity, 3)
        self.assertEqual(row.status, "lost")
        self.assertEqual(row.borrower_name, "Internal")
        self.assertEqual(row.borrower_type, "internal")
        self.assertEqual(row.event_name, "Inventory adjustment")
        self.assertEqual(self._reload_item(tape.id).quantity_on_hand, 0)

        issues = list_open_issues(self.db)
        self.assertEqual([issue.id for issue in issues], [row.id])

        resolve_issue(self.db, row.id)
        self.db.commit()
        self.assertEqual(list_open_issues(self.db), [])

    def test_loss_report_requires_positive_quantity(self):
        tape = seed_item(self.db, "Gaffer tape", 3)
        with self.assertRaises(ValueError) as ctx:
            report_loss(self.db, tape.id, 0, "broken")
        self.assertEqual(str(ctx.exception), "Enter how many were lost or broken.")

    def test_loss_report_with_nothing_on_hand_is_rejected(self):
        tape = seed_item(self.db, "Gaffer tape", 0)
        with self.assertRaises(ValueError):
            report_loss(self.db, tape.id, 2, "lost")


class CheckoutGroupingTests(unittest.TestCase):
    def test_fold_group_status(self):
        self.assertEqual(fold_group_status("returned", "checked_out"), "checked_out")
        self.assertEqual(fold_group_status("returned", "lost"), "lost")
        self.assertEqual(fold_group_status("lost", "returned"), "lost")
        self.assertEqual(fold_group_status("checked_out", "lost"), "checked_out")

    def test_display_status(self):
        self.assertEqual(display_status([{"status": "checked_out", "issueType": "lost"}]), "checked out")
        self.assertEqual(display_status([{"status": "returned", "issueType": "broken"}]), "issue")
        self.assertEqual(display_status([{"status": "returned", "issueType": None}]), "returned")

    def _row(self, batch_id, status, due_back_at=None, label="Bin A"):
        return SimpleNamespace(
            id=uuid.uuid4(),
            checkout_batch_id=batch_id,
            borrower_name="Robotics club",
            borrower_type=None,
            club_name=None,
            event_name=None,
            notes=None,
            status=status,
            issue_type=None,
            issue_resolved=None,
            quantity=None,
            item_id=None,
            bin_id=None,
            item=None,
            bin=SimpleNamespace(label=label),
            due_back_at=due_back_at,
            checked_out_at=None,
            checked_in_at=None,
        )

    def test_groups_rows_by_batch_and_flags_late(self):
        now = datetime(2026, 3, 1, 12, 0)
        batch = uuid.uuid4()
        rows = [
            self._row(batch, "returned", due_back_at=now - timedelta(days=1)),
            self._row(batch, "checked_out", due_back_at=now - timedelta(days=1), label="Bin B"),
            self._row(None, "returned", due_back_at=now - timedelta(days=1)),
        ]
        groups = build_checkout_groups(rows, now=now)

        self.assertEqual(len(groups), 2)
        batch_group = next(group for group in groups if group["id"] == batch)
        self.assertEqual(batch_group["status"], "checked_out")
        self.assertEqual(batch_group["displayStatus"], "checked out")
        self.assertTrue(batch_group["isLate"])
        self.assertEqual([line["label"] for line in batch_group["lines"]], ["Bin A", "Bin B"])

        single = next(group for group in groups if group["id"] == rows[2].id)
        self.assertFalse(single["isLate"])


if __name__ == "__main__":
    unittest.main()
