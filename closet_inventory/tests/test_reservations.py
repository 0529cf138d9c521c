import sys
import unittest
from datetime import datetime, timedelta
from pathlib import Path

TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from closet_test_base import make_session_factory, seed_bin, seed_item

from sqlalchemy import select

from models.closet_models import Checkout
from services.checkout_service import available_quantity, create_checkout
from services.errors import AvailabilityError
from services.reservation_service import (
    build_schedule,
    change_status,
    create_reservation,
    fulfill_reservation,
    list_reservations,
    list_upcoming_reservations,
    reserved_quantity,
)


class ReservationTests(unittest.TestCase):
    def setUp(self):
        self.engine, self.Session = make_session_factory()
        self.db = self.Session()
        self.start = datetime(2026, 5, 1, 9, 0)

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def test_overlapping_reservations_cannot_exceed_stock(self):
        chairs = seed_item(self.db, "Folding chair", 10)
        create_reservation(
            self.db, "Debate club", self.start, [(chairs.id, 6)], end_at=self.start + timedelta(hours=4)
        )
        self.db.commit()

        with self.assertRaises(AvailabilityError) as ctx:
            create_reservation(
                self.db,
                "Chess club",
                self.start + timedelta(hours=2),
                [(chairs.id, 5)],
                end_at=self.start + timedelta(hours=6),
            )
        self.db.rollback()
        self.assertEqual(
            str(ctx.exception),
            "Folding chair only has 4 free for that time. You tried to reserve 5.",
        )

    def test_disjoint_windows_do_not_compete(self):
        chairs = seed_item(self.db, "Folding chair", 10)
        create_reservation(
            self.db, "Debate club", self.start, [(chairs.id, 10)], end_at=self.start + timedelta(hours=2)
        )
        self.db.commit()

        later = self.start + timedelta(days=1)
        rows = create_reservation(self.db, "Chess club", later, [(chairs.id, 10)], end_at=later + timedelta(hours=2))
        self.db.commit()
        self.assertEqual(len(rows), 1)

    def test_reservation_without_end_blocks_everything_after_start(self):
        chairs = seed_item(self.db, "Folding chair", 4)
        create_reservation(self.db, "Debate club", self.start, [(chairs.id, 3)])
        self.db.commit()

        far_future = self.start + timedelta(days=90)
        self.assertEqual(reserved_quantity(self.db, chairs.id, far_future, far_future + timedelta(hours=1)), 3)
        before = self.start - timedelta(days=2)
        self.assertEqual(reserved_quantity(self.db, chairs.id, before, before + timedelta(hours=1)), 0)

    def test_reservations_do_not_change_checkout_availability(self):
        chairs = seed_item(self.db, "Folding chair", 4)
        create_reservation(self.db, "Debate club", self.start, [(chairs.id, 4)])
        self.db.commit()
        self.assertEqual(available_quantity(self.db, chairs), 4)

    def test_bin_cannot_be_double_booked(self):
        bin_row = seed_bin(self.db, "Tablecloth bin")
        create_reservation(self.db, "Debate club", self.start, [], bin_id=bin_row.id)
        self.db.commit()

        with self.assertRaises(AvailabilityError) as ctx:
            create_reservation(self.db, "Chess club", self.start + timedelta(days=3), [], bin_id=bin_row.id)
        self.assertEqual(str(ctx.exception), "That bin is already reserved for that time.")

    def test_validation_messages(self):
        chairs = seed_item(self.db, "Folding chair", 4)
        cases = [
            ((" ", self.start, [(chairs.id, 1)]), {}, "Enter who this reservation is for."),
            (("Debate club", None, [(chairs.id, 1)]), {}, "Choose a start date/time."),
            (
                ("Debate club", self.start, [(chairs.id, 1)]),
                {"end_at": self.start - timedelta(hours=1)},
                "The end must be on or after the start.",
            ),
            (("Debate club", self.start, []), {}, "Add at least one item or select a bin."),
        ]
        for args, kwargs, message in cases:
            with self.subTest(message=message):
                with self.assertRaises(ValueError) as ctx:
                    create_reservation(self.db, *args, **kwargs)
                self.assertEqual(str(ctx.exception), message)

    def test_cancelled_reservations_free_their_quantity(self):
        chairs = seed_item(self.db, "Folding chair", 4)
        row = create_reservation(self.db, "Debate club", self.start, [(chairs.id, 4)])[0]
        self.db.commit()

        change_status(self.db, row, "cancelled")
        self.db.commit()
        self.assertEqual(reserved_quantity(self.db, chairs.id, self.start, None), 0)

        with self.assertRaises(ValueError):
            change_status(self.db, row, "planned")

    def test_status_change_cannot_fulfill_directly(self):
        chairs = seed_item(self.db, "Folding chair", 4)
        row = create_reservation(self.db, "Debate club", self.start, [(chairs.id, 1)])[0]
        with self.assertRaises(ValueError):
            change_status(self.db, row, "fulfilled")

    def test_fulfill_creates_checkout_and_links_batch(self):
        chairs = seed_item(self.db, "Folding chair", 4)
        row = create_reservation(
            self.db,
            "Debate club",
            self.start,
            [(chairs.id, 3)],
            end_at=self.start + timedelta(hours=3),
            club_name="Debate",
        )[0]
        self.db.commit()

        batch_id = fulfill_reservation(self.db, row)
        self.db.commit()

        self.assertEqual(row.status, "fulfilled")
        self.assertEqual(row.checkout_batch_id, batch_id)
        checkout = self.db.execute(select(Checkout).where(Checkout.checkout_batch_id == batch_id)).scalars().one()
        self.assertEqual(checkout.quantity, 3)
        self.assertEqual(checkout.club_name, "Debate")
        self.assertEqual(checkout.due_back_at, self.start + timedelta(hours=3))
        self.assertEqual(available_quantity(self.db, chairs), 1)

        with self.assertRaises(ValueError):
            fulfill_reservation(self.db, row)

    def test_fulfill_respects_current_checkouts(self):
        chairs = seed_item(self.db, "Folding chair", 4)
        row = create_reservation(self.db, "Debate club", self.start, [(chairs.id, 3)])[0]
        self.db.commit()
        create_checkout(self.db, "Walk-in", [(chairs.id, 2)])
        self.db.commit()

        with self.assertRaises(AvailabilityError):
            fulfill_reservation(self.db, row)
        self.db.rollback()
        self.db.expire_all()
        self.assertEqual(list_reservations(self.db, {"planned"})[0].status, "planned")

    def test_upcoming_skips_past_and_cancelled(self):
        chairs = seed_item(self.db, "Folding chair", 10)
        now = datetime(2026, 4, 1, 8, 0)
        create_reservation(self.db, "Past", now - timedelta(days=1), [(chairs.id, 1)])
        create_reservation(self.db, "Soon", now + timedelta(days=1), [(chairs.id, 1)])
        cancelled = create_reservation(self.db, "Dropped", now + timedelta(days=2), [(chairs.id, 1)])[0]
        self.db.commit()
        change_status(self.db, cancelled, "cancelled")
        self.db.commit()

        upcoming = list_upcoming_reservations(self.db, now=now)
        self.assertEqual([row.borrower_name for row in upcoming], ["Soon"])

    def test_schedule_groups_by_date_and_club(self):
        chairs = seed_item(self.db, "Folding chair", 10)
        create_reservation(self.db, "A", self.start, [(chairs.id, 1)], club_name="Robotics")
        create_reservation(self.db, "B", self.start + timedelta(hours=1), [(chairs.id, 1)])
        create_reservation(self.db, "C", self.start + timedelta(days=1), [(chairs.id, 1)], club_name="Robotics")
        self.db.commit()
        rows = list_reservations(self.db)

        by_date = build_schedule(rows, "date")
        self.assertEqual([group["key"] for group in by_date], ["2026-05-01", "2026-05-02"])
        self.assertEqual(len(by_date[0]["reservations"]), 2)

        by_club = build_schedule(rows, "club")
        self.assertEqual([group["key"] for group in by_club], ["No club", "Robotics"])

        by_item = build_schedule(rows, "item")
        self.assertEqual([group["key"] for group in by_item], ["Folding chair"])

        with self.assertRaises(ValueError):
            build_schedule(rows, "borrower")


if __name__ == "__main__":
    unittest.main()
