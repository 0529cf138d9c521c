from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session, selectinload

from models.closet_models import Item, Reservation
from services.activity_service import log_activity
from services.errors import AvailabilityError, NotFoundError
from services.checkout_service import (
    aggregate_line_quantities,
    create_checkout,
    item_label,
    lock_bin,
    lock_item,
)


LOGGER = logging.getLogger("closet_inventory.reservations")

RESERVATION_STATUSES = {"planned", "confirmed", "cancelled", "fulfilled"}
INITIAL_STATUSES = {"planned", "confirmed"}
BLOCKING_STATUSES = {"planned", "confirmed"}
STATUS_TRANSITIONS = {
    "planned": {"confirmed", "cancelled", "fulfilled"},
    "confirmed": {"planned", "cancelled", "fulfilled"},
    "cancelled": set(),
    "fulfilled": set(),
}
SCHEDULE_GROUPINGS = {"date", "club", "item"}


def _clean(raw: str | None) -> str | None:
    value = (raw or "").strip()
    return value or None


def _overlap_clause(start_at: datetime, end_at: datetime | None):
    # A reservation without an end runs open-ended from its start.
    clauses = [or_(Reservation.end_at.is_(None), Reservation.end_at >= start_at)]
    if end_at is not None:
        clauses.append(Reservation.start_at <= end_at)
    return and_(*clauses)


def reserved_quantity(
    db: Session,
    item_id: uuid.UUID,
    start_at: datetime,
    end_at: datetime | None,
    exclude_reservation_id: uuid.UUID | None = None,
) -> int:
    stmt = (
        select(func.coalesce(func.sum(Reservation.quantity), 0))
        .where(Reservation.item_id == item_id)
        .where(Reservation.status.in_(BLOCKING_STATUSES))
        .where(_overlap_clause(start_at, end_at))
    )
    if exclude_reservation_id:
        stmt = stmt.where(Reservation.id != exclude_reservation_id)
    return int(db.execute(stmt).scalar() or 0)


def bin_has_reservation_overlap(
    db: Session,
    bin_id: uuid.UUID,
    start_at: datetime,
    end_at: datetime | None,
    exclude_reservation_id: uuid.UUID | None = None,
) -> bool:
    stmt = (
        select(Reservation.id)
        .where(Reservation.bin_id == bin_id)
        .where(Reservation.status.in_(BLOCKING_STATUSES))
        .where(_overlap_clause(start_at, end_at))
    )
    if exclude_reservation_id:
        stmt = stmt.where(Reservation.id != exclude_reservation_id)
    return db.execute(stmt.limit(1)).first() is not None


def create_reservation(
    db: Session,
    borrower_name: str | None,
    start_at: datetime | None,
    lines: list[tuple[uuid.UUID, int]],
    bin_id: uuid.UUID | None = None,
    end_at: datetime | None = None,
    status: str = "planned",
    club_name: str | None = None,
    event_name: str | None = None,
    notes: str | None = None,
    user_id: str | None = None,
) -> list[Reservation]:
    if not lines and bin_id is None:
        raise ValueError("Add at least one item or select a bin.")
    borrower = _clean(borrower_name)
    if not borrower:
        raise ValueError("Enter who this reservation is for.")
    if start_at is None:
        raise ValueError("Choose a start date/time.")
    if end_at is not None and end_at < start_at:
        raise ValueError("The end must be on or after the start.")
    if status not in INITIAL_STATUSES:
        raise ValueError("New reservations must be planned or confirmed.")

    totals = aggregate_line_quantities(lines)
    for item_id in sorted(totals, key=str):
        requested = totals[item_id]
        item = lock_item(db, item_id)
        if not item:
            raise ValueError("Selected item does not exist.")
        free = max(0, int(item.quantity_on_hand or 0) - reserved_quantity(db, item_id, start_at, end_at))
        if requested > free:
            raise AvailabilityError(
                f"{item_label(item)} only has {free} free for that time. You tried to reserve {requested}."
            )

    if bin_id is not None:
        if not lock_bin(db, bin_id):
            raise ValueError("Selected bin does not exist.")
        if bin_has_reservation_overlap(db, bin_id, start_at, end_at):
            raise AvailabilityError("That bin is already reserved for that time.")

    now = datetime.now()
    base = {
        "borrower_name": borrower,
        "club_name": _clean(club_name),
        "event_name": _clean(event_name),
        "start_at": start_at,
        "end_at": end_at,
        "status": status,
        "notes": _clean(notes),
        "created_at": now,
    }
    rows: list[Reservation] = []
    for item_id, quantity in lines:
        rows.append(Reservation(id=uuid.uuid4(), item_id=item_id, bin_id=None, quantity=int(quantity), **base))
    if bin_id is not None:
        rows.append(Reservation(id=uuid.uuid4(), item_id=None, bin_id=bin_id, quantity=None, **base))
    db.add_all(rows)

    log_activity(
        db,
        "reservation_created",
        "reservation",
        rows[0].id,
        {
            "items_count": len(lines),
            "bin_id": bin_id,
            "borrower_name": borrower,
            "club_name": base["club_name"],
            "start_at": start_at,
            "end_at": end_at,
            "status": status,
        },
        user_id=user_id,
    )
    LOGGER.info("Reservation for %s created (%s rows, starts %s)", borrower, len(rows), start_at)
    return rows


def _reservation_stmt():
    return select(Reservation).options(
        selectinload(Reservation.item).selectinload(Item.item_group),
        selectinload(Reservation.bin),
    )


def list_reservations(db: Session, statuses: set[str] | None = None) -> list[Reservation]:
    stmt = _reservation_stmt().order_by(Reservation.start_at.asc())
    if statuses:
        stmt = stmt.where(Reservation.status.in_(statuses))
    return list(db.execute(stmt).scalars().all())


def list_upcoming_reservations(db: Session, limit: int = 5, now: datetime | None = None) -> list[Reservation]:
    current_time = now or datetime.now()
    return list(
        db.execute(
            _reservation_stmt()
            .where(Reservation.status.in_(BLOCKING_STATUSES))
            .where(Reservation.start_at >= current_time)
            .order_by(Reservation.start_at.asc())
            .limit(limit)
        ).scalars().all()
    )


def get_reservation_or_raise(db: Session, reservation_id: uuid.UUID) -> Reservation:
    row = db.execute(_reservation_stmt().where(Reservation.id == reservation_id)).scalars().first()
    if not row:
        raise NotFoundError("Reservation not found")
    return row


def transition_status(reservation: Reservation, target: str) -> None:
    current = reservation.status
    if target == current:
        return
    if target not in RESERVATION_STATUSES or target not in STATUS_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid status change: {current} -> {target}")
    reservation.status = target


def change_status(db: Session, reservation: Reservation, target: str, user_id: str | None = None) -> Reservation:
    if target == "fulfilled":
        raise ValueError("Use the fulfill action to turn a reservation into a checkout.")
    previous = reservation.status
    transition_status(reservation, target)
    if previous != reservation.status:
        log_activity(
            db,
            "reservation_status_changed",
            "reservation",
            reservation.id,
            {"from": previous, "to": reservation.status},
            user_id=user_id,
        )
    return reservation


def fulfill_reservation(
    db: Session,
    reservation: Reservation,
    due_back_at: datetime | None = None,
    user_id: str | None = None,
) -> uuid.UUID:
    """Check out what a reservation holds and mark it fulfilled.

    The checkout goes through the normal availability rules, so stock that
    is already lent out blocks fulfilment.
    """
    if reservation.status not in BLOCKING_STATUSES:
        raise ValueError("Only planned or confirmed reservations can be fulfilled.")
    transition_status(reservation, "fulfilled")
    lines = []
    if reservation.item_id is not None:
        lines.append((reservation.item_id, int(reservation.quantity or 1)))
    batch_id = create_checkout(
        db,
        borrower_name=reservation.borrower_name,
        lines=lines,
        bin_id=reservation.bin_id,
        club_name=reservation.club_name,
        event_name=reservation.event_name,
        due_back_at=due_back_at or reservation.end_at,
        notes=reservation.notes,
        user_id=user_id,
    )
    reservation.checkout_batch_id = batch_id
    log_activity(
        db,
        "reservation_fulfilled",
        "reservation",
        reservation.id,
        {"checkout_batch_id": batch_id},
        user_id=user_id,
    )
    return batch_id


def reservation_label(row: Reservation) -> str:
    if row.item and row.item.item_group:
        return row.item.item_group.name
    if row.bin:
        return row.bin.label
    return "Item or bin"


def serialize_reservation(row: Reservation) -> dict:
    return {
        "id": row.id,
        "borrowerName": row.borrower_name,
        "clubName": row.club_name,
        "eventName": row.event_name,
        "itemID": row.item_id,
        "binID": row.bin_id,
        "itemLabel": reservation_label(row),
        "quantity": row.quantity,
        "status": row.status,
        "startAt": row.start_at,
        "endAt": row.end_at,
        "notes": row.notes,
        "checkoutBatchID": row.checkout_batch_id,
    }


def _schedule_key(row: Reservation, group_by: str) -> str:
    if group_by == "club":
        return row.club_name or "No club"
    if group_by == "item":
        return reservation_label(row)
    if not row.start_at:
        return "No date"
    return row.start_at.date().isoformat()


def build_schedule(rows: list[Reservation], group_by: str = "date") -> list[dict]:
    if group_by not in SCHEDULE_GROUPINGS:
        raise ValueError("groupBy must be date, club or item.")
    grouped: dict[str, list[dict]] = {}
    for row in rows:
        grouped.setdefault(_schedule_key(row, group_by), []).append(serialize_reservation(row))
    return [{"key": key, "reservations": grouped[key]} for key in sorted(grouped)]
