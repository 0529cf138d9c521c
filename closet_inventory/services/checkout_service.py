from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from models.closet_models import Bin, Checkout, Item
from services.activity_service import log_activity
from services.bin_service import bin_is_checked_out
from services.errors import AvailabilityError, NotFoundError


LOGGER = logging.getLogger("closet_inventory.checkouts")

ACTIVE_STATUS = "checked_out"
CHECKOUT_STATUSES = {"checked_out", "returned", "lost"}
ISSUE_TYPES = {"lost", "broken"}
BIN_RETURN_CHOICES = {"ok", "lost", "broken"}
CHECKIN_PREFIX = "[Check-in]"
LOSS_EVENT_NAME = "Inventory adjustment"


def _clean(raw: str | None) -> str | None:
    value = (raw or "").strip()
    return value or None


def checked_out_quantity(db: Session, item_id: uuid.UUID) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(Checkout.quantity), 0))
        .where(Checkout.item_id == item_id)
        .where(Checkout.status == ACTIVE_STATUS)
    ).scalar()
    return int(total or 0)


def available_quantity(db: Session, item: Item) -> int:
    return max(0, int(item.quantity_on_hand or 0) - checked_out_quantity(db, item.id))


def lock_item(db: Session, item_id: uuid.UUID) -> Item | None:
    return db.execute(
        select(Item)
        .where(Item.id == item_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()


def lock_bin(db: Session, bin_id: uuid.UUID) -> Bin | None:
    return db.execute(
        select(Bin)
        .where(Bin.id == bin_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().first()


def item_label(item: Item | None) -> str:
    if item and item.item_group:
        return item.item_group.name
    return "This item"


def aggregate_line_quantities(lines: Iterable[tuple[uuid.UUID, int]]) -> dict[uuid.UUID, int]:
    totals: dict[uuid.UUID, int] = {}
    for item_id, quantity in lines:
        if int(quantity) < 1:
            raise ValueError("Each item line needs a quantity of at least 1.")
        totals[item_id] = totals.get(item_id, 0) + int(quantity)
    return totals


def create_checkout(
    db: Session,
    borrower_name: str | None,
    lines: list[tuple[uuid.UUID, int]],
    bin_id: uuid.UUID | None = None,
    club_name: str | None = None,
    event_name: str | None = None,
    due_back_at: datetime | None = None,
    notes: str | None = None,
    user_id: str | None = None,
) -> uuid.UUID:
    """Validate stock and bin state under row locks, then write one batch.

    Every item touched and the bin are read with SELECT ... FOR UPDATE
    before availability is computed.
    """
    if not lines and bin_id is None:
        raise ValueError("Add at least one item or select a bin.")
    borrower = _clean(borrower_name)
    if not borrower:
        raise ValueError("Enter who is borrowing these items.")

    totals = aggregate_line_quantities(lines)
    # Stable lock order across concurrent batches.
    for item_id in sorted(totals, key=str):
        requested = totals[item_id]
        item = lock_item(db, item_id)
        if not item:
            raise ValueError("Selected item does not exist.")
        available = available_quantity(db, item)
        if requested > available:
            raise AvailabilityError(
                f"{item_label(item)} only has {available} available right now. You tried to check out {requested}."
            )

    if bin_id is not None:
        if not lock_bin(db, bin_id):
            raise ValueError("Selected bin does not exist.")
        if bin_is_checked_out(db, bin_id):
            raise AvailabilityError("That bin is already checked out to someone else.")

    batch_id = uuid.uuid4()
    now = datetime.now()
    base = {
        "checkout_batch_id": batch_id,
        "borrower_name": borrower,
        "club_name": _clean(club_name),
        "event_name": _clean(event_name),
        "due_back_at": due_back_at,
        "notes": _clean(notes),
        "status": ACTIVE_STATUS,
        "checked_out_at": now,
    }
    for item_id, quantity in lines:
        db.add(Checkout(id=uuid.uuid4(), item_id=item_id, bin_id=None, quantity=int(quantity), **base))
    if bin_id is not None:
        db.add(Checkout(id=uuid.uuid4(), item_id=None, bin_id=bin_id, quantity=None, **base))

    log_activity(
        db,
        "checkout_created",
        "checkout",
        batch_id,
        {
            "items_count": len(lines),
            "bin_id": bin_id,
            "borrower_name": borrower,
            "club_name": base["club_name"],
            "event_name": base["event_name"],
            "due_back_at": due_back_at,
        },
        user_id=user_id,
    )
    LOGGER.info("Checkout batch %s created for %s (lines=%s bin=%s)", batch_id, borrower, len(lines), bin_id)
    return batch_id


def line_label(row: Checkout) -> str:
    if row.item and row.item.item_group:
        return row.item.item_group.name
    if row.bin:
        return row.bin.label
    return "Item / bin"


def fold_group_status(current: str, line_status: str) -> str:
    if current != ACTIVE_STATUS and (
        line_status == ACTIVE_STATUS or (line_status == "lost" and current == "returned")
    ):
        return line_status
    return current


def display_status(lines: list[dict]) -> str:
    if any(line["status"] == ACTIVE_STATUS for line in lines):
        return "checked out"
    if any(line["issueType"] for line in lines):
        return "issue"
    return "returned"


def group_key(row: Checkout) -> uuid.UUID:
    return row.checkout_batch_id or row.id


def _checkout_rows_stmt():
    return (
        select(Checkout)
        .options(
            selectinload(Checkout.item).selectinload(Item.item_group),
            selectinload(Checkout.bin),
        )
        .order_by(Checkout.checked_out_at.desc())
    )


def build_checkout_groups(rows: Iterable[Checkout], now: datetime | None = None) -> list[dict]:
    current_time = now or datetime.now()
    groups: dict[uuid.UUID, dict] = {}
    for row in rows:
        key = group_key(row)
        line = {
            "id": row.id,
            "label": line_label(row),
            "quantity": row.quantity,
            "itemID": row.item_id,
            "binID": row.bin_id,
            "status": row.status,
            "issueType": row.issue_type,
            "issueResolved": bool(row.issue_resolved),
            "checkedInAt": row.checked_in_at,
        }
        existing = groups.get(key)
        if not existing:
            groups[key] = {
                "id": key,
                "borrowerName": row.borrower_name,
                "borrowerType": row.borrower_type,
                "clubName": row.club_name,
                "eventName": row.event_name,
                "notes": row.notes,
                "status": row.status,
                "dueBackAt": row.due_back_at,
                "checkedOutAt": row.checked_out_at,
                "lines": [line],
            }
            continue
        existing["lines"].append(line)
        existing["status"] = fold_group_status(existing["status"], line["status"])

    output = []
    for group in groups.values():
        has_active = any(line["status"] == ACTIVE_STATUS for line in group["lines"])
        due = group["dueBackAt"]
        group["displayStatus"] = display_status(group["lines"])
        group["isLate"] = bool(has_active and due and due < current_time)
        output.append(group)
    return output


def list_checkout_groups(db: Session, active_only: bool = True, now: datetime | None = None) -> list[dict]:
    rows = db.execute(_checkout_rows_stmt()).scalars().all()
    groups = build_checkout_groups(rows, now=now)
    if active_only:
        groups = [group for group in groups if any(line["status"] == ACTIVE_STATUS for line in group["lines"])]
    return groups


def load_group_rows(db: Session, group_id: uuid.UUID, for_update: bool = False) -> list[Checkout]:
    stmt = _checkout_rows_stmt().where(
        or_(
            Checkout.checkout_batch_id == group_id,
            (Checkout.checkout_batch_id.is_(None)) & (Checkout.id == group_id),
        )
    )
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    return list(db.execute(stmt).scalars().all())


def get_checkout_group(db: Session, group_id: uuid.UUID, now: datetime | None = None) -> dict:
    rows = load_group_rows(db, group_id)
    if not rows:
        raise NotFoundError("Checkout not found")
    return build_checkout_groups(rows, now=now)[0]


def append_note(existing: str | None, note: str) -> str | None:
    if not note:
        return existing
    if existing:
        return f"{existing}\n\n{note}"
    return note


def build_checkin_note(summary: str, notes: str | None) -> str:
    if summary:
        return f"{CHECKIN_PREFIX} {summary}" + (f" – {notes}" if notes else "")
    if notes:
        return f"{CHECKIN_PREFIX} {notes}"
    return ""


def _validate_checkin_line(row: Checkout, line: dict) -> None:
    quantity = int(row.quantity or 0)
    if quantity > 0:
        total = sum(int(line.get(key) or 0) for key in ("ok", "lost", "broken", "used"))
        if total != quantity:
            label = f"{quantity} × {line_label(row)}"
            raise ValueError(f'For "{label}", the totals must add up to {quantity}.')
        return
    choice = line.get("choice") or "ok"
    if choice not in BIN_RETURN_CHOICES:
        raise ValueError(f"Unknown return choice: {choice}")


def check_in_group(
    db: Session,
    group_id: uuid.UUID,
    lines: list[dict],
    notes: str | None = None,
    user_id: str | None = None,
    now: datetime | None = None,
) -> list[Checkout]:
    """Reconcile a returned batch line by line.

    ``lines`` holds dicts with ``checkout_id`` and either the ``ok``/``lost``/
    ``broken``/``used`` split (quantity lines) or a ``choice`` (whole-bin
    lines). Every line is validated before any row is written.
    """
    if not lines:
        raise ValueError("Choose at least one line to check in.")
    rows_by_id = {row.id: row for row in load_group_rows(db, group_id, for_update=True)}
    if not rows_by_id:
        raise NotFoundError("Checkout not found")

    seen: set[uuid.UUID] = set()
    for line in lines:
        row = rows_by_id.get(line["checkout_id"])
        if row is None:
            raise ValueError("That line does not belong to this checkout.")
        if line["checkout_id"] in seen:
            raise ValueError("Each line can only be checked in once.")
        seen.add(line["checkout_id"])
        if row.status != ACTIVE_STATUS:
            raise ValueError(f'"{line_label(row)}" is already checked in.')
        _validate_checkin_line(row, line)

    item_ids = {rows_by_id[line["checkout_id"]].item_id for line in lines} - {None}
    items_by_id = {item_id: lock_item(db, item_id) for item_id in sorted(item_ids, key=str)}

    trimmed_notes = _clean(notes)
    checked_in_at = now or datetime.now()
    updated: list[Checkout] = []
    for line in lines:
        row = rows_by_id[line["checkout_id"]]
        quantity = int(row.quantity or 0)
        summary = ""
        consumed = 0
        if quantity > 0:
            ok = int(line.get("ok") or 0)
            lost = int(line.get("lost") or 0)
            broken = int(line.get("broken") or 0)
            used = int(line.get("used") or 0)
            status = "returned"
            issue_type = "broken" if broken > 0 else ("lost" if lost > 0 else None)
            summary = f"Returned OK: {ok}, Lost: {lost}, Broken: {broken}, Used: {used}"
            consumed = lost + broken + used
        else:
            choice = line.get("choice") or "ok"
            status = "returned" if choice == "ok" else "lost"
            issue_type = None if choice == "ok" else choice

        row.status = status
        row.issue_type = issue_type
        row.checked_in_at = checked_in_at
        row.notes = append_note(row.notes, build_checkin_note(summary, trimmed_notes))

        item = items_by_id.get(row.item_id)
        if item and consumed > 0:
            item.quantity_on_hand = max(0, int(item.quantity_on_hand or 0) - consumed)

        log_activity(
            db,
            "checkout_checked_in",
            "checkout",
            row.id,
            {"status": status, "issue_type": issue_type, "notes": trimmed_notes},
            user_id=user_id,
        )
        updated.append(row)

    LOGGER.info("Checked in %s line(s) of checkout %s", len(updated), group_id)
    return updated


def report_loss(
    db: Session,
    item_id: uuid.UUID | None,
    quantity: int,
    issue_type: str,
    reported_by: str | None = None,
    notes: str | None = None,
    user_id: str | None = None,
) -> Checkout:
    if item_id is None:
        raise ValueError("Choose an item.")
    if int(quantity or 0) <= 0:
        raise ValueError("Enter how many were lost or broken.")
    if issue_type not in ISSUE_TYPES:
        raise ValueError("Issue type must be lost or broken.")

    item = lock_item(db, item_id)
    if not item:
        raise ValueError("Selected item does not exist.")
    on_hand = int(item.quantity_on_hand or 0)
    safe_qty = min(int(quantity), on_hand)
    if safe_qty <= 0:
        raise ValueError(f"{item_label(item)} has nothing on hand to report.")

    now = datetime.now()
    row = Checkout(
        id=uuid.uuid4(),
        checkout_batch_id=None,
        borrower_name=_clean(reported_by) or "Internal",
        borrower_type="internal",
        event_name=LOSS_EVENT_NAME,
        item_id=item.id,
        quantity=safe_qty,
        status="lost",
        issue_type=issue_type,
        checked_out_at=now,
        checked_in_at=now,
        notes=_clean(notes),
    )
    db.add(row)
    item.quantity_on_hand = max(0, on_hand - safe_qty)
    log_activity(
        db,
        "loss_reported",
        "checkout",
        row.id,
        {"item_id": item.id, "quantity": safe_qty, "issue_type": issue_type, "who": _clean(reported_by)},
        user_id=user_id,
    )
    LOGGER.info("Loss reported for item %s: %s %s", item.id, safe_qty, issue_type)
    return row


def resolve_issue(db: Session, checkout_id: uuid.UUID, user_id: str | None = None) -> Checkout:
    row = db.get(Checkout, checkout_id)
    if not row:
        raise NotFoundError("Checkout not found")
    if not row.issue_type:
        raise ValueError("This line has no open issue.")
    row.issue_resolved = True
    log_activity(db, "issue_resolved", "checkout", row.id, {"issue_type": row.issue_type}, user_id=user_id)
    return row


def list_open_issues(db: Session, limit: int = 5) -> list[Checkout]:
    return list(
        db.execute(
            select(Checkout)
            .options(
                selectinload(Checkout.item).selectinload(Item.item_group),
                selectinload(Checkout.bin),
            )
            .where(Checkout.issue_type.is_not(None))
            .where(or_(Checkout.issue_resolved.is_(None), Checkout.issue_resolved.is_(False)))
            .order_by(Checkout.checked_out_at.desc())
            .limit(limit)
        ).scalars().all()
    )


def serialize_issue(row: Checkout) -> dict:
    return {
        "id": row.id,
        "label": line_label(row),
        "quantity": row.quantity,
        "issueType": row.issue_type,
        "borrowerName": row.borrower_name,
        "checkedOutAt": row.checked_out_at,
        "notes": row.notes,
    }


def serialize_checkout(row: Checkout) -> dict:
    return {
        "id": row.id,
        "checkoutBatchID": row.checkout_batch_id,
        "borrowerName": row.borrower_name,
        "borrowerType": row.borrower_type,
        "clubName": row.club_name,
        "eventName": row.event_name,
        "itemID": row.item_id,
        "binID": row.bin_id,
        "quantity": row.quantity,
        "status": row.status,
        "issueType": row.issue_type,
        "issueResolved": bool(row.issue_resolved),
        "dueBackAt": row.due_back_at,
        "checkedOutAt": row.checked_out_at,
        "checkedInAt": row.checked_in_at,
        "notes": row.notes,
    }
