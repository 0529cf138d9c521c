from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.closet_models import Bin, Checkout, Item, Location
from services.activity_service import log_activity
from services.errors import NotFoundError


def list_bins(db: Session) -> list[Bin]:
    return list(
        db.execute(
            select(Bin).options(selectinload(Bin.location)).order_by(Bin.label.asc())
        ).scalars().all()
    )


def get_bin_or_raise(db: Session, bin_id: uuid.UUID) -> Bin:
    bin_row = db.get(Bin, bin_id)
    if not bin_row:
        raise NotFoundError("Bin not found")
    return bin_row


def _clean_label(raw: str | None) -> str:
    label = (raw or "").strip()
    if not label:
        raise ValueError("Enter a bin label.")
    return label


def _check_location(db: Session, location_id: uuid.UUID | None) -> None:
    if location_id is not None and not db.get(Location, location_id):
        raise ValueError("Selected location does not exist.")


def create_bin(
    db: Session,
    label: str | None,
    location_id: uuid.UUID | None = None,
    notes: str | None = None,
    photo_url: str | None = None,
    user_id: str | None = None,
) -> Bin:
    clean_label = _clean_label(label)
    _check_location(db, location_id)
    bin_row = Bin(
        id=uuid.uuid4(),
        label=clean_label,
        location_id=location_id,
        notes=(notes or "").strip() or None,
        photo_url=photo_url,
        created_at=datetime.now(),
    )
    db.add(bin_row)
    log_activity(db, "bin_created", "bin", bin_row.id, {"label": clean_label, "location_id": location_id}, user_id=user_id)
    return bin_row


def update_bin(db: Session, bin_row: Bin, changes: dict, user_id: str | None = None) -> Bin:
    if "label" in changes:
        bin_row.label = _clean_label(changes["label"])
    if "location_id" in changes:
        _check_location(db, changes["location_id"])
        bin_row.location_id = changes["location_id"]
    if "notes" in changes:
        bin_row.notes = (changes["notes"] or "").strip() or None
    if "photo_url" in changes:
        bin_row.photo_url = changes["photo_url"]
    log_activity(
        db,
        "bin_updated",
        "bin",
        bin_row.id,
        {"label": bin_row.label, "location_id": bin_row.location_id},
        user_id=user_id,
    )
    return bin_row


def bin_is_checked_out(db: Session, bin_id: uuid.UUID) -> bool:
    active = db.execute(
        select(Checkout.id)
        .where(Checkout.bin_id == bin_id)
        .where(Checkout.status == "checked_out")
        .limit(1)
    ).first()
    return active is not None


def list_bin_contents(db: Session, bin_id: uuid.UUID) -> list[dict]:
    items = db.execute(
        select(Item).options(selectinload(Item.item_group)).where(Item.bin_id == bin_id)
    ).scalars().all()
    contents = [
        {
            "id": item.id,
            "itemGroupID": item.item_group_id,
            "name": item.item_group.name if item.item_group else "Item",
            "quantityOnHand": item.quantity_on_hand,
            "unit": item.unit,
        }
        for item in items
    ]
    contents.sort(key=lambda row: row["name"].lower())
    return contents


def build_bin_detail(db: Session, bin_row: Bin) -> dict:
    payload = serialize_bin(bin_row)
    payload["items"] = list_bin_contents(db, bin_row.id)
    payload["isCheckedOut"] = bin_is_checked_out(db, bin_row.id)
    return payload


def serialize_bin(bin_row: Bin) -> dict:
    return {
        "id": bin_row.id,
        "label": bin_row.label,
        "locationID": bin_row.location_id,
        "locationName": bin_row.location.name if bin_row.location else "No location",
        "notes": bin_row.notes,
        "photoUrl": bin_row.photo_url,
        "createdAt": bin_row.created_at,
    }
