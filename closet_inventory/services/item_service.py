from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from models.closet_models import Bin, Checkout, Item, ItemGroup
from services.activity_service import log_activity
from services.errors import NotFoundError


DEFAULT_UNIT = "pcs"


def list_item_groups(db: Session) -> list[ItemGroup]:
    return list(db.execute(select(ItemGroup).order_by(ItemGroup.name.asc())).scalars().all())


def find_item_group_by_name(db: Session, name: str) -> ItemGroup | None:
    clean_name = (name or "").strip()
    if not clean_name:
        return None
    return db.execute(
        select(ItemGroup).where(func.lower(ItemGroup.name) == clean_name.lower()).limit(1)
    ).scalars().first()


def get_or_create_item_group(db: Session, name: str, user_id: str | None = None) -> ItemGroup:
    existing = find_item_group_by_name(db, name)
    if existing:
        return existing
    group = ItemGroup(id=uuid.uuid4(), name=name.strip(), created_at=datetime.now())
    db.add(group)
    db.flush()
    log_activity(db, "item_group_created", "item_group", group.id, {"name": group.name}, user_id=user_id)
    return group


def _resolve_group(
    db: Session,
    item_group_id: uuid.UUID | None,
    new_group_name: str | None,
    user_id: str | None,
) -> ItemGroup:
    if (new_group_name or "").strip():
        return get_or_create_item_group(db, new_group_name, user_id=user_id)
    if item_group_id is not None:
        group = db.get(ItemGroup, item_group_id)
        if group:
            return group
    raise ValueError("Pick an item type or enter a new one.")


def _clean_quantity(raw: int | None, default: int) -> int:
    value = default if raw is None else int(raw)
    if value < 0:
        raise ValueError("Quantity on hand cannot be negative.")
    return value


def _clean_threshold(raw: int | None) -> int | None:
    if raw is None:
        return None
    if int(raw) < 0:
        raise ValueError("Low stock threshold cannot be negative.")
    return int(raw)


def _check_bin(db: Session, bin_id: uuid.UUID | None) -> None:
    if bin_id is not None and not db.get(Bin, bin_id):
        raise ValueError("Selected bin does not exist.")


def get_item_or_raise(db: Session, item_id: uuid.UUID) -> Item:
    item = db.get(Item, item_id)
    if not item:
        raise NotFoundError("Item not found")
    return item


def create_item(
    db: Session,
    item_group_id: uuid.UUID | None = None,
    new_group_name: str | None = None,
    bin_id: uuid.UUID | None = None,
    quantity_on_hand: int | None = None,
    unit: str | None = None,
    low_stock_threshold: int | None = None,
    notes: str | None = None,
    user_id: str | None = None,
) -> Item:
    group = _resolve_group(db, item_group_id, new_group_name, user_id)
    _check_bin(db, bin_id)
    item = Item(
        id=uuid.uuid4(),
        item_group_id=group.id,
        bin_id=bin_id,
        quantity_on_hand=_clean_quantity(quantity_on_hand, 1),
        unit=(unit or "").strip() or DEFAULT_UNIT,
        low_stock_threshold=_clean_threshold(low_stock_threshold),
        notes=(notes or "").strip() or None,
        created_at=datetime.now(),
    )
    item.item_group = group
    db.add(item)
    log_activity(
        db,
        "item_created",
        "item",
        item.id,
        {
            "item_group_id": group.id,
            "bin_id": bin_id,
            "quantity_on_hand": item.quantity_on_hand,
            "unit": item.unit,
        },
        user_id=user_id,
    )
    return item


def update_item(db: Session, item: Item, changes: dict, user_id: str | None = None) -> Item:
    if (changes.get("new_group_name") or "").strip() or changes.get("item_group_id") is not None:
        group = _resolve_group(db, changes.get("item_group_id"), changes.get("new_group_name"), user_id)
        item.item_group_id = group.id
        item.item_group = group
    if "bin_id" in changes:
        _check_bin(db, changes["bin_id"])
        item.bin_id = changes["bin_id"]
    if "quantity_on_hand" in changes:
        item.quantity_on_hand = _clean_quantity(changes["quantity_on_hand"], item.quantity_on_hand or 0)
    if "unit" in changes:
        item.unit = (changes["unit"] or "").strip() or DEFAULT_UNIT
    if "low_stock_threshold" in changes:
        item.low_stock_threshold = _clean_threshold(changes["low_stock_threshold"])
    if "notes" in changes:
        item.notes = (changes["notes"] or "").strip() or None
    log_activity(
        db,
        "item_updated",
        "item",
        item.id,
        {
            "item_group_id": item.item_group_id,
            "bin_id": item.bin_id,
            "quantity_on_hand": item.quantity_on_hand,
            "unit": item.unit,
        },
        user_id=user_id,
    )
    return item


def is_low_stock(item: Item) -> bool:
    if item.low_stock_threshold is None:
        return False
    return int(item.quantity_on_hand or 0) <= int(item.low_stock_threshold)


def list_low_stock_items(db: Session, limit: int | None = None) -> list[Item]:
    stmt = (
        select(Item)
        .options(selectinload(Item.item_group), selectinload(Item.bin).selectinload(Bin.location))
        .where(Item.low_stock_threshold.is_not(None))
        .where(Item.quantity_on_hand <= Item.low_stock_threshold)
        .order_by(Item.quantity_on_hand.asc())
    )
    if limit:
        stmt = stmt.limit(limit)
    return list(db.execute(stmt).scalars().all())


def active_item_and_bin_ids(db: Session) -> tuple[set, set]:
    rows = db.execute(
        select(Checkout.item_id, Checkout.bin_id).where(Checkout.status == "checked_out")
    ).all()
    item_ids = {item_id for item_id, _ in rows if item_id is not None}
    bin_ids = {bin_id for _, bin_id in rows if bin_id is not None}
    return item_ids, bin_ids


def serialize_item_status(item: Item, active_item_ids: set, active_bin_ids: set) -> dict:
    bin_row = item.bin
    return {
        "id": item.id,
        "itemGroupID": item.item_group_id,
        "itemGroupName": item.item_group.name if item.item_group else None,
        "binID": item.bin_id,
        "binLabel": bin_row.label if bin_row else None,
        "locationName": bin_row.location.name if bin_row and bin_row.location else None,
        "quantityOnHand": item.quantity_on_hand,
        "unit": item.unit,
        "lowStockThreshold": item.low_stock_threshold,
        "notes": item.notes,
        "isCheckedOut": item.id in active_item_ids or (item.bin_id is not None and item.bin_id in active_bin_ids),
        "isLowStock": is_low_stock(item),
    }


def _matches_search(row: dict, needle: str) -> bool:
    haystack = " ".join(
        str(value) for value in (row["itemGroupName"], row["binLabel"], row["locationName"]) if value
    )
    return needle in haystack.lower()


def list_items_with_status(db: Session, search: str | None = None, low_stock_only: bool = False) -> dict:
    if low_stock_only:
        items = list_low_stock_items(db)
    else:
        items = db.execute(
            select(Item).options(selectinload(Item.item_group), selectinload(Item.bin).selectinload(Bin.location))
        ).scalars().all()
    active_item_ids, active_bin_ids = active_item_and_bin_ids(db)
    rows = [serialize_item_status(item, active_item_ids, active_bin_ids) for item in items]
    rows.sort(key=lambda row: ((row["itemGroupName"] or "").lower(), (row["binLabel"] or "").lower()))

    needle = (search or "").strip().lower()
    matched = [row for row in rows if _matches_search(row, needle)] if needle else rows
    return {"total": len(rows), "matched": len(matched), "items": matched}


def serialize_item_group(group: ItemGroup) -> dict:
    return {
        "id": group.id,
        "name": group.name,
        "description": group.description,
        "defaultBinID": group.default_bin_id,
        "createdAt": group.created_at,
    }
