from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.closet_models import Location
from services.activity_service import log_activity
from services.errors import NotFoundError


def _ordered_locations_stmt():
    return select(Location).order_by(Location.sort_order.asc().nulls_first(), Location.name.asc())


def list_locations(db: Session) -> list[Location]:
    return list(db.execute(_ordered_locations_stmt()).scalars().all())


def get_location_or_raise(db: Session, location_id: uuid.UUID) -> Location:
    location = db.get(Location, location_id)
    if not location:
        raise NotFoundError("Location not found")
    return location


def create_location(
    db: Session,
    name: str | None,
    description: str | None = None,
    sort_order: int | None = None,
    photo_url: str | None = None,
    user_id: str | None = None,
) -> Location:
    clean_name = (name or "").strip()
    if not clean_name:
        raise ValueError("Enter a location name.")
    location = Location(
        id=uuid.uuid4(),
        name=clean_name,
        description=(description or "").strip() or None,
        sort_order=sort_order,
        photo_url=photo_url,
        created_at=datetime.now(),
    )
    db.add(location)
    log_activity(db, "location_created", "location", location.id, {"name": clean_name}, user_id=user_id)
    return location


def update_location(db: Session, location: Location, changes: dict, user_id: str | None = None) -> Location:
    if "name" in changes:
        clean_name = (changes["name"] or "").strip()
        if not clean_name:
            raise ValueError("Enter a location name.")
        location.name = clean_name
    if "description" in changes:
        location.description = (changes["description"] or "").strip() or None
    if "sort_order" in changes:
        location.sort_order = changes["sort_order"]
    if "photo_url" in changes:
        location.photo_url = changes["photo_url"]
    log_activity(db, "location_updated", "location", location.id, {"name": location.name}, user_id=user_id)
    return location


def build_location_map(db: Session) -> list[dict]:
    locations = db.execute(_ordered_locations_stmt().options(selectinload(Location.bins))).scalars().all()
    output = []
    for location in locations:
        payload = serialize_location(location)
        payload["bins"] = [
            {"id": bin_row.id, "label": bin_row.label}
            for bin_row in sorted(location.bins, key=lambda row: (row.label or "").lower())
        ]
        output.append(payload)
    return output


def serialize_location(location: Location) -> dict:
    return {
        "id": location.id,
        "name": location.name,
        "description": location.description,
        "sortOrder": location.sort_order,
        "photoUrl": location.photo_url,
        "createdAt": location.created_at,
    }
