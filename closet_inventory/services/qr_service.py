from __future__ import annotations

import uuid
from datetime import datetime
from io import BytesIO
from urllib.parse import quote, urlsplit

import qrcode
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from models.closet_models import Bin, Item, ItemGroup, QRCode
from services.activity_service import log_activity
from services.errors import NotFoundError
from services.bin_service import list_bin_contents


QR_TYPES = {"bin", "item_group"}


def build_qr_url(base_url: str, code: str) -> str:
    return f"{(base_url or '').rstrip('/')}/qr/{code}"


def _target_exists(db: Session, qr_type: str, target_id: uuid.UUID) -> bool:
    model = Bin if qr_type == "bin" else ItemGroup
    return db.get(model, target_id) is not None


def _find_qr_code(db: Session, qr_type: str, target_id: uuid.UUID) -> QRCode | None:
    return db.execute(
        select(QRCode).where(QRCode.type == qr_type).where(QRCode.target_id == target_id).limit(1)
    ).scalars().first()


def get_or_create_qr_code(
    db: Session,
    qr_type: str,
    target_id: uuid.UUID,
    user_id: str | None = None,
) -> tuple[QRCode, bool]:
    if qr_type not in QR_TYPES:
        raise ValueError("QR type must be bin or item_group.")
    if not _target_exists(db, qr_type, target_id):
        raise NotFoundError("Bin not found" if qr_type == "bin" else "Item group not found")

    existing = _find_qr_code(db, qr_type, target_id)
    if existing:
        return existing, False

    row = QRCode(
        id=uuid.uuid4(),
        code=str(uuid.uuid4()),
        type=qr_type,
        target_id=target_id,
        created_at=datetime.now(),
    )
    db.add(row)
    try:
        db.flush()
    except IntegrityError:
        # Another request labelled the same target first; nothing else is pending here.
        db.rollback()
        existing = _find_qr_code(db, qr_type, target_id)
        if existing is None:
            raise
        return existing, False
    log_activity(db, "qr_code_created", "qr_code", row.id, {"type": qr_type, "target_id": target_id}, user_id=user_id)
    return row, True


def get_qr_code_or_raise(db: Session, code: str) -> QRCode:
    row = db.execute(select(QRCode).where(QRCode.code == code)).scalars().first()
    if not row:
        raise NotFoundError("QR code not found")
    return row


def _resolve_bin(db: Session, target_id: uuid.UUID) -> dict:
    bin_row = db.execute(
        select(Bin).options(selectinload(Bin.location)).where(Bin.id == target_id)
    ).scalars().first()
    return {
        "id": target_id,
        "label": bin_row.label if bin_row else "Bin",
        "notes": bin_row.notes if bin_row else None,
        "locationName": bin_row.location.name if bin_row and bin_row.location else "Location not assigned",
        "items": list_bin_contents(db, target_id),
    }


def _resolve_item_group(db: Session, target_id: uuid.UUID) -> dict:
    group = db.get(ItemGroup, target_id)
    items = db.execute(
        select(Item)
        .options(selectinload(Item.bin).selectinload(Bin.location))
        .where(Item.item_group_id == target_id)
    ).scalars().all()
    return {
        "id": target_id,
        "name": group.name if group else "Item",
        "description": group.description if group else None,
        "items": [
            {
                "id": item.id,
                "binID": item.bin_id,
                "binLabel": item.bin.label if item.bin else "Bin",
                "locationName": item.bin.location.name if item.bin and item.bin.location else "Location not assigned",
                "quantityOnHand": item.quantity_on_hand,
                "unit": item.unit,
            }
            for item in items
        ],
    }


def resolve_qr_code(db: Session, code: str) -> dict:
    row = get_qr_code_or_raise(db, code)
    payload = {"code": row.code, "type": row.type, "targetID": row.target_id}
    if row.type == "bin":
        payload["bin"] = _resolve_bin(db, row.target_id)
    else:
        payload["itemGroup"] = _resolve_item_group(db, row.target_id)
    return payload


def resolve_scan_target(text: str) -> str:
    raw = (text or "").strip()
    if not raw:
        raise ValueError("Unable to read QR code.")
    parts = urlsplit(raw)
    if parts.scheme and parts.netloc:
        path = parts.path or "/"
        return f"{path}?{parts.query}" if parts.query else path
    return f"/qr/{quote(raw, safe='')}"


def render_qr_png(data: str) -> bytes:
    qr = qrcode.QRCode(version=1, box_size=4, border=1)
    qr.add_data(data)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def serialize_qr_code(row: QRCode, base_url: str) -> dict:
    return {
        "id": row.id,
        "code": row.code,
        "type": row.type,
        "targetID": row.target_id,
        "url": build_qr_url(base_url, row.code),
        "createdAt": row.created_at,
    }
