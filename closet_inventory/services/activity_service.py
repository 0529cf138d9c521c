from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.closet_models import ActivityLog


ENTITY_TYPES = {"location", "bin", "item_group", "item", "checkout", "reservation", "qr_code"}


def log_activity(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: uuid.UUID | None = None,
    details: dict[str, Any] | None = None,
    user_id: str | None = None,
) -> None:
    if entity_type not in ENTITY_TYPES:
        raise ValueError(f"Unknown activity entity type: {entity_type}")
    db.add(
        ActivityLog(
            id=uuid.uuid4(),
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=json.dumps(details, default=str) if details is not None else None,
            created_at=datetime.now(),
        )
    )


def list_recent_activity(db: Session, limit: int = 50) -> list[ActivityLog]:
    return list(
        db.execute(
            select(ActivityLog).order_by(ActivityLog.created_at.desc()).limit(max(1, limit))
        ).scalars().all()
    )


def _parse_details(raw: str | None) -> dict | None:
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


def serialize_activity(entry: ActivityLog) -> dict:
    return {
        "id": entry.id,
        "userID": entry.user_id,
        "action": entry.action,
        "entityType": entry.entity_type,
        "entityID": entry.entity_id,
        "details": _parse_details(entry.details),
        "createdAt": entry.created_at,
    }
