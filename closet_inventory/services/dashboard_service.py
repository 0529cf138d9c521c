from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from services.checkout_service import list_checkout_groups, list_open_issues, serialize_issue
from services.item_service import active_item_and_bin_ids, list_low_stock_items, serialize_item_status
from services.reservation_service import list_upcoming_reservations, serialize_reservation


DASHBOARD_PANEL_SIZE = 5


def build_dashboard(db: Session, now: datetime | None = None) -> dict:
    current_time = now or datetime.now()

    low_stock = list_low_stock_items(db)
    active_item_ids, active_bin_ids = active_item_and_bin_ids(db)
    active_groups = list_checkout_groups(db, active_only=True, now=current_time)
    active_groups.sort(key=lambda group: (group["dueBackAt"] is None, group["dueBackAt"] or datetime.max))

    return {
        "lowStockCount": len(low_stock),
        "lowStock": [
            serialize_item_status(item, active_item_ids, active_bin_ids) for item in low_stock[:DASHBOARD_PANEL_SIZE]
        ],
        "activeCheckoutCount": len(active_groups),
        "lateCheckoutCount": sum(1 for group in active_groups if group["isLate"]),
        "activeCheckouts": active_groups[:DASHBOARD_PANEL_SIZE],
        "issues": [serialize_issue(row) for row in list_open_issues(db, limit=DASHBOARD_PANEL_SIZE)],
        "upcomingReservations": [
            serialize_reservation(row)
            for row in list_upcoming_reservations(db, limit=DASHBOARD_PANEL_SIZE, now=current_time)
        ],
    }
