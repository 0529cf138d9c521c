import os
import logging
from datetime import datetime
from uuid import UUID

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.orm import Session

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

from db.deps import get_closet_db
from models.closet_models import Profile
from schemas.checkouts import (
    CheckInRequest,
    CreateCheckoutDto,
    CreateReservationDto,
    FulfillReservationRequest,
    LossReportDto,
    ReservationStatusRequest,
    to_naive_local,
)
from schemas.inventory import BinUpsert, ItemUpsert, LocationUpsert
from schemas.media import QRGenerateRequest, QRScanRequest, UploadUrlRequest
from services.activity_service import list_recent_activity, serialize_activity
from services.bin_service import build_bin_detail, create_bin, get_bin_or_raise, list_bins, serialize_bin, update_bin
from services.checkout_service import (
    available_quantity,
    check_in_group,
    checked_out_quantity,
    create_checkout,
    get_checkout_group,
    list_checkout_groups,
    report_loss,
    resolve_issue,
    serialize_checkout,
)
from services.dashboard_service import build_dashboard
from services.errors import AvailabilityError, NotFoundError
from services.identity_service import IdentityProviderError, resolve_actor_user_id, resolve_request_user
from services.item_service import (
    active_item_and_bin_ids,
    create_item,
    get_item_or_raise,
    list_item_groups,
    list_items_with_status,
    serialize_item_group,
    serialize_item_status,
    update_item,
)
from services.location_service import (
    build_location_map,
    create_location,
    get_location_or_raise,
    list_locations,
    serialize_location,
    update_location,
)
from services.photo_storage_service import PhotoStorageError, create_signed_upload
from services.qr_service import (
    build_qr_url,
    get_or_create_qr_code,
    get_qr_code_or_raise,
    render_qr_png,
    resolve_qr_code,
    resolve_scan_target,
    serialize_qr_code,
)
from services.reservation_service import (
    build_schedule,
    change_status,
    create_reservation,
    fulfill_reservation,
    get_reservation_or_raise,
    list_reservations,
    reserved_quantity,
    serialize_reservation,
)

app = FastAPI()


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:3000,http://localhost:3000",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)

APP_BASE_URL = (os.environ.get("APP_BASE_URL") or "").strip()
LOG_LEVEL = (os.environ.get("CLOSET_LOG_LEVEL") or "INFO").strip().upper()
APP_LOGGER = logging.getLogger("closet_inventory")
APP_LOGGER.setLevel(LOG_LEVEL if isinstance(logging.getLevelName(LOG_LEVEL), int) else "INFO")

CHECKOUT_FILTERS = {"active", "all"}


def _service_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, AvailabilityError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _public_base_url(request: Request) -> str:
    return APP_BASE_URL or str(request.base_url).rstrip("/")


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_closet_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/auth/me")
def auth_me(authorization: str | None = Header(None), db: Session = Depends(get_closet_db)):
    try:
        user = resolve_request_user(authorization)
    except IdentityProviderError as exc:
        raise HTTPException(status_code=503, detail=f"Identity provider unavailable: {exc}") from exc
    if not user:
        raise HTTPException(status_code=401, detail="Not logged in.")
    profile = db.get(Profile, user["id"])
    return {
        "user": user,
        "profile": {
            "id": profile.id,
            "fullName": profile.full_name,
            "role": profile.role,
        } if profile else None,
    }


@app.get("/api/dashboard")
def get_dashboard(db: Session = Depends(get_closet_db)):
    return build_dashboard(db)


@app.get("/api/locations")
def get_locations(db: Session = Depends(get_closet_db)):
    return [serialize_location(location) for location in list_locations(db)]


@app.post("/api/locations")
def post_location(
    payload: LocationUpsert,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    try:
        location = create_location(
            db,
            payload.name,
            description=payload.description,
            sort_order=payload.sortOrder,
            photo_url=payload.photoUrl,
            user_id=resolve_actor_user_id(authorization),
        )
    except ValueError as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    return serialize_location(location)


@app.put("/api/locations/{location_id}")
def put_location(
    location_id: UUID,
    payload: LocationUpsert,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    field_map = {"name": "name", "description": "description", "sortOrder": "sort_order", "photoUrl": "photo_url"}
    changes = {field_map[key]: value for key, value in payload.model_dump(exclude_unset=True).items()}
    try:
        location = get_location_or_raise(db, location_id)
        update_location(db, location, changes, user_id=resolve_actor_user_id(authorization))
    except (NotFoundError, ValueError) as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    return serialize_location(location)


@app.get("/api/map")
def get_map(db: Session = Depends(get_closet_db)):
    return build_location_map(db)


@app.get("/api/bins")
def get_bins(db: Session = Depends(get_closet_db)):
    return [serialize_bin(bin_row) for bin_row in list_bins(db)]


@app.get("/api/bins/{bin_id}")
def get_bin(bin_id: UUID, db: Session = Depends(get_closet_db)):
    try:
        bin_row = get_bin_or_raise(db, bin_id)
    except NotFoundError as exc:
        raise _service_error(exc) from exc
    return build_bin_detail(db, bin_row)


@app.post("/api/bins")
def post_bin(
    payload: BinUpsert,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    try:
        bin_row = create_bin(
            db,
            payload.label,
            location_id=payload.locationID,
            notes=payload.notes,
            photo_url=payload.photoUrl,
            user_id=resolve_actor_user_id(authorization),
        )
    except ValueError as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    db.refresh(bin_row)
    return serialize_bin(bin_row)


@app.put("/api/bins/{bin_id}")
def put_bin(
    bin_id: UUID,
    payload: BinUpsert,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    field_map = {"label": "label", "locationID": "location_id", "notes": "notes", "photoUrl": "photo_url"}
    changes = {field_map[key]: value for key, value in payload.model_dump(exclude_unset=True).items()}
    try:
        bin_row = get_bin_or_raise(db, bin_id)
        update_bin(db, bin_row, changes, user_id=resolve_actor_user_id(authorization))
    except (NotFoundError, ValueError) as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    db.refresh(bin_row)
    return serialize_bin(bin_row)


@app.get("/api/item-groups")
def get_item_groups(db: Session = Depends(get_closet_db)):
    return [serialize_item_group(group) for group in list_item_groups(db)]


@app.get("/api/inventory")
def get_inventory(
    filter_name: str | None = Query(None, alias="filter"),
    search: str | None = Query(None),
    db: Session = Depends(get_closet_db),
):
    if filter_name not in {None, "", "low-stock"}:
        raise HTTPException(status_code=400, detail="filter must be low-stock when given.")
    return list_items_with_status(db, search=search, low_stock_only=filter_name == "low-stock")


def _item_payload(db: Session, item) -> dict:
    active_item_ids, active_bin_ids = active_item_and_bin_ids(db)
    return serialize_item_status(item, active_item_ids, active_bin_ids)


@app.get("/api/items/{item_id}")
def get_item(item_id: UUID, db: Session = Depends(get_closet_db)):
    try:
        item = get_item_or_raise(db, item_id)
    except NotFoundError as exc:
        raise _service_error(exc) from exc
    return _item_payload(db, item)


@app.post("/api/items")
def post_item(
    payload: ItemUpsert,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    try:
        item = create_item(
            db,
            item_group_id=payload.itemGroupID,
            new_group_name=payload.newGroupName,
            bin_id=payload.binID,
            quantity_on_hand=payload.quantityOnHand,
            unit=payload.unit,
            low_stock_threshold=payload.lowStockThreshold,
            notes=payload.notes,
            user_id=resolve_actor_user_id(authorization),
        )
    except ValueError as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    db.refresh(item)
    return _item_payload(db, item)


@app.put("/api/items/{item_id}")
def put_item(
    item_id: UUID,
    payload: ItemUpsert,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    field_map = {
        "itemGroupID": "item_group_id",
        "newGroupName": "new_group_name",
        "binID": "bin_id",
        "quantityOnHand": "quantity_on_hand",
        "unit": "unit",
        "lowStockThreshold": "low_stock_threshold",
        "notes": "notes",
    }
    changes = {field_map[key]: value for key, value in payload.model_dump(exclude_unset=True).items()}
    try:
        item = get_item_or_raise(db, item_id)
        update_item(db, item, changes, user_id=resolve_actor_user_id(authorization))
    except (NotFoundError, ValueError) as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    db.refresh(item)
    return _item_payload(db, item)


@app.get("/api/items/{item_id}/availability")
def get_item_availability(
    item_id: UUID,
    start_at: datetime | None = Query(None, alias="startAt"),
    end_at: datetime | None = Query(None, alias="endAt"),
    db: Session = Depends(get_closet_db),
):
    start_at = to_naive_local(start_at)
    end_at = to_naive_local(end_at)
    if start_at and end_at and end_at < start_at:
        raise HTTPException(status_code=400, detail="endAt must be on or after startAt.")
    try:
        item = get_item_or_raise(db, item_id)
    except NotFoundError as exc:
        raise _service_error(exc) from exc

    on_hand = int(item.quantity_on_hand or 0)
    reserved = reserved_quantity(db, item.id, start_at, end_at) if start_at else 0
    return {
        "itemID": item.id,
        "itemGroupName": item.item_group.name if item.item_group else None,
        "quantityOnHand": on_hand,
        "checkedOut": checked_out_quantity(db, item.id),
        "available": available_quantity(db, item),
        "startAt": start_at,
        "endAt": end_at,
        "reserved": reserved,
        "freeForWindow": max(0, on_hand - reserved) if start_at else None,
    }


@app.get("/api/checkouts")
def get_checkouts(
    filter_name: str = Query("active", alias="filter"),
    db: Session = Depends(get_closet_db),
):
    if filter_name not in CHECKOUT_FILTERS:
        raise HTTPException(status_code=400, detail="filter must be active or all.")
    return list_checkout_groups(db, active_only=filter_name == "active")


@app.get("/api/checkouts/{group_id}")
def get_checkout(group_id: UUID, db: Session = Depends(get_closet_db)):
    try:
        return get_checkout_group(db, group_id)
    except NotFoundError as exc:
        raise _service_error(exc) from exc


@app.post("/api/checkouts")
def post_checkout(
    payload: CreateCheckoutDto,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    try:
        batch_id = create_checkout(
            db,
            payload.borrowerName,
            [(line.itemID, line.quantity) for line in payload.lines],
            bin_id=payload.binID,
            club_name=payload.clubName,
            event_name=payload.eventName,
            due_back_at=payload.dueBackAt,
            notes=payload.notes,
            user_id=resolve_actor_user_id(authorization),
        )
    except ValueError as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    return get_checkout_group(db, batch_id)


@app.post("/api/checkouts/{group_id}/check-in")
def post_check_in(
    group_id: UUID,
    payload: CheckInRequest,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    lines = [
        {
            "checkout_id": line.checkoutID,
            "ok": line.okQty,
            "lost": line.lostQty,
            "broken": line.brokenQty,
            "used": line.usedQty,
            "choice": line.choice,
        }
        for line in payload.lines
    ]
    try:
        check_in_group(db, group_id, lines, notes=payload.notes, user_id=resolve_actor_user_id(authorization))
    except (NotFoundError, ValueError) as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    return get_checkout_group(db, group_id)


@app.post("/api/checkouts/{checkout_id}/resolve-issue")
def post_resolve_issue(
    checkout_id: UUID,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    try:
        row = resolve_issue(db, checkout_id, user_id=resolve_actor_user_id(authorization))
    except (NotFoundError, ValueError) as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    return serialize_checkout(row)


@app.post("/api/loss-reports")
def post_loss_report(
    payload: LossReportDto,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    try:
        row = report_loss(
            db,
            payload.itemID,
            payload.quantity,
            payload.issueType,
            reported_by=payload.reportedBy,
            notes=payload.notes,
            user_id=resolve_actor_user_id(authorization),
        )
    except ValueError as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    return serialize_checkout(row)


@app.get("/api/reservations")
def get_reservations(
    status: str | None = Query(None),
    db: Session = Depends(get_closet_db),
):
    statuses = {value.strip() for value in (status or "").split(",") if value.strip()}
    return [serialize_reservation(row) for row in list_reservations(db, statuses=statuses or None)]


@app.get("/api/schedule")
def get_schedule(
    group_by: str = Query("date", alias="groupBy"),
    db: Session = Depends(get_closet_db),
):
    try:
        return build_schedule(list_reservations(db), group_by=group_by)
    except ValueError as exc:
        raise _service_error(exc) from exc


@app.post("/api/reservations")
def post_reservation(
    payload: CreateReservationDto,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    try:
        rows = create_reservation(
            db,
            payload.borrowerName,
            payload.startAt,
            [(line.itemID, line.quantity) for line in payload.lines],
            bin_id=payload.binID,
            end_at=payload.endAt,
            status=payload.status,
            club_name=payload.clubName,
            event_name=payload.eventName,
            notes=payload.notes,
            user_id=resolve_actor_user_id(authorization),
        )
    except ValueError as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    return [serialize_reservation(get_reservation_or_raise(db, row.id)) for row in rows]


@app.post("/api/reservations/{reservation_id}/status")
def post_reservation_status(
    reservation_id: UUID,
    payload: ReservationStatusRequest,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    try:
        reservation = get_reservation_or_raise(db, reservation_id)
        change_status(db, reservation, payload.status, user_id=resolve_actor_user_id(authorization))
    except (NotFoundError, ValueError) as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    return serialize_reservation(reservation)


@app.post("/api/reservations/{reservation_id}/fulfill")
def post_fulfill_reservation(
    reservation_id: UUID,
    payload: FulfillReservationRequest | None = None,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    try:
        reservation = get_reservation_or_raise(db, reservation_id)
        batch_id = fulfill_reservation(
            db,
            reservation,
            due_back_at=payload.dueBackAt if payload else None,
            user_id=resolve_actor_user_id(authorization),
        )
    except (NotFoundError, ValueError) as exc:
        db.rollback()
        raise _service_error(exc) from exc
    db.commit()
    return {"reservation": serialize_reservation(reservation), "checkout": get_checkout_group(db, batch_id)}


@app.post("/api/qr")
def post_qr_code(
    request: Request,
    payload: QRGenerateRequest,
    db: Session = Depends(get_closet_db),
    authorization: str | None = Header(None),
):
    try:
        row, created = get_or_create_qr_code(
            db,
            payload.type,
            payload.targetID,
            user_id=resolve_actor_user_id(authorization),
        )
    except (NotFoundError, ValueError) as exc:
        db.rollback()
        raise _service_error(exc) from exc
    if created:
        db.commit()
    result = serialize_qr_code(row, _public_base_url(request))
    result["created"] = created
    return result


@app.get("/api/qr/{code}")
def get_qr_code(code: str, db: Session = Depends(get_closet_db)):
    try:
        return resolve_qr_code(db, code)
    except NotFoundError as exc:
        raise _service_error(exc) from exc


@app.get("/api/qr/{code}/image")
def get_qr_image(code: str, request: Request, db: Session = Depends(get_closet_db)):
    try:
        row = get_qr_code_or_raise(db, code)
    except NotFoundError as exc:
        raise _service_error(exc) from exc
    png = render_qr_png(build_qr_url(_public_base_url(request), row.code))
    return Response(content=png, media_type="image/png")


@app.post("/api/scan")
def post_scan(payload: QRScanRequest):
    try:
        return {"target": resolve_scan_target(payload.text)}
    except ValueError as exc:
        raise _service_error(exc) from exc


@app.post("/api/upload-url")
def post_upload_url(payload: UploadUrlRequest):
    try:
        return create_signed_upload(payload.folder, payload.fileName)
    except ValueError as exc:
        raise _service_error(exc) from exc
    except PhotoStorageError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.get("/api/logs")
def get_logs(
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_closet_db),
):
    return [serialize_activity(entry) for entry in list_recent_activity(db, limit=limit)]


if __name__ == "__main__":
    uvicorn.run(
        "ClosetMan:app",
        host=os.environ.get("CLOSET_HOST", "127.0.0.1"),
        port=int(os.environ.get("CLOSET_PORT", "8000")),
    )
