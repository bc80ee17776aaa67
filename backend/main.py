import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, File, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

import calculations
import config
import storage
from currency import format_currency, resolve_locale
from logging_config import setup_logging
from models import BillItem, Room, TaxProfile
from receipt_scan import ReceiptScanError, ScannedItem, ScannedTaxProfile, scan_receipt_image

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    storage.init_db()
    storage.purge_expired_rooms()
    yield


app = FastAPI(lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class CreateRoomRequest(BaseModel):
    display_name: str = Field(min_length=1, max_length=64)
    user_id: Optional[str] = None
    room_name: Optional[str] = Field(default=None, max_length=100)
    currency: str = Field(default=config.DEFAULT_CURRENCY, min_length=3, max_length=3)
    is_guest: bool = False
    photo_url: Optional[str] = None


class JoinRoomRequest(BaseModel):
    display_name: str = Field(min_length=1, max_length=64)
    user_id: Optional[str] = None
    is_guest: bool = False
    photo_url: Optional[str] = None


class JoinByCodeRequest(JoinRoomRequest):
    code: str = Field(min_length=1)


class ParticipantRequest(BaseModel):
    user_id: str


class RenameParticipantRequest(BaseModel):
    user_id: str
    display_name: str = Field(min_length=1, max_length=64)


class SubmitRequest(BaseModel):
    user_id: str
    submitted: bool = True


class AddItemRequest(BaseModel):
    actor_user_id: str
    name: str = Field(min_length=1, max_length=120)
    price: float = Field(ge=0)
    quantity: int = Field(default=1, ge=1)
    tax_profile_id: Optional[str] = None


class ItemTaxProfileRequest(BaseModel):
    actor_user_id: str
    tax_profile_id: Optional[str] = None


class ServiceTaxRequest(BaseModel):
    actor_user_id: str
    rate: float = Field(ge=0)


class CreateTaxProfileRequest(BaseModel):
    actor_user_id: str
    name: str = Field(min_length=1, max_length=40)
    rate: float = Field(ge=0)
    icon: str = "Percent"
    is_global: bool = False
    is_double: bool = False


class UpdateTaxProfileRequest(BaseModel):
    actor_user_id: str
    name: Optional[str] = Field(default=None, min_length=1, max_length=40)
    rate: Optional[float] = Field(default=None, ge=0)
    icon: Optional[str] = None


class ActorRequest(BaseModel):
    actor_user_id: str


class ReplaceTaxProfilesRequest(BaseModel):
    actor_user_id: str
    tax_profiles: List[TaxProfile]


class ReceiptImportRequest(BaseModel):
    actor_user_id: str
    items: List[ScannedItem] = Field(default_factory=list)
    service_tax: Optional[float] = Field(default=None, ge=0)
    tax_profiles: List[ScannedTaxProfile] = Field(default_factory=list)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


def new_user_id() -> str:
    return str(uuid.uuid4())[:8]


def new_tax_profile_id() -> str:
    return f"tax_{uuid.uuid4().hex[:8]}"


def require_room(room_id: str) -> Room:
    room = storage.fetch_room(room_id)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return room


def require_participant(room: Room, user_id: str) -> None:
    if user_id not in room.participant_ids():
        raise HTTPException(status_code=403, detail="Only room participants can edit this room")


def require_item(room: Room, item_id: str) -> BillItem:
    item = storage.fetch_item(room.id, item_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Item not found")
    return item


def require_profile(room: Room, profile_id: str) -> TaxProfile:
    profile = room.find_profile(profile_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Tax profile not found")
    return profile


def validate_single_global(profiles: List[Any]) -> None:
    if sum(1 for p in profiles if p.is_global) > 1:
        raise HTTPException(status_code=400, detail="Only one tax profile can be global")


def compute_room_summary(room: Room, items: List[BillItem], locale: Optional[str] = None) -> Dict[str, Any]:
    display_locale = resolve_locale(locale)
    currency = room.currency

    def money(value: Decimal) -> Dict[str, Any]:
        return {"amount": float(value), "formatted": format_currency(value, currency, display_locale)}

    item_rows = []
    for item in items:
        profile = calculations.item_effective_profile(item, room)
        share = calculations.item_share(item, room)
        item_rows.append(
            {
                "item_id": item.id,
                "name": item.name,
                "price": item.price,
                "quantity": item.quantity,
                "selected_by": item.selected_by,
                "tax_profile_id": item.tax_profile_id,
                "effective_tax_profile": profile.model_dump() if profile else None,
                "extended_price": float(calculations.item_extended_price(item)),
                "tax": float(calculations.item_tax_amount(item, room)),
                "service_charge": float(calculations.item_service_charge(item, room)),
                "grand_total": money(calculations.item_grand_total(item, room)),
                "per_person_share": money(share) if share is not None else None,
            }
        )

    names = {p.user_id: p.display_name for p in room.left_participants}
    names.update({p.user_id: p.display_name for p in room.participants})
    user_ids = list(names.keys())
    for item in items:
        for uid in item.selected_by:
            if uid not in names:
                user_ids.append(uid)
                names[uid] = uid
    active_ids = set(room.participant_ids())
    breakdown = calculations.split_breakdown(items, user_ids, room)

    users: Dict[str, Dict[str, Any]] = {}
    for uid, share in breakdown.items():
        participant = next((p for p in room.participants if p.user_id == uid), None)
        users[uid] = {
            "display_name": names[uid],
            "share": money(share),
            "item_count": sum(1 for item in items if uid in item.selected_by),
            "has_submitted": participant.has_submitted if participant else False,
            "left": uid not in active_ids,
        }

    total = calculations.total_bill(items, room)
    unclaimed = calculations.unclaimed_total(items, room)
    return {
        "room_id": room.id,
        "room_name": room.name,
        "code": room.code,
        "status": room.status,
        "currency": currency,
        "locale": display_locale,
        "service_tax_rate": room.service_tax_rate,
        "participant_count": len(room.participants),
        "subtotal": money(calculations.subtotal(items)),
        "total_tax": money(calculations.total_tax(items, room)),
        "total_service_charge": money(calculations.total_service_charge(items, room)),
        "total_bill": money(total),
        "claimed_total": money(calculations.claimed_total(items, room)),
        "unclaimed_total": money(unclaimed),
        "unclaimed_item_count": len(calculations.unclaimed_items(items)),
        "items": item_rows,
        "users": users,
    }


def room_state(room: Room, locale: Optional[str] = None) -> Dict[str, Any]:
    items = storage.fetch_items(room.id)
    return {
        "room": room.model_dump(),
        "items": [item.model_dump() for item in items],
        "summary": compute_room_summary(room, items, locale),
    }


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "time_utc": datetime.now(timezone.utc).isoformat(),
        "gemini_configured": bool(config.GEMINI_API_KEY),
        "db_path": config.DB_PATH,
    }


@app.get("/version")
async def version():
    return {
        "app": config.APP_NAME,
        "version": config.APP_VERSION,
        "gemini_model": config.GEMINI_MODEL,
    }


@app.post("/rooms/create")
async def create_room(req: CreateRoomRequest):
    user_id = (req.user_id or "").strip() or new_user_id()
    room = storage.create_room(
        user_id=user_id,
        display_name=req.display_name.strip(),
        room_name=(req.room_name or "").strip() or None,
        currency=req.currency,
        photo_url=req.photo_url,
        is_guest=req.is_guest,
    )
    return {"room_id": room.id, "code": room.code, "user_id": user_id, "room": room.model_dump()}


@app.post("/rooms/join")
async def join_room_by_code(req: JoinByCodeRequest):
    room = storage.fetch_room_by_code(req.code)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return await join_room(room.id, req)


@app.post("/rooms/{room_id}/join")
async def join_room(room_id: str, req: JoinRoomRequest):
    require_room(room_id)
    user_id = (req.user_id or "").strip() or new_user_id()
    room = storage.join_room(room_id, user_id, req.display_name.strip(), req.is_guest, req.photo_url)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return {"room_id": room.id, "code": room.code, "user_id": user_id, "room": room.model_dump()}


@app.post("/rooms/{room_id}/leave")
async def leave_room(room_id: str, req: ParticipantRequest):
    room = require_room(room_id)
    require_participant(room, req.user_id)
    storage.leave_room(room_id, req.user_id)
    return {"ok": True, "room_id": room_id, "user_id": req.user_id}


@app.post("/rooms/{room_id}/participant-name")
async def rename_participant(room_id: str, req: RenameParticipantRequest):
    room = require_room(room_id)
    require_participant(room, req.user_id)
    storage.rename_participant(room_id, req.user_id, req.display_name.strip())
    return {"ok": True, "room_id": room_id, "user_id": req.user_id, "display_name": req.display_name.strip()}


@app.post("/rooms/{room_id}/submit")
async def submit_selections(room_id: str, req: SubmitRequest):
    room = require_room(room_id)
    require_participant(room, req.user_id)
    updated = storage.set_submission(room_id, req.user_id, req.submitted)
    return {"ok": True, "room_id": room_id, "status": updated.status, "expires_at": updated.expires_at}


@app.get("/rooms/by-code/{code}")
async def room_by_code(code: str):
    room = storage.fetch_room_by_code(code)
    if room is None:
        raise HTTPException(status_code=404, detail="Room not found")
    return room.model_dump()


@app.get("/rooms/{room_id}")
async def get_room(room_id: str, accept_language: Optional[str] = Header(default=None)):
    return room_state(require_room(room_id), accept_language)


@app.get("/users/{user_id}/rooms")
async def user_rooms(user_id: str):
    rooms = storage.list_user_rooms(user_id)
    return {
        "user_id": user_id,
        "rooms": [
            {
                "room_id": room.id,
                "code": room.code,
                "name": room.name,
                "status": room.status,
                "created_at": room.created_at,
                "is_active_participant": user_id in room.participant_ids(),
            }
            for room in rooms
        ],
    }


@app.delete("/rooms/{room_id}")
async def delete_room(room_id: str, actor_user_id: str = Query(...)):
    room = require_room(room_id)
    if actor_user_id != room.created_by:
        raise HTTPException(status_code=403, detail="Only the room creator can delete the room")
    storage.delete_room(room_id)
    return {"ok": True, "room_id": room_id}


@app.post("/rooms/{room_id}/items")
async def add_item(room_id: str, req: AddItemRequest):
    room = require_room(room_id)
    require_participant(room, req.actor_user_id)
    if req.tax_profile_id is not None:
        require_profile(room, req.tax_profile_id)
    name = req.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Item name is required")
    item = storage.add_item(room_id, name, req.price, req.actor_user_id, req.quantity, req.tax_profile_id)
    return {"ok": True, "room_id": room_id, "item": item.model_dump()}


@app.delete("/rooms/{room_id}/items/{item_id}")
async def delete_item(room_id: str, item_id: str, actor_user_id: str = Query(...)):
    room = require_room(room_id)
    require_participant(room, actor_user_id)
    if not storage.delete_item(room_id, item_id):
        raise HTTPException(status_code=404, detail="Item not found")
    return {"ok": True, "room_id": room_id, "item_id": item_id}


@app.post("/rooms/{room_id}/items/{item_id}/toggle")
async def toggle_item(room_id: str, item_id: str, req: ParticipantRequest):
    room = require_room(room_id)
    require_participant(room, req.user_id)
    require_item(room, item_id)
    selected = storage.toggle_selection(room_id, item_id, req.user_id)
    return {"ok": True, "room_id": room_id, "item_id": item_id, "user_id": req.user_id, "selected": selected}


@app.post("/rooms/{room_id}/items/{item_id}/tax-profile")
async def set_item_tax_profile(room_id: str, item_id: str, req: ItemTaxProfileRequest):
    room = require_room(room_id)
    require_participant(room, req.actor_user_id)
    require_item(room, item_id)
    profile_id = req.tax_profile_id or None
    if profile_id is not None:
        require_profile(room, profile_id)
    storage.set_item_tax_profile(room_id, item_id, profile_id)
    return {"ok": True, "room_id": room_id, "item": storage.fetch_item(room_id, item_id).model_dump()}


@app.post("/rooms/{room_id}/service-tax")
async def set_service_tax(room_id: str, req: ServiceTaxRequest):
    room = require_room(room_id)
    require_participant(room, req.actor_user_id)
    storage.set_service_tax_rate(room_id, req.rate)
    return {"ok": True, "room_id": room_id, "service_tax_rate": req.rate}


@app.post("/rooms/{room_id}/tax-profiles")
async def create_tax_profile(room_id: str, req: CreateTaxProfileRequest):
    room = require_room(room_id)
    require_participant(room, req.actor_user_id)
    profile = TaxProfile(
        id=new_tax_profile_id(),
        name=req.name.strip(),
        rate=req.rate,
        is_global=req.is_global,
        is_double=req.is_double,
        icon=req.icon,
    )
    profiles = list(room.tax_profiles)
    if profile.is_global:
        profiles = [p.model_copy(update={"is_global": False}) for p in profiles]
    profiles.append(profile)
    storage.save_tax_profiles(room_id, profiles)
    return {"ok": True, "room_id": room_id, "tax_profile": profile.model_dump()}


@app.put("/rooms/{room_id}/tax-profiles")
async def replace_tax_profiles(room_id: str, req: ReplaceTaxProfilesRequest):
    room = require_room(room_id)
    require_participant(room, req.actor_user_id)
    validate_single_global(req.tax_profiles)
    ids = [p.id for p in req.tax_profiles]
    if len(set(ids)) != len(ids):
        raise HTTPException(status_code=400, detail="Tax profile ids must be unique")
    storage.save_tax_profiles(room_id, req.tax_profiles)
    return {"ok": True, "room_id": room_id, "tax_profiles": [p.model_dump() for p in req.tax_profiles]}


@app.post("/rooms/{room_id}/tax-profiles/{profile_id}/toggle-global")
async def toggle_global_profile(room_id: str, profile_id: str, req: ActorRequest):
    room = require_room(room_id)
    require_participant(room, req.actor_user_id)
    require_profile(room, profile_id)
    profiles = [
        p.model_copy(update={"is_global": (not p.is_global) if p.id == profile_id else False})
        for p in room.tax_profiles
    ]
    storage.save_tax_profiles(room_id, profiles)
    return {"ok": True, "room_id": room_id, "tax_profiles": [p.model_dump() for p in profiles]}


@app.post("/rooms/{room_id}/tax-profiles/{profile_id}/toggle-double")
async def toggle_double_profile(room_id: str, profile_id: str, req: ActorRequest):
    room = require_room(room_id)
    require_participant(room, req.actor_user_id)
    require_profile(room, profile_id)
    profiles = [
        p.model_copy(update={"is_double": not p.is_double}) if p.id == profile_id else p
        for p in room.tax_profiles
    ]
    storage.save_tax_profiles(room_id, profiles)
    return {"ok": True, "room_id": room_id, "tax_profiles": [p.model_dump() for p in profiles]}


@app.post("/rooms/{room_id}/tax-profiles/{profile_id}/update")
async def update_tax_profile(room_id: str, profile_id: str, req: UpdateTaxProfileRequest):
    room = require_room(room_id)
    require_participant(room, req.actor_user_id)
    profile = require_profile(room, profile_id)
    changes: Dict[str, Any] = {}
    if req.name is not None:
        changes["name"] = req.name.strip()
    if req.rate is not None:
        changes["rate"] = req.rate
    if req.icon is not None:
        changes["icon"] = req.icon
    updated = profile.model_copy(update=changes)
    profiles = [updated if p.id == profile_id else p for p in room.tax_profiles]
    storage.save_tax_profiles(room_id, profiles)
    return {"ok": True, "room_id": room_id, "tax_profile": updated.model_dump()}


@app.delete("/rooms/{room_id}/tax-profiles/{profile_id}")
async def delete_tax_profile(room_id: str, profile_id: str, actor_user_id: str = Query(...)):
    room = require_room(room_id)
    require_participant(room, actor_user_id)
    require_profile(room, profile_id)
    # Items still pointing at this id fall back to the global profile, or none.
    profiles = [p for p in room.tax_profiles if p.id != profile_id]
    storage.save_tax_profiles(room_id, profiles)
    return {"ok": True, "room_id": room_id, "tax_profiles": [p.model_dump() for p in profiles]}


@app.get("/rooms/{room_id}/summary")
async def room_summary(
    room_id: str,
    format: str = Query("full"),
    locale: Optional[str] = Query(None),
    accept_language: Optional[str] = Header(default=None),
):
    room = require_room(room_id)
    summary = compute_room_summary(room, storage.fetch_items(room_id), locale or accept_language)
    if format == "compact":
        return {
            "room_id": summary["room_id"],
            "room_name": summary["room_name"],
            "currency": summary["currency"],
            "subtotal": summary["subtotal"],
            "total_tax": summary["total_tax"],
            "total_service_charge": summary["total_service_charge"],
            "total_bill": summary["total_bill"],
            "claimed_total": summary["claimed_total"],
            "unclaimed_total": summary["unclaimed_total"],
            "users": {
                uid: {"display_name": v["display_name"], "share": v["share"]}
                for uid, v in summary["users"].items()
            },
        }
    return summary


@app.post("/scan-receipt")
async def scan_receipt(file: UploadFile = File(...)):
    image_data = await file.read()
    if not image_data:
        raise HTTPException(status_code=400, detail="No image provided")
    if len(image_data) > config.MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="Image is too large")
    mime_type = file.content_type or "image/jpeg"
    if not mime_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="Upload must be an image")

    try:
        receipt = scan_receipt_image(image_data, mime_type)
    except ReceiptScanError as ex:
        if ex.not_a_receipt:
            raise HTTPException(status_code=422, detail=f"{ex}. Add items manually instead.")
        if not ex.retryable:
            raise HTTPException(status_code=503, detail=f"Receipt scanning unavailable: {ex}")
        raise HTTPException(status_code=502, detail=f"{ex}. Please retry or add items manually.")
    return receipt.model_dump()


@app.post("/rooms/{room_id}/receipt-import")
async def import_receipt(room_id: str, req: ReceiptImportRequest):
    room = require_room(room_id)
    require_participant(room, req.actor_user_id)
    validate_single_global(req.tax_profiles)

    profiles = list(room.tax_profiles)
    if any(p.is_global for p in req.tax_profiles):
        profiles = [p.model_copy(update={"is_global": False}) for p in profiles]
    added_profiles = []
    for scanned in req.tax_profiles:
        profile = TaxProfile(
            id=new_tax_profile_id(),
            name=scanned.name.strip(),
            rate=scanned.rate,
            is_global=scanned.is_global,
            is_double=scanned.is_double,
        )
        profiles.append(profile)
        added_profiles.append(profile)
    if added_profiles:
        storage.save_tax_profiles(room_id, profiles)

    if req.service_tax is not None:
        storage.set_service_tax_rate(room_id, req.service_tax)
    if req.currency:
        storage.set_currency(room_id, req.currency)

    added_items = [
        storage.add_item(room_id, scanned.name.strip(), scanned.price, req.actor_user_id, scanned.quantity)
        for scanned in req.items
    ]
    logger.info("Imported %d items and %d tax profiles into room %s", len(added_items), len(added_profiles), room_id)
    return {
        "ok": True,
        "room_id": room_id,
        "items": [item.model_dump() for item in added_items],
        "tax_profiles": [p.model_dump() for p in added_profiles],
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=config.HOST, port=config.PORT)
