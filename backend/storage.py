import json
import logging
import random
import re
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional

import config
from models import BillItem, Participant, Room, TaxProfile

logger = logging.getLogger(__name__)


@contextmanager
def get_db_conn() -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(config.DB_PATH)
    conn.row_factory = sqlite3.Row
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db() -> None:
    with get_db_conn() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS rooms (
                id TEXT PRIMARY KEY,
                code TEXT NOT NULL UNIQUE,
                name TEXT,
                created_at TEXT NOT NULL,
                created_by TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                currency TEXT NOT NULL,
                service_tax_rate REAL NOT NULL DEFAULT 0,
                tax_profiles_json TEXT NOT NULL DEFAULT '[]',
                expires_at TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS participants (
                room_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                display_name TEXT NOT NULL,
                is_guest INTEGER NOT NULL DEFAULT 0,
                joined_at TEXT NOT NULL,
                has_submitted INTEGER NOT NULL DEFAULT 0,
                photo_url TEXT,
                left_at TEXT,
                PRIMARY KEY (room_id, user_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS items (
                room_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                name TEXT NOT NULL,
                price REAL NOT NULL,
                quantity INTEGER NOT NULL DEFAULT 1,
                added_by TEXT NOT NULL,
                tax_profile_id TEXT,
                created_at TEXT NOT NULL,
                PRIMARY KEY (room_id, item_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS item_selections (
                room_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                PRIMARY KEY (room_id, item_id, user_id)
            )
            """
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_expired(expires_at: Optional[str], now: Optional[datetime] = None) -> bool:
    if not expires_at:
        return False
    return datetime.fromisoformat(expires_at) <= (now or utc_now())


def generate_room_code() -> str:
    return "".join(random.choice(config.ROOM_CODE_ALPHABET) for _ in range(config.ROOM_CODE_LENGTH))


def _participant_from_row(row: sqlite3.Row) -> Participant:
    return Participant(
        user_id=row["user_id"],
        display_name=row["display_name"],
        is_guest=bool(row["is_guest"]),
        joined_at=row["joined_at"],
        has_submitted=bool(row["has_submitted"]),
        photo_url=row["photo_url"],
    )


def _room_from_rows(row: sqlite3.Row, participant_rows: List[sqlite3.Row]) -> Room:
    active = [r for r in participant_rows if not r["left_at"]]
    left = sorted((r for r in participant_rows if r["left_at"]), key=lambda r: r["left_at"])
    return Room(
        id=row["id"],
        code=row["code"],
        name=row["name"],
        created_at=row["created_at"],
        created_by=row["created_by"],
        status=row["status"],
        currency=row["currency"],
        service_tax_rate=float(row["service_tax_rate"]),
        tax_profiles=[TaxProfile(**p) for p in json.loads(row["tax_profiles_json"] or "[]")],
        participants=[_participant_from_row(r) for r in active],
        left_participants=[_participant_from_row(r) for r in left],
        expires_at=row["expires_at"],
    )


def _load_room(conn: sqlite3.Connection, row: Optional[sqlite3.Row]) -> Optional[Room]:
    if row is None or is_expired(row["expires_at"]):
        return None
    participant_rows = conn.execute(
        "SELECT * FROM participants WHERE room_id = ? ORDER BY joined_at, rowid",
        (row["id"],),
    ).fetchall()
    return _room_from_rows(row, participant_rows)


def fetch_room(room_id: str) -> Optional[Room]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
        return _load_room(conn, row)


def fetch_room_by_code(code: str) -> Optional[Room]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM rooms WHERE code = ?", ((code or "").strip().upper(),)).fetchone()
        return _load_room(conn, row)


def create_room(
    user_id: str,
    display_name: str,
    room_name: Optional[str] = None,
    currency: str = config.DEFAULT_CURRENCY,
    photo_url: Optional[str] = None,
    is_guest: bool = False,
) -> Room:
    room_id = uuid.uuid4().hex[:12]
    created_at = utc_now().isoformat()
    profiles = [TaxProfile(**p) for p in config.DEFAULT_TAX_PROFILES]
    with get_db_conn() as conn:
        code = generate_room_code()
        while conn.execute("SELECT 1 FROM rooms WHERE code = ?", (code,)).fetchone():
            code = generate_room_code()
        conn.execute(
            """
            INSERT INTO rooms (id, code, name, created_at, created_by, status, currency, service_tax_rate, tax_profiles_json)
            VALUES (?, ?, ?, ?, ?, 'active', ?, 0, ?)
            """,
            (
                room_id,
                code,
                room_name,
                created_at,
                user_id,
                currency.upper(),
                json.dumps([p.model_dump() for p in profiles]),
            ),
        )
        conn.execute(
            """
            INSERT INTO participants (room_id, user_id, display_name, is_guest, joined_at, has_submitted, photo_url)
            VALUES (?, ?, ?, ?, ?, 0, ?)
            """,
            (room_id, user_id, display_name, int(is_guest), created_at, photo_url),
        )
    logger.info("Room %s created by %s (code %s)", room_id, user_id, code)
    return fetch_room(room_id)


def join_room(
    room_id: str,
    user_id: str,
    display_name: str,
    is_guest: bool = False,
    photo_url: Optional[str] = None,
) -> Optional[Room]:
    room = fetch_room(room_id)
    if room is None:
        return None
    if user_id in room.participant_ids():
        return room

    with get_db_conn() as conn:
        conn.execute(
            """
            INSERT INTO participants (room_id, user_id, display_name, is_guest, joined_at, has_submitted, photo_url)
            VALUES (?, ?, ?, ?, ?, 0, ?)
            ON CONFLICT(room_id, user_id) DO UPDATE SET
                display_name = excluded.display_name,
                joined_at = excluded.joined_at,
                has_submitted = 0,
                photo_url = COALESCE(excluded.photo_url, participants.photo_url),
                left_at = NULL
            """,
            (room_id, user_id, display_name, int(is_guest), utc_now().isoformat(), photo_url),
        )
        # A newcomer has not submitted, so the room cannot stay completed.
        conn.execute(
            "UPDATE rooms SET expires_at = NULL, status = 'active' WHERE id = ?",
            (room_id,),
        )
    logger.info("User %s joined room %s", user_id, room_id)
    return fetch_room(room_id)


def leave_room(room_id: str, user_id: str) -> bool:
    room = fetch_room(room_id)
    if room is None or user_id not in room.participant_ids():
        return False

    now = utc_now()
    remaining = [uid for uid in room.participant_ids() if uid != user_id]
    with get_db_conn() as conn:
        conn.execute(
            "UPDATE participants SET left_at = ? WHERE room_id = ? AND user_id = ?",
            (now.isoformat(), room_id, user_id),
        )
        if remaining:
            conn.execute("UPDATE rooms SET expires_at = NULL WHERE id = ?", (room_id,))
        else:
            expires_at = now + timedelta(minutes=config.EMPTY_ROOM_TTL_MINUTES)
            conn.execute("UPDATE rooms SET expires_at = ? WHERE id = ?", (expires_at.isoformat(), room_id))
            logger.info("Room %s is empty, expires at %s", room_id, expires_at.isoformat())
    logger.info("User %s left room %s", user_id, room_id)
    return True


def rename_participant(room_id: str, user_id: str, display_name: str) -> bool:
    with get_db_conn() as conn:
        cur = conn.execute(
            "UPDATE participants SET display_name = ? WHERE room_id = ? AND user_id = ? AND left_at IS NULL",
            (display_name, room_id, user_id),
        )
        return cur.rowcount > 0


def set_submission(room_id: str, user_id: str, submitted: bool) -> Optional[Room]:
    room = fetch_room(room_id)
    if room is None or user_id not in room.participant_ids():
        return None

    with get_db_conn() as conn:
        conn.execute(
            "UPDATE participants SET has_submitted = ? WHERE room_id = ? AND user_id = ?",
            (int(submitted), room_id, user_id),
        )
        if submitted:
            pending = conn.execute(
                "SELECT COUNT(*) FROM participants WHERE room_id = ? AND left_at IS NULL AND has_submitted = 0",
                (room_id,),
            ).fetchone()[0]
            if pending == 0:
                expires_at = utc_now() + timedelta(days=config.COMPLETED_ROOM_TTL_DAYS)
                conn.execute(
                    "UPDATE rooms SET status = 'completed', expires_at = ? WHERE id = ?",
                    (expires_at.isoformat(), room_id),
                )
                logger.info("Room %s completed, expires at %s", room_id, expires_at.isoformat())
        elif room.status == "completed":
            conn.execute("UPDATE rooms SET status = 'active', expires_at = NULL WHERE id = ?", (room_id,))
    return fetch_room(room_id)


def list_user_rooms(user_id: str) -> List[Room]:
    purge_expired_rooms()
    with get_db_conn() as conn:
        rows = conn.execute(
            """
            SELECT rooms.* FROM rooms
            JOIN participants ON participants.room_id = rooms.id
            WHERE participants.user_id = ? OR rooms.created_by = ?
            GROUP BY rooms.id
            ORDER BY rooms.created_at DESC
            """,
            (user_id, user_id),
        ).fetchall()
        rooms = [_load_room(conn, row) for row in rows]
    return [room for room in rooms if room is not None]


def delete_room(room_id: str) -> None:
    with get_db_conn() as conn:
        for table in ("item_selections", "items", "participants"):
            conn.execute(f"DELETE FROM {table} WHERE room_id = ?", (room_id,))
        conn.execute("DELETE FROM rooms WHERE id = ?", (room_id,))
    logger.info("Room %s deleted", room_id)


def purge_expired_rooms(now: Optional[datetime] = None) -> int:
    now = now or utc_now()
    with get_db_conn() as conn:
        rows = conn.execute("SELECT id, expires_at FROM rooms WHERE expires_at IS NOT NULL").fetchall()
    expired = [row["id"] for row in rows if is_expired(row["expires_at"], now)]
    for room_id in expired:
        delete_room(room_id)
    if expired:
        logger.info("Purged %d expired rooms", len(expired))
    return len(expired)


def fetch_items(room_id: str) -> List[BillItem]:
    with get_db_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM items WHERE room_id = ? ORDER BY created_at, rowid",
            (room_id,),
        ).fetchall()
        selection_rows = conn.execute(
            "SELECT item_id, user_id FROM item_selections WHERE room_id = ? ORDER BY rowid",
            (room_id,),
        ).fetchall()
    selections: dict = {}
    for row in selection_rows:
        selections.setdefault(row["item_id"], []).append(row["user_id"])
    return [
        BillItem(
            id=row["item_id"],
            name=row["name"],
            price=float(row["price"]),
            quantity=int(row["quantity"]),
            added_by=row["added_by"],
            selected_by=selections.get(row["item_id"], []),
            tax_profile_id=row["tax_profile_id"],
            created_at=row["created_at"],
        )
        for row in rows
    ]


def fetch_item(room_id: str, item_id: str) -> Optional[BillItem]:
    return next((item for item in fetch_items(room_id) if item.id == item_id), None)


def next_item_id(room_id: str) -> str:
    with get_db_conn() as conn:
        rows = conn.execute("SELECT item_id FROM items WHERE room_id = ?", (room_id,)).fetchall()
    max_n = 0
    for row in rows:
        m = re.match(r"^itm_(\d+)$", str(row["item_id"]))
        if not m:
            continue
        max_n = max(max_n, int(m.group(1)))
    return f"itm_{max_n + 1}"


def add_item(
    room_id: str,
    name: str,
    price: float,
    added_by: str,
    quantity: int = 1,
    tax_profile_id: Optional[str] = None,
) -> BillItem:
    item = BillItem(
        id=next_item_id(room_id),
        name=name,
        price=price,
        quantity=quantity,
        added_by=added_by,
        tax_profile_id=tax_profile_id,
        created_at=utc_now().isoformat(),
    )
    with get_db_conn() as conn:
        conn.execute(
            """
            INSERT INTO items (room_id, item_id, name, price, quantity, added_by, tax_profile_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (room_id, item.id, item.name, item.price, item.quantity, item.added_by, item.tax_profile_id, item.created_at),
        )
    return item


def delete_item(room_id: str, item_id: str) -> bool:
    with get_db_conn() as conn:
        conn.execute("DELETE FROM item_selections WHERE room_id = ? AND item_id = ?", (room_id, item_id))
        cur = conn.execute("DELETE FROM items WHERE room_id = ? AND item_id = ?", (room_id, item_id))
        return cur.rowcount > 0


def toggle_selection(room_id: str, item_id: str, user_id: str) -> bool:
    """Add or remove one user from an item's selectors; returns the new state."""
    with get_db_conn() as conn:
        existing = conn.execute(
            "SELECT 1 FROM item_selections WHERE room_id = ? AND item_id = ? AND user_id = ?",
            (room_id, item_id, user_id),
        ).fetchone()
        if existing:
            conn.execute(
                "DELETE FROM item_selections WHERE room_id = ? AND item_id = ? AND user_id = ?",
                (room_id, item_id, user_id),
            )
            return False
        conn.execute(
            "INSERT INTO item_selections (room_id, item_id, user_id) VALUES (?, ?, ?)",
            (room_id, item_id, user_id),
        )
        return True


def set_item_tax_profile(room_id: str, item_id: str, tax_profile_id: Optional[str]) -> bool:
    with get_db_conn() as conn:
        cur = conn.execute(
            "UPDATE items SET tax_profile_id = ? WHERE room_id = ? AND item_id = ?",
            (tax_profile_id, room_id, item_id),
        )
        return cur.rowcount > 0


def set_service_tax_rate(room_id: str, rate: float) -> None:
    with get_db_conn() as conn:
        conn.execute("UPDATE rooms SET service_tax_rate = ? WHERE id = ?", (float(rate), room_id))


def set_currency(room_id: str, currency: str) -> None:
    with get_db_conn() as conn:
        conn.execute("UPDATE rooms SET currency = ? WHERE id = ?", (currency.upper(), room_id))


def save_tax_profiles(room_id: str, profiles: List[TaxProfile]) -> None:
    with get_db_conn() as conn:
        conn.execute(
            "UPDATE rooms SET tax_profiles_json = ? WHERE id = ?",
            (json.dumps([p.model_dump() for p in profiles]), room_id),
        )
