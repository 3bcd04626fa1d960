from __future__ import annotations

import datetime as dt
import secrets
import sqlite3
from typing import Optional

from .auth import is_admin
from .db import get_user, list_users, new_id, now_iso
from .errors import Conflict, Forbidden, NotFound, ValidationFailed
from .models import (
    Participant,
    SharedReading,
    User,
    book_summary,
    participant_view,
    shared_reading_view,
    user_view,
)
from .storage import get_book, require_book

READING_FIELDS = {"title", "description", "book_id", "start_date", "end_date"}


def to_utc_iso(value: dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).replace(microsecond=0).isoformat()


def _parse_iso(value: str) -> dt.datetime:
    parsed = dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def _utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def has_ended(reading: SharedReading, now: Optional[dt.datetime] = None) -> bool:
    return (now or _utc_now()) > _parse_iso(reading.end_date)


def create_reading(
    conn: sqlite3.Connection,
    creator: User,
    *,
    title: str,
    description: Optional[str],
    book_id: str,
    start_date: dt.datetime,
    end_date: dt.datetime,
    is_public: bool,
) -> SharedReading:
    require_book(conn, book_id)
    start_iso = to_utc_iso(start_date)
    end_iso = to_utc_iso(end_date)
    if _parse_iso(end_iso) <= _parse_iso(start_iso):
        raise ValidationFailed("end date must be after start date")
    reading = SharedReading(
        id=new_id(),
        title=title.strip(),
        description=description,
        book_id=book_id,
        start_date=start_iso,
        end_date=end_iso,
        is_public=is_public,
        invite_code=None if is_public else secrets.token_urlsafe(9),
        created_by=creator.id,
        created_at=now_iso(),
    )
    with conn:
        conn.execute(
            """
            INSERT INTO shared_readings(
                id, title, description, book_id, start_date, end_date, is_public, invite_code, created_by, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                reading.id,
                reading.title,
                reading.description,
                reading.book_id,
                reading.start_date,
                reading.end_date,
                int(reading.is_public),
                reading.invite_code,
                reading.created_by,
                reading.created_at,
            ),
        )
        _insert_participant(conn, reading.id, creator.id)
    return reading


def _insert_participant(conn: sqlite3.Connection, reading_id: str, user_id: str) -> None:
    conn.execute(
        """
        INSERT OR IGNORE INTO participants(id, shared_reading_id, user_id, progress, joined_at)
        VALUES (?, ?, ?, 0, ?)
        """,
        (new_id(), reading_id, user_id, now_iso()),
    )


def get_reading(conn: sqlite3.Connection, reading_id: str) -> Optional[SharedReading]:
    row = conn.execute("SELECT * FROM shared_readings WHERE id = ?", (reading_id,)).fetchone()
    return _row_to_reading(row) if row else None


def require_reading(conn: sqlite3.Connection, reading_id: str) -> SharedReading:
    reading = get_reading(conn, reading_id)
    if reading is None:
        raise NotFound("shared reading not found")
    return reading


def get_participant(conn: sqlite3.Connection, reading_id: str, user_id: str) -> Optional[Participant]:
    row = conn.execute(
        "SELECT * FROM participants WHERE shared_reading_id = ? AND user_id = ?", (reading_id, user_id)
    ).fetchone()
    return _row_to_participant(row) if row else None


def list_participants(conn: sqlite3.Connection, reading_id: str) -> list[Participant]:
    rows = conn.execute(
        "SELECT * FROM participants WHERE shared_reading_id = ? ORDER BY joined_at", (reading_id,)
    ).fetchall()
    return [_row_to_participant(row) for row in rows]


def has_access(conn: sqlite3.Connection, reading: SharedReading, user: User) -> bool:
    if reading.is_public or reading.created_by == user.id:
        return True
    return get_participant(conn, reading.id, user.id) is not None


def require_access(conn: sqlite3.Connection, reading: SharedReading, user: User) -> None:
    if not has_access(conn, reading, user):
        raise Forbidden("you do not have access to this shared reading")


def require_manager(reading: SharedReading, user: User) -> None:
    if not is_admin(user) and reading.created_by != user.id:
        raise Forbidden("only the creator or an administrator can manage this shared reading")


def annotation_count(conn: sqlite3.Connection, reading_id: str) -> int:
    row = conn.execute("SELECT COUNT(*) FROM annotations WHERE shared_reading_id = ?", (reading_id,)).fetchone()
    return int(row[0]) if row else 0


def reading_card(conn: sqlite3.Connection, reading: SharedReading, *, include_invite: bool = False) -> dict:
    view = shared_reading_view(reading, include_invite=include_invite)
    book = get_book(conn, reading.book_id)
    creator = get_user(conn, reading.created_by)
    participants = list_participants(conn, reading.id)
    users = {user.id: user for user in list_users(conn, [item.user_id for item in participants])}
    view["book"] = book_summary(book) if book else None
    view["creator"] = user_view(creator, with_email=False) if creator else None
    view["participants"] = [
        {**participant_view(item), "user": user_view(users[item.user_id], with_email=False) if item.user_id in users else None}
        for item in participants
    ]
    view["annotationCount"] = annotation_count(conn, reading.id)
    return view


def list_public_readings(
    conn: sqlite3.Connection, search: Optional[str] = None, now: Optional[dt.datetime] = None
) -> list[SharedReading]:
    query = """
        SELECT shared_readings.*
        FROM shared_readings
        JOIN books ON books.id = shared_readings.book_id
        WHERE shared_readings.is_public = 1
    """
    params: list[object] = []
    needle = (search or "").strip().lower()
    if needle:
        query += """
            AND (lower(shared_readings.title) LIKE ? OR lower(books.title) LIKE ? OR lower(books.author) LIKE ?)
        """
        params.extend([f"%{needle}%"] * 3)
    query += " ORDER BY shared_readings.created_at DESC"
    readings = [_row_to_reading(row) for row in conn.execute(query, params).fetchall()]
    moment = now or _utc_now()
    return [reading for reading in readings if not has_ended(reading, moment)]


def list_user_readings(conn: sqlite3.Connection, user_id: str) -> list[SharedReading]:
    rows = conn.execute(
        """
        SELECT DISTINCT shared_readings.*
        FROM shared_readings
        LEFT JOIN participants ON participants.shared_reading_id = shared_readings.id
        WHERE shared_readings.created_by = ? OR participants.user_id = ?
        ORDER BY shared_readings.created_at DESC
        """,
        (user_id, user_id),
    ).fetchall()
    return [_row_to_reading(row) for row in rows]


def join_reading(
    conn: sqlite3.Connection, reading_id: str, user: User, invite_code: Optional[str], now: Optional[dt.datetime] = None
) -> None:
    reading = require_reading(conn, reading_id)
    if get_participant(conn, reading.id, user.id) is not None:
        raise Conflict("you already take part in this shared reading")
    if not reading.is_public and (not invite_code or invite_code != reading.invite_code):
        raise Forbidden("invalid invite code")
    if has_ended(reading, now):
        raise ValidationFailed("this shared reading has ended")
    with conn:
        _insert_participant(conn, reading.id, user.id)


def update_reading(conn: sqlite3.Connection, reading_id: str, user: User, **fields: object) -> SharedReading:
    reading = require_reading(conn, reading_id)
    require_manager(reading, user)
    updates: dict[str, object] = {}
    for key, value in fields.items():
        if key not in READING_FIELDS or value is None:
            continue
        if key in {"start_date", "end_date"} and isinstance(value, dt.datetime):
            value = to_utc_iso(value)
        updates[key] = value
    if "book_id" in updates:
        require_book(conn, str(updates["book_id"]))
    start = str(updates.get("start_date", reading.start_date))
    end = str(updates.get("end_date", reading.end_date))
    if _parse_iso(end) <= _parse_iso(start):
        raise ValidationFailed("end date must be after start date")
    if updates:
        columns = ", ".join(f"{key} = ?" for key in updates)
        values = list(updates.values())
        values.append(reading.id)
        with conn:
            conn.execute(f"UPDATE shared_readings SET {columns} WHERE id = ?", values)
    return require_reading(conn, reading.id)


def replace_participants(conn: sqlite3.Connection, reading_id: str, user: User, user_ids: list[str]) -> list[Participant]:
    reading = require_reading(conn, reading_id)
    require_manager(reading, user)
    wanted: list[str] = []
    for user_id in user_ids:
        if user_id and user_id != reading.created_by and user_id not in wanted:
            wanted.append(user_id)
    known = {item.id for item in list_users(conn, wanted)}
    missing = [user_id for user_id in wanted if user_id not in known]
    if missing:
        raise NotFound("unknown user id(s)", details=", ".join(missing))
    with conn:
        conn.execute(
            "DELETE FROM participants WHERE shared_reading_id = ? AND user_id != ?",
            (reading.id, reading.created_by),
        )
        _insert_participant(conn, reading.id, reading.created_by)
        for user_id in wanted:
            _insert_participant(conn, reading.id, user_id)
    return list_participants(conn, reading.id)


def update_progress(conn: sqlite3.Connection, reading_id: str, user: User, progress: float, cfi: Optional[str]) -> float:
    if get_participant(conn, reading_id, user.id) is None:
        raise Forbidden("you do not take part in this shared reading")
    clamped = min(1.0, max(0.0, float(progress)))
    now = now_iso()
    with conn:
        conn.execute(
            "UPDATE participants SET progress = ? WHERE shared_reading_id = ? AND user_id = ?",
            (clamped, reading_id, user.id),
        )
        conn.execute(
            """
            INSERT INTO reading_sessions(shared_reading_id, user_id, current_cfi, progress, last_read_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(shared_reading_id, user_id) DO UPDATE SET
                current_cfi=excluded.current_cfi,
                progress=excluded.progress,
                last_read_at=excluded.last_read_at
            """,
            (reading_id, user.id, cfi or "", clamped, now),
        )
    return clamped


def get_reading_session(conn: sqlite3.Connection, reading_id: str, user_id: str) -> Optional[dict]:
    row = conn.execute(
        "SELECT * FROM reading_sessions WHERE shared_reading_id = ? AND user_id = ?", (reading_id, user_id)
    ).fetchone()
    return dict(row) if row else None


def _row_to_reading(row: sqlite3.Row) -> SharedReading:
    return SharedReading(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        book_id=row["book_id"],
        start_date=row["start_date"],
        end_date=row["end_date"],
        is_public=bool(row["is_public"]),
        invite_code=row["invite_code"],
        created_by=row["created_by"],
        created_at=row["created_at"],
    )


def _row_to_participant(row: sqlite3.Row) -> Participant:
    return Participant(
        id=row["id"],
        shared_reading_id=row["shared_reading_id"],
        user_id=row["user_id"],
        progress=float(row["progress"] or 0),
        joined_at=row["joined_at"],
    )


def visible_readings_for_book(conn: sqlite3.Connection, book_id: str, user: User) -> list[SharedReading]:
    rows = conn.execute(
        """
        SELECT DISTINCT shared_readings.*
        FROM shared_readings
        LEFT JOIN participants
            ON participants.shared_reading_id = shared_readings.id AND participants.user_id = ?
        WHERE shared_readings.book_id = ?
          AND (shared_readings.is_public = 1 OR shared_readings.created_by = ? OR participants.user_id IS NOT NULL)
        ORDER BY shared_readings.created_at DESC
        """,
        (user.id, book_id, user.id),
    ).fetchall()
    return [_row_to_reading(row) for row in rows]


def can_open_book(conn: sqlite3.Connection, book_id: str, user: User) -> bool:
    """Admins and the uploader always can; others need a visible reading of the book."""
    if is_admin(user):
        return True
    book = get_book(conn, book_id)
    if book is not None and book.uploaded_by == user.id:
        return True
    return bool(visible_readings_for_book(conn, book_id, user))
