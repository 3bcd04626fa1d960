from __future__ import annotations

import json
import sqlite3
from typing import Optional

from .auth import is_admin
from .db import list_users, new_id, now_iso
from .errors import Forbidden, NotFound, ValidationFailed
from .models import PLATFORMS, Annotation, Citation, User, user_view
from .readings import get_participant, require_access, require_manager, require_reading
from .storage import get_book


def create_annotation(
    conn: sqlite3.Connection,
    user: User,
    *,
    shared_reading_id: str,
    content: str,
    cfi: str,
    selected_text: str,
    page: int,
    is_public: bool,
) -> Annotation:
    require_reading(conn, shared_reading_id)
    if get_participant(conn, shared_reading_id, user.id) is None:
        raise Forbidden("you must take part in this shared reading to annotate it")
    now = now_iso()
    annotation = Annotation(
        id=new_id(),
        shared_reading_id=shared_reading_id,
        user_id=user.id,
        content=content,
        cfi=cfi,
        selected_text=selected_text,
        page=page,
        is_public=is_public,
        created_at=now,
        updated_at=now,
    )
    with conn:
        conn.execute(
            """
            INSERT INTO annotations(
                id, shared_reading_id, user_id, content, cfi, selected_text, page, is_public, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                annotation.id,
                annotation.shared_reading_id,
                annotation.user_id,
                annotation.content,
                annotation.cfi,
                annotation.selected_text,
                annotation.page,
                int(annotation.is_public),
                annotation.created_at,
                annotation.updated_at,
            ),
        )
    return annotation


def get_annotation(conn: sqlite3.Connection, annotation_id: str) -> Optional[Annotation]:
    row = conn.execute("SELECT * FROM annotations WHERE id = ?", (annotation_id,)).fetchone()
    return _row_to_annotation(row) if row else None


def require_annotation(conn: sqlite3.Connection, annotation_id: str) -> Annotation:
    annotation = get_annotation(conn, annotation_id)
    if annotation is None:
        raise NotFound("annotation not found")
    return annotation


def list_visible_annotations(conn: sqlite3.Connection, reading_id: str, user: User) -> list[Annotation]:
    reading = require_reading(conn, reading_id)
    require_access(conn, reading, user)
    rows = conn.execute(
        """
        SELECT * FROM annotations
        WHERE shared_reading_id = ? AND (is_public = 1 OR user_id = ?)
        ORDER BY page ASC, created_at ASC
        """,
        (reading.id, user.id),
    ).fetchall()
    return [_row_to_annotation(row) for row in rows]


def update_annotation(conn: sqlite3.Connection, annotation_id: str, user: User, content: str) -> Annotation:
    annotation = require_annotation(conn, annotation_id)
    if annotation.user_id != user.id:
        raise Forbidden("you can only edit your own annotations")
    with conn:
        conn.execute(
            "UPDATE annotations SET content = ?, updated_at = ? WHERE id = ?",
            (content, now_iso(), annotation.id),
        )
    return require_annotation(conn, annotation.id)


def delete_annotation(conn: sqlite3.Connection, annotation_id: str, user: User) -> None:
    annotation = require_annotation(conn, annotation_id)
    if annotation.user_id != user.id and not is_admin(user):
        raise Forbidden("you can only delete your own annotations")
    with conn:
        conn.execute("DELETE FROM annotations WHERE id = ?", (annotation.id,))


def normalize_platforms(platforms: Optional[list[str]]) -> list[str]:
    result: list[str] = []
    for raw in platforms or []:
        platform = str(raw).strip().upper()
        if platform not in PLATFORMS:
            raise ValidationFailed("unknown platform", details=str(raw))
        if platform not in result:
            result.append(platform)
    return result


def cite_annotation(
    conn: sqlite3.Connection, annotation_id: str, user: User, platforms: Optional[list[str]] = None
) -> Citation:
    annotation = require_annotation(conn, annotation_id)
    reading = require_reading(conn, annotation.shared_reading_id)
    if not annotation.is_public and annotation.user_id != user.id:
        raise Forbidden("this annotation is private")
    require_access(conn, reading, user)
    book = get_book(conn, reading.book_id)
    citation = Citation(
        id=new_id(),
        annotation_id=annotation.id,
        user_id=user.id,
        text=annotation.selected_text,
        author=book.author if book else "",
        book_title=book.title if book else "",
        shared_on_platforms=normalize_platforms(platforms),
        created_at=now_iso(),
    )
    with conn:
        conn.execute(
            """
            INSERT INTO citations(id, annotation_id, user_id, text, author, book_title, platforms_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                citation.id,
                citation.annotation_id,
                citation.user_id,
                citation.text,
                citation.author,
                citation.book_title,
                json.dumps(citation.shared_on_platforms),
                citation.created_at,
            ),
        )
    return citation


def reading_statistics(conn: sqlite3.Connection, reading_id: str, user: User) -> dict:
    """Annotation counts for a reading, grouped by author, by day and by hour (UTC)."""
    reading = require_reading(conn, reading_id)
    require_manager(reading, user)

    by_user_rows = conn.execute(
        """
        SELECT user_id, COUNT(*) AS count
        FROM annotations WHERE shared_reading_id = ?
        GROUP BY user_id ORDER BY count DESC, user_id
        """,
        (reading.id,),
    ).fetchall()
    by_day_rows = conn.execute(
        """
        SELECT substr(created_at, 1, 10) AS date, COUNT(*) AS count
        FROM annotations WHERE shared_reading_id = ?
        GROUP BY date ORDER BY date
        """,
        (reading.id,),
    ).fetchall()
    by_hour_rows = conn.execute(
        """
        SELECT CAST(substr(created_at, 12, 2) AS INTEGER) AS hour, COUNT(*) AS count
        FROM annotations WHERE shared_reading_id = ?
        GROUP BY hour ORDER BY hour
        """,
        (reading.id,),
    ).fetchall()

    users = {item.id: item for item in list_users(conn, [row["user_id"] for row in by_user_rows])}
    return {
        "byUser": [
            {
                "userId": row["user_id"],
                "count": int(row["count"]),
                "user": user_view(users[row["user_id"]], with_email=False) if row["user_id"] in users else None,
            }
            for row in by_user_rows
        ],
        "byDay": [{"date": row["date"], "count": int(row["count"])} for row in by_day_rows],
        "byHour": [{"hour": int(row["hour"]), "count": int(row["count"])} for row in by_hour_rows],
    }


def _row_to_annotation(row: sqlite3.Row) -> Annotation:
    return Annotation(
        id=row["id"],
        shared_reading_id=row["shared_reading_id"],
        user_id=row["user_id"],
        content=row["content"],
        cfi=row["cfi"],
        selected_text=row["selected_text"],
        page=int(row["page"]),
        is_public=bool(row["is_public"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
