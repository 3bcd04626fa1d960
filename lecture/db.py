from __future__ import annotations

import datetime as dt
import sqlite3
import uuid
from pathlib import Path
from typing import Iterator, Optional

from .env import library_dir, read_env
from .errors import Conflict, NotFound
from .models import User

DB_FILENAME = "lecture.db"

USER_COLUMNS = "id, name, email, status, avatar, created_at"


def now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def db_path() -> Path:
    env = read_env("LECTURE_DB_PATH")
    if env:
        return Path(env)
    return library_dir() / DB_FILENAME


def connect(path: Optional[Path] = None) -> sqlite3.Connection:
    target = path or db_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    # Handlers may run on a worker thread other than the one that opened the connection.
    conn = sqlite3.connect(target, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def get_db() -> Iterator[sqlite3.Connection]:
    conn = connect()
    try:
        yield conn
    finally:
        conn.close()


def init_db(conn: Optional[sqlite3.Connection] = None) -> None:
    owned = conn is None
    conn = conn or connect()
    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'USER',
                avatar TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                token TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                created_at TEXT NOT NULL,
                last_seen TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS books (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                author TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                total_pages INTEGER,
                total_chapters INTEGER NOT NULL DEFAULT 0,
                file_path TEXT,
                file_name TEXT,
                file_size INTEGER NOT NULL DEFAULT 0,
                mime_type TEXT,
                epub_metadata TEXT,
                uploaded_by TEXT REFERENCES users(id) ON DELETE SET NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS shared_readings (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT,
                book_id TEXT NOT NULL REFERENCES books(id),
                start_date TEXT NOT NULL,
                end_date TEXT NOT NULL,
                is_public INTEGER NOT NULL DEFAULT 1,
                invite_code TEXT,
                created_by TEXT NOT NULL REFERENCES users(id),
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS participants (
                id TEXT PRIMARY KEY,
                shared_reading_id TEXT NOT NULL REFERENCES shared_readings(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                progress REAL NOT NULL DEFAULT 0,
                joined_at TEXT NOT NULL,
                UNIQUE (shared_reading_id, user_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS reading_sessions (
                shared_reading_id TEXT NOT NULL REFERENCES shared_readings(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                current_cfi TEXT NOT NULL DEFAULT '',
                progress REAL NOT NULL DEFAULT 0,
                last_read_at TEXT NOT NULL,
                PRIMARY KEY (shared_reading_id, user_id)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS annotations (
                id TEXT PRIMARY KEY,
                shared_reading_id TEXT NOT NULL REFERENCES shared_readings(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                content TEXT NOT NULL,
                cfi TEXT NOT NULL,
                selected_text TEXT NOT NULL,
                page INTEGER NOT NULL,
                is_public INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS citations (
                id TEXT PRIMARY KEY,
                annotation_id TEXT NOT NULL REFERENCES annotations(id) ON DELETE CASCADE,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                text TEXT NOT NULL,
                author TEXT NOT NULL DEFAULT '',
                book_title TEXT NOT NULL DEFAULT '',
                platforms_json TEXT NOT NULL DEFAULT '[]',
                created_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_books_created ON books(created_at DESC)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_readings_book ON shared_readings(book_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_readings_creator ON shared_readings(created_by)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_participants_user ON participants(user_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_annotations_reading ON annotations(shared_reading_id, page)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_citations_user ON citations(user_id)")
    if owned:
        conn.close()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def create_user(conn: sqlite3.Connection, name: str, email: str, password_hash: str, status: str = "USER") -> User:
    user = User(id=new_id(), name=name.strip(), email=normalize_email(email), status=status, created_at=now_iso())
    try:
        with conn:
            conn.execute(
                """
                INSERT INTO users(id, name, email, password_hash, status, avatar, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (user.id, user.name, user.email, password_hash, user.status, user.avatar, user.created_at),
            )
    except sqlite3.IntegrityError as exc:
        raise Conflict("an account with this email already exists") from exc
    return user


def get_user(conn: sqlite3.Connection, user_id: str) -> Optional[User]:
    row = conn.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
    return _row_to_user(row) if row else None


def require_user(conn: sqlite3.Connection, user_id: str) -> User:
    user = get_user(conn, user_id)
    if user is None:
        raise NotFound("user not found")
    return user


def get_user_credentials(conn: sqlite3.Connection, email: str) -> Optional[tuple[User, str]]:
    row = conn.execute(
        f"SELECT {USER_COLUMNS}, password_hash FROM users WHERE email = ?", (normalize_email(email),)
    ).fetchone()
    if not row:
        return None
    return _row_to_user(row), str(row["password_hash"])


def get_password_hash(conn: sqlite3.Connection, user_id: str) -> Optional[str]:
    row = conn.execute("SELECT password_hash FROM users WHERE id = ?", (user_id,)).fetchone()
    return str(row["password_hash"]) if row else None


def list_users(conn: sqlite3.Connection, ids: Optional[list[str]] = None) -> list[User]:
    if ids is None:
        rows = conn.execute(f"SELECT {USER_COLUMNS} FROM users ORDER BY created_at DESC").fetchall()
    elif not ids:
        return []
    else:
        placeholders = ", ".join("?" for _ in ids)
        rows = conn.execute(f"SELECT {USER_COLUMNS} FROM users WHERE id IN ({placeholders})", ids).fetchall()
    return [_row_to_user(row) for row in rows]


def update_user(conn: sqlite3.Connection, user_id: str, **fields: object) -> User:
    if "email" in fields:
        email = normalize_email(str(fields["email"]))
        clash = conn.execute("SELECT 1 FROM users WHERE email = ? AND id != ?", (email, user_id)).fetchone()
        if clash:
            raise Conflict("this email is already in use")
        fields["email"] = email
    if fields:
        columns = ", ".join(f"{key} = ?" for key in fields)
        values = list(fields.values())
        values.append(user_id)
        with conn:
            conn.execute(f"UPDATE users SET {columns} WHERE id = ?", values)
    return require_user(conn, user_id)


def delete_user(conn: sqlite3.Connection, user_id: str) -> None:
    require_user(conn, user_id)
    row = conn.execute("SELECT COUNT(*) FROM shared_readings WHERE created_by = ?", (user_id,)).fetchone()
    if row and int(row[0]) > 0:
        raise Conflict("cannot delete a user who created shared readings")
    with conn:
        conn.execute("DELETE FROM users WHERE id = ?", (user_id,))


def create_session(conn: sqlite3.Connection, token: str, user_id: str, created_at: str, expires_at: str) -> None:
    with conn:
        conn.execute(
            "INSERT INTO sessions(token, user_id, created_at, last_seen, expires_at) VALUES (?, ?, ?, ?, ?)",
            (token, user_id, created_at, created_at, expires_at),
        )


def get_session(conn: sqlite3.Connection, token: str) -> Optional[dict]:
    row = conn.execute("SELECT * FROM sessions WHERE token = ?", (token,)).fetchone()
    return dict(row) if row else None


def touch_session(conn: sqlite3.Connection, token: str, now: str) -> None:
    with conn:
        conn.execute("UPDATE sessions SET last_seen = ? WHERE token = ?", (now, token))


def delete_session(conn: sqlite3.Connection, token: str) -> None:
    with conn:
        conn.execute("DELETE FROM sessions WHERE token = ?", (token,))


def delete_expired_sessions(conn: sqlite3.Connection, now: str) -> int:
    with conn:
        cursor = conn.execute("DELETE FROM sessions WHERE expires_at <= ?", (now,))
    return cursor.rowcount or 0


def user_activity_counts(conn: sqlite3.Connection, user_id: str) -> dict[str, int]:
    def count(query: str) -> int:
        row = conn.execute(query, (user_id,)).fetchone()
        return int(row[0]) if row else 0

    return {
        "readingsCreated": count("SELECT COUNT(*) FROM shared_readings WHERE created_by = ?"),
        "readingsParticipated": count("SELECT COUNT(*) FROM participants WHERE user_id = ?"),
        "totalAnnotations": count("SELECT COUNT(*) FROM annotations WHERE user_id = ?"),
        "totalCitations": count("SELECT COUNT(*) FROM citations WHERE user_id = ?"),
    }


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        status=row["status"] or "USER",
        avatar=row["avatar"],
        created_at=row["created_at"],
    )
