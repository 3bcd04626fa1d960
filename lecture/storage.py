from __future__ import annotations

import re
import sqlite3
from pathlib import Path
from typing import Optional

from starlette.datastructures import UploadFile

from .db import new_id, now_iso
from .errors import Conflict, NotFound, UploadTooLarge
from .models import Book, epub_metadata_from_json, epub_metadata_to_json

EPUB_DIR = "epub"
CHUNK_SIZE = 1024 * 1024

BOOK_COLUMNS = (
    "id",
    "title",
    "author",
    "description",
    "total_pages",
    "total_chapters",
    "file_path",
    "file_name",
    "file_size",
    "mime_type",
    "epub_metadata",
    "uploaded_by",
    "created_at",
    "updated_at",
)

EDITABLE_BOOK_FIELDS = {"title", "author", "description", "total_pages"}


def epub_dir(base: Path) -> Path:
    path = base / EPUB_DIR
    path.mkdir(parents=True, exist_ok=True)
    return path


def safe_filename(value: str) -> str:
    cleaned = re.sub(r"[^0-9A-Za-z._-]+", "_", Path(value or "").name).strip("._")
    return cleaned or "book.epub"


def new_archive_path(base: Path) -> Path:
    return epub_dir(base) / f"{new_id()}.epub"


async def stream_upload_to_path(upload_file: UploadFile, destination: Path, *, max_bytes: int) -> int:
    destination.parent.mkdir(parents=True, exist_ok=True)
    total = 0
    try:
        with destination.open("wb") as out:
            while True:
                chunk = await upload_file.read(CHUNK_SIZE)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_bytes:
                    raise UploadTooLarge(
                        "uploaded file is too large", details=f"limit is {max_bytes // (1024 * 1024)} MB"
                    )
                out.write(chunk)
    except BaseException:
        remove_file(destination)
        raise
    return total


def remove_file(path: Optional[Path]) -> None:
    if path is None:
        return
    path.unlink(missing_ok=True)


def create_book(
    conn: sqlite3.Connection,
    *,
    title: str,
    author: str,
    description: str,
    file_path: Path,
    file_name: str,
    file_size: int,
    mime_type: Optional[str],
    package_document_path: str,
    chapters: list,
    uploaded_by: Optional[str],
    total_pages: Optional[int] = None,
) -> Book:
    now = now_iso()
    book = Book(
        id=new_id(),
        title=title,
        author=author,
        description=description,
        file_path=str(file_path),
        file_name=file_name,
        file_size=file_size,
        mime_type=mime_type,
        total_pages=total_pages,
        total_chapters=len(chapters),
        package_document_path=package_document_path,
        chapters=list(chapters),
        uploaded_by=uploaded_by,
        created_at=now,
        updated_at=now,
    )
    placeholders = ", ".join("?" for _ in BOOK_COLUMNS)
    with conn:
        conn.execute(
            f"INSERT INTO books({', '.join(BOOK_COLUMNS)}) VALUES ({placeholders})",
            (
                book.id,
                book.title,
                book.author,
                book.description,
                book.total_pages,
                book.total_chapters,
                book.file_path,
                book.file_name,
                book.file_size,
                book.mime_type,
                epub_metadata_to_json(book.package_document_path, book.chapters),
                book.uploaded_by,
                book.created_at,
                book.updated_at,
            ),
        )
    return book


def get_book(conn: sqlite3.Connection, book_id: str) -> Optional[Book]:
    row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
    return _row_to_book(row) if row else None


def require_book(conn: sqlite3.Connection, book_id: str) -> Book:
    book = get_book(conn, book_id)
    if book is None:
        raise NotFound("book not found")
    return book


def list_books(conn: sqlite3.Connection, search: Optional[str] = None) -> list[tuple[Book, int]]:
    query = """
        SELECT books.*,
               (SELECT COUNT(*) FROM shared_readings WHERE shared_readings.book_id = books.id) AS reading_count
        FROM books
    """
    params: list[object] = []
    needle = (search or "").strip().lower()
    if needle:
        query += " WHERE lower(title) LIKE ? OR lower(author) LIKE ?"
        params.extend([f"%{needle}%", f"%{needle}%"])
    query += " ORDER BY created_at DESC"
    rows = conn.execute(query, params).fetchall()
    return [(_row_to_book(row), int(row["reading_count"])) for row in rows]


def update_book(conn: sqlite3.Connection, book_id: str, **fields: object) -> Book:
    require_book(conn, book_id)
    updates = {key: value for key, value in fields.items() if key in EDITABLE_BOOK_FIELDS}
    if updates:
        updates["updated_at"] = now_iso()
        columns = ", ".join(f"{key} = ?" for key in updates)
        values = list(updates.values())
        values.append(book_id)
        with conn:
            conn.execute(f"UPDATE books SET {columns} WHERE id = ?", values)
    return require_book(conn, book_id)


def delete_book(conn: sqlite3.Connection, book_id: str) -> None:
    book = require_book(conn, book_id)
    row = conn.execute("SELECT COUNT(*) FROM shared_readings WHERE book_id = ?", (book_id,)).fetchone()
    if row and int(row[0]) > 0:
        raise Conflict("book is used by shared readings and cannot be deleted")
    with conn:
        conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
    if book.file_path:
        remove_file(Path(book.file_path))


def _row_to_book(row: sqlite3.Row) -> Book:
    package_document_path, chapters = epub_metadata_from_json(row["epub_metadata"])
    return Book(
        id=row["id"],
        title=row["title"],
        author=row["author"] or "",
        description=row["description"] or "",
        file_path=row["file_path"],
        file_name=row["file_name"],
        file_size=int(row["file_size"] or 0),
        mime_type=row["mime_type"],
        total_pages=row["total_pages"],
        total_chapters=int(row["total_chapters"] or 0),
        package_document_path=package_document_path,
        chapters=chapters,
        uploaded_by=row["uploaded_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
