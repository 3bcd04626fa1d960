from __future__ import annotations

import datetime as dt
import logging
import sqlite3
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .annotations import (
    cite_annotation,
    create_annotation,
    delete_annotation,
    list_visible_annotations,
    reading_statistics,
    update_annotation,
)
from .auth import (
    PUBLISHING_ROLES,
    authorize,
    bearer_token,
    current_user,
    hash_password,
    is_admin,
    sign_in,
    sign_out,
    verify_password,
)
from .db import (
    create_user,
    delete_user,
    get_db,
    get_password_hash,
    get_user_credentials,
    init_db,
    list_users,
    require_user,
    update_user,
    user_activity_counts,
)
from .env import library_dir, log_level
from .epub import EPUB_MIME_TYPE, read_chapter, table_of_contents
from .errors import Forbidden, LectureError, NotFound, Unauthorized, ValidationFailed
from .ingest import UploadOverrides, ingest_epub
from .models import (
    User,
    annotation_view,
    book_summary,
    book_view,
    citation_view,
    participant_view,
    shared_reading_view,
    user_view,
)
from .readings import (
    can_open_book,
    create_reading,
    get_reading_session,
    join_reading,
    list_public_readings,
    list_user_readings,
    reading_card,
    replace_participants,
    require_access,
    require_reading,
    update_progress,
    update_reading,
    visible_readings_for_book,
)
from .schemas import (
    ChangePasswordRequest,
    CiteRequest,
    CreateAnnotationRequest,
    CreateSharedReadingRequest,
    JoinRequest,
    LoginRequest,
    ParticipantsRequest,
    ProgressRequest,
    RegisterRequest,
    UpdateAnnotationRequest,
    UpdateBookRequest,
    UpdateProfileRequest,
    UpdateSharedReadingRequest,
    UpdateUserStatusRequest,
)
from .storage import delete_book, list_books, require_book, update_book

API_VERSION = "1.0.0"
HTTP_ERROR_CODES = {404: "not_found", 405: "method_not_allowed"}

app = FastAPI(title="Lecture Sociale API", version=API_VERSION)
logger = logging.getLogger("lecture.web")


def configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, log_level(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.on_event("startup")
async def startup() -> None:
    configure_logging()
    init_db()
    logger.info("library directory: %s", library_dir())


@app.middleware("http")
async def request_log_middleware(request: Request, call_next):
    response = await call_next(request)
    logger.info("%s %s -> %s", request.method, request.url.path, response.status_code)
    return response


@app.exception_handler(LectureError)
async def lecture_error_handler(request: Request, exc: LectureError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.payload(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    body = {
        "success": False,
        "error": str(exc.detail or "request failed"),
        "code": HTTP_ERROR_CODES.get(exc.status_code, "http_error"),
    }
    return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = str(first.get("msg") or "invalid request")
    failure = ValidationFailed(f"{location}: {message}" if location else message)
    return JSONResponse(failure.payload(), status_code=failure.status_code)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"success": False, "error": "internal server error", "code": "internal_error"}, status_code=500)


def _ok(data: object = None, message: Optional[str] = None) -> dict:
    body: dict[str, object] = {"success": True}
    if data is not None:
        body["data"] = data
    if message:
        body["message"] = message
    return body


def _readable_book(conn: sqlite3.Connection, book_id: str, user: User):
    book = require_book(conn, book_id)
    if not can_open_book(conn, book.id, user):
        raise Forbidden("you do not have access to this book")
    return book


def _book_with_file(conn: sqlite3.Connection, book_id: str, user: User):
    book = _readable_book(conn, book_id, user)
    if not book.file_path:
        raise NotFound("book not found")
    return book


# auth


@app.post("/api/auth/register", status_code=201)
async def register(payload: RegisterRequest, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    user = create_user(conn, payload.name, payload.email, hash_password(payload.password))
    token = sign_in(conn, user)
    logger.info("registered user %s", user.id)
    return _ok({"user": user_view(user), "token": token})


@app.post("/api/auth/login")
async def login(payload: LoginRequest, conn: sqlite3.Connection = Depends(get_db)) -> dict:
    found = get_user_credentials(conn, payload.email)
    if found is None or not verify_password(found[1], payload.password):
        raise Unauthorized("invalid email or password")
    user = found[0]
    return _ok({"user": user_view(user), "token": sign_in(conn, user)})


@app.post("/api/auth/logout")
async def logout(
    request: Request, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    sign_out(conn, bearer_token(request))
    return _ok(message="signed out")


@app.get("/api/auth/me")
async def me(user: User = Depends(current_user)) -> dict:
    return _ok({"user": user_view(user)})


# users


@app.get("/api/users/profile")
async def profile(conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)) -> dict:
    counts = user_activity_counts(conn, user.id)
    view = user_view(user)
    view["_count"] = {
        "createdReadings": counts["readingsCreated"],
        "participations": counts["readingsParticipated"],
        "annotations": counts["totalAnnotations"],
    }
    return _ok(view)


@app.put("/api/users/profile")
async def update_profile(
    payload: UpdateProfileRequest, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    fields = payload.model_dump(exclude_none=True)
    updated = update_user(conn, user.id, **fields)
    return _ok(user_view(updated))


@app.put("/api/users/password")
async def change_password(
    payload: ChangePasswordRequest, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    if not verify_password(get_password_hash(conn, user.id), payload.current_password):
        raise ValidationFailed("current password is incorrect")
    update_user(conn, user.id, password_hash=hash_password(payload.new_password))
    return _ok(message="password updated")


@app.get("/api/users/stats")
async def user_stats(conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)) -> dict:
    stats: dict[str, object] = dict(user_activity_counts(conn, user.id))
    rows = conn.execute(
        "SELECT * FROM annotations WHERE user_id = ? ORDER BY created_at DESC LIMIT 5", (user.id,)
    ).fetchall()
    stats["recentActivity"] = [
        {"id": row["id"], "sharedReadingId": row["shared_reading_id"], "page": row["page"], "createdAt": row["created_at"]}
        for row in rows
    ]
    return _ok(stats)


@app.get("/api/users")
async def all_users(conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)) -> dict:
    authorize(user, "ADMIN")
    return _ok([user_view(item) for item in list_users(conn)])


@app.put("/api/users/{user_id}/status")
async def set_user_status(
    user_id: str,
    payload: UpdateUserStatusRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    authorize(user, "ADMIN")
    require_user(conn, user_id)
    return _ok(user_view(update_user(conn, user_id, status=payload.status)))


@app.delete("/api/users/{user_id}")
async def remove_user(
    user_id: str, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    authorize(user, "ADMIN")
    if user_id == user.id:
        raise ValidationFailed("you cannot delete your own account")
    delete_user(conn, user_id)
    logger.info("admin %s deleted user %s", user.id, user_id)
    return _ok(message="user deleted")


# books


@app.get("/api/books")
async def books_index(
    search: str = Query(""), conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    books = []
    for book, reading_count in list_books(conn, search):
        view = book_view(book)
        view["_count"] = {"sharedReadings": reading_count}
        books.append(view)
    return _ok({"books": books})


@app.get("/api/books/{book_id}")
async def book_detail(
    book_id: str, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    book = require_book(conn, book_id)
    view = book_view(book)
    view["sharedReadings"] = [
        reading_card(conn, reading) for reading in visible_readings_for_book(conn, book.id, user)
    ]
    return _ok(view)


@app.put("/api/books/{book_id}")
async def edit_book(
    book_id: str,
    payload: UpdateBookRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    authorize(user, "ADMIN")
    return _ok(book_view(update_book(conn, book_id, **payload.model_dump(exclude_none=True))))


@app.delete("/api/books/{book_id}")
async def remove_book(
    book_id: str, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    authorize(user, "ADMIN")
    delete_book(conn, book_id)
    logger.info("deleted book %s", book_id)
    return _ok(message="book deleted")


@app.get("/api/books/{book_id}/epub")
async def download_epub(
    book_id: str, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> FileResponse:
    book = _book_with_file(conn, book_id, user)
    path = Path(book.file_path or "")
    if not path.exists():
        raise NotFound("EPUB file missing")
    return FileResponse(path, media_type=EPUB_MIME_TYPE, filename=book.file_name or path.name)


# epub


@app.post("/api/epub/upload")
async def upload_epub(
    epub: UploadFile = File(...),
    title: str = Form(""),
    author: str = Form(""),
    description: str = Form(""),
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    overrides = UploadOverrides(title=title, author=author, description=description)
    book = await ingest_epub(conn, library_dir(), epub, overrides, user.id)
    return _ok({"book": book_summary(book)}, message="EPUB uploaded and processed")


@app.get("/api/epub/{book_id}/chapter/{chapter_index}")
async def epub_chapter(
    book_id: str,
    chapter_index: int,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    book = _readable_book(conn, book_id, user)
    loaded = read_chapter(book, chapter_index)
    navigation = loaded.navigation
    return _ok(
        {
            "chapter": {
                "index": loaded.index,
                "id": loaded.chapter.id,
                "title": loaded.chapter.title,
                "content": loaded.content,
                "href": loaded.chapter.href,
            },
            "book": {
                "id": book.id,
                "title": book.title,
                "author": book.author,
                "totalChapters": book.total_chapters,
            },
            "navigation": {
                "hasPrevious": navigation.has_previous,
                "hasNext": navigation.has_next,
                "previousIndex": navigation.previous_index,
                "nextIndex": navigation.next_index,
            },
        }
    )


@app.get("/api/epub/{book_id}/toc")
async def epub_toc(
    book_id: str, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    book = require_book(conn, book_id)
    return _ok(
        {
            "book": {
                "id": book.id,
                "title": book.title,
                "author": book.author,
                "totalChapters": book.total_chapters,
            },
            "tableOfContents": table_of_contents(book),
        }
    )


# shared readings


@app.get("/api/shared-readings/public")
async def public_readings(search: str = Query(""), conn: sqlite3.Connection = Depends(get_db)) -> dict:
    readings = list_public_readings(conn, search)
    return _ok({"sharedReadings": [reading_card(conn, reading) for reading in readings]})


@app.get("/api/shared-readings/my")
async def my_readings(conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)) -> dict:
    readings = list_user_readings(conn, user.id)
    return _ok(
        [reading_card(conn, reading, include_invite=reading.created_by == user.id) for reading in readings]
    )


@app.get("/api/shared-readings/{reading_id}")
async def reading_detail(
    reading_id: str, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    reading = require_reading(conn, reading_id)
    require_access(conn, reading, user)
    view = reading_card(conn, reading, include_invite=reading.created_by == user.id or is_admin(user))
    view["annotations"] = [annotation_view(item) for item in list_visible_annotations(conn, reading.id, user)]
    session = get_reading_session(conn, reading.id, user.id)
    view["readingSession"] = (
        {"currentCfi": session["current_cfi"], "progress": session["progress"], "lastReadAt": session["last_read_at"]}
        if session
        else None
    )
    return _ok(view)


@app.post("/api/shared-readings", status_code=201)
async def new_reading(
    payload: CreateSharedReadingRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    authorize(user, *PUBLISHING_ROLES)
    reading = create_reading(
        conn,
        user,
        title=payload.title,
        description=payload.description,
        book_id=payload.book_id,
        start_date=payload.start_date,
        end_date=payload.end_date,
        is_public=payload.is_public,
    )
    logger.info("user %s created shared reading %s", user.id, reading.id)
    return _ok(reading_card(conn, reading, include_invite=True))


@app.post("/api/shared-readings/{reading_id}/join")
async def join(
    reading_id: str,
    payload: Optional[JoinRequest] = None,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    invite_code = payload.invite_code if payload else None
    join_reading(conn, reading_id, user, invite_code)
    return _ok(message="joined the shared reading")


@app.put("/api/shared-readings/{reading_id}")
async def edit_reading(
    reading_id: str,
    payload: UpdateSharedReadingRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    reading = update_reading(conn, reading_id, user, **payload.model_dump(exclude_none=True))
    return _ok(shared_reading_view(reading, include_invite=True))


@app.put("/api/shared-readings/{reading_id}/participants")
async def set_participants(
    reading_id: str,
    payload: ParticipantsRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    participants = replace_participants(conn, reading_id, user, payload.user_ids)
    return _ok([participant_view(item) for item in participants], message="participants updated")


@app.put("/api/shared-readings/{reading_id}/progress")
async def set_progress(
    reading_id: str,
    payload: ProgressRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    progress = update_progress(conn, reading_id, user, payload.progress, payload.cfi)
    return _ok({"progress": progress}, message="progress updated")


# annotations


@app.get("/api/annotations/shared-reading/{reading_id}")
async def reading_annotations(
    reading_id: str, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    annotations = list_visible_annotations(conn, reading_id, user)
    users = {item.id: item for item in list_users(conn, sorted({a.user_id for a in annotations}))}
    return _ok(
        [
            {
                **annotation_view(item),
                "user": user_view(users[item.user_id], with_email=False) if item.user_id in users else None,
            }
            for item in annotations
        ]
    )


@app.post("/api/annotations", status_code=201)
async def new_annotation(
    payload: CreateAnnotationRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    annotation = create_annotation(
        conn,
        user,
        shared_reading_id=payload.shared_reading_id,
        content=payload.content,
        cfi=payload.cfi,
        selected_text=payload.selected_text,
        page=payload.page,
        is_public=payload.is_public,
    )
    return _ok({**annotation_view(annotation), "user": user_view(user, with_email=False)})


@app.put("/api/annotations/{annotation_id}")
async def edit_annotation(
    annotation_id: str,
    payload: UpdateAnnotationRequest,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    return _ok(annotation_view(update_annotation(conn, annotation_id, user, payload.content)))


@app.delete("/api/annotations/{annotation_id}")
async def remove_annotation(
    annotation_id: str, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    delete_annotation(conn, annotation_id, user)
    return _ok(message="annotation deleted")


@app.post("/api/annotations/{annotation_id}/cite", status_code=201)
async def cite(
    annotation_id: str,
    payload: Optional[CiteRequest] = None,
    conn: sqlite3.Connection = Depends(get_db),
    user: User = Depends(current_user),
) -> dict:
    citation = cite_annotation(conn, annotation_id, user, payload.platforms if payload else [])
    return _ok(citation_view(citation))


@app.get("/api/annotations/stats/{reading_id}")
async def annotation_stats(
    reading_id: str, conn: sqlite3.Connection = Depends(get_db), user: User = Depends(current_user)
) -> dict:
    return _ok(reading_statistics(conn, reading_id, user))


# service


@app.get("/api/health")
async def health() -> dict:
    return {"status": "OK", "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(), "version": API_VERSION}


@app.get("/api")
async def api_index() -> dict:
    return {
        "message": "Lecture Sociale API",
        "version": API_VERSION,
        "endpoints": {
            "auth": "/api/auth",
            "users": "/api/users",
            "books": "/api/books",
            "epub": "/api/epub",
            "sharedReadings": "/api/shared-readings",
            "annotations": "/api/annotations",
        },
    }
