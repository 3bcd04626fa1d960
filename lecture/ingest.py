from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from starlette.datastructures import UploadFile

from .env import max_upload_bytes
from .epub import EPUB_MIME_TYPE, extract_package_metadata, looks_like_epub
from .errors import MalformedArchive, UnsupportedFileType, ValidationFailed
from .models import Book
from .storage import create_book, new_archive_path, remove_file, safe_filename, stream_upload_to_path

logger = logging.getLogger("lecture.ingest")


@dataclass
class UploadOverrides:
    title: str = ""
    author: str = ""
    description: str = ""


def _pick(override: Optional[str], extracted: str) -> str:
    cleaned = (override or "").strip()
    return cleaned or extracted


async def ingest_epub(
    conn: sqlite3.Connection,
    base: Path,
    upload_file: UploadFile,
    overrides: UploadOverrides,
    uploaded_by: Optional[str],
) -> Book:
    """Store an uploaded EPUB and create its Book record.

    Nothing is written when the upload is not an EPUB. If the archive turns out
    to be malformed the stored copy is removed before the error propagates, so
    a failed upload never leaves a file or a row behind.
    """
    if not looks_like_epub(upload_file.filename, upload_file.content_type):
        raise UnsupportedFileType(
            "only EPUB files are accepted",
            details=f"received {upload_file.filename or 'unnamed file'} ({upload_file.content_type or 'unknown type'})",
        )

    destination = new_archive_path(base)
    size = await stream_upload_to_path(upload_file, destination, max_bytes=max_upload_bytes())
    if size == 0:
        remove_file(destination)
        raise ValidationFailed("uploaded file is empty")

    try:
        package = extract_package_metadata(destination)
    except MalformedArchive as exc:
        remove_file(destination)
        logger.warning("rejected upload %s: %s", upload_file.filename, exc.message)
        raise

    try:
        book = create_book(
            conn,
            title=_pick(overrides.title, package.title),
            author=_pick(overrides.author, package.author),
            description=_pick(overrides.description, package.description),
            file_path=destination,
            file_name=safe_filename(upload_file.filename or destination.name),
            file_size=size,
            mime_type=upload_file.content_type or EPUB_MIME_TYPE,
            package_document_path=package.package_document_path,
            chapters=package.chapters,
            uploaded_by=uploaded_by,
        )
    except Exception:
        remove_file(destination)
        raise
    logger.info("stored book %s (%d chapters) from %s", book.id, book.total_chapters, upload_file.filename)
    return book
