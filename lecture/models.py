from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Optional

USER_STATUSES = ("USER", "TRANSLATOR", "AUTHOR", "GUEST", "ADMIN")
PLATFORMS = ("TWITTER", "FACEBOOK", "INSTAGRAM")


@dataclass
class ChapterDescriptor:
    id: str
    href: str
    order: int
    title: str
    path: str = ""


@dataclass
class PackageMetadata:
    title: str
    author: str
    description: str
    package_document_path: str
    chapters: list[ChapterDescriptor] = field(default_factory=list)

    @property
    def total_chapters(self) -> int:
        return len(self.chapters)


@dataclass
class Book:
    id: str
    title: str
    author: str
    description: str
    file_path: Optional[str]
    file_name: Optional[str] = None
    file_size: int = 0
    mime_type: Optional[str] = None
    total_pages: Optional[int] = None
    total_chapters: int = 0
    package_document_path: str = ""
    chapters: list[ChapterDescriptor] = field(default_factory=list)
    uploaded_by: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Navigation:
    has_previous: bool
    has_next: bool
    previous_index: Optional[int]
    next_index: Optional[int]


@dataclass
class ChapterContent:
    index: int
    chapter: ChapterDescriptor
    content: str
    navigation: Navigation


@dataclass
class User:
    id: str
    name: str
    email: str
    status: str = "USER"
    avatar: Optional[str] = None
    created_at: str = ""


@dataclass
class SharedReading:
    id: str
    title: str
    description: Optional[str]
    book_id: str
    start_date: str
    end_date: str
    is_public: bool
    invite_code: Optional[str]
    created_by: str
    created_at: str = ""


@dataclass
class Participant:
    id: str
    shared_reading_id: str
    user_id: str
    progress: float
    joined_at: str


@dataclass
class Annotation:
    id: str
    shared_reading_id: str
    user_id: str
    content: str
    cfi: str
    selected_text: str
    page: int
    is_public: bool
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Citation:
    id: str
    annotation_id: str
    user_id: str
    text: str
    author: str
    book_title: str
    shared_on_platforms: list[str] = field(default_factory=list)
    created_at: str = ""


def chapter_to_dict(chapter: ChapterDescriptor) -> dict:
    return {
        "id": chapter.id,
        "href": chapter.href,
        "order": chapter.order,
        "title": chapter.title,
        "path": chapter.path,
    }


def chapter_from_dict(data: dict, position: int) -> ChapterDescriptor:
    order = data.get("order")
    return ChapterDescriptor(
        id=str(data.get("id") or ""),
        href=str(data.get("href") or ""),
        order=int(order) if isinstance(order, int) else position + 1,
        title=str(data.get("title") or f"Chapter {position + 1}"),
        path=str(data.get("path") or ""),
    )


def epub_metadata_to_json(package_document_path: str, chapters: list[ChapterDescriptor]) -> str:
    return json.dumps(
        {"chapters": [chapter_to_dict(chapter) for chapter in chapters], "opfPath": package_document_path},
        ensure_ascii=False,
    )


def epub_metadata_from_json(raw: Optional[str]) -> tuple[str, list[ChapterDescriptor]]:
    """Decode the stored chapter blob; unreadable blobs yield an empty chapter list."""
    if not raw:
        return "", []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return "", []
    if not isinstance(data, dict):
        return "", []
    raw_chapters = data.get("chapters")
    if not isinstance(raw_chapters, list):
        raw_chapters = []
    chapters = [
        chapter_from_dict(item, idx) for idx, item in enumerate(raw_chapters) if isinstance(item, dict)
    ]
    return str(data.get("opfPath") or ""), chapters


def user_view(user: User, *, with_email: bool = True) -> dict:
    view: dict[str, object] = {
        "id": user.id,
        "name": user.name,
        "status": user.status,
        "avatar": user.avatar,
        "createdAt": user.created_at,
    }
    if with_email:
        view["email"] = user.email
    return view


def book_summary(book: Book) -> dict:
    return {
        "id": book.id,
        "title": book.title,
        "author": book.author,
        "description": book.description,
        "totalChapters": book.total_chapters,
        "fileSize": book.file_size,
        "createdAt": book.created_at,
    }


def book_view(book: Book) -> dict:
    view = book_summary(book)
    view.update(
        {
            "totalPages": book.total_pages,
            "fileName": book.file_name,
            "mimeType": book.mime_type,
            "uploadedBy": book.uploaded_by,
            "updatedAt": book.updated_at,
        }
    )
    return view


def shared_reading_view(reading: SharedReading, *, include_invite: bool = False) -> dict:
    view: dict[str, object] = {
        "id": reading.id,
        "title": reading.title,
        "description": reading.description,
        "bookId": reading.book_id,
        "startDate": reading.start_date,
        "endDate": reading.end_date,
        "isPublic": reading.is_public,
        "createdBy": reading.created_by,
        "createdAt": reading.created_at,
    }
    if include_invite:
        view["inviteCode"] = reading.invite_code
    return view


def participant_view(participant: Participant) -> dict:
    return {
        "id": participant.id,
        "userId": participant.user_id,
        "progress": participant.progress,
        "joinedAt": participant.joined_at,
    }


def annotation_view(annotation: Annotation) -> dict:
    return {
        "id": annotation.id,
        "sharedReadingId": annotation.shared_reading_id,
        "userId": annotation.user_id,
        "content": annotation.content,
        "cfi": annotation.cfi,
        "selectedText": annotation.selected_text,
        "page": annotation.page,
        "isPublic": annotation.is_public,
        "createdAt": annotation.created_at,
        "updatedAt": annotation.updated_at,
    }


def citation_view(citation: Citation) -> dict:
    return {
        "id": citation.id,
        "annotationId": citation.annotation_id,
        "userId": citation.user_id,
        "text": citation.text,
        "author": citation.author,
        "bookTitle": citation.book_title,
        "sharedOnPlatforms": list(citation.shared_on_platforms),
        "createdAt": citation.created_at,
    }
