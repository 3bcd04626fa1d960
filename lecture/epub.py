from __future__ import annotations

import logging
import posixpath
import urllib.parse
import zipfile
import zlib
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Union

from jinja2 import Environment, FileSystemLoader, select_autoescape

from .errors import ChapterContentMissing, ChapterNotFound, MalformedArchive
from .models import Book, ChapterContent, ChapterDescriptor, Navigation, PackageMetadata
from .xmlmap import (
    XmlParseError,
    attribute,
    children_by_local_name,
    node_text,
    parse_xml,
)

CONTAINER_PATH = "META-INF/container.xml"
EPUB_MIME_TYPE = "application/epub+zip"
UNKNOWN_TITLE = "Unknown title"
UNKNOWN_AUTHOR = "Unknown author"
EPUB_TEMPLATES_DIR = Path(__file__).resolve().parent / "epub_templates"

ArchiveSource = Union[str, Path, BinaryIO]
ARCHIVE_READ_ERRORS = (zipfile.BadZipFile, zlib.error, NotImplementedError, OSError)

logger = logging.getLogger("lecture.epub")


@dataclass
class _SampleChapter:
    item_id: str
    title: str
    href: str
    paragraphs: list[str]


@lru_cache(maxsize=1)
def _epub_template_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(EPUB_TEMPLATES_DIR)),
        autoescape=select_autoescape(
            enabled_extensions=("xml", "xhtml", "html", "opf"),
            default_for_string=False,
            default=True,
        ),
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _render_epub_template(template_name: str, **context: object) -> str:
    return _epub_template_env().get_template(template_name).render(**context)


def _canonical_zip_member(name: str) -> str:
    normalized = posixpath.normpath((name or "").replace("\\", "/")).lstrip("/")
    while normalized.startswith("../"):
        normalized = normalized[3:]
    return "" if normalized in {"", ".", ".."} else normalized


def looks_like_epub(filename: Optional[str], content_type: Optional[str]) -> bool:
    suffix = Path(filename).suffix.lower() if filename else ""
    if suffix == ".epub":
        return True
    return (content_type or "").split(";", 1)[0].strip().lower() == EPUB_MIME_TYPE


def resolve_chapter_path(package_document_path: str, href: str) -> str:
    """Join a manifest href onto the package document's directory."""
    raw = (href or "").split("#", 1)[0].strip()
    if not raw:
        return ""
    package_dir = posixpath.dirname(_canonical_zip_member(package_document_path))
    joined = posixpath.join(package_dir, raw) if package_dir else raw
    return _canonical_zip_member(joined)


def _read_entry(zf: zipfile.ZipFile, member_path: str) -> Optional[bytes]:
    names = set(zf.namelist())
    for candidate in (member_path, urllib.parse.unquote(member_path)):
        if candidate and candidate in names:
            return zf.read(candidate)
    return None


def _parse_entry(raw: bytes, what: str) -> dict:
    try:
        return parse_xml(raw)
    except XmlParseError as exc:
        raise MalformedArchive(f"{what} is not well-formed XML", details=str(exc)) from exc


def _document_root(document: dict, local_name: str, what: str) -> object:
    for key, value in document.items():
        if key.rsplit(":", 1)[-1] == local_name:
            return value
    raise MalformedArchive(f"{what} has no <{local_name}> root element")


def _package_document_path(zf: zipfile.ZipFile) -> str:
    raw = _read_entry(zf, CONTAINER_PATH)
    if raw is None:
        raise MalformedArchive("container descriptor not found", details=CONTAINER_PATH)
    container = _document_root(_parse_entry(raw, "container descriptor"), "container", "container descriptor")
    for rootfiles in children_by_local_name(container, "rootfiles"):
        rootfile_nodes = children_by_local_name(rootfiles, "rootfile")
        if rootfile_nodes:
            full_path = _canonical_zip_member(attribute(rootfile_nodes[0], "full-path"))
            if full_path:
                return full_path
            break
    raise MalformedArchive("container descriptor does not name a package document")


def _metadata_value(metadata: object, local_name: str, default: str) -> str:
    nodes = children_by_local_name(metadata, local_name)
    return node_text(nodes[0] if nodes else None, default)


def _manifest_index(package: object) -> dict[str, str]:
    manifests = children_by_local_name(package, "manifest")
    if not manifests:
        raise MalformedArchive("package document has no manifest")
    index: dict[str, str] = {}
    for item in children_by_local_name(manifests[0], "item"):
        item_id = attribute(item, "id")
        if item_id and item_id not in index:
            index[item_id] = attribute(item, "href")
    return index


def _spine_chapters(package: object, package_document_path: str, manifest: dict[str, str]) -> list[ChapterDescriptor]:
    spines = children_by_local_name(package, "spine")
    if not spines:
        raise MalformedArchive("package document has no spine")
    chapters: list[ChapterDescriptor] = []
    for position, itemref in enumerate(children_by_local_name(spines[0], "itemref"), start=1):
        idref = attribute(itemref, "idref")
        href = manifest.get(idref, "")
        chapters.append(
            ChapterDescriptor(
                id=idref,
                href=href,
                order=position,
                title=f"Chapter {position}",
                path=resolve_chapter_path(package_document_path, href),
            )
        )
    return chapters


def extract_package_metadata(source: ArchiveSource) -> PackageMetadata:
    """Read title, author, description and the spine-ordered chapter list."""
    try:
        with zipfile.ZipFile(source, "r") as zf:
            package_document_path = _package_document_path(zf)
            raw = _read_entry(zf, package_document_path)
    except ARCHIVE_READ_ERRORS as exc:
        raise MalformedArchive("archive could not be read", details=str(exc)) from exc
    if raw is None:
        raise MalformedArchive("package document not found", details=package_document_path)
    package = _document_root(_parse_entry(raw, "package document"), "package", "package document")

    metadata_nodes = children_by_local_name(package, "metadata")
    metadata = metadata_nodes[0] if metadata_nodes else None
    manifest = _manifest_index(package)
    chapters = _spine_chapters(package, package_document_path, manifest)
    unresolved = sum(1 for chapter in chapters if not chapter.href)
    if unresolved:
        logger.warning("%d spine item(s) have no manifest entry in %s", unresolved, package_document_path)

    return PackageMetadata(
        title=_metadata_value(metadata, "title", UNKNOWN_TITLE),
        author=_metadata_value(metadata, "creator", UNKNOWN_AUTHOR),
        description=_metadata_value(metadata, "description", ""),
        package_document_path=package_document_path,
        chapters=chapters,
    )


def chapter_navigation(index: int, total: int) -> Navigation:
    has_previous = index > 0
    has_next = index < total - 1
    return Navigation(
        has_previous=has_previous,
        has_next=has_next,
        previous_index=index - 1 if has_previous else None,
        next_index=index + 1 if has_next else None,
    )


def read_chapter(book: Book, index: int) -> ChapterContent:
    chapters = book.chapters
    if not chapters or index < 0 or index >= len(chapters):
        raise ChapterNotFound(f"chapter {index} does not exist", details=f"book has {len(chapters)} chapter(s)")

    chapter = chapters[index]
    member_path = chapter.path or resolve_chapter_path(book.package_document_path, chapter.href)
    if not member_path:
        raise ChapterContentMissing(f"chapter {index} has no archive entry")
    if not book.file_path:
        raise ChapterContentMissing("book has no stored archive")

    try:
        with zipfile.ZipFile(book.file_path, "r") as zf:
            raw = _read_entry(zf, member_path)
    except ARCHIVE_READ_ERRORS as exc:
        logger.warning("archive for book %s unreadable: %s", book.id, exc)
        raise ChapterContentMissing("stored archive could not be opened", details=str(exc)) from exc
    if raw is None:
        raise ChapterContentMissing(f"chapter {index} content not found", details=member_path)

    return ChapterContent(
        index=index,
        chapter=chapter,
        content=raw.decode("utf-8", errors="replace"),
        navigation=chapter_navigation(index, len(chapters)),
    )


def table_of_contents(book: Book) -> list[dict]:
    return [
        {"index": idx, "id": chapter.id, "title": chapter.title, "href": chapter.href}
        for idx, chapter in enumerate(book.chapters)
    ]


def build_sample_epub(
    output_path: Path,
    *,
    title: str,
    author: Optional[str],
    description: Optional[str] = None,
    chapters: Iterable[tuple[str, list[str]]] = (),
    identifier: str = "",
    language: str = "en",
    package_dir: str = "OEBPS",
) -> Path:
    sections = [
        _SampleChapter(item_id=f"c{idx}", title=chapter_title, href=f"c{idx}.xhtml", paragraphs=list(paragraphs))
        for idx, (chapter_title, paragraphs) in enumerate(chapters, start=1)
    ]
    if not sections:
        sections.append(_SampleChapter(item_id="c1", title=title, href="c1.xhtml", paragraphs=[]))

    prefix = f"{package_dir.strip('/')}/" if package_dir.strip("/") else ""
    opf_path = f"{prefix}content.opf"
    container_xml = _render_epub_template("container.xml.j2", opf_path=opf_path)
    opf_xml = _render_epub_template(
        "content.opf.j2",
        identifier=identifier or f"urn:uuid:{output_path.stem}",
        title=title,
        author=author,
        description=description,
        language=language,
        sections=sections,
    )
    nav_xhtml = _render_epub_template("nav.xhtml.j2", title=title, language=language, sections=sections)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(output_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("mimetype", b"application/epub+zip", compress_type=zipfile.ZIP_STORED)
        zf.writestr(CONTAINER_PATH, container_xml.encode("utf-8"))
        zf.writestr(opf_path, opf_xml.encode("utf-8"))
        zf.writestr(f"{prefix}nav.xhtml", nav_xhtml.encode("utf-8"))
        for section in sections:
            body = _render_epub_template("chapter.xhtml.j2", section=section, language=language)
            zf.writestr(f"{prefix}{section.href}", body.encode("utf-8"))
    return output_path
