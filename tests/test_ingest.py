import asyncio
import os
import tempfile
import unittest
import zipfile
from pathlib import Path
from unittest.mock import patch

from starlette.datastructures import Headers, UploadFile

from lecture.db import connect, init_db
from lecture.epub import build_sample_epub
from lecture.errors import MalformedArchive, UnsupportedFileType, UploadTooLarge, ValidationFailed
from lecture.ingest import UploadOverrides, ingest_epub
from lecture.storage import get_book, list_books


def _make_upload(name: str, payload: bytes, content_type: str = "application/epub+zip") -> UploadFile:
    spooled = tempfile.SpooledTemporaryFile(max_size=1024 * 1024)
    spooled.write(payload)
    spooled.seek(0)
    return UploadFile(filename=name, file=spooled, headers=Headers({"content-type": content_type}))


def _sample_bytes(tmp: Path, **kwargs) -> bytes:
    path = build_sample_epub(
        tmp / "staged.epub",
        title=kwargs.pop("title", "Récit"),
        author=kwargs.pop("author", "Nadia"),
        chapters=[("Un", ["a"]), ("Deux", ["b"])],
        **kwargs,
    )
    return path.read_bytes()


class IngestTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.conn = connect(self.base / "lecture.db")
        init_db(self.conn)

    def tearDown(self) -> None:
        self.conn.close()
        self._tmp.cleanup()

    def _stored_files(self) -> list[Path]:
        epub_dir = self.base / "epub"
        return sorted(epub_dir.iterdir()) if epub_dir.exists() else []

    def test_extracted_values_used_without_overrides(self) -> None:
        upload = _make_upload("recit.epub", _sample_bytes(self.base, description="Résumé"))
        book = asyncio.run(ingest_epub(self.conn, self.base, upload, UploadOverrides(), None))
        upload.file.close()

        self.assertEqual(book.title, "Récit")
        self.assertEqual(book.author, "Nadia")
        self.assertEqual(book.description, "Résumé")
        self.assertEqual(book.total_chapters, 2)
        self.assertEqual(book.package_document_path, "OEBPS/content.opf")

        stored = get_book(self.conn, book.id)
        self.assertIsNotNone(stored)
        self.assertEqual([chapter.path for chapter in stored.chapters], ["OEBPS/c1.xhtml", "OEBPS/c2.xhtml"])
        self.assertEqual(stored.file_size, Path(stored.file_path).stat().st_size)
        self.assertTrue(zipfile.is_zipfile(stored.file_path))

    def test_non_empty_overrides_win(self) -> None:
        upload = _make_upload("recit.epub", _sample_bytes(self.base, description="Résumé"))
        overrides = UploadOverrides(title="Titre choisi", author="   ", description="Autre résumé")
        book = asyncio.run(ingest_epub(self.conn, self.base, upload, overrides, None))
        upload.file.close()

        self.assertEqual(book.title, "Titre choisi")
        self.assertEqual(book.author, "Nadia")
        self.assertEqual(book.description, "Autre résumé")

    def test_reupload_yields_same_chapters_new_identity(self) -> None:
        payload = _sample_bytes(self.base)
        first_upload = _make_upload("a.epub", payload)
        second_upload = _make_upload("a.epub", payload)
        first = asyncio.run(ingest_epub(self.conn, self.base, first_upload, UploadOverrides(), None))
        second = asyncio.run(ingest_epub(self.conn, self.base, second_upload, UploadOverrides(), None))
        first_upload.file.close()
        second_upload.file.close()

        self.assertNotEqual(first.id, second.id)
        self.assertNotEqual(first.file_path, second.file_path)
        self.assertEqual(first.chapters, second.chapters)

    def test_malformed_archive_leaves_nothing_behind(self) -> None:
        broken = tempfile.SpooledTemporaryFile()
        with zipfile.ZipFile(broken, "w") as zf:
            zf.writestr("mimetype", "application/epub+zip")
        broken.seek(0)
        upload = _make_upload("broken.epub", broken.read())
        with self.assertRaises(MalformedArchive):
            asyncio.run(ingest_epub(self.conn, self.base, upload, UploadOverrides(), None))
        upload.file.close()

        self.assertEqual(self._stored_files(), [])
        self.assertEqual(list_books(self.conn), [])

    def test_garbage_bytes_are_malformed(self) -> None:
        upload = _make_upload("noise.epub", b"definitely not a zip archive")
        with self.assertRaises(MalformedArchive):
            asyncio.run(ingest_epub(self.conn, self.base, upload, UploadOverrides(), None))
        upload.file.close()
        self.assertEqual(self._stored_files(), [])

    def test_unsupported_type_rejected_before_storage(self) -> None:
        upload = _make_upload("notes.txt", b"hello", content_type="text/plain")
        with self.assertRaises(UnsupportedFileType):
            asyncio.run(ingest_epub(self.conn, self.base, upload, UploadOverrides(), None))
        upload.file.close()
        self.assertEqual(self._stored_files(), [])

    def test_empty_upload_rejected(self) -> None:
        upload = _make_upload("empty.epub", b"")
        with self.assertRaises(ValidationFailed):
            asyncio.run(ingest_epub(self.conn, self.base, upload, UploadOverrides(), None))
        upload.file.close()
        self.assertEqual(self._stored_files(), [])

    def test_upload_over_limit_rejected(self) -> None:
        upload = _make_upload("big.epub", b"0" * (1024 * 1024 + 10))
        with patch.dict(os.environ, {"LECTURE_MAX_UPLOAD_MB": "1"}):
            with self.assertRaises(UploadTooLarge):
                asyncio.run(ingest_epub(self.conn, self.base, upload, UploadOverrides(), None))
        upload.file.close()
        self.assertEqual(self._stored_files(), [])

    def test_failed_persist_removes_stored_archive(self) -> None:
        upload = _make_upload("recit.epub", _sample_bytes(self.base))
        with patch("lecture.ingest.create_book", side_effect=RuntimeError("disk gone")):
            with self.assertRaises(RuntimeError):
                asyncio.run(ingest_epub(self.conn, self.base, upload, UploadOverrides(), None))
        upload.file.close()
        self.assertEqual(self._stored_files(), [])
        self.assertEqual(list_books(self.conn), [])


if __name__ == "__main__":
    unittest.main()
