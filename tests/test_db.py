import datetime as dt
import tempfile
import unittest
from pathlib import Path

from lecture.db import (
    connect,
    create_session,
    create_user,
    delete_user,
    get_password_hash,
    get_session,
    get_user_credentials,
    init_db,
    list_users,
    require_user,
    update_user,
    user_activity_counts,
)
from lecture.errors import Conflict, NotFound
from lecture.models import ChapterDescriptor
from lecture.readings import create_reading
from lecture.storage import create_book, delete_book, get_book, list_books, update_book


class DbTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)
        self.conn = connect(self.base / "lecture.db")
        init_db(self.conn)

    def tearDown(self) -> None:
        self.conn.close()
        self._tmp.cleanup()

    def _book(self, title: str = "Livre", author: str = "Auteur", file_path: Path | None = None):
        chapters = [
            ChapterDescriptor(id="c1", href="c1.xhtml", order=1, title="Chapter 1", path="OEBPS/c1.xhtml"),
            ChapterDescriptor(id="ghost", href="", order=2, title="Chapter 2", path=""),
        ]
        return create_book(
            self.conn,
            title=title,
            author=author,
            description="",
            file_path=file_path or self.base / "missing.epub",
            file_name="book.epub",
            file_size=12,
            mime_type="application/epub+zip",
            package_document_path="OEBPS/content.opf",
            chapters=chapters,
            uploaded_by=None,
        )

    def test_init_db_is_idempotent(self) -> None:
        init_db(self.conn)
        tables = {
            row["name"] for row in self.conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
        }
        for name in ("users", "sessions", "books", "shared_readings", "participants", "annotations", "citations"):
            self.assertIn(name, tables)

    def test_user_roundtrip_and_email_normalisation(self) -> None:
        user = create_user(self.conn, " Alice ", " Alice@Example.COM ", "hash")
        self.assertEqual(user.name, "Alice")
        self.assertEqual(user.email, "alice@example.com")
        found = get_user_credentials(self.conn, "ALICE@example.com")
        self.assertIsNotNone(found)
        self.assertEqual(found[0].id, user.id)
        self.assertEqual(found[1], "hash")
        self.assertEqual(get_password_hash(self.conn, user.id), "hash")

    def test_duplicate_email_conflicts(self) -> None:
        create_user(self.conn, "Alice", "alice@example.com", "hash")
        with self.assertRaises(Conflict):
            create_user(self.conn, "Other", "ALICE@example.com", "hash")

    def test_update_user_email_clash(self) -> None:
        create_user(self.conn, "Alice", "alice@example.com", "hash")
        bob = create_user(self.conn, "Bob", "bob@example.com", "hash")
        with self.assertRaises(Conflict):
            update_user(self.conn, bob.id, email="alice@example.com")
        updated = update_user(self.conn, bob.id, name="Robert", avatar="https://img.example/bob.png")
        self.assertEqual(updated.name, "Robert")
        self.assertEqual(updated.avatar, "https://img.example/bob.png")

    def test_list_users_by_ids(self) -> None:
        alice = create_user(self.conn, "Alice", "alice@example.com", "hash")
        create_user(self.conn, "Bob", "bob@example.com", "hash")
        self.assertEqual(len(list_users(self.conn)), 2)
        self.assertEqual([user.id for user in list_users(self.conn, [alice.id])], [alice.id])
        self.assertEqual(list_users(self.conn, []), [])

    def test_require_user_missing(self) -> None:
        with self.assertRaises(NotFound):
            require_user(self.conn, "nobody")

    def test_activity_counts_start_at_zero(self) -> None:
        user = create_user(self.conn, "Alice", "alice@example.com", "hash")
        self.assertEqual(
            user_activity_counts(self.conn, user.id),
            {"readingsCreated": 0, "readingsParticipated": 0, "totalAnnotations": 0, "totalCitations": 0},
        )

    def test_book_chapters_survive_storage(self) -> None:
        book = self._book()
        stored = get_book(self.conn, book.id)
        self.assertEqual(stored.total_chapters, 2)
        self.assertEqual(stored.package_document_path, "OEBPS/content.opf")
        self.assertEqual(stored.chapters, book.chapters)

    def test_corrupt_chapter_blob_reads_as_empty(self) -> None:
        book = self._book()
        with self.conn:
            self.conn.execute("UPDATE books SET epub_metadata = ? WHERE id = ?", ("{not json", book.id))
        stored = get_book(self.conn, book.id)
        self.assertEqual(stored.chapters, [])

    def test_list_books_search(self) -> None:
        self._book(title="Les Misérables", author="Hugo")
        self._book(title="Germinal", author="Zola")
        titles = [book.title for book, _ in list_books(self.conn, "zola")]
        self.assertEqual(titles, ["Germinal"])
        self.assertEqual(len(list_books(self.conn)), 2)

    def test_update_book_ignores_unknown_fields(self) -> None:
        book = self._book()
        updated = update_book(self.conn, book.id, title="Nouveau", total_pages=120, file_path="/etc/passwd")
        self.assertEqual(updated.title, "Nouveau")
        self.assertEqual(updated.total_pages, 120)
        self.assertEqual(updated.file_path, book.file_path)

    def test_delete_book_removes_file(self) -> None:
        archive = self.base / "stored.epub"
        archive.write_bytes(b"zip")
        book = self._book(file_path=archive)
        delete_book(self.conn, book.id)
        self.assertIsNone(get_book(self.conn, book.id))
        self.assertFalse(archive.exists())

    def test_delete_user_drops_sessions_and_keeps_books(self) -> None:
        uploader = create_user(self.conn, "Alice", "alice@example.com", "hash")
        create_session(self.conn, "tok", uploader.id, "2026-01-01T00:00:00+00:00", "2099-01-01T00:00:00+00:00")
        book = self._book()
        with self.conn:
            self.conn.execute("UPDATE books SET uploaded_by = ? WHERE id = ?", (uploader.id, book.id))
        delete_user(self.conn, uploader.id)
        with self.assertRaises(NotFound):
            require_user(self.conn, uploader.id)
        self.assertIsNone(get_session(self.conn, "tok"))
        self.assertIsNone(get_book(self.conn, book.id).uploaded_by)

    def test_delete_user_refuses_reading_creators(self) -> None:
        creator = create_user(self.conn, "Alice", "alice@example.com", "hash", "ADMIN")
        book = self._book()
        now = dt.datetime.now(dt.timezone.utc)
        create_reading(
            self.conn,
            creator,
            title="Club",
            description=None,
            book_id=book.id,
            start_date=now,
            end_date=now + dt.timedelta(days=3),
            is_public=True,
        )
        with self.assertRaises(Conflict):
            delete_user(self.conn, creator.id)
        self.assertEqual(require_user(self.conn, creator.id).id, creator.id)
        with self.assertRaises(NotFound):
            delete_user(self.conn, "nobody")


if __name__ == "__main__":
    unittest.main()
