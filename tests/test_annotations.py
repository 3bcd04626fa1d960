import datetime as dt
import tempfile
import unittest
from pathlib import Path

from lecture.annotations import (
    cite_annotation,
    create_annotation,
    delete_annotation,
    get_annotation,
    list_visible_annotations,
    normalize_platforms,
    reading_statistics,
    update_annotation,
)
from lecture.db import connect, create_user, init_db, user_activity_counts
from lecture.errors import Forbidden, NotFound, ValidationFailed
from lecture.readings import create_reading, join_reading
from lecture.storage import create_book


class AnnotationTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.conn = connect(Path(self._tmp.name) / "lecture.db")
        init_db(self.conn)
        self.author = create_user(self.conn, "Traductrice", "tr@example.com", "hash", "TRANSLATOR")
        self.reader = create_user(self.conn, "Lecteur", "reader@example.com", "hash")
        self.outsider = create_user(self.conn, "Passant", "out@example.com", "hash")
        self.admin = create_user(self.conn, "Admin", "admin@example.com", "hash", "ADMIN")
        book = create_book(
            self.conn,
            title="Nana",
            author="Zola",
            description="",
            file_path=Path(self._tmp.name) / "nana.epub",
            file_name="nana.epub",
            file_size=1,
            mime_type="application/epub+zip",
            package_document_path="content.opf",
            chapters=[],
            uploaded_by=None,
        )
        now = dt.datetime.now(dt.timezone.utc)
        self.reading = create_reading(
            self.conn,
            self.author,
            title="Lecture privée",
            description=None,
            book_id=book.id,
            start_date=now - dt.timedelta(days=1),
            end_date=now + dt.timedelta(days=10),
            is_public=False,
        )
        join_reading(self.conn, self.reading.id, self.reader, self.reading.invite_code)

    def tearDown(self) -> None:
        self.conn.close()
        self._tmp.cleanup()

    def _annotate(self, user, *, page: int = 1, is_public: bool = True, text: str = "une phrase"):
        return create_annotation(
            self.conn,
            user,
            shared_reading_id=self.reading.id,
            content="Très beau passage",
            cfi="epubcfi(/6/4!/4/2)",
            selected_text=text,
            page=page,
            is_public=is_public,
        )

    def test_only_participants_annotate(self) -> None:
        with self.assertRaises(Forbidden):
            self._annotate(self.outsider)
        with self.assertRaises(NotFound):
            create_annotation(
                self.conn,
                self.reader,
                shared_reading_id="missing",
                content="x",
                cfi="x",
                selected_text="x",
                page=1,
                is_public=True,
            )

    def test_private_annotations_visible_to_owner_only(self) -> None:
        public = self._annotate(self.reader, page=3)
        private = self._annotate(self.reader, page=1, is_public=False)
        other = self._annotate(self.author, page=2)

        mine = [item.id for item in list_visible_annotations(self.conn, self.reading.id, self.reader)]
        self.assertEqual(mine, [private.id, other.id, public.id])
        theirs = [item.id for item in list_visible_annotations(self.conn, self.reading.id, self.author)]
        self.assertEqual(theirs, [other.id, public.id])
        with self.assertRaises(Forbidden):
            list_visible_annotations(self.conn, self.reading.id, self.outsider)

    def test_only_owner_edits(self) -> None:
        annotation = self._annotate(self.reader)
        with self.assertRaises(Forbidden):
            update_annotation(self.conn, annotation.id, self.admin, "réécrit")
        updated = update_annotation(self.conn, annotation.id, self.reader, "réécrit")
        self.assertEqual(updated.content, "réécrit")

    def test_owner_or_admin_deletes(self) -> None:
        first = self._annotate(self.reader)
        second = self._annotate(self.reader)
        with self.assertRaises(Forbidden):
            delete_annotation(self.conn, first.id, self.author)
        delete_annotation(self.conn, first.id, self.reader)
        delete_annotation(self.conn, second.id, self.admin)
        self.assertIsNone(get_annotation(self.conn, first.id))
        self.assertIsNone(get_annotation(self.conn, second.id))

    def test_citation_copies_book_details(self) -> None:
        annotation = self._annotate(self.author, text="Il faisait nuit.")
        citation = cite_annotation(self.conn, annotation.id, self.reader, ["twitter", "FACEBOOK", "twitter"])
        self.assertEqual(citation.text, "Il faisait nuit.")
        self.assertEqual(citation.author, "Zola")
        self.assertEqual(citation.book_title, "Nana")
        self.assertEqual(citation.shared_on_platforms, ["TWITTER", "FACEBOOK"])
        self.assertEqual(user_activity_counts(self.conn, self.reader.id)["totalCitations"], 1)

    def test_private_annotation_cannot_be_cited_by_others(self) -> None:
        annotation = self._annotate(self.author, is_public=False)
        with self.assertRaises(Forbidden):
            cite_annotation(self.conn, annotation.id, self.reader, [])
        cite_annotation(self.conn, annotation.id, self.author, [])

    def test_unknown_platform(self) -> None:
        with self.assertRaises(ValidationFailed):
            normalize_platforms(["myspace"])
        self.assertEqual(normalize_platforms(None), [])

    def test_statistics_for_manager(self) -> None:
        self._annotate(self.reader)
        self._annotate(self.reader)
        self._annotate(self.author)
        stats = reading_statistics(self.conn, self.reading.id, self.author)
        self.assertEqual(stats["byUser"][0]["userId"], self.reader.id)
        self.assertEqual(stats["byUser"][0]["count"], 2)
        self.assertEqual(sum(item["count"] for item in stats["byDay"]), 3)
        self.assertEqual(sum(item["count"] for item in stats["byHour"]), 3)
        for item in stats["byHour"]:
            self.assertTrue(0 <= item["hour"] <= 23)
        with self.assertRaises(Forbidden):
            reading_statistics(self.conn, self.reading.id, self.reader)


if __name__ == "__main__":
    unittest.main()
