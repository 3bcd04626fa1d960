import contextlib
import io
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import seed
from lecture.db import connect, get_user_credentials
from lecture.epub import read_chapter
from lecture.storage import list_books


class SeedTests(unittest.TestCase):
    def test_seed_creates_admin_and_sample_book(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            env = {"LECTURE_LIBRARY_DIR": tmp, "LECTURE_DB_PATH": os.path.join(tmp, "lecture.db")}
            with patch.dict(os.environ, env), contextlib.redirect_stdout(io.StringIO()):
                self.assertEqual(seed.main(["--admin-email", "root@example.com", "--admin-password", "secret1"]), 0)
                self.assertEqual(seed.main(["--admin-email", "root@example.com", "--no-sample"]), 0)

            conn = connect(Path(tmp) / "lecture.db")
            try:
                found = get_user_credentials(conn, "root@example.com")
                books = list_books(conn)
            finally:
                conn.close()

            self.assertIsNotNone(found)
            self.assertEqual(found[0].status, "ADMIN")
            self.assertEqual(len(books), 1)
            book = books[0][0]
            self.assertEqual(book.total_chapters, 3)
            self.assertIn("Le train", read_chapter(book, 0).content)


if __name__ == "__main__":
    unittest.main()
