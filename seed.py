#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
import tempfile
from pathlib import Path

from lecture.auth import hash_password
from lecture.db import connect, create_user, get_user_credentials, init_db, update_user
from lecture.epub import EPUB_MIME_TYPE, build_sample_epub, extract_package_metadata
from lecture.env import library_dir
from lecture.storage import create_book, new_archive_path

SAMPLE_CHAPTERS = [
    ("Premier jour", ["Le train quitta la gare avant l'aube.", "Personne ne parlait dans le wagon."]),
    ("La ville", ["Les rues étaient encore humides.", "Une librairie ouvrait ses volets."]),
    ("Le retour", ["Il rentra avec un livre sous le bras."]),
]


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create the schema, an administrator and a sample book.")
    parser.add_argument("--admin-email", default="admin@lecture.local", help="Administrator email")
    parser.add_argument("--admin-password", default="admin123", help="Administrator password")
    parser.add_argument("--admin-name", default="Administrateur", help="Administrator display name")
    parser.add_argument("--no-sample", action="store_true", help="Do not add the sample EPUB")
    return parser.parse_args(argv)


def main(argv: list[str]) -> int:
    args = parse_args(argv)
    conn = connect()
    try:
        init_db(conn)
        found = get_user_credentials(conn, args.admin_email)
        if found is None:
            admin = create_user(conn, args.admin_name, args.admin_email, hash_password(args.admin_password), "ADMIN")
            print(f"Administrator created: {admin.email}")
        else:
            admin = update_user(conn, found[0].id, status="ADMIN")
            print(f"Administrator already present: {admin.email}")

        if args.no_sample:
            return 0

        base = library_dir()
        with tempfile.TemporaryDirectory() as tmp:
            staged = build_sample_epub(
                Path(tmp) / "sample.epub",
                title="Un voyage",
                author="Lecture Sociale",
                description="Court récit fourni avec l'installation.",
                chapters=SAMPLE_CHAPTERS,
            )
            destination = new_archive_path(base)
            destination.write_bytes(staged.read_bytes())
        package = extract_package_metadata(destination)
        book = create_book(
            conn,
            title=package.title,
            author=package.author,
            description=package.description,
            file_path=destination,
            file_name="un-voyage.epub",
            file_size=destination.stat().st_size,
            mime_type=EPUB_MIME_TYPE,
            package_document_path=package.package_document_path,
            chapters=package.chapters,
            uploaded_by=admin.id,
        )
        print(f"Sample book stored: {book.title} ({book.total_chapters} chapters) -> {destination}")
    finally:
        conn.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
