from __future__ import annotations

import logging
import sqlite3
from typing import Dict, Iterable, List, Optional

from bibliodesk.book import Book, Category, Copy, CopyStatus, check_manual_status_change
from bibliodesk.database import get_db_connection, transaction
from bibliodesk.errors import ConflictError, NotFoundError, ValidationError
from bibliodesk.validators import TextValidator

logger = logging.getLogger(__name__)

_BOOK_SELECT = """
    SELECT b.id, b.title, b.author, b.description, b.created_at,
           COALESCE(SUM(CASE WHEN c.status != 'lost' THEN 1 ELSE 0 END), 0) AS total_copies,
           COALESCE(SUM(CASE WHEN c.status = 'available' THEN 1 ELSE 0 END), 0) AS available_copies
    FROM books b
    LEFT JOIN copies c ON c.book_id = b.id
"""


class Catalog:
    """Books, their categories and their physical copies."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    # ------------------------- Categories ------------------------- #
    def list_categories(self) -> List[Category]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute("SELECT id, name FROM categories ORDER BY name").fetchall()
            return [Category(id=row["id"], name=row["name"]) for row in rows]
        finally:
            conn.close()

    def create_category(self, name: str) -> Category:
        name = self._require_text("name", name)
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute("INSERT INTO categories (name) VALUES (?)", (name,))
            conn.commit()
            return Category(id=cursor.lastrowid, name=name)
        except sqlite3.IntegrityError as exc:
            raise ValidationError("Dados inválidos", fields={"name": ["já está em uso"]}) from exc
        finally:
            conn.close()

    def update_category(self, category_id: int, name: str) -> Category:
        name = self._require_text("name", name)
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute("UPDATE categories SET name = ? WHERE id = ?", (name, category_id))
            conn.commit()
        except sqlite3.IntegrityError as exc:
            raise ValidationError("Dados inválidos", fields={"name": ["já está em uso"]}) from exc
        finally:
            conn.close()
        if cursor.rowcount == 0:
            raise NotFoundError("Categoria não encontrada.")
        return Category(id=category_id, name=name)

    def delete_category(self, category_id: int) -> None:
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute("DELETE FROM categories WHERE id = ?", (category_id,))
            conn.commit()
        finally:
            conn.close()
        if cursor.rowcount == 0:
            raise NotFoundError("Categoria não encontrada.")

    # ------------------------- Books ------------------------- #
    def list_books(self, search: Optional[str] = None, category_id: Optional[int] = None) -> List[Book]:
        """List books, optionally filtered by a text query and/or a category."""
        clauses = []
        params: list = []
        if search and search.strip():
            like = f"%{search.strip()}%"
            clauses.append("(b.title LIKE ? OR b.author LIKE ? OR b.description LIKE ?)")
            params.extend([like, like, like])
        if category_id is not None:
            clauses.append("b.id IN (SELECT book_id FROM book_categories WHERE category_id = ?)")
            params.append(category_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(f"{_BOOK_SELECT} {where} GROUP BY b.id ORDER BY b.title", params).fetchall()
            books = [Book.from_dict(dict(row)) for row in rows]
            self._attach_categories(conn, books)
            return books
        finally:
            conn.close()

    def get_book(self, book_id: int) -> Book:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(f"{_BOOK_SELECT} WHERE b.id = ? GROUP BY b.id", (book_id,)).fetchone()
            if not row:
                raise NotFoundError("Livro não encontrado.")
            book = Book.from_dict(dict(row))
            self._attach_categories(conn, [book])
            return book
        finally:
            conn.close()

    def create_book(
        self,
        title: str,
        author: str,
        description: Optional[str] = None,
        category_ids: Optional[Iterable[int]] = None,
    ) -> Book:
        fields: Dict[str, List[str]] = {}
        if TextValidator.is_blank(title):
            fields["title"] = ["não pode ficar em branco"]
        if TextValidator.is_blank(author):
            fields["author"] = ["não pode ficar em branco"]
        if fields:
            raise ValidationError("Dados inválidos", fields=fields)

        with transaction(self.db_file) as conn:
            cursor = conn.execute(
                "INSERT INTO books (title, author, description) VALUES (?, ?, ?)",
                (title.strip(), author.strip(), TextValidator.sanitize_text(description) or None),
            )
            book_id = cursor.lastrowid
            self._replace_categories(conn, book_id, category_ids or [])
        return self.get_book(book_id)

    def update_book(
        self,
        book_id: int,
        *,
        title: Optional[str] = None,
        author: Optional[str] = None,
        description: Optional[str] = None,
        category_ids: Optional[Iterable[int]] = None,
    ) -> Book:
        update_fields = {}
        if title is not None:
            update_fields["title"] = self._require_text("title", title)
        if author is not None:
            update_fields["author"] = self._require_text("author", author)
        if description is not None:
            update_fields["description"] = TextValidator.sanitize_text(description) or None

        with transaction(self.db_file) as conn:
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                raise NotFoundError("Livro não encontrado.")
            if update_fields:
                set_clause = ", ".join(f"{field} = ?" for field in update_fields)
                conn.execute(
                    f"UPDATE books SET {set_clause} WHERE id = ?",
                    list(update_fields.values()) + [book_id],
                )
            if category_ids is not None:
                self._replace_categories(conn, book_id, category_ids)
        return self.get_book(book_id)

    def delete_book(self, book_id: int) -> None:
        """Remove a book with its copies and their closed loans.

        Refused while any copy is out on loan.
        """
        with transaction(self.db_file) as conn:
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                raise NotFoundError("Livro não encontrado.")
            borrowed = conn.execute(
                """
                SELECT COUNT(*) FROM loans l JOIN copies c ON c.id = l.copy_id
                WHERE c.book_id = ? AND l.status = 'ongoing'
                """,
                (book_id,),
            ).fetchone()[0]
            if borrowed:
                raise ConflictError("Livro possui exemplares emprestados e não pode ser removido.")
            conn.execute(
                "DELETE FROM loans WHERE copy_id IN (SELECT id FROM copies WHERE book_id = ?)", (book_id,)
            )
            conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
        logger.info(f"Book {book_id} removed")

    # ------------------------- Copies ------------------------- #
    def list_copies(self, book_id: Optional[int] = None) -> List[Copy]:
        conn = get_db_connection(self.db_file)
        try:
            if book_id is None:
                rows = conn.execute("SELECT * FROM copies ORDER BY book_id, number").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM copies WHERE book_id = ? ORDER BY number", (book_id,)
                ).fetchall()
            return [Copy.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def get_copy(self, copy_id: int) -> Copy:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM copies WHERE id = ?", (copy_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("Cópia não encontrada.")
        return Copy.from_dict(dict(row))

    def create_copy(
        self,
        book_id: int,
        edition: str,
        status: str = CopyStatus.AVAILABLE.value,
        acquisition_date: Optional[str] = None,
        condition: Optional[str] = None,
    ) -> Copy:
        edition = self._require_text("edition", edition)
        copy_status = CopyStatus.parse(status)
        if copy_status == CopyStatus.BORROWED:
            raise ValidationError(
                "O status 'borrowed' é definido apenas pelo empréstimo.",
                fields={"status": ["não pode ser definido manualmente"]},
            )

        with transaction(self.db_file) as conn:
            if not conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone():
                raise NotFoundError("Livro não encontrado.")
            number = conn.execute(
                "SELECT COALESCE(MAX(number), 0) + 1 FROM copies WHERE book_id = ?", (book_id,)
            ).fetchone()[0]
            cursor = conn.execute(
                """
                INSERT INTO copies (book_id, number, edition, status, acquisition_date, condition)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (book_id, number, edition, copy_status.value, acquisition_date, condition),
            )
            copy_id = cursor.lastrowid
        logger.info(f"Copy {copy_id} cataloged as number {number} of book {book_id}")
        return self.get_copy(copy_id)

    def update_copy(
        self,
        copy_id: int,
        *,
        edition: Optional[str] = None,
        status: Optional[str] = None,
        acquisition_date: Optional[str] = None,
        condition: Optional[str] = None,
    ) -> Copy:
        update_fields = {}
        if edition is not None:
            update_fields["edition"] = self._require_text("edition", edition)
        if acquisition_date is not None:
            update_fields["acquisition_date"] = acquisition_date
        if condition is not None:
            update_fields["condition"] = condition
        requested = CopyStatus.parse(status) if status is not None else None

        with transaction(self.db_file) as conn:
            row = conn.execute("SELECT status FROM copies WHERE id = ?", (copy_id,)).fetchone()
            if not row:
                raise NotFoundError("Cópia não encontrada.")
            if requested is not None:
                new_status = check_manual_status_change(
                    CopyStatus(row["status"]), requested, self._has_ongoing_loan(conn, copy_id)
                )
                update_fields["status"] = new_status.value
            if update_fields:
                set_clause = ", ".join(f"{field} = ?" for field in update_fields)
                conn.execute(
                    f"UPDATE copies SET {set_clause} WHERE id = ?",
                    list(update_fields.values()) + [copy_id],
                )
        return self.get_copy(copy_id)

    def delete_copy(self, copy_id: int) -> None:
        with transaction(self.db_file) as conn:
            if not conn.execute("SELECT 1 FROM copies WHERE id = ?", (copy_id,)).fetchone():
                raise NotFoundError("Cópia não encontrada.")
            if self._has_ongoing_loan(conn, copy_id):
                raise ConflictError("Exemplar emprestado não pode ser removido.")
            conn.execute("DELETE FROM loans WHERE copy_id = ?", (copy_id,))
            conn.execute("DELETE FROM copies WHERE id = ?", (copy_id,))
        logger.info(f"Copy {copy_id} removed")

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _has_ongoing_loan(conn: sqlite3.Connection, copy_id: int) -> bool:
        return conn.execute(
            "SELECT 1 FROM loans WHERE copy_id = ? AND status = 'ongoing'", (copy_id,)
        ).fetchone() is not None

    @staticmethod
    def _require_text(name: str, value: Optional[str]) -> str:
        if TextValidator.is_blank(value):
            raise ValidationError("Dados inválidos", fields={name: ["não pode ficar em branco"]})
        return value.strip()

    @staticmethod
    def _replace_categories(conn: sqlite3.Connection, book_id: int, category_ids: Iterable[int]) -> None:
        ids = sorted(set(category_ids))
        if ids:
            placeholders = ", ".join("?" for _ in ids)
            found = conn.execute(
                f"SELECT COUNT(*) FROM categories WHERE id IN ({placeholders})", ids
            ).fetchone()[0]
            if found != len(ids):
                raise ValidationError("Dados inválidos", fields={"category_ids": ["categoria inexistente"]})
        conn.execute("DELETE FROM book_categories WHERE book_id = ?", (book_id,))
        conn.executemany(
            "INSERT INTO book_categories (book_id, category_id) VALUES (?, ?)",
            [(book_id, category_id) for category_id in ids],
        )

    @staticmethod
    def _attach_categories(conn: sqlite3.Connection, books: List[Book]) -> None:
        if not books:
            return
        by_id = {book.id: book for book in books}
        placeholders = ", ".join("?" for _ in by_id)
        rows = conn.execute(
            f"""
            SELECT bc.book_id, c.id, c.name
            FROM book_categories bc JOIN categories c ON c.id = bc.category_id
            WHERE bc.book_id IN ({placeholders})
            ORDER BY c.name
            """,
            list(by_id),
        ).fetchall()
        for row in rows:
            by_id[row["book_id"]].categories.append(Category(id=row["id"], name=row["name"]))
