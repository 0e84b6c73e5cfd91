"""Loan lifecycle: lending, returning, renewing and removing loans.

Every transition runs inside ``database.transaction()``, which takes the
SQLite write lock before the first read. The copy status check, the loan
insert and the copy update of a new loan therefore commit as one unit, and
the partial unique index on ``loans(copy_id) WHERE status = 'ongoing'``
rejects a second ongoing loan even if a caller bypasses this module.
"""

import logging
import sqlite3
from datetime import date, timedelta
from typing import Dict, List, Optional

from bibliodesk.book import CopyStatus
from bibliodesk.database import get_db_connection, transaction
from bibliodesk.errors import ConflictError, NotFoundError, ValidationError
from bibliodesk.loan import Loan, LoanStatus, extend_due_date, is_overdue
from bibliodesk.policies import FinePolicy, PolicyStore

logger = logging.getLogger(__name__)

_DETAILED_SELECT = """
    SELECT l.*,
           c.number AS copy_number, c.edition AS copy_edition,
           b.id AS book_id, b.title AS book_title, b.author AS book_author,
           cl.full_name AS client_name, cl.email AS client_email
    FROM loans l
    JOIN copies c ON c.id = l.copy_id
    JOIN books b ON b.id = c.book_id
    JOIN clients cl ON cl.id = l.client_id
"""


def _detailed_dict(row, today: date, fine_policy: Optional[FinePolicy]) -> dict:
    payload = Loan.from_row(row).to_dict(today, fine_policy)
    payload["copy"] = {"id": row["copy_id"], "number": row["copy_number"], "edition": row["copy_edition"]}
    payload["book"] = {"id": row["book_id"], "title": row["book_title"], "author": row["book_author"]}
    payload["client"] = {"id": row["client_id"], "fullName": row["client_name"], "email": row["client_email"]}
    return payload


class Circulation:
    def __init__(self, db_file: Optional[str] = None, policies: Optional[PolicyStore] = None) -> None:
        self.db_file = db_file
        self.policies = policies or PolicyStore(db_file)

    # ------------------------- Queries ------------------------- #
    def get_loan(self, loan_id: int) -> Loan:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("Empréstimo não encontrado.")
        return Loan.from_row(row)

    def describe_loan(self, loan_id: int, today: Optional[date] = None) -> dict:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(_DETAILED_SELECT + " WHERE l.id = ?", (loan_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("Empréstimo não encontrado.")
        return _detailed_dict(row, today or date.today(), self.policies.default_fine_policy())

    def list_loans(
        self,
        status: Optional[str] = None,
        overdue: Optional[bool] = None,
        client_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> List[dict]:
        """List loans with book, copy and client details.

        ``status`` accepts the stored values plus ``overdue``, which selects
        ongoing loans past their due date.
        """
        today = today or date.today()
        clauses: List[str] = []
        params: List = []

        if status is not None:
            try:
                wanted = LoanStatus(status)
            except ValueError as exc:
                raise ValidationError("Dados inválidos", fields={"status": ["não é um status válido"]}) from exc
            if wanted == LoanStatus.OVERDUE:
                overdue = True
            else:
                clauses.append("l.status = ?")
                params.append(wanted.value)

        if overdue is True:
            clauses.append("l.status = 'ongoing' AND l.due_date < ?")
            params.append(today.isoformat())
        elif overdue is False:
            clauses.append("NOT (l.status = 'ongoing' AND l.due_date < ?)")
            params.append(today.isoformat())

        if client_id is not None:
            clauses.append("l.client_id = ?")
            params.append(client_id)

        query = _DETAILED_SELECT
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY l.loan_date DESC, l.id DESC"

        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        fine_policy = self.policies.default_fine_policy()
        return [_detailed_dict(row, today, fine_policy) for row in rows]

    def loans_due_on(self, day: date) -> List[dict]:
        """Ongoing loans whose due date is exactly ``day``."""
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                _DETAILED_SELECT + " WHERE l.status = 'ongoing' AND l.due_date = ? ORDER BY l.id",
                (day.isoformat(),),
            ).fetchall()
        finally:
            conn.close()
        return [_detailed_dict(row, day, None) for row in rows]

    # ------------------------- Transitions ------------------------- #
    def create_loan(
        self,
        copy_id: Optional[int],
        client_id: Optional[int],
        user_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> Loan:
        """Lend an available copy to a client."""
        fields: Dict[str, List[str]] = {}
        if copy_id is None:
            fields["copy"] = ["é obrigatório"]
        if client_id is None:
            fields["client"] = ["é obrigatório"]
        if fields:
            raise ValidationError("Dados inválidos", fields=fields)

        today = today or date.today()
        policy = self.policies.effective_loan_policy()
        due_date = today + timedelta(days=policy.loan_period_days)

        with transaction(self.db_file) as conn:
            copy = conn.execute("SELECT id, status FROM copies WHERE id = ?", (copy_id,)).fetchone()
            if not copy:
                raise NotFoundError("Cópia não encontrada.")
            if not conn.execute("SELECT 1 FROM clients WHERE id = ?", (client_id,)).fetchone():
                raise NotFoundError("Cliente não encontrado.")
            if CopyStatus(copy["status"]) != CopyStatus.AVAILABLE:
                raise ConflictError("Cópia não está disponível para empréstimo.")

            ongoing = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE client_id = ? AND status = 'ongoing'", (client_id,)
            ).fetchone()[0]
            if ongoing >= policy.loan_limit:
                raise ConflictError(f"Cliente atingiu o limite de {policy.loan_limit} empréstimos simultâneos.")

            cursor = conn.execute(
                "UPDATE copies SET status = 'borrowed' WHERE id = ? AND status = 'available'", (copy_id,)
            )
            if cursor.rowcount != 1:
                raise ConflictError("Cópia não está disponível para empréstimo.")
            try:
                cursor = conn.execute(
                    """
                    INSERT INTO loans (copy_id, client_id, user_id, loan_date, due_date, status, renewals_count)
                    VALUES (?, ?, ?, ?, ?, 'ongoing', 0)
                    """,
                    (copy_id, client_id, user_id, today.isoformat(), due_date.isoformat()),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Cópia já possui um empréstimo em andamento.") from exc
            loan_id = cursor.lastrowid

        logger.info(f"Loan {loan_id} created: copy={copy_id} client={client_id} due={due_date.isoformat()}")
        return self.get_loan(loan_id)

    def return_loan(self, loan_id: int, user_id: Optional[int] = None, today: Optional[date] = None) -> Loan:
        """Close an ongoing loan and put the copy back on the shelf."""
        today = today or date.today()
        with transaction(self.db_file) as conn:
            row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
            if not row:
                raise NotFoundError("Empréstimo não encontrado.")
            loan = Loan.from_row(row)
            if loan.status != LoanStatus.ONGOING:
                raise ConflictError("Empréstimo já foi devolvido.")

            conn.execute(
                "UPDATE loans SET status = 'returned', return_date = ?, user_id = ? WHERE id = ?",
                (today.isoformat(), user_id, loan_id),
            )
            # A copy marked lost while on loan keeps the override
            conn.execute(
                "UPDATE copies SET status = 'available' WHERE id = ? AND status = 'borrowed'", (loan.copy_id,)
            )

        logger.info(f"Loan {loan_id} returned by user {user_id}")
        return self.get_loan(loan_id)

    def renew_loan(self, loan_id: int, today: Optional[date] = None) -> Loan:
        """Push the due date of an ongoing, on-time loan by one loan period."""
        today = today or date.today()
        policy = self.policies.effective_loan_policy()
        with transaction(self.db_file) as conn:
            row = conn.execute("SELECT * FROM loans WHERE id = ?", (loan_id,)).fetchone()
            if not row:
                raise NotFoundError("Empréstimo não encontrado.")
            loan = Loan.from_row(row)
            if loan.status != LoanStatus.ONGOING:
                raise ConflictError("Apenas empréstimos em andamento podem ser renovados.")
            if is_overdue(loan.status, loan.due_date, today):
                raise ConflictError("Empréstimo em atraso não pode ser renovado.")
            if loan.renewals_count >= policy.renewals_allowed:
                raise ConflictError("Limite de renovações atingido.")

            new_due_date = extend_due_date(loan.due_date, policy.loan_period_days)
            conn.execute(
                "UPDATE loans SET due_date = ?, renewals_count = renewals_count + 1 WHERE id = ?",
                (new_due_date.isoformat(), loan_id),
            )

        logger.info(f"Loan {loan_id} renewed until {new_due_date.isoformat()}")
        return self.get_loan(loan_id)

    def update_loan(
        self, loan_id: int, status: Optional[str], user_id: Optional[int] = None, today: Optional[date] = None
    ) -> Loan:
        """Generic update path; the only supported change is marking the loan returned."""
        if status != LoanStatus.RETURNED.value:
            raise ValidationError("Dados inválidos", fields={"status": ["apenas 'returned' é permitido"]})
        return self.return_loan(loan_id, user_id=user_id, today=today)

    def delete_loan(self, loan_id: int) -> None:
        """Administrative removal; an ongoing loan frees its copy first."""
        with transaction(self.db_file) as conn:
            row = conn.execute("SELECT copy_id, status FROM loans WHERE id = ?", (loan_id,)).fetchone()
            if not row:
                raise NotFoundError("Empréstimo não encontrado.")
            if row["status"] == LoanStatus.ONGOING.value:
                conn.execute(
                    "UPDATE copies SET status = 'available' WHERE id = ? AND status = 'borrowed'",
                    (row["copy_id"],),
                )
            conn.execute("DELETE FROM loans WHERE id = ?", (loan_id,))
        logger.info(f"Loan {loan_id} deleted")
