"""Aggregated counts and alerts for the staff home screen.

Overdue figures come from the same ``status = 'ongoing' AND due_date < today``
derivation used everywhere else; nothing here reads a stored overdue flag.
"""

import logging
from datetime import date, timedelta
from typing import Dict, List, Optional

from bibliodesk.database import get_db_connection

logger = logging.getLogger(__name__)

LOW_STOCK_THRESHOLD = 2


class Dashboard:
    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def summary(self, today: Optional[date] = None) -> Dict[str, int]:
        today = today or date.today()
        conn = get_db_connection(self.db_file)
        try:
            def scalar(query: str, params: tuple = ()) -> int:
                return conn.execute(query, params).fetchone()[0]

            copies = {status: 0 for status in ("available", "borrowed", "lost")}
            for row in conn.execute("SELECT status, COUNT(*) AS total FROM copies GROUP BY status"):
                copies[row["status"]] = row["total"]

            overdue = scalar(
                "SELECT COUNT(*) FROM loans WHERE status = 'ongoing' AND due_date < ?", (today.isoformat(),)
            )
            return {
                "total_books": scalar(
                    "SELECT COUNT(DISTINCT book_id) FROM copies WHERE status IN ('available', 'borrowed')"
                ),
                "total_clients": scalar("SELECT COUNT(*) FROM clients"),
                "total_loans": scalar("SELECT COUNT(*) FROM loans"),
                "total_categories": scalar("SELECT COUNT(*) FROM categories"),
                "total_copies": copies["available"] + copies["borrowed"],
                "active_loans": scalar("SELECT COUNT(*) FROM loans WHERE status = 'ongoing'"),
                "returned_loans": scalar("SELECT COUNT(*) FROM loans WHERE status = 'returned'"),
                "overdue_loans": overdue,
                "available_copies": copies["available"],
                "borrowed_copies": copies["borrowed"],
                "lost_copies": copies["lost"],
            }
        finally:
            conn.close()

    def loans_by_month(self) -> Dict[str, int]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                """
                SELECT substr(loan_date, 1, 7) AS month, COUNT(*) AS total
                FROM loans GROUP BY month ORDER BY month
                """
            ).fetchall()
            return {row["month"]: row["total"] for row in rows}
        finally:
            conn.close()

    def today_alerts(self, today: Optional[date] = None) -> List[dict]:
        today = today or date.today()
        tomorrow = today + timedelta(days=1)
        conn = get_db_connection(self.db_file)
        try:
            due_today = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE status = 'ongoing' AND due_date = ?", (today.isoformat(),)
            ).fetchone()[0]
            overdue = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE status = 'ongoing' AND due_date < ?", (today.isoformat(),)
            ).fetchone()[0]
            due_tomorrow = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE status = 'ongoing' AND due_date = ?", (tomorrow.isoformat(),)
            ).fetchone()[0]
            low_stock = conn.execute(
                """
                SELECT COUNT(*) FROM (
                    SELECT book_id FROM copies WHERE status = 'available'
                    GROUP BY book_id HAVING COUNT(*) < ?
                )
                """,
                (LOW_STOCK_THRESHOLD,),
            ).fetchone()[0]
        finally:
            conn.close()

        alerts = []
        if due_today:
            alerts.append({"id": 1, "message": f"{due_today} empréstimo(s) vence(m) hoje", "icon": "bi-calendar-x"})
        if overdue:
            alerts.append(
                {"id": 2, "message": f"{overdue} empréstimo(s) estão em atraso", "icon": "bi-exclamation-triangle"}
            )
        if due_tomorrow:
            alerts.append(
                {"id": 3, "message": f"{due_tomorrow} empréstimo(s) vence(m) amanhã", "icon": "bi-calendar-check"}
            )
        if low_stock:
            alerts.append(
                {"id": 4, "message": f"{low_stock} livro(s) com poucas cópias disponíveis", "icon": "bi-exclamation-circle"}
            )
        return alerts

    def recent_activities(self, limit: int = 5) -> List[dict]:
        """Latest loans and returns, newest first. Returns carry a negative id."""
        conn = get_db_connection(self.db_file)
        try:
            loans = conn.execute(
                """
                SELECT l.id, l.loan_date AS day, cl.full_name AS client_name, b.title AS book_title
                FROM loans l
                JOIN clients cl ON cl.id = l.client_id
                JOIN copies c ON c.id = l.copy_id
                JOIN books b ON b.id = c.book_id
                ORDER BY l.loan_date DESC, l.id DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
            returns = conn.execute(
                """
                SELECT l.id, l.return_date AS day, cl.full_name AS client_name, b.title AS book_title
                FROM loans l
                JOIN clients cl ON cl.id = l.client_id
                JOIN copies c ON c.id = l.copy_id
                JOIN books b ON b.id = c.book_id
                WHERE l.return_date IS NOT NULL
                ORDER BY l.return_date DESC, l.id DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        finally:
            conn.close()

        activities = [
            {"id": row["id"], "type": "loan", "client_name": row["client_name"],
             "book_title": row["book_title"], "date": row["day"]}
            for row in loans
        ] + [
            {"id": -row["id"], "type": "return", "client_name": row["client_name"],
             "book_title": row["book_title"], "date": row["day"]}
            for row in returns
        ]
        activities.sort(key=lambda item: (item["date"], abs(item["id"])), reverse=True)
        return activities[:limit]
