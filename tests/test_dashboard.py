from datetime import date, timedelta

import pytest

from bibliodesk.dashboard import Dashboard

TODAY = date(2025, 6, 16)


@pytest.fixture
def dashboard(db_file):
    return Dashboard(db_file)


@pytest.fixture
def busy_library(catalog, circulation, book, new_client):
    """Three copies of one book: one late, one returned, one lost."""
    late = catalog.create_copy(book.id, edition="1ª")
    returned = catalog.create_copy(book.id, edition="2ª")
    lost = catalog.create_copy(book.id, edition="3ª")
    catalog.update_copy(lost.id, status="lost")

    late_loan = circulation.create_loan(late.id, new_client().id, today=TODAY - timedelta(days=40))
    returned_loan = circulation.create_loan(returned.id, new_client().id, today=TODAY - timedelta(days=3))
    circulation.return_loan(returned_loan.id, today=TODAY - timedelta(days=1))
    return late_loan, returned_loan


def test_empty_summary(dashboard):
    summary = dashboard.summary(TODAY)
    assert set(summary.values()) == {0}


def test_summary_counts(dashboard, busy_library):
    summary = dashboard.summary(TODAY)

    assert summary["total_books"] == 1
    assert summary["total_clients"] == 2
    assert summary["total_loans"] == 2
    assert summary["active_loans"] == 1
    assert summary["returned_loans"] == 1
    assert summary["overdue_loans"] == 1
    assert summary["total_copies"] == 2
    assert summary["available_copies"] == 1
    assert summary["borrowed_copies"] == 1
    assert summary["lost_copies"] == 1


def test_loans_by_month(dashboard, busy_library):
    assert dashboard.loans_by_month() == {"2025-05": 1, "2025-06": 1}


def test_today_alerts(dashboard, busy_library, circulation, catalog, book, new_client):
    fresh = catalog.create_copy(book.id, edition="4ª")
    loan = circulation.create_loan(fresh.id, new_client().id, today=TODAY - timedelta(days=14))

    alerts = {alert["id"]: alert["message"] for alert in dashboard.today_alerts(loan.due_date - timedelta(days=1))}

    assert alerts[2] == "1 empréstimo(s) estão em atraso"
    assert alerts[3] == "1 empréstimo(s) vence(m) amanhã"
    assert 1 not in alerts
    assert alerts[4] == "1 livro(s) com poucas cópias disponíveis"


def test_recent_activities(dashboard, busy_library):
    late_loan, returned_loan = busy_library

    activities = dashboard.recent_activities()

    assert [(a["type"], a["id"]) for a in activities] == [
        ("return", -returned_loan.id),
        ("loan", returned_loan.id),
        ("loan", late_loan.id),
    ]
    assert activities[0]["book_title"] == "Dom Casmurro"
    assert dashboard.recent_activities(limit=1)[0]["type"] == "return"
