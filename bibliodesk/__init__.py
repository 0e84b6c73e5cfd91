"""Bibliodesk - library management backend

Modules:
- api.py: FastAPI application and routes
- catalog.py / book.py: books, categories and copies
- membership.py: clients (members)
- circulation.py / loan.py: loan lifecycle
- policies.py: per-library policies and the Gmail account
- email_accounts.py: Gmail OAuth credential lifecycle
- main.py: Typer CLI
- database.py: SQLite schema and transactions
"""

__version__ = "1.0.0"
