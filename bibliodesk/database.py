import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from bibliodesk.config import settings

logger = logging.getLogger(__name__)

# Default database file; services accept an explicit path to override it.
DATABASE_FILE = settings.database_file

# Seconds a writer waits for the lock held by a concurrent BEGIN IMMEDIATE.
BUSY_TIMEOUT = 15.0


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with row access by column name."""
    conn = sqlite3.connect(db_file or DATABASE_FILE, timeout=BUSY_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block inside a write transaction taken up front.

    ``BEGIN IMMEDIATE`` grabs the database write lock before the first read,
    so a read-check-write sequence cannot interleave with another writer.
    """
    conn = get_db_connection(db_file)
    conn.isolation_level = None
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the schema if it does not exist yet."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        cursor = conn.cursor()

        # Staff accounts
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                password_digest TEXT NOT NULL,
                role TEXT NOT NULL CHECK(role IN ('administrator', 'librarian')),
                password_changed BOOLEAN NOT NULL DEFAULT 0,
                reset_token_digest TEXT,
                reset_token_expires_at TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Tenant root and its per-library singletons
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS libraries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                phone TEXT,
                address TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loan_policies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                library_id INTEGER NOT NULL UNIQUE,
                loan_limit INTEGER NOT NULL CHECK(loan_limit >= 0),
                loan_period_days INTEGER NOT NULL CHECK(loan_period_days >= 0),
                renewals_allowed INTEGER NOT NULL CHECK(renewals_allowed >= 0),
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (library_id) REFERENCES libraries(id) ON DELETE CASCADE
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS fine_policies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                library_id INTEGER NOT NULL UNIQUE,
                daily_fine REAL NOT NULL CHECK(daily_fine >= 0),
                max_fine REAL NOT NULL CHECK(max_fine >= 0),
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (library_id) REFERENCES libraries(id) ON DELETE CASCADE
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notification_settings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                library_id INTEGER NOT NULL UNIQUE,
                notify_email BOOLEAN NOT NULL DEFAULT 1,
                notify_sms BOOLEAN NOT NULL DEFAULT 0,
                return_reminder_days INTEGER NOT NULL CHECK(return_reminder_days >= 0),
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (library_id) REFERENCES libraries(id) ON DELETE CASCADE
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS email_accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                library_id INTEGER NOT NULL UNIQUE,
                gmail_user_email TEXT NOT NULL,
                gmail_oauth_token TEXT,
                gmail_refresh_token TEXT,
                token_expires_at TEXT,
                authorization_status TEXT NOT NULL DEFAULT 'not_authorized'
                    CHECK(authorization_status IN ('not_authorized', 'authorized', 'expired', 'revoked', 'failed')),
                authorized_at TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (library_id) REFERENCES libraries(id) ON DELETE CASCADE
            )
        """)

        # Catalog
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS categories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL UNIQUE,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                description TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS book_categories (
                book_id INTEGER NOT NULL,
                category_id INTEGER NOT NULL,
                PRIMARY KEY (book_id, category_id),
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
                FOREIGN KEY (category_id) REFERENCES categories(id) ON DELETE CASCADE
            )
        """)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS copies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                number INTEGER NOT NULL,
                edition TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'available'
                    CHECK(status IN ('available', 'borrowed', 'lost')),
                acquisition_date TEXT,
                condition TEXT,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (book_id, number),
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
            )
        """)

        # Membership
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS clients (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                full_name TEXT NOT NULL,
                cpf TEXT NOT NULL UNIQUE,
                phone TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                password_digest TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # Circulation
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                copy_id INTEGER NOT NULL,
                client_id INTEGER NOT NULL,
                user_id INTEGER,
                loan_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'ongoing' CHECK(status IN ('ongoing', 'returned')),
                renewals_count INTEGER NOT NULL DEFAULT 0 CHECK(renewals_count >= 0),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK(due_date >= loan_date),
                FOREIGN KEY (copy_id) REFERENCES copies(id),
                FOREIGN KEY (client_id) REFERENCES clients(id),
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE SET NULL
            )
        """)
        # At most one ongoing loan per copy, whatever the application does.
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_one_ongoing_per_copy
            ON loans(copy_id) WHERE status = 'ongoing'
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_client_id ON loans(client_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_status_due_date ON loans(status, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_copies_book_id ON copies(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_categories_category_id ON book_categories(category_id)")

        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
    logger.debug(f"Database ready at {db_file or DATABASE_FILE}")
