"""Per-library configuration: loan, fine and notification policies and the Gmail account row."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from bibliodesk.config import settings
from bibliodesk.database import get_db_connection
from bibliodesk.errors import NotFoundError, ValidationError
from bibliodesk.validators import EmailValidator, TextValidator

logger = logging.getLogger(__name__)


class AuthorizationStatus(str, Enum):
    NOT_AUTHORIZED = "not_authorized"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"
    REVOKED = "revoked"
    FAILED = "failed"


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Library:
    id: int
    name: str
    phone: Optional[str] = None
    address: Optional[str] = None

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "phone": self.phone, "address": self.address}


@dataclass
class LoanPolicy:
    library_id: Optional[int]
    loan_limit: int
    loan_period_days: int
    renewals_allowed: int

    def to_dict(self) -> dict:
        return {
            "library_id": self.library_id,
            "loan_limit": self.loan_limit,
            "loan_period_days": self.loan_period_days,
            "renewals_allowed": self.renewals_allowed,
        }


@dataclass
class FinePolicy:
    library_id: int
    daily_fine: float
    max_fine: float

    def to_dict(self) -> dict:
        return {"library_id": self.library_id, "daily_fine": self.daily_fine, "max_fine": self.max_fine}


@dataclass
class NotificationSetting:
    library_id: int
    notify_email: bool
    notify_sms: bool
    return_reminder_days: int

    def to_dict(self) -> dict:
        return {
            "library_id": self.library_id,
            "notify_email": self.notify_email,
            "notify_sms": self.notify_sms,
            "return_reminder_days": self.return_reminder_days,
        }


@dataclass
class EmailAccount:
    """OAuth credential set for one library's Gmail sender.

    The access token and ``token_expires_at`` only make sense together; the
    refresh token can outlive both and is what silent renewal relies on.
    """
    id: int
    library_id: int
    gmail_user_email: str
    gmail_oauth_token: Optional[str] = None
    gmail_refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    authorization_status: AuthorizationStatus = AuthorizationStatus.NOT_AUTHORIZED
    authorized_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        # Tokens stay server-side.
        return {
            "id": self.id,
            "library_id": self.library_id,
            "gmail_user_email": self.gmail_user_email,
            "authorization_status": self.authorization_status.value,
            "authorized_at": _iso(self.authorized_at),
            "token_expires_at": _iso(self.token_expires_at),
            "has_access_token": bool(self.gmail_oauth_token),
            "has_refresh_token": bool(self.gmail_refresh_token),
        }

    @staticmethod
    def from_row(row) -> "EmailAccount":
        return EmailAccount(
            id=row["id"],
            library_id=row["library_id"],
            gmail_user_email=row["gmail_user_email"],
            gmail_oauth_token=row["gmail_oauth_token"],
            gmail_refresh_token=row["gmail_refresh_token"],
            token_expires_at=_parse_ts(row["token_expires_at"]),
            authorization_status=AuthorizationStatus(row["authorization_status"]),
            authorized_at=_parse_ts(row["authorized_at"]),
        )


def _require_non_negative_int(fields: Dict[str, List[str]], name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        fields.setdefault(name, []).append("deve ser um número inteiro maior ou igual a 0")


def _require_non_negative_number(fields: Dict[str, List[str]], name: str, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        fields.setdefault(name, []).append("deve ser maior ou igual a 0")


def _raise_if_invalid(fields: Dict[str, List[str]]) -> None:
    if fields:
        raise ValidationError("Dados inválidos", fields=fields)


class PolicyStore:
    """Reads and writes the per-library singleton configuration rows."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    # ------------------------- Libraries ------------------------- #
    def create_library(self, name: str, phone: Optional[str] = None, address: Optional[str] = None) -> Library:
        if TextValidator.is_blank(name):
            raise ValidationError("Dados inválidos", fields={"name": ["não pode ficar em branco"]})
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                "INSERT INTO libraries (name, phone, address) VALUES (?, ?, ?)",
                (name.strip(), phone, address),
            )
            conn.commit()
            return Library(id=cursor.lastrowid, name=name.strip(), phone=phone, address=address)
        finally:
            conn.close()

    def get_library(self, library_id: int) -> Library:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT id, name, phone, address FROM libraries WHERE id = ?", (library_id,)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("Biblioteca não encontrada")
        return Library(**dict(row))

    def list_libraries(self) -> List[Library]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute("SELECT id, name, phone, address FROM libraries ORDER BY id").fetchall()
            return [Library(**dict(row)) for row in rows]
        finally:
            conn.close()

    def default_library(self) -> Optional[Library]:
        """The lowest-id library; single-library deployments only ever have this one."""
        libraries = self.list_libraries()
        return libraries[0] if libraries else None

    # ------------------------- Loan policy ------------------------- #
    def get_loan_policy(self, library_id: int) -> Optional[LoanPolicy]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT library_id, loan_limit, loan_period_days, renewals_allowed FROM loan_policies WHERE library_id = ?",
                (library_id,),
            ).fetchone()
            return LoanPolicy(**dict(row)) if row else None
        finally:
            conn.close()

    def put_loan_policy(self, library_id: int, loan_limit: int, loan_period_days: int, renewals_allowed: int) -> LoanPolicy:
        fields: Dict[str, List[str]] = {}
        _require_non_negative_int(fields, "loan_limit", loan_limit)
        _require_non_negative_int(fields, "loan_period_days", loan_period_days)
        _require_non_negative_int(fields, "renewals_allowed", renewals_allowed)
        _raise_if_invalid(fields)
        self.get_library(library_id)

        conn = get_db_connection(self.db_file)
        try:
            conn.execute("""
                INSERT INTO loan_policies (library_id, loan_limit, loan_period_days, renewals_allowed)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(library_id) DO UPDATE SET
                    loan_limit = excluded.loan_limit,
                    loan_period_days = excluded.loan_period_days,
                    renewals_allowed = excluded.renewals_allowed,
                    updated_at = CURRENT_TIMESTAMP
            """, (library_id, loan_limit, loan_period_days, renewals_allowed))
            conn.commit()
        finally:
            conn.close()
        return LoanPolicy(library_id, loan_limit, loan_period_days, renewals_allowed)

    def delete_loan_policy(self, library_id: int) -> bool:
        return self._delete_singleton("loan_policies", library_id)

    def effective_loan_policy(self, library_id: Optional[int] = None) -> LoanPolicy:
        """The policy loans are issued under, falling back to built-in defaults."""
        if library_id is None:
            library = self.default_library()
            library_id = library.id if library else None
        policy = self.get_loan_policy(library_id) if library_id is not None else None
        if policy:
            return policy
        return LoanPolicy(
            library_id=library_id,
            loan_limit=settings.default_loan_limit,
            loan_period_days=settings.default_loan_period_days,
            renewals_allowed=settings.default_renewals_allowed,
        )

    # ------------------------- Fine policy ------------------------- #
    def get_fine_policy(self, library_id: int) -> Optional[FinePolicy]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT library_id, daily_fine, max_fine FROM fine_policies WHERE library_id = ?",
                (library_id,),
            ).fetchone()
            return FinePolicy(**dict(row)) if row else None
        finally:
            conn.close()

    def put_fine_policy(self, library_id: int, daily_fine: float, max_fine: float) -> FinePolicy:
        fields: Dict[str, List[str]] = {}
        _require_non_negative_number(fields, "daily_fine", daily_fine)
        _require_non_negative_number(fields, "max_fine", max_fine)
        _raise_if_invalid(fields)
        self.get_library(library_id)

        conn = get_db_connection(self.db_file)
        try:
            conn.execute("""
                INSERT INTO fine_policies (library_id, daily_fine, max_fine)
                VALUES (?, ?, ?)
                ON CONFLICT(library_id) DO UPDATE SET
                    daily_fine = excluded.daily_fine,
                    max_fine = excluded.max_fine,
                    updated_at = CURRENT_TIMESTAMP
            """, (library_id, float(daily_fine), float(max_fine)))
            conn.commit()
        finally:
            conn.close()
        return FinePolicy(library_id, float(daily_fine), float(max_fine))

    def delete_fine_policy(self, library_id: int) -> bool:
        return self._delete_singleton("fine_policies", library_id)

    def default_fine_policy(self) -> Optional[FinePolicy]:
        library = self.default_library()
        return self.get_fine_policy(library.id) if library else None

    # ------------------------- Notification settings ------------------------- #
    def get_notification_setting(self, library_id: int) -> Optional[NotificationSetting]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                """
                SELECT library_id, notify_email, notify_sms, return_reminder_days
                FROM notification_settings WHERE library_id = ?
                """,
                (library_id,),
            ).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        return NotificationSetting(
            library_id=row["library_id"],
            notify_email=bool(row["notify_email"]),
            notify_sms=bool(row["notify_sms"]),
            return_reminder_days=row["return_reminder_days"],
        )

    def put_notification_setting(
        self, library_id: int, notify_email: bool, notify_sms: bool, return_reminder_days: int
    ) -> NotificationSetting:
        fields: Dict[str, List[str]] = {}
        _require_non_negative_int(fields, "return_reminder_days", return_reminder_days)
        _raise_if_invalid(fields)
        self.get_library(library_id)

        conn = get_db_connection(self.db_file)
        try:
            conn.execute("""
                INSERT INTO notification_settings (library_id, notify_email, notify_sms, return_reminder_days)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(library_id) DO UPDATE SET
                    notify_email = excluded.notify_email,
                    notify_sms = excluded.notify_sms,
                    return_reminder_days = excluded.return_reminder_days,
                    updated_at = CURRENT_TIMESTAMP
            """, (library_id, bool(notify_email), bool(notify_sms), return_reminder_days))
            conn.commit()
        finally:
            conn.close()
        return NotificationSetting(library_id, bool(notify_email), bool(notify_sms), return_reminder_days)

    def delete_notification_setting(self, library_id: int) -> bool:
        return self._delete_singleton("notification_settings", library_id)

    # ------------------------- Email account ------------------------- #
    def get_email_account(self, library_id: int) -> Optional[EmailAccount]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM email_accounts WHERE library_id = ?", (library_id,)).fetchone()
            return EmailAccount.from_row(row) if row else None
        finally:
            conn.close()

    def require_email_account(self, library_id: int) -> EmailAccount:
        self.get_library(library_id)
        account = self.get_email_account(library_id)
        if not account:
            raise NotFoundError("Conta de email não encontrada")
        return account

    def put_email_account(self, library_id: int, gmail_user_email: str) -> EmailAccount:
        """Create the account row or change its address.

        Pointing the account at a different mailbox drops the stored tokens,
        which were granted for the previous one.
        """
        email = EmailValidator.normalize_email(gmail_user_email)
        if not EmailValidator.is_valid_email(email):
            raise ValidationError("Dados inválidos", fields={"gmail_user_email": ["não é um email válido"]})
        self.get_library(library_id)

        conn = get_db_connection(self.db_file)
        try:
            conn.execute("""
                INSERT INTO email_accounts (library_id, gmail_user_email)
                VALUES (?, ?)
                ON CONFLICT(library_id) DO UPDATE SET
                    gmail_oauth_token = CASE WHEN gmail_user_email = excluded.gmail_user_email
                                             THEN gmail_oauth_token ELSE NULL END,
                    gmail_refresh_token = CASE WHEN gmail_user_email = excluded.gmail_user_email
                                               THEN gmail_refresh_token ELSE NULL END,
                    token_expires_at = CASE WHEN gmail_user_email = excluded.gmail_user_email
                                            THEN token_expires_at ELSE NULL END,
                    authorization_status = CASE WHEN gmail_user_email = excluded.gmail_user_email
                                                THEN authorization_status ELSE 'not_authorized' END,
                    gmail_user_email = excluded.gmail_user_email,
                    updated_at = CURRENT_TIMESTAMP
            """, (library_id, email))
            conn.commit()
        finally:
            conn.close()
        return self.get_email_account(library_id)

    def save_email_account(self, account: EmailAccount) -> EmailAccount:
        """Persist the credential fields and status of ``account``."""
        conn = get_db_connection(self.db_file)
        try:
            conn.execute("""
                UPDATE email_accounts
                SET gmail_oauth_token = ?, gmail_refresh_token = ?, token_expires_at = ?,
                    authorization_status = ?, authorized_at = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, (
                account.gmail_oauth_token,
                account.gmail_refresh_token,
                _iso(account.token_expires_at),
                account.authorization_status.value,
                _iso(account.authorized_at),
                account.id,
            ))
            conn.commit()
        finally:
            conn.close()
        logger.info(
            f"Email account {account.id} saved: library={account.library_id} "
            f"status={account.authorization_status.value}"
        )
        return account

    def delete_email_account(self, library_id: int) -> bool:
        return self._delete_singleton("email_accounts", library_id)

    def default_email_account(self) -> Optional[EmailAccount]:
        library = self.default_library()
        return self.get_email_account(library.id) if library else None

    # ------------------------- Helpers ------------------------- #
    def _delete_singleton(self, table: str, library_id: int) -> bool:
        self.get_library(library_id)
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(f"DELETE FROM {table} WHERE library_id = ?", (library_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()
