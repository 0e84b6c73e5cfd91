import hashlib
import logging
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from bibliodesk.config import settings
from bibliodesk.database import get_db_connection
from bibliodesk.errors import AuthenticationError, NotFoundError, ValidationError
from bibliodesk.membership import password_errors
from bibliodesk.notifier import Notifier, send_best_effort
from bibliodesk.security import Role, hash_password, verify_password
from bibliodesk.validators import EmailValidator, TextValidator

logger = logging.getLogger(__name__)

FORGOT_PASSWORD_MESSAGE = "Se o email estiver cadastrado, você receberá as instruções de redefinição."


def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


@dataclass
class User:
    """A staff account (administrator or librarian)."""
    id: int
    name: str
    email: str
    role: Role
    password_changed: bool = False
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "password_changed": self.password_changed,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row) -> "User":
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            role=Role(row["role"]),
            password_changed=bool(row["password_changed"]),
            created_at=row["created_at"],
        )


class Users:
    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def create_user(self, name: str, email: str, password: str, role: Role = Role.LIBRARIAN) -> User:
        fields = {}
        if not TextValidator.validate_name(name):
            fields["name"] = ["não pode ficar em branco"]
        if not EmailValidator.is_valid_email(email):
            fields["email"] = ["não é um email válido"]
        errors = password_errors(password or "")
        if errors:
            fields["password"] = errors
        if role not in (Role.ADMINISTRATOR, Role.LIBRARIAN):
            fields["role"] = ["deve ser administrator ou librarian"]
        if fields:
            raise ValidationError("Dados inválidos", fields=fields)

        email = EmailValidator.normalize_email(email)
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                "INSERT INTO users (name, email, password_digest, role) VALUES (?, ?, ?, ?)",
                (name.strip(), email, hash_password(password), role.value),
            )
            conn.commit()
            user_id = cursor.lastrowid
        except sqlite3.IntegrityError as exc:
            raise ValidationError("Dados inválidos", fields={"email": ["já está em uso"]}) from exc
        finally:
            conn.close()
        logger.info(f"User {user_id} created with role {role.value}")
        return self.get_user(user_id)

    def get_user(self, user_id: int) -> User:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("Usuário não encontrado")
        return User.from_row(row)

    def list_users(self) -> List[User]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute("SELECT * FROM users ORDER BY name").fetchall()
            return [User.from_row(row) for row in rows]
        finally:
            conn.close()

    def authenticate(self, email: str, password: str) -> User:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ?", (EmailValidator.normalize_email(email or ""),)
            ).fetchone()
        finally:
            conn.close()
        if not row or not verify_password(password, row["password_digest"]):
            raise AuthenticationError("Email ou senha inválidos")
        return User.from_row(row)

    # ------------------------- Password reset ------------------------- #
    def forgot(self, email: str, notifier: Optional[Notifier] = None) -> Optional[str]:
        """Issue a reset token for ``email`` and mail it.

        Returns the raw token (None when no user matches); callers facing the
        public answer with FORGOT_PASSWORD_MESSAGE either way.
        """
        email = EmailValidator.normalize_email(email or "")
        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=settings.password_reset_ttl_minutes)

        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                "UPDATE users SET reset_token_digest = ?, reset_token_expires_at = ? WHERE email = ?",
                (_token_digest(token), expires_at.isoformat(), email),
            )
            conn.commit()
            found = cursor.rowcount > 0
        finally:
            conn.close()

        if not found:
            logger.info("Password reset requested for an unknown email")
            return None

        if notifier is not None:
            send_best_effort(
                notifier,
                email,
                "Redefinição de senha",
                f"<p>Use o código abaixo para redefinir sua senha:</p><p><b>{token}</b></p>"
                f"<p>O código expira em {settings.password_reset_ttl_minutes} minutos.</p>",
            )
        return token

    def reset(self, token: str, new_password: str) -> User:
        errors = password_errors(new_password or "")
        if errors:
            raise ValidationError("Dados inválidos", fields={"password": errors})
        if not token:
            raise ValidationError("Token inválido ou expirado")

        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT id, reset_token_expires_at FROM users WHERE reset_token_digest = ?",
                (_token_digest(token),),
            ).fetchone()
            if not row or not row["reset_token_expires_at"]:
                raise ValidationError("Token inválido ou expirado")
            if datetime.fromisoformat(row["reset_token_expires_at"]) < datetime.now(timezone.utc):
                raise ValidationError("Token inválido ou expirado")
            conn.execute(
                """
                UPDATE users
                SET password_digest = ?, password_changed = 1,
                    reset_token_digest = NULL, reset_token_expires_at = NULL
                WHERE id = ?
                """,
                (hash_password(new_password), row["id"]),
            )
            conn.commit()
            user_id = row["id"]
        finally:
            conn.close()
        logger.info(f"Password reset completed for user {user_id}")
        return self.get_user(user_id)
