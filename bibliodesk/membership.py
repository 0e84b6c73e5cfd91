from __future__ import annotations

import logging
import secrets
import sqlite3
import string
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from bibliodesk.database import get_db_connection, transaction
from bibliodesk.errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from bibliodesk.security import MAX_PASSWORD_BYTES, hash_password, verify_password
from bibliodesk.validators import CPFValidator, EmailValidator, TextValidator

logger = logging.getLogger(__name__)

GENERATED_PASSWORD_LENGTH = 6
MIN_PASSWORD_LENGTH = 6


def generate_password(length: int = GENERATED_PASSWORD_LENGTH) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def password_errors(password: str) -> List[str]:
    errors = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"deve ter pelo menos {MIN_PASSWORD_LENGTH} caracteres")
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        errors.append(f"deve ter no máximo {MAX_PASSWORD_BYTES} bytes")
    return errors


@dataclass
class Client:
    """A library member (reader)."""
    id: int
    full_name: str
    cpf: str
    phone: str
    email: str
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fullName": self.full_name,
            "cpf": self.cpf,
            "phone": self.phone,
            "email": self.email,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row) -> "Client":
        return Client(
            id=row["id"],
            full_name=row["full_name"],
            cpf=row["cpf"],
            phone=row["phone"],
            email=row["email"],
            created_at=row["created_at"],
        )


class Membership:
    """Client records, credentials and lookups."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def list_clients(self, search: Optional[str] = None) -> List[Client]:
        conn = get_db_connection(self.db_file)
        try:
            if search and search.strip():
                like = f"%{search.strip()}%"
                rows = conn.execute(
                    """
                    SELECT * FROM clients
                    WHERE full_name LIKE ? OR cpf LIKE ? OR email LIKE ?
                    ORDER BY full_name
                    """,
                    (like, like, like),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM clients ORDER BY full_name").fetchall()
            return [Client.from_row(row) for row in rows]
        finally:
            conn.close()

    def get_client(self, client_id: int) -> Client:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("Cliente não encontrado.")
        return Client.from_row(row)

    def create_client(
        self,
        full_name: str,
        cpf: str,
        phone: str,
        email: str,
        password: Optional[str] = None,
    ) -> Tuple[Client, Optional[str]]:
        """Register a client.

        When no password is supplied one is generated; it is returned as the
        second element so it can be shown once and mailed to the client.
        """
        generated = None
        if not password:
            generated = generate_password()
            password = generated

        fields = self._validate(full_name=full_name, cpf=cpf, phone=phone, email=email, password=password)
        if fields:
            raise ValidationError("Dados inválidos", fields=fields)

        cpf = CPFValidator.normalize_cpf(cpf)
        email = EmailValidator.normalize_email(email)
        digest = hash_password(password)

        with transaction(self.db_file) as conn:
            self._check_unique(conn, cpf=cpf, email=email)
            cursor = conn.execute(
                "INSERT INTO clients (full_name, cpf, phone, email, password_digest) VALUES (?, ?, ?, ?, ?)",
                (full_name.strip(), cpf, phone.strip(), email, digest),
            )
            client_id = cursor.lastrowid
        logger.info(f"Client {client_id} registered (generated password: {generated is not None})")
        return self.get_client(client_id), generated

    def update_client(
        self,
        client_id: int,
        *,
        full_name: Optional[str] = None,
        cpf: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> Client:
        fields = self._validate(full_name=full_name, cpf=cpf, phone=phone, email=email, password=password, partial=True)
        if fields:
            raise ValidationError("Dados inválidos", fields=fields)

        update_fields = {}
        if full_name is not None:
            update_fields["full_name"] = full_name.strip()
        if cpf is not None:
            update_fields["cpf"] = CPFValidator.normalize_cpf(cpf)
        if phone is not None:
            update_fields["phone"] = phone.strip()
        if email is not None:
            update_fields["email"] = EmailValidator.normalize_email(email)
        if password:
            update_fields["password_digest"] = hash_password(password)

        with transaction(self.db_file) as conn:
            if not conn.execute("SELECT 1 FROM clients WHERE id = ?", (client_id,)).fetchone():
                raise NotFoundError("Cliente não encontrado.")
            self._check_unique(conn, cpf=update_fields.get("cpf"), email=update_fields.get("email"), exclude_id=client_id)
            if update_fields:
                set_clause = ", ".join(f"{field} = ?" for field in update_fields)
                conn.execute(
                    f"UPDATE clients SET {set_clause} WHERE id = ?",
                    list(update_fields.values()) + [client_id],
                )
        return self.get_client(client_id)

    def delete_client(self, client_id: int) -> None:
        """Remove a client and their closed loans; refused while a loan is ongoing."""
        with transaction(self.db_file) as conn:
            if not conn.execute("SELECT 1 FROM clients WHERE id = ?", (client_id,)).fetchone():
                raise NotFoundError("Cliente não encontrado.")
            ongoing = conn.execute(
                "SELECT COUNT(*) FROM loans WHERE client_id = ? AND status = 'ongoing'", (client_id,)
            ).fetchone()[0]
            if ongoing:
                raise ConflictError("Cliente possui empréstimos em andamento e não pode ser removido.")
            conn.execute("DELETE FROM loans WHERE client_id = ?", (client_id,))
            conn.execute("DELETE FROM clients WHERE id = ?", (client_id,))
        logger.info(f"Client {client_id} removed")

    # ------------------------- Credentials ------------------------- #
    def authenticate(self, login: str, password: str) -> Client:
        """Log a client in by CPF or email."""
        login = (login or "").strip()
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT * FROM clients WHERE cpf = ? OR email = ?",
                (CPFValidator.normalize_cpf(login) or login, EmailValidator.normalize_email(login)),
            ).fetchone()
        finally:
            conn.close()
        if not row or not verify_password(password, row["password_digest"]):
            raise AuthenticationError("Login ou senha inválidos")
        return Client.from_row(row)

    def check_password(self, client_id: int, password: str) -> bool:
        """Step-up check used before a loan is confirmed for the client."""
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT password_digest FROM clients WHERE id = ?", (client_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            raise NotFoundError("Cliente não encontrado.")
        return verify_password(password, row["password_digest"])

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _validate(
        *,
        full_name: Optional[str],
        cpf: Optional[str],
        phone: Optional[str],
        email: Optional[str],
        password: Optional[str],
        partial: bool = False,
    ) -> Dict[str, List[str]]:
        fields: Dict[str, List[str]] = {}
        if not (partial and full_name is None) and not TextValidator.validate_name(full_name):
            fields["fullName"] = ["não pode ficar em branco"]
        if not (partial and cpf is None) and not CPFValidator.is_valid_cpf(cpf):
            fields["cpf"] = ["não é um CPF válido"]
        if not (partial and phone is None) and not TextValidator.validate_phone(phone):
            fields["phone"] = ["não é um telefone válido"]
        if not (partial and email is None) and not EmailValidator.is_valid_email(email):
            fields["email"] = ["não é um email válido"]
        if password:
            errors = password_errors(password)
            if errors:
                fields["password"] = errors
        return fields

    @staticmethod
    def _check_unique(
        conn: sqlite3.Connection,
        *,
        cpf: Optional[str],
        email: Optional[str],
        exclude_id: Optional[int] = None,
    ) -> None:
        fields: Dict[str, List[str]] = {}
        for column, value in (("cpf", cpf), ("email", email)):
            if value is None:
                continue
            row = conn.execute(
                f"SELECT id FROM clients WHERE {column} = ? AND id != ?", (value, exclude_id or 0)
            ).fetchone()
            if row:
                fields[column] = ["já está em uso"]
        if fields:
            raise ValidationError("Dados inválidos", fields=fields)
