"""Identity and access: password hashing, JWT tokens and the capability matrix."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

import bcrypt
import jwt

from bibliodesk.config import settings
from bibliodesk.errors import AuthenticationError, AuthorizationError

# bcrypt ignores everything past 72 bytes; longer inputs are rejected upstream.
MAX_PASSWORD_BYTES = 72


class Role(str, Enum):
    ADMINISTRATOR = "administrator"
    LIBRARIAN = "librarian"
    MEMBER = "member"


class Action(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"


class Resource(str, Enum):
    BOOK = "book"
    CATEGORY = "category"
    COPY = "copy"
    CLIENT = "client"
    LOAN = "loan"
    OWN_LOANS = "own_loans"
    LIBRARY = "library"
    POLICY = "policy"
    EMAIL_ACCOUNT = "email_account"
    USER = "user"
    DASHBOARD = "dashboard"


@dataclass(frozen=True)
class AuthContext:
    """Who is calling. Built once per request and passed along explicitly."""
    subject_id: int
    role: Role


_STAFF_WRITABLE = {Resource.BOOK, Resource.CATEGORY, Resource.COPY, Resource.CLIENT, Resource.LOAN}

_CAPABILITIES: Dict[Role, Dict[Action, frozenset]] = {
    Role.ADMINISTRATOR: {action: frozenset(Resource) - {Resource.OWN_LOANS} for action in Action},
    Role.LIBRARIAN: {
        Action.READ: frozenset(Resource) - {Resource.USER, Resource.OWN_LOANS},
        Action.WRITE: frozenset(_STAFF_WRITABLE),
        # Deleting a loan is a compensating action reserved to administrators.
        Action.DELETE: frozenset(_STAFF_WRITABLE - {Resource.LOAN}),
    },
    Role.MEMBER: {
        Action.READ: frozenset({Resource.BOOK, Resource.CATEGORY, Resource.OWN_LOANS}),
        Action.WRITE: frozenset(),
        Action.DELETE: frozenset(),
    },
}


def is_allowed(actor: AuthContext, action: Action, resource: Resource) -> bool:
    return resource in _CAPABILITIES[actor.role][action]


def authorize(actor: AuthContext, action: Action, resource: Resource) -> AuthContext:
    """Raise AuthorizationError unless ``actor`` may perform ``action`` on ``resource``."""
    if not is_allowed(actor, action, resource):
        if actor.role == Role.LIBRARIAN:
            raise AuthorizationError("Acesso negado: precisa ser administrador")
        raise AuthorizationError("Acesso negado: precisa ser funcionário")
    return actor


# ------------------------- Passwords ------------------------- #
def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=settings.bcrypt_rounds)).decode("utf-8")


def verify_password(password: Optional[str], digest: Optional[str]) -> bool:
    if not password or not digest:
        return False
    raw = password.encode("utf-8")
    if len(raw) > MAX_PASSWORD_BYTES:
        return False
    return bcrypt.checkpw(raw, digest.encode("utf-8"))


# ------------------------- Tokens ------------------------- #
def _encode(payload: Dict[str, Any], expires_minutes: int) -> str:
    claims = dict(payload)
    claims["exp"] = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def issue_staff_token(user_id: int, role: Role) -> str:
    return _encode({"user_id": user_id, "role": role.value}, settings.jwt_expiration_minutes)


def issue_client_token(client_id: int) -> str:
    return _encode({"client_id": client_id, "type": "client"}, settings.client_jwt_expiration_minutes)


def decode_token(token: Optional[str]) -> Dict[str, Any]:
    """Verify signature and expiry; any failure is an AuthenticationError."""
    if not token:
        raise AuthenticationError("Token ausente")
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError("Token inválido ou expirado") from exc


def bearer_token(header_value: Optional[str]) -> Optional[str]:
    """Extract the token from an ``Authorization: Bearer <jwt>`` header."""
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
