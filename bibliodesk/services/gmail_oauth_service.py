"""OAuth2 flow against Google for the Gmail send scope.

The service is stateless: it builds URLs, talks to the token endpoints and
returns ``TokenGrant`` values. Persisting them, and the authorization status
bookkeeping, is left to ``bibliodesk.email_accounts``.
"""

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from bibliodesk.config import OAuthConfig
from bibliodesk.errors import ConflictError, UpstreamError, ValidationError
from bibliodesk.policies import EmailAccount
from bibliodesk.services.http_client import get_http_client

logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    """Tokens returned by the provider's token endpoint."""
    access_token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_token_expired(account: EmailAccount, now: Optional[datetime] = None) -> bool:
    """An access token without a known expiry is treated as expired."""
    if not account.gmail_oauth_token or account.token_expires_at is None:
        return True
    return account.token_expires_at <= (now or _utcnow())


def valid_credentials(account: EmailAccount, now: Optional[datetime] = None) -> bool:
    """Usable now, or renewable without user interaction. No network call."""
    has_live_token = bool(account.gmail_oauth_token) and not is_token_expired(account, now)
    return has_live_token or bool(account.gmail_refresh_token)


def _provider_error(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        return str(payload.get("error_description") or payload.get("error") or payload)
    return str(payload)


class GmailOAuthService:
    """Service for the Google OAuth2 authorization-code and refresh-token grants"""

    def __init__(self, config: OAuthConfig, client: Optional[httpx.Client] = None):
        self.config = config
        self._client = client

    @property
    def client(self) -> httpx.Client:
        return self._client or get_http_client()

    # ------------------------- Authorization URL ------------------------- #
    def authorization_url(self, account: EmailAccount, nonce: Optional[str] = None) -> str:
        if not self.config.is_complete:
            raise ValidationError("Credenciais OAuth do Google não configuradas")
        state = json.dumps({"library_id": account.library_id, "nonce": nonce or secrets.token_urlsafe(16)})
        params = {
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "response_type": "code",
            "scope": self.config.scope,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
            "login_hint": account.gmail_user_email,
        }
        return f"{self.config.auth_url}?{urlencode(params)}"

    @staticmethod
    def parse_state(state: Optional[str]) -> Dict[str, Any]:
        """Decode the state echoed back by the provider."""
        if not state:
            raise ValidationError("Parâmetro state ausente", fields={"state": ["é obrigatório"]})
        try:
            data = json.loads(state)
        except ValueError as exc:
            raise ValidationError("Parâmetro state inválido", fields={"state": ["não é válido"]}) from exc
        if not isinstance(data, dict) or "library_id" not in data:
            raise ValidationError("Parâmetro state inválido", fields={"state": ["não é válido"]})
        return data

    # ------------------------- Token endpoint ------------------------- #
    def _token_request(self, data: Dict[str, str], action: str) -> Dict[str, Any]:
        try:
            response = self.client.post(self.config.token_url, data=data)
        except httpx.HTTPError as exc:
            logger.error(f"Google token endpoint unreachable during {action}: {exc}")
            raise UpstreamError("Falha ao comunicar com o Google", detail=str(exc)) from exc

        if response.status_code != 200:
            detail = _provider_error(response)
            logger.error(f"Google token endpoint returned {response.status_code} during {action}: {detail}")
            raise UpstreamError("Falha ao obter token do Google", detail=detail, status_code=response.status_code)
        return response.json()

    def exchange_code(self, code: str, now: Optional[datetime] = None) -> TokenGrant:
        if not code:
            raise ValidationError("Código de autorização ausente", fields={"code": ["é obrigatório"]})
        payload = self._token_request(
            {
                "code": code,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "redirect_uri": self.config.redirect_uri,
                "grant_type": "authorization_code",
            },
            "code exchange",
        )
        logger.info("Authorization code exchanged for tokens")
        return self._grant_from_payload(payload, now)

    def refresh_access_token(self, account: EmailAccount, now: Optional[datetime] = None) -> TokenGrant:
        if not account.gmail_refresh_token:
            raise ConflictError("Conta sem refresh token: é necessário autorizar novamente")
        payload = self._token_request(
            {
                "refresh_token": account.gmail_refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "grant_type": "refresh_token",
            },
            "token refresh",
        )
        logger.info(f"Access token refreshed for library {account.library_id}")
        return self._grant_from_payload(payload, now)

    @staticmethod
    def _grant_from_payload(payload: Dict[str, Any], now: Optional[datetime]) -> TokenGrant:
        access_token = payload.get("access_token")
        if not access_token:
            raise UpstreamError("Resposta do Google sem access_token", detail=str(list(payload)))
        expires_in = int(payload.get("expires_in", 3600))
        return TokenGrant(
            access_token=access_token,
            expires_at=(now or _utcnow()) + timedelta(seconds=expires_in),
            refresh_token=payload.get("refresh_token"),
            scope=payload.get("scope"),
        )

    # ------------------------- Revocation ------------------------- #
    def revoke(self, account: EmailAccount) -> bool:
        """Ask the provider to revoke the grant. Best effort: never raises."""
        token = account.gmail_refresh_token or account.gmail_oauth_token
        if not token:
            return False
        try:
            response = self.client.post(self.config.revoke_url, data={"token": token})
        except httpx.HTTPError as exc:
            logger.warning(f"Remote revoke failed for library {account.library_id}: {exc}")
            return False
        if response.status_code != 200:
            logger.warning(
                f"Remote revoke for library {account.library_id} returned {response.status_code}: "
                f"{_provider_error(response)}"
            )
            return False
        logger.info(f"Remote grant revoked for library {account.library_id}")
        return True
