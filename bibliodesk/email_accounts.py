"""Lifecycle of a library's Gmail credential.

``authorization_status`` moves as follows:

    not_authorized --callback ok--> authorized --refresh fails--> expired
    expired --re-authorize or refresh ok--> authorized
    any --revoke--> revoked
    any --exchange error--> failed

Only ``authorized`` and ``expired`` accounts may send; an expired access
token is refreshed once before the send, and a token the provider rejects
is refreshed once and the send retried once.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from bibliodesk.errors import ConflictError, UpstreamError, ValidationError
from bibliodesk.policies import AuthorizationStatus, EmailAccount, PolicyStore
from bibliodesk.services.gmail_email_service import GmailAuthorizationError, GmailEmailService
from bibliodesk.services.gmail_oauth_service import (
    GmailOAuthService,
    TokenGrant,
    is_token_expired,
    valid_credentials,
)

logger = logging.getLogger(__name__)

SENDABLE_STATUSES = (AuthorizationStatus.AUTHORIZED, AuthorizationStatus.EXPIRED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EmailAccounts:
    def __init__(self, policies: PolicyStore, oauth: GmailOAuthService, mailer: GmailEmailService) -> None:
        self.policies = policies
        self.oauth = oauth
        self.mailer = mailer

    # ------------------------- Authorization ------------------------- #
    def start_authorization(self, library_id: int) -> str:
        account = self.policies.require_email_account(library_id)
        url = self.oauth.authorization_url(account)
        logger.info(f"Authorization URL issued for library {library_id}")
        return url

    def complete_authorization(
        self, library_id: int, code: Optional[str], state: Optional[str], now: Optional[datetime] = None
    ) -> EmailAccount:
        if not code:
            raise ValidationError("Código de autorização ausente", fields={"code": ["é obrigatório"]})
        state_data = self.oauth.parse_state(state)
        if str(state_data["library_id"]) != str(library_id):
            raise ValidationError("Parâmetro state não corresponde à biblioteca", fields={"state": ["não é válido"]})

        account = self.policies.require_email_account(library_id)
        now = now or _utcnow()
        try:
            grant = self.oauth.exchange_code(code, now=now)
        except UpstreamError:
            account.authorization_status = AuthorizationStatus.FAILED
            self.policies.save_email_account(account)
            raise

        self._apply_grant(account, grant)
        account.authorized_at = now
        return self.policies.save_email_account(account)

    def authorization_status(self, library_id: int, now: Optional[datetime] = None) -> dict:
        account = self.policies.require_email_account(library_id)
        now = now or _utcnow()
        if account.authorization_status == AuthorizationStatus.REVOKED or not valid_credentials(account, now):
            status = "not_authorized"
        elif is_token_expired(account, now):
            status = "expired_but_renewable"
        else:
            status = "authorized"
        return {
            "status": status,
            "authorization_status": account.authorization_status.value,
            "email": account.gmail_user_email,
            "authorized_at": account.authorized_at.isoformat() if account.authorized_at else None,
            "expires_at": account.token_expires_at.isoformat() if account.token_expires_at else None,
            "needs_reauthorization": status == "not_authorized",
        }

    def refresh(self, library_id: int, now: Optional[datetime] = None) -> EmailAccount:
        account = self.policies.require_email_account(library_id)
        return self._refresh(account, now)

    def revoke(self, library_id: int) -> EmailAccount:
        """Revoke remotely when possible and always clear the local credentials."""
        account = self.policies.require_email_account(library_id)
        self.oauth.revoke(account)
        account.gmail_oauth_token = None
        account.gmail_refresh_token = None
        account.token_expires_at = None
        account.authorization_status = AuthorizationStatus.REVOKED
        return self.policies.save_email_account(account)

    # ------------------------- Sending ------------------------- #
    def send_email(
        self, library_id: int, to: str, subject: str, body: str, now: Optional[datetime] = None
    ) -> str:
        account = self.policies.require_email_account(library_id)
        if account.authorization_status not in SENDABLE_STATUSES:
            raise ConflictError("Conta de email não autorizada")

        if is_token_expired(account, now):
            account = self._refresh(account, now)

        try:
            return self.mailer.send(account.gmail_oauth_token, account.gmail_user_email, to, subject, body)
        except GmailAuthorizationError:
            logger.info(f"Access token rejected for library {library_id}; refreshing and retrying once")
            account = self._refresh(account, now)
            return self.mailer.send(account.gmail_oauth_token, account.gmail_user_email, to, subject, body)

    def send_default(self, to: str, subject: str, body: str) -> str:
        """Send through the lowest-id library's account."""
        library = self.policies.default_library()
        if library is None or self.policies.get_email_account(library.id) is None:
            raise ConflictError("Conta de email não configurada")
        return self.send_email(library.id, to, subject, body)

    def send_test_email(self, library_id: int, to: Optional[str] = None) -> str:
        account = self.policies.require_email_account(library_id)
        recipient = to or account.gmail_user_email
        return self.send_email(
            library_id,
            recipient,
            "Email de teste",
            "<p>Este é um email de teste enviado pela biblioteca.</p>"
            "<p>Se você recebeu esta mensagem, a integração com o Gmail está funcionando.</p>",
        )

    # ------------------------- Helpers ------------------------- #
    def _refresh(self, account: EmailAccount, now: Optional[datetime]) -> EmailAccount:
        try:
            grant = self.oauth.refresh_access_token(account, now=now)
        except UpstreamError:
            account.authorization_status = AuthorizationStatus.EXPIRED
            self.policies.save_email_account(account)
            raise
        self._apply_grant(account, grant)
        return self.policies.save_email_account(account)

    @staticmethod
    def _apply_grant(account: EmailAccount, grant: TokenGrant) -> None:
        account.gmail_oauth_token = grant.access_token
        account.token_expires_at = grant.expires_at
        # Google omits the refresh token on refresh and on repeat consent.
        if grant.refresh_token:
            account.gmail_refresh_token = grant.refresh_token
        account.authorization_status = AuthorizationStatus.AUTHORIZED
