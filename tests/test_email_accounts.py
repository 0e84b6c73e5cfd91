import base64
import json
from datetime import datetime, timedelta, timezone
from email import message_from_bytes
from email.header import decode_header, make_header
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from bibliodesk.config import OAuthConfig
from bibliodesk.email_accounts import EmailAccounts
from bibliodesk.errors import ConflictError, UpstreamError, ValidationError
from bibliodesk.policies import AuthorizationStatus
from bibliodesk.services.gmail_email_service import GMAIL_SEND_URL, GmailAuthorizationError, GmailEmailService
from bibliodesk.services.gmail_oauth_service import GmailOAuthService, valid_credentials

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

OAUTH = OAuthConfig(
    client_id="client-id.apps.googleusercontent.com",
    client_secret="client-secret",
    redirect_uri="http://localhost:3000/auth/google/callback",
)


class FakeGoogle:
    """Scriptable stand-in for Google's token, revoke and Gmail endpoints."""

    def __init__(self):
        self.requests = []
        self.token_responses = []
        self.send_responses = []
        self.revoke_response = httpx.Response(200)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if url == OAUTH.token_url:
            return self.token_responses.pop(0)
        if url == OAUTH.revoke_url:
            if isinstance(self.revoke_response, Exception):
                raise self.revoke_response
            return self.revoke_response
        if url == GMAIL_SEND_URL:
            return self.send_responses.pop(0)
        return httpx.Response(404)

    def form(self, index):
        return {k: v[0] for k, v in parse_qs(self.requests[index].content.decode()).items()}

    def sent_tokens(self):
        return [
            r.headers["Authorization"].split(" ", 1)[1] for r in self.requests if str(r.url) == GMAIL_SEND_URL
        ]


def token_response(access_token="access-1", refresh_token="refresh-1", expires_in=3600):
    payload = {"access_token": access_token, "expires_in": expires_in, "scope": OAUTH.scope, "token_type": "Bearer"}
    if refresh_token:
        payload["refresh_token"] = refresh_token
    return httpx.Response(200, json=payload)


@pytest.fixture
def google():
    return FakeGoogle()


@pytest.fixture
def email_accounts(policies, google):
    client = httpx.Client(transport=httpx.MockTransport(google))
    yield EmailAccounts(policies, GmailOAuthService(OAUTH, client=client), GmailEmailService(client=client))
    client.close()


@pytest.fixture
def account(policies, library):
    return policies.put_email_account(library.id, "biblioteca@gmail.com")


def authorize(policies, account, access="access-0", refresh="refresh-0", expires_at=NOW + timedelta(hours=1)):
    account.gmail_oauth_token = access
    account.gmail_refresh_token = refresh
    account.token_expires_at = expires_at
    account.authorization_status = AuthorizationStatus.AUTHORIZED
    account.authorized_at = NOW - timedelta(days=1)
    return policies.save_email_account(account)


# --- Credential predicate ---
def test_new_account_has_no_valid_credentials(account):
    assert valid_credentials(account, NOW) is False
    assert account.authorization_status == AuthorizationStatus.NOT_AUTHORIZED


def test_valid_credentials_predicate(account):
    account.gmail_oauth_token = "access"
    account.token_expires_at = NOW + timedelta(minutes=5)
    assert valid_credentials(account, NOW) is True

    account.token_expires_at = NOW - timedelta(minutes=5)
    assert valid_credentials(account, NOW) is False

    account.gmail_refresh_token = "refresh"
    assert valid_credentials(account, NOW) is True

    account.gmail_oauth_token = None
    account.token_expires_at = None
    assert valid_credentials(account, NOW) is True


# --- Authorization URL and callback ---
def test_authorization_url_embeds_library_in_state(email_accounts, account, library):
    url = email_accounts.start_authorization(library.id)

    parsed = urlparse(url)
    params = {k: v[0] for k, v in parse_qs(parsed.query).items()}
    assert url.startswith(OAUTH.auth_url)
    assert params["client_id"] == OAUTH.client_id
    assert params["redirect_uri"] == OAUTH.redirect_uri
    assert params["scope"] == "https://www.googleapis.com/auth/gmail.send"
    assert params["access_type"] == "offline"
    assert params["login_hint"] == "biblioteca@gmail.com"
    state = json.loads(params["state"])
    assert state["library_id"] == library.id
    assert state["nonce"]


def test_authorization_url_requires_oauth_credentials(policies, account):
    service = GmailOAuthService(OAuthConfig(client_id="", client_secret="", redirect_uri="http://x"))
    with pytest.raises(ValidationError):
        service.authorization_url(account)


def test_callback_stores_tokens(email_accounts, policies, google, account, library):
    google.token_responses.append(token_response())
    state = json.dumps({"library_id": library.id, "nonce": "n"})

    saved = email_accounts.complete_authorization(library.id, "auth-code", state, now=NOW)

    form = google.form(0)
    assert form["grant_type"] == "authorization_code"
    assert form["code"] == "auth-code"
    assert form["redirect_uri"] == OAUTH.redirect_uri

    stored = policies.get_email_account(library.id)
    assert stored.gmail_oauth_token == "access-1"
    assert stored.gmail_refresh_token == "refresh-1"
    assert stored.token_expires_at == NOW + timedelta(hours=1)
    assert stored.authorized_at == NOW
    assert stored.authorization_status == AuthorizationStatus.AUTHORIZED
    assert saved.authorization_status == AuthorizationStatus.AUTHORIZED
    assert valid_credentials(stored, NOW) is True


def test_callback_keeps_refresh_token_when_provider_omits_it(email_accounts, policies, google, account, library):
    authorize(policies, account, refresh="refresh-old")
    google.token_responses.append(token_response(access_token="access-2", refresh_token=None))
    state = json.dumps({"library_id": library.id, "nonce": "n"})

    email_accounts.complete_authorization(library.id, "code", state, now=NOW)

    stored = policies.get_email_account(library.id)
    assert stored.gmail_oauth_token == "access-2"
    assert stored.gmail_refresh_token == "refresh-old"


def test_callback_failure_marks_account_failed(email_accounts, policies, google, account, library):
    google.token_responses.append(
        httpx.Response(400, json={"error": "invalid_grant", "error_description": "Bad Request"})
    )
    state = json.dumps({"library_id": library.id, "nonce": "n"})

    with pytest.raises(UpstreamError) as excinfo:
        email_accounts.complete_authorization(library.id, "bad-code", state, now=NOW)

    assert "Bad Request" in excinfo.value.detail
    stored = policies.get_email_account(library.id)
    assert stored.authorization_status == AuthorizationStatus.FAILED
    assert stored.gmail_oauth_token is None
    assert stored.gmail_refresh_token is None


def test_token_error_message_hides_provider_detail(email_accounts, google, account, library):
    google.token_responses.append(
        httpx.Response(400, json={"error": "invalid_client", "error_description": "client_secret mismatch"})
    )
    state = json.dumps({"library_id": library.id, "nonce": "n"})

    with pytest.raises(UpstreamError) as excinfo:
        email_accounts.complete_authorization(library.id, "code", state, now=NOW)

    assert excinfo.value.to_dict() == {"error": "Falha ao obter token do Google"}
    assert excinfo.value.detail == "client_secret mismatch"
    assert excinfo.value.status_code == 400


def test_callback_rejects_state_of_another_library(email_accounts, google, account, library):
    state = json.dumps({"library_id": library.id + 1, "nonce": "n"})

    with pytest.raises(ValidationError):
        email_accounts.complete_authorization(library.id, "code", state, now=NOW)
    assert google.requests == []


def test_callback_requires_code_and_state(email_accounts, account, library):
    with pytest.raises(ValidationError):
        email_accounts.complete_authorization(library.id, None, json.dumps({"library_id": library.id}))
    with pytest.raises(ValidationError):
        email_accounts.complete_authorization(library.id, "code", "not json")


# --- Refresh ---
def test_expired_token_with_refresh_token_is_renewed(email_accounts, policies, google, account, library):
    authorize(policies, account, expires_at=NOW - timedelta(minutes=1))
    stored = policies.get_email_account(library.id)
    assert valid_credentials(stored, NOW) is True
    assert email_accounts.authorization_status(library.id, now=NOW)["status"] == "expired_but_renewable"

    google.token_responses.append(token_response(access_token="access-new", refresh_token=None))
    refreshed = email_accounts.refresh(library.id, now=NOW)

    assert google.form(0)["grant_type"] == "refresh_token"
    assert google.form(0)["refresh_token"] == "refresh-0"
    assert refreshed.gmail_oauth_token == "access-new"
    assert refreshed.gmail_refresh_token == "refresh-0"
    assert refreshed.token_expires_at == NOW + timedelta(hours=1)
    assert refreshed.authorization_status == AuthorizationStatus.AUTHORIZED
    assert email_accounts.authorization_status(library.id, now=NOW)["status"] == "authorized"


def test_failed_refresh_marks_account_expired(email_accounts, policies, google, account, library):
    authorize(policies, account, expires_at=NOW - timedelta(minutes=1))
    google.token_responses.append(httpx.Response(400, json={"error": "invalid_grant"}))

    with pytest.raises(UpstreamError):
        email_accounts.refresh(library.id, now=NOW)

    assert policies.get_email_account(library.id).authorization_status == AuthorizationStatus.EXPIRED
    assert len(google.requests) == 1


def test_refresh_without_refresh_token(email_accounts, account, library):
    with pytest.raises(ConflictError):
        email_accounts.refresh(library.id, now=NOW)


def test_status_report_for_new_account(email_accounts, account, library):
    report = email_accounts.authorization_status(library.id, now=NOW)
    assert report["status"] == "not_authorized"
    assert report["needs_reauthorization"] is True
    assert report["email"] == "biblioteca@gmail.com"


# --- Revoke ---
@pytest.mark.parametrize(
    "remote",
    [httpx.Response(200), httpx.Response(400, json={"error": "invalid_token"}), httpx.ConnectError("down")],
    ids=["remote-ok", "remote-rejected", "remote-unreachable"],
)
def test_revoke_always_clears_local_credentials(email_accounts, policies, google, account, library, remote):
    authorize(policies, account)
    google.revoke_response = remote

    email_accounts.revoke(library.id)

    stored = policies.get_email_account(library.id)
    assert stored.gmail_oauth_token is None
    assert stored.gmail_refresh_token is None
    assert stored.token_expires_at is None
    assert stored.authorization_status == AuthorizationStatus.REVOKED
    assert google.form(0)["token"] == "refresh-0"


def test_revoked_account_cannot_send(email_accounts, policies, google, account, library):
    authorize(policies, account)
    email_accounts.revoke(library.id)

    with pytest.raises(ConflictError):
        email_accounts.send_email(library.id, "leitor@example.com", "Oi", "<p>Oi</p>", now=NOW)
    assert email_accounts.authorization_status(library.id, now=NOW)["status"] == "not_authorized"


# --- Sending ---
def test_send_email_posts_mime_message(email_accounts, policies, google, account, library):
    authorize(policies, account)
    google.send_responses.append(httpx.Response(200, json={"id": "msg-1"}))

    message_id = email_accounts.send_email(
        library.id, "leitor@example.com", "Lembrete de devolução", "<p>Olá</p>", now=NOW
    )

    assert message_id == "msg-1"
    raw = json.loads(google.requests[0].content)["raw"]
    message = message_from_bytes(base64.urlsafe_b64decode(raw))
    assert message["To"] == "leitor@example.com"
    assert message["From"] == "biblioteca@gmail.com"
    assert str(make_header(decode_header(message["Subject"]))) == "Lembrete de devolução"
    assert message.get_content_type() == "text/html"
    assert google.sent_tokens() == ["access-0"]


def test_send_refreshes_expired_token_first(email_accounts, policies, google, account, library):
    authorize(policies, account, expires_at=NOW - timedelta(minutes=1))
    google.token_responses.append(token_response(access_token="access-new", refresh_token=None))
    google.send_responses.append(httpx.Response(200, json={"id": "msg-2"}))

    assert email_accounts.send_email(library.id, "a@example.com", "s", "b", now=NOW) == "msg-2"
    assert google.sent_tokens() == ["access-new"]


def test_send_retries_once_after_rejected_token(email_accounts, policies, google, account, library):
    authorize(policies, account)
    google.send_responses.extend([httpx.Response(401), httpx.Response(200, json={"id": "msg-3"})])
    google.token_responses.append(token_response(access_token="access-new", refresh_token=None))

    assert email_accounts.send_email(library.id, "a@example.com", "s", "b", now=NOW) == "msg-3"
    assert google.sent_tokens() == ["access-0", "access-new"]
    assert policies.get_email_account(library.id).gmail_oauth_token == "access-new"


def test_second_rejection_propagates(email_accounts, policies, google, account, library):
    authorize(policies, account)
    google.send_responses.extend([httpx.Response(401), httpx.Response(401)])
    google.token_responses.append(token_response(access_token="access-new", refresh_token=None))

    with pytest.raises(GmailAuthorizationError):
        email_accounts.send_email(library.id, "a@example.com", "s", "b", now=NOW)
    assert len(google.sent_tokens()) == 2


def test_send_other_provider_error_is_not_retried(email_accounts, policies, google, account, library):
    authorize(policies, account)
    google.send_responses.append(httpx.Response(500, text="backend error"))

    with pytest.raises(UpstreamError) as excinfo:
        email_accounts.send_email(library.id, "a@example.com", "s", "b", now=NOW)
    assert not isinstance(excinfo.value, GmailAuthorizationError)
    assert len(google.requests) == 1


def test_not_authorized_account_cannot_send(email_accounts, google, account, library):
    with pytest.raises(ConflictError):
        email_accounts.send_email(library.id, "a@example.com", "s", "b", now=NOW)
    assert google.requests == []


def test_send_default_without_account(email_accounts, library):
    with pytest.raises(ConflictError):
        email_accounts.send_default("a@example.com", "s", "b")


def test_test_email_goes_to_the_account_address(email_accounts, policies, google, account, library):
    authorize(policies, account, expires_at=datetime.now(timezone.utc) + timedelta(hours=1))
    google.send_responses.append(httpx.Response(200, json={"id": "msg-t"}))

    assert email_accounts.send_test_email(library.id) == "msg-t"
    raw = json.loads(google.requests[0].content)["raw"]
    assert message_from_bytes(base64.urlsafe_b64decode(raw))["To"] == "biblioteca@gmail.com"


def test_changing_account_address_drops_tokens(policies, account, library):
    authorize(policies, account)

    updated = policies.put_email_account(library.id, "outra@gmail.com")

    assert updated.gmail_oauth_token is None
    assert updated.gmail_refresh_token is None
    assert updated.authorization_status == AuthorizationStatus.NOT_AUTHORIZED
