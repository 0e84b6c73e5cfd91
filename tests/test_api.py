from datetime import date, timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from bibliodesk.api import create_app
from bibliodesk.config import OAuthConfig
from bibliodesk.notifier import LoggingNotifier
from bibliodesk.policies import PolicyStore
from bibliodesk.security import Role
from bibliodesk.users import Users
from conftest import make_cpf

OAUTH = OAuthConfig(
    client_id="client-id.apps.googleusercontent.com",
    client_secret="client-secret",
    redirect_uri="http://localhost:3000/auth/google/callback",
)


def _offline_google(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, json={"error": "unavailable"})


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def api(db_file, notifier):
    http_client = httpx.Client(transport=httpx.MockTransport(_offline_google))
    app = create_app(db_file, oauth_config=OAUTH, http_client=http_client, notifier=notifier)
    with TestClient(app) as test_client:
        yield test_client
    http_client.close()


def _staff_headers(api, db_file, email, role):
    Users(db_file).create_user(role.value.title(), email, "segredo1", role)
    response = api.post("/auth/login", json={"email": email, "password": "segredo1"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest.fixture
def admin(api, db_file):
    return _staff_headers(api, db_file, "admin@biblioteca.org", Role.ADMINISTRATOR)


@pytest.fixture
def librarian(api, db_file):
    return _staff_headers(api, db_file, "balcao@biblioteca.org", Role.LIBRARIAN)


@pytest.fixture
def stocked(api, librarian):
    """One book with one copy and one registered client."""
    book = api.post("/books", headers=librarian, json={"title": "Capitães da Areia", "author": "Jorge Amado"}).json()
    copy = api.post("/copies", headers=librarian, json={"book_id": book["id"], "edition": "1ª"}).json()
    client = api.post(
        "/clients",
        headers=librarian,
        json={"fullName": "Pedro Bala", "cpf": make_cpf(), "phone": "(71) 99999-1111", "email": "pedro@example.com"},
    ).json()
    return book, copy, client


def test_health(api):
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_requests_without_token_are_rejected(api):
    response = api.get("/books")
    assert response.status_code == 401
    assert response.json() == {"error": "Token ausente"}

    response = api.get("/books", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


def test_login_with_wrong_password(api, db_file):
    Users(db_file).create_user("Rita", "rita@biblioteca.org", "segredo1")

    response = api.post("/auth/login", json={"email": "rita@biblioteca.org", "password": "errada"})

    assert response.status_code == 401
    assert response.json() == {"error": "Email ou senha inválidos"}


def test_client_registration_returns_generated_password_once(api, librarian, stocked, notifier):
    _, _, client = stocked

    assert client["fullName"] == "Pedro Bala"
    assert len(client["generated_password"]) == 6
    [(to, subject, body)] = notifier.sent
    assert to == "pedro@example.com"
    assert client["generated_password"] in body

    fetched = api.get(f"/clients/{client['id']}", headers=librarian).json()
    assert "generated_password" not in fetched
    assert "password_digest" not in fetched


def test_invalid_client_is_rejected_with_field_errors(api, librarian):
    response = api.post(
        "/clients",
        headers=librarian,
        json={"fullName": "Sem CPF", "cpf": "123", "phone": "(11) 98888-7777", "email": "semcpf@example.com"},
    )

    assert response.status_code == 422
    assert response.json()["error"] == "Dados inválidos"
    assert list(response.json()["fields"]) == ["cpf"]


def test_malformed_body_uses_error_envelope(api, librarian):
    response = api.post("/books", headers=librarian, json={"author": "Sem título"})

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "Dados inválidos"
    assert "title" in body["fields"]


def test_loan_lifecycle(api, librarian, stocked):
    _, copy, client = stocked

    response = api.post("/loans", headers=librarian, json={"copy_id": copy["id"], "client_id": client["id"]})
    assert response.status_code == 201
    loan = response.json()
    assert loan["status"] == "ongoing"
    assert loan["due_date"] == (date.today() + timedelta(days=15)).isoformat()
    assert loan["book"]["title"] == "Capitães da Areia"

    again = api.post("/loans", headers=librarian, json={"copy_id": copy["id"], "client_id": client["id"]})
    assert again.status_code == 409
    assert "error" in again.json()

    renewed = api.post(f"/loans/{loan['id']}/renew", headers=librarian).json()
    assert renewed["renewals_count"] == 1
    assert api.post(f"/loans/{loan['id']}/renew", headers=librarian).status_code == 409

    returned = api.post(f"/loans/{loan['id']}/return", headers=librarian)
    assert returned.status_code == 200
    assert returned.json()["status"] == "returned"
    assert api.post(f"/loans/{loan['id']}/return", headers=librarian).status_code == 409
    assert api.get(f"/copies/{copy['id']}", headers=librarian).json()["status"] == "available"


def test_missing_loan_fields(api, librarian):
    response = api.post("/loans", headers=librarian, json={})

    assert response.status_code == 422
    assert set(response.json()["fields"]) == {"copy", "client"}


def test_only_administrators_delete_loans(api, admin, librarian, stocked):
    _, copy, client = stocked
    loan = api.post("/loans", headers=librarian, json={"copy_id": copy["id"], "client_id": client["id"]}).json()

    denied = api.delete(f"/loans/{loan['id']}", headers=librarian)
    assert denied.status_code == 403
    assert denied.json() == {"error": "Acesso negado: precisa ser administrador"}

    assert api.delete(f"/loans/{loan['id']}", headers=admin).status_code == 200
    assert api.get(f"/loans/{loan['id']}", headers=admin).status_code == 404
    assert api.get(f"/copies/{copy['id']}", headers=admin).json()["status"] == "available"


def test_policies_are_admin_managed(api, admin, librarian, db_file):
    library = PolicyStore(db_file).create_library("Biblioteca Central")
    path = f"/libraries/{library.id}/loan_policy"
    payload = {"loan_limit": 2, "loan_period_days": 7, "renewals_allowed": 0}

    assert api.get(path, headers=librarian).status_code == 404
    assert api.put(path, headers=librarian, json=payload).status_code == 403

    response = api.put(path, headers=admin, json=payload)
    assert response.status_code == 200
    assert api.get(path, headers=librarian).json()["loan_period_days"] == 7

    bad = api.put(path, headers=admin, json={**payload, "loan_limit": -1})
    assert bad.status_code == 422
    assert "loan_limit" in bad.json()["fields"]

    assert api.delete(path, headers=admin).status_code == 200
    assert api.delete(path, headers=admin).status_code == 404


def test_member_sees_only_own_loans(api, librarian, stocked, db_file):
    book, copy, client = stocked
    other_copy = api.post("/copies", headers=librarian, json={"book_id": book["id"], "edition": "2ª"}).json()
    other = api.post(
        "/clients",
        headers=librarian,
        json={
            "fullName": "Professor",
            "cpf": make_cpf(),
            "phone": "(71) 98888-2222",
            "email": "professor@example.com",
            "password": "segredo2",
        },
    ).json()
    mine = api.post("/loans", headers=librarian, json={"copy_id": copy["id"], "client_id": client["id"]}).json()
    api.post("/loans", headers=librarian, json={"copy_id": other_copy["id"], "client_id": other["id"]})

    login = api.post("/clients/login", json={"login": client["cpf"], "password": client["generated_password"]})
    assert login.status_code == 200
    member = {"Authorization": f"Bearer {login.json()['token']}"}

    assert [loan["id"] for loan in api.get("/me/loans", headers=member).json()] == [mine["id"]]
    assert api.get("/books", headers=member).status_code == 200
    assert api.get("/loans", headers=member).status_code == 403
    assert api.post("/books", headers=member, json={"title": "x", "author": "y"}).status_code == 403
    assert api.get("/me/loans", headers=librarian).status_code == 403


def test_check_client_password(api, librarian, stocked):
    _, _, client = stocked
    path = f"/clients/{client['id']}/check_password"

    assert api.post(path, headers=librarian, json={"password": client["generated_password"]}).json() == {"valid": True}
    assert api.post(path, headers=librarian, json={"password": "errada"}).json() == {"valid": False}


def test_password_reset_over_http(api, db_file, notifier):
    Users(db_file).create_user("Rita", "rita@biblioteca.org", "segredo1")

    unknown = api.post("/password/forgot", json={"email": "ninguem@example.com"})
    known = api.post("/password/forgot", json={"email": "rita@biblioteca.org"})

    assert unknown.json() == known.json()
    [(to, _, body)] = notifier.sent
    assert to == "rita@biblioteca.org"
    token = body.split("<b>")[1].split("</b>")[0]

    assert api.post("/password/reset", json={"token": token, "password": "novasenha"}).status_code == 200
    assert api.post("/auth/login", json={"email": "rita@biblioteca.org", "password": "novasenha"}).status_code == 200
    assert api.post("/password/reset", json={"token": token, "password": "outra123"}).status_code == 422


def test_users_are_admin_only(api, admin, librarian):
    payload = {"name": "Novo", "email": "novo@biblioteca.org", "password": "segredo1"}

    assert api.post("/users", headers=librarian, json=payload).status_code == 403
    created = api.post("/users", headers=admin, json=payload)
    assert created.status_code == 201
    assert created.json()["role"] == "librarian"
    assert len(api.get("/users", headers=admin).json()) == 3


def test_google_authorization_flow_endpoints(api, admin, db_file):
    library = PolicyStore(db_file).create_library("Biblioteca Central")
    base = f"/libraries/{library.id}/email_account"

    assert api.get(base, headers=admin).status_code == 404
    assert api.put(base, headers=admin, json={"gmail_user_email": "biblioteca@gmail.com"}).status_code == 200

    url = api.get(f"{base}/authorize_google", headers=admin).json()["authorization_url"]
    query = parse_qs(urlparse(url).query)
    assert query["client_id"] == [OAUTH.client_id]
    assert query["access_type"] == ["offline"]

    status = api.get(f"{base}/authorization_status", headers=admin).json()
    assert status["status"] == "not_authorized"
    assert status["needs_reauthorization"] is True

    # Token endpoint is down: the callback reports an upstream failure
    callback = api.post(f"{base}/callback", headers=admin, json={"code": "abc", "state": query["state"][0]})
    assert callback.status_code == 502
    assert callback.json() == {"error": "Falha ao obter token do Google"}
    assert api.get(base, headers=admin).json()["authorization_status"] == "failed"

    unauthorized_send = api.post(f"{base}/test_email", headers=admin)
    assert unauthorized_send.status_code == 409


def test_dashboard(api, librarian, stocked):
    _, copy, client = stocked
    api.post("/loans", headers=librarian, json={"copy_id": copy["id"], "client_id": client["id"]})

    summary = api.get("/dashboard", headers=librarian).json()
    assert summary["active_loans"] == 1
    assert summary["borrowed_copies"] == 1
    assert api.get("/dashboard/loans_by_month", headers=librarian).json() == {date.today().strftime("%Y-%m"): 1}
    assert api.get("/dashboard/recent_activities", headers=librarian).json()[0]["type"] == "loan"
    assert isinstance(api.get("/dashboard/today_alerts", headers=librarian).json(), list)
