import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Literal, Optional

import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from bibliodesk.catalog import Catalog
from bibliodesk.circulation import Circulation
from bibliodesk.config import OAuthConfig, settings
from bibliodesk.dashboard import Dashboard
from bibliodesk.database import get_db_connection, initialize_database
from bibliodesk.email_accounts import EmailAccounts
from bibliodesk.errors import AuthenticationError, LibraryError, NotFoundError, UpstreamError
from bibliodesk.membership import Membership
from bibliodesk.notifier import GmailNotifier, LoggingNotifier, Notifier, send_best_effort
from bibliodesk.policies import PolicyStore
from bibliodesk.security import (
    Action,
    AuthContext,
    Resource,
    Role,
    authorize,
    bearer_token,
    decode_token,
    issue_client_token,
    issue_staff_token,
)
from bibliodesk.services.gmail_email_service import GmailEmailService
from bibliodesk.services.gmail_oauth_service import GmailOAuthService
from bibliodesk.services.http_client import cleanup_http_client
from bibliodesk.users import FORGOT_PASSWORD_MESSAGE, Users

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler needs, built once per application."""
    db_file: Optional[str]
    policies: PolicyStore
    catalog: Catalog
    membership: Membership
    users: Users
    circulation: Circulation
    email_accounts: EmailAccounts
    dashboard: Dashboard
    notifier: Notifier


def build_services(
    db_file: Optional[str] = None,
    oauth_config: Optional[OAuthConfig] = None,
    http_client: Optional[httpx.Client] = None,
    notifier: Optional[Notifier] = None,
) -> Services:
    policies = PolicyStore(db_file)
    email_accounts = EmailAccounts(
        policies,
        GmailOAuthService(oauth_config or settings.oauth_config(), client=http_client),
        GmailEmailService(client=http_client),
    )
    if notifier is None:
        notifier = GmailNotifier(email_accounts) if settings.enable_email_notifications else LoggingNotifier()
    return Services(
        db_file=db_file,
        policies=policies,
        catalog=Catalog(db_file),
        membership=Membership(db_file),
        users=Users(db_file),
        circulation=Circulation(db_file, policies),
        email_accounts=email_accounts,
        dashboard=Dashboard(db_file),
        notifier=notifier,
    )


# --- Request models ---
class LoginModel(BaseModel):
    email: str
    password: str


class ClientLoginModel(BaseModel):
    login: str
    password: str


class ForgotPasswordModel(BaseModel):
    email: str


class ResetPasswordModel(BaseModel):
    token: str
    password: str


class UserCreateModel(BaseModel):
    name: str
    email: str
    password: str
    role: Literal["administrator", "librarian"] = "librarian"


class CategoryModel(BaseModel):
    name: str


class BookCreateModel(BaseModel):
    title: str
    author: str
    description: str | None = None
    category_ids: List[int] = Field(default_factory=list)


class BookUpdateModel(BaseModel):
    title: str | None = None
    author: str | None = None
    description: str | None = None
    category_ids: List[int] | None = None


class CopyCreateModel(BaseModel):
    book_id: int
    edition: str
    status: str = "available"
    acquisition_date: str | None = None
    condition: str | None = None


class CopyUpdateModel(BaseModel):
    edition: str | None = None
    status: str | None = None
    acquisition_date: str | None = None
    condition: str | None = None


class ClientCreateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field(alias="fullName")
    cpf: str
    phone: str
    email: str
    password: str | None = None


class ClientUpdateModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: str | None = Field(default=None, alias="fullName")
    cpf: str | None = None
    phone: str | None = None
    email: str | None = None
    password: str | None = None


class PasswordCheckModel(BaseModel):
    password: str


class LoanCreateModel(BaseModel):
    copy_id: int | None = None
    client_id: int | None = None


class LoanUpdateModel(BaseModel):
    status: str | None = None


class LibraryModel(BaseModel):
    name: str
    phone: str | None = None
    address: str | None = None


class LoanPolicyModel(BaseModel):
    loan_limit: int
    loan_period_days: int
    renewals_allowed: int


class FinePolicyModel(BaseModel):
    daily_fine: float
    max_fine: float


class NotificationSettingModel(BaseModel):
    notify_email: bool = True
    notify_sms: bool = False
    return_reminder_days: int = 2


class EmailAccountModel(BaseModel):
    gmail_user_email: str


class OAuthCallbackModel(BaseModel):
    code: str | None = None
    state: str | None = None


class TestEmailModel(BaseModel):
    to: str | None = None


# --- Dependencies ---
def get_services(request: Request) -> Services:
    return request.app.state.services


def current_actor(request: Request, services: Services = Depends(get_services)) -> AuthContext:
    """Authenticate the bearer token once and describe the caller."""
    payload = decode_token(bearer_token(request.headers.get("Authorization")))
    if payload.get("type") == "client" and "client_id" in payload:
        try:
            client = services.membership.get_client(int(payload["client_id"]))
        except NotFoundError as exc:
            raise AuthenticationError("Token inválido ou expirado") from exc
        return AuthContext(subject_id=client.id, role=Role.MEMBER)
    if "user_id" in payload:
        try:
            user = services.users.get_user(int(payload["user_id"]))
        except NotFoundError as exc:
            raise AuthenticationError("Token inválido ou expirado") from exc
        return AuthContext(subject_id=user.id, role=user.role)
    raise AuthenticationError("Token inválido ou expirado")


def allowed(action: Action, resource: Resource) -> Callable[..., AuthContext]:
    def dependency(actor: AuthContext = Depends(current_actor)) -> AuthContext:
        return authorize(actor, action, resource)
    return dependency


router = APIRouter()


# --- Health ---
@router.get("/health")
def health(services: Services = Depends(get_services)):
    """Lightweight health check with a quick database query."""
    conn = get_db_connection(services.db_file)
    try:
        conn.execute("SELECT 1")
    finally:
        conn.close()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.app_version,
        "services": {"email": settings.enable_email_notifications},
    }


# --- Authentication ---
@router.post("/auth/login")
def login(payload: LoginModel, services: Services = Depends(get_services)):
    """Issue a JWT for a staff user."""
    user = services.users.authenticate(payload.email, payload.password)
    return {"token": issue_staff_token(user.id, user.role), "user": user.to_dict()}


@router.post("/clients/login")
def client_login(payload: ClientLoginModel, services: Services = Depends(get_services)):
    """Issue a JWT for a member, by CPF or email."""
    client = services.membership.authenticate(payload.login, payload.password)
    return {"token": issue_client_token(client.id), "client": client.to_dict()}


@router.post("/password/forgot")
def forgot_password(
    payload: ForgotPasswordModel, background_tasks: BackgroundTasks, services: Services = Depends(get_services)
):
    """Start a password reset; the answer never reveals whether the email exists."""
    background_tasks.add_task(services.users.forgot, payload.email, services.notifier)
    return {"message": FORGOT_PASSWORD_MESSAGE}


@router.post("/password/reset")
def reset_password(payload: ResetPasswordModel, services: Services = Depends(get_services)):
    services.users.reset(payload.token, payload.password)
    return {"message": "Senha redefinida com sucesso."}


# --- Users ---
@router.get("/users")
def list_users(
    _: AuthContext = Depends(allowed(Action.READ, Resource.USER)), services: Services = Depends(get_services)
):
    return [user.to_dict() for user in services.users.list_users()]


@router.post("/users", status_code=201)
def create_user(
    payload: UserCreateModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.USER)),
    services: Services = Depends(get_services),
):
    user = services.users.create_user(payload.name, payload.email, payload.password, Role(payload.role))
    return user.to_dict()


# --- Categories ---
@router.get("/categories")
def list_categories(
    _: AuthContext = Depends(allowed(Action.READ, Resource.CATEGORY)), services: Services = Depends(get_services)
):
    return [category.to_dict() for category in services.catalog.list_categories()]


@router.post("/categories", status_code=201)
def create_category(
    payload: CategoryModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.CATEGORY)),
    services: Services = Depends(get_services),
):
    return services.catalog.create_category(payload.name).to_dict()


@router.put("/categories/{category_id}")
def update_category(
    category_id: int,
    payload: CategoryModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.CATEGORY)),
    services: Services = Depends(get_services),
):
    return services.catalog.update_category(category_id, payload.name).to_dict()


@router.delete("/categories/{category_id}")
def delete_category(
    category_id: int,
    _: AuthContext = Depends(allowed(Action.DELETE, Resource.CATEGORY)),
    services: Services = Depends(get_services),
):
    services.catalog.delete_category(category_id)
    return {"message": "Categoria removida."}


# --- Books ---
@router.get("/books")
def list_books(
    search: Optional[str] = Query(None, description="Title, author or description substring"),
    category_id: Optional[int] = Query(None),
    _: AuthContext = Depends(allowed(Action.READ, Resource.BOOK)),
    services: Services = Depends(get_services),
):
    return [book.to_dict() for book in services.catalog.list_books(search=search, category_id=category_id)]


@router.get("/books/{book_id}")
def get_book(
    book_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.BOOK)),
    services: Services = Depends(get_services),
):
    return services.catalog.get_book(book_id).to_dict()


@router.post("/books", status_code=201)
def create_book(
    payload: BookCreateModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.BOOK)),
    services: Services = Depends(get_services),
):
    book = services.catalog.create_book(payload.title, payload.author, payload.description, payload.category_ids)
    return book.to_dict()


@router.put("/books/{book_id}")
def update_book(
    book_id: int,
    payload: BookUpdateModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.BOOK)),
    services: Services = Depends(get_services),
):
    book = services.catalog.update_book(
        book_id,
        title=payload.title,
        author=payload.author,
        description=payload.description,
        category_ids=payload.category_ids,
    )
    return book.to_dict()


@router.delete("/books/{book_id}")
def delete_book(
    book_id: int,
    _: AuthContext = Depends(allowed(Action.DELETE, Resource.BOOK)),
    services: Services = Depends(get_services),
):
    services.catalog.delete_book(book_id)
    return {"message": "Livro removido."}


# --- Copies ---
@router.get("/copies")
def list_copies(
    book_id: Optional[int] = Query(None),
    _: AuthContext = Depends(allowed(Action.READ, Resource.COPY)),
    services: Services = Depends(get_services),
):
    return [copy.to_dict() for copy in services.catalog.list_copies(book_id)]


@router.get("/copies/{copy_id}")
def get_copy(
    copy_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.COPY)),
    services: Services = Depends(get_services),
):
    return services.catalog.get_copy(copy_id).to_dict()


@router.post("/copies", status_code=201)
def create_copy(
    payload: CopyCreateModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.COPY)),
    services: Services = Depends(get_services),
):
    copy = services.catalog.create_copy(
        payload.book_id, payload.edition, payload.status, payload.acquisition_date, payload.condition
    )
    return copy.to_dict()


@router.put("/copies/{copy_id}")
def update_copy(
    copy_id: int,
    payload: CopyUpdateModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.COPY)),
    services: Services = Depends(get_services),
):
    copy = services.catalog.update_copy(
        copy_id,
        edition=payload.edition,
        status=payload.status,
        acquisition_date=payload.acquisition_date,
        condition=payload.condition,
    )
    return copy.to_dict()


@router.delete("/copies/{copy_id}")
def delete_copy(
    copy_id: int,
    _: AuthContext = Depends(allowed(Action.DELETE, Resource.COPY)),
    services: Services = Depends(get_services),
):
    services.catalog.delete_copy(copy_id)
    return {"message": "Cópia removida."}


# --- Clients ---
@router.get("/clients")
def list_clients(
    search: Optional[str] = Query(None),
    _: AuthContext = Depends(allowed(Action.READ, Resource.CLIENT)),
    services: Services = Depends(get_services),
):
    return [client.to_dict() for client in services.membership.list_clients(search)]


@router.get("/clients/{client_id}")
def get_client(
    client_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.CLIENT)),
    services: Services = Depends(get_services),
):
    return services.membership.get_client(client_id).to_dict()


@router.post("/clients", status_code=201)
def create_client(
    payload: ClientCreateModel,
    background_tasks: BackgroundTasks,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.CLIENT)),
    services: Services = Depends(get_services),
):
    """Register a member; a generated password is returned once and emailed."""
    client, generated = services.membership.create_client(
        payload.full_name, payload.cpf, payload.phone, payload.email, payload.password
    )
    response = client.to_dict()
    if generated:
        response["generated_password"] = generated
        background_tasks.add_task(
            send_best_effort,
            services.notifier,
            client.email,
            "Bem-vindo à biblioteca",
            f"<p>Olá {client.full_name},</p><p>Seu cadastro foi realizado.</p>"
            f"<p>Sua senha de acesso é: <b>{generated}</b></p>",
        )
    return response


@router.put("/clients/{client_id}")
def update_client(
    client_id: int,
    payload: ClientUpdateModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.CLIENT)),
    services: Services = Depends(get_services),
):
    client = services.membership.update_client(
        client_id,
        full_name=payload.full_name,
        cpf=payload.cpf,
        phone=payload.phone,
        email=payload.email,
        password=payload.password,
    )
    return client.to_dict()


@router.delete("/clients/{client_id}")
def delete_client(
    client_id: int,
    _: AuthContext = Depends(allowed(Action.DELETE, Resource.CLIENT)),
    services: Services = Depends(get_services),
):
    services.membership.delete_client(client_id)
    return {"message": "Cliente removido."}


@router.get("/clients/{client_id}/loans")
def client_loans(
    client_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.LOAN)),
    services: Services = Depends(get_services),
):
    """Loan history of one member."""
    services.membership.get_client(client_id)
    return services.circulation.list_loans(client_id=client_id)


@router.post("/clients/{client_id}/check_password")
def check_client_password(
    client_id: int,
    payload: PasswordCheckModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.LOAN)),
    services: Services = Depends(get_services),
):
    return {"valid": services.membership.check_password(client_id, payload.password)}


@router.get("/me/loans")
def my_loans(
    actor: AuthContext = Depends(allowed(Action.READ, Resource.OWN_LOANS)),
    services: Services = Depends(get_services),
):
    return services.circulation.list_loans(client_id=actor.subject_id)


# --- Loans ---
@router.get("/loans")
def list_loans(
    status: Optional[str] = Query(None, description="ongoing, returned or overdue"),
    overdue: Optional[bool] = Query(None),
    client_id: Optional[int] = Query(None),
    _: AuthContext = Depends(allowed(Action.READ, Resource.LOAN)),
    services: Services = Depends(get_services),
):
    return services.circulation.list_loans(status=status, overdue=overdue, client_id=client_id)


@router.get("/loans/{loan_id}")
def get_loan(
    loan_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.LOAN)),
    services: Services = Depends(get_services),
):
    return services.circulation.describe_loan(loan_id)


@router.post("/loans", status_code=201)
def create_loan(
    payload: LoanCreateModel,
    actor: AuthContext = Depends(allowed(Action.WRITE, Resource.LOAN)),
    services: Services = Depends(get_services),
):
    loan = services.circulation.create_loan(payload.copy_id, payload.client_id, user_id=actor.subject_id)
    return services.circulation.describe_loan(loan.id)


@router.put("/loans/{loan_id}")
def update_loan(
    loan_id: int,
    payload: LoanUpdateModel,
    actor: AuthContext = Depends(allowed(Action.WRITE, Resource.LOAN)),
    services: Services = Depends(get_services),
):
    services.circulation.update_loan(loan_id, payload.status, user_id=actor.subject_id)
    return services.circulation.describe_loan(loan_id)


@router.post("/loans/{loan_id}/return")
def return_loan(
    loan_id: int,
    actor: AuthContext = Depends(allowed(Action.WRITE, Resource.LOAN)),
    services: Services = Depends(get_services),
):
    services.circulation.return_loan(loan_id, user_id=actor.subject_id)
    return services.circulation.describe_loan(loan_id)


@router.post("/loans/{loan_id}/renew")
def renew_loan(
    loan_id: int,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.LOAN)),
    services: Services = Depends(get_services),
):
    services.circulation.renew_loan(loan_id)
    return services.circulation.describe_loan(loan_id)


@router.delete("/loans/{loan_id}")
def delete_loan(
    loan_id: int,
    _: AuthContext = Depends(allowed(Action.DELETE, Resource.LOAN)),
    services: Services = Depends(get_services),
):
    services.circulation.delete_loan(loan_id)
    return {"message": "Empréstimo removido."}


# --- Libraries and per-library settings ---
@router.get("/libraries")
def list_libraries(
    _: AuthContext = Depends(allowed(Action.READ, Resource.LIBRARY)), services: Services = Depends(get_services)
):
    return [library.to_dict() for library in services.policies.list_libraries()]


@router.post("/libraries", status_code=201)
def create_library(
    payload: LibraryModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.LIBRARY)),
    services: Services = Depends(get_services),
):
    return services.policies.create_library(payload.name, payload.phone, payload.address).to_dict()


@router.get("/libraries/{library_id}")
def get_library(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.LIBRARY)),
    services: Services = Depends(get_services),
):
    return services.policies.get_library(library_id).to_dict()


def _found(value, message: str):
    if value is None:
        raise NotFoundError(message)
    return value.to_dict()


@router.get("/libraries/{library_id}/loan_policy")
def get_loan_policy(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.POLICY)),
    services: Services = Depends(get_services),
):
    services.policies.get_library(library_id)
    return _found(services.policies.get_loan_policy(library_id), "Política de empréstimo não encontrada")


@router.put("/libraries/{library_id}/loan_policy")
def put_loan_policy(
    library_id: int,
    payload: LoanPolicyModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.POLICY)),
    services: Services = Depends(get_services),
):
    policy = services.policies.put_loan_policy(
        library_id, payload.loan_limit, payload.loan_period_days, payload.renewals_allowed
    )
    return policy.to_dict()


@router.delete("/libraries/{library_id}/loan_policy")
def delete_loan_policy(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.DELETE, Resource.POLICY)),
    services: Services = Depends(get_services),
):
    if not services.policies.delete_loan_policy(library_id):
        raise NotFoundError("Política de empréstimo não encontrada")
    return {"message": "Política de empréstimo removida."}


@router.get("/libraries/{library_id}/fine_policy")
def get_fine_policy(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.POLICY)),
    services: Services = Depends(get_services),
):
    services.policies.get_library(library_id)
    return _found(services.policies.get_fine_policy(library_id), "Política de multa não encontrada")


@router.put("/libraries/{library_id}/fine_policy")
def put_fine_policy(
    library_id: int,
    payload: FinePolicyModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.POLICY)),
    services: Services = Depends(get_services),
):
    return services.policies.put_fine_policy(library_id, payload.daily_fine, payload.max_fine).to_dict()


@router.delete("/libraries/{library_id}/fine_policy")
def delete_fine_policy(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.DELETE, Resource.POLICY)),
    services: Services = Depends(get_services),
):
    if not services.policies.delete_fine_policy(library_id):
        raise NotFoundError("Política de multa não encontrada")
    return {"message": "Política de multa removida."}


@router.get("/libraries/{library_id}/notification_setting")
def get_notification_setting(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.POLICY)),
    services: Services = Depends(get_services),
):
    services.policies.get_library(library_id)
    return _found(
        services.policies.get_notification_setting(library_id), "Configuração de notificação não encontrada"
    )


@router.put("/libraries/{library_id}/notification_setting")
def put_notification_setting(
    library_id: int,
    payload: NotificationSettingModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.POLICY)),
    services: Services = Depends(get_services),
):
    setting = services.policies.put_notification_setting(
        library_id, payload.notify_email, payload.notify_sms, payload.return_reminder_days
    )
    return setting.to_dict()


@router.delete("/libraries/{library_id}/notification_setting")
def delete_notification_setting(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.DELETE, Resource.POLICY)),
    services: Services = Depends(get_services),
):
    if not services.policies.delete_notification_setting(library_id):
        raise NotFoundError("Configuração de notificação não encontrada")
    return {"message": "Configuração de notificação removida."}


# --- Email account (Gmail OAuth) ---
@router.get("/libraries/{library_id}/email_account")
def get_email_account(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.EMAIL_ACCOUNT)),
    services: Services = Depends(get_services),
):
    return services.policies.require_email_account(library_id).to_dict()


@router.put("/libraries/{library_id}/email_account")
def put_email_account(
    library_id: int,
    payload: EmailAccountModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.EMAIL_ACCOUNT)),
    services: Services = Depends(get_services),
):
    return services.policies.put_email_account(library_id, payload.gmail_user_email).to_dict()


@router.delete("/libraries/{library_id}/email_account")
def delete_email_account(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.DELETE, Resource.EMAIL_ACCOUNT)),
    services: Services = Depends(get_services),
):
    if not services.policies.delete_email_account(library_id):
        raise NotFoundError("Conta de email não encontrada")
    return {"message": "Conta de email removida."}


@router.get("/libraries/{library_id}/email_account/authorize_google")
def authorize_google(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.EMAIL_ACCOUNT)),
    services: Services = Depends(get_services),
):
    """Consent URL the administrator opens to grant the Gmail send scope."""
    return {"authorization_url": services.email_accounts.start_authorization(library_id)}


@router.post("/libraries/{library_id}/email_account/callback")
def google_callback(
    library_id: int,
    payload: OAuthCallbackModel,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.EMAIL_ACCOUNT)),
    services: Services = Depends(get_services),
):
    account = services.email_accounts.complete_authorization(library_id, payload.code, payload.state)
    return {"message": "Conta autorizada com sucesso.", "email_account": account.to_dict()}


@router.get("/libraries/{library_id}/email_account/authorization_status")
def authorization_status(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.READ, Resource.EMAIL_ACCOUNT)),
    services: Services = Depends(get_services),
):
    return services.email_accounts.authorization_status(library_id)


@router.post("/libraries/{library_id}/email_account/refresh_token")
def refresh_token(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.EMAIL_ACCOUNT)),
    services: Services = Depends(get_services),
):
    account = services.email_accounts.refresh(library_id)
    return {"message": "Token renovado com sucesso.", "email_account": account.to_dict()}


@router.post("/libraries/{library_id}/email_account/revoke_authorization")
def revoke_authorization(
    library_id: int,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.EMAIL_ACCOUNT)),
    services: Services = Depends(get_services),
):
    account = services.email_accounts.revoke(library_id)
    return {"message": "Autorização revogada.", "email_account": account.to_dict()}


@router.post("/libraries/{library_id}/email_account/test_email")
def test_email(
    library_id: int,
    payload: Optional[TestEmailModel] = None,
    _: AuthContext = Depends(allowed(Action.WRITE, Resource.EMAIL_ACCOUNT)),
    services: Services = Depends(get_services),
):
    message_id = services.email_accounts.send_test_email(library_id, payload.to if payload else None)
    return {"message": "Email de teste enviado.", "message_id": message_id}


# --- Dashboard ---
@router.get("/dashboard")
def dashboard(
    _: AuthContext = Depends(allowed(Action.READ, Resource.DASHBOARD)), services: Services = Depends(get_services)
):
    return services.dashboard.summary()


@router.get("/dashboard/today_alerts")
def today_alerts(
    _: AuthContext = Depends(allowed(Action.READ, Resource.DASHBOARD)), services: Services = Depends(get_services)
):
    return services.dashboard.today_alerts()


@router.get("/dashboard/loans_by_month")
def loans_by_month(
    _: AuthContext = Depends(allowed(Action.READ, Resource.DASHBOARD)), services: Services = Depends(get_services)
):
    return services.dashboard.loans_by_month()


@router.get("/dashboard/recent_activities")
def recent_activities(
    _: AuthContext = Depends(allowed(Action.READ, Resource.DASHBOARD)), services: Services = Depends(get_services)
):
    return services.dashboard.recent_activities()


# --- Error envelope ---
def library_error_handler(request: Request, exc: LibraryError) -> JSONResponse:
    if isinstance(exc, UpstreamError):
        logger.warning(f"Upstream failure on {request.url.path}: {exc.message} ({exc.detail})")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = {}
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
        fields.setdefault(".".join(location) or "body", []).append(error.get("msg", "inválido"))
    return JSONResponse(status_code=422, content={"error": "Dados inválidos", "fields": fields})


def create_app(
    db_file: Optional[str] = None,
    oauth_config: Optional[OAuthConfig] = None,
    http_client: Optional[httpx.Client] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """Build the API with its own services; tests pass a temporary database and fakes."""
    logging.basicConfig(level=settings.log_level)
    initialize_database(db_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            yield
        finally:
            cleanup_http_client()

    app = FastAPI(title=f"{settings.app_name} API", version=settings.app_version, lifespan=lifespan)
    app.state.services = build_services(db_file, oauth_config, http_client, notifier)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip() for origin in settings.cors_origins.split(",") if origin.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LibraryError, library_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)
    return app


app = create_app()
