import os
import tempfile
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

GMAIL_SEND_SCOPE = "https://www.googleapis.com/auth/gmail.send"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class OAuthConfig:
    """Credentials and endpoints handed to the Gmail integration at construction."""
    client_id: str
    client_secret: str
    redirect_uri: str
    scope: str = GMAIL_SEND_SCOPE
    auth_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url: str = "https://oauth2.googleapis.com/token"
    revoke_url: str = "https://oauth2.googleapis.com/revoke"

    @property
    def is_complete(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: str = os.getenv("CORS_ORIGINS", "http://localhost:5173")

    # Database settings
    database_file: str = (
        os.getenv("LIBRARY_DB_FILE")
        or os.path.join(tempfile.gettempdir(), f"bibliodesk_{os.getpid()}.db")
    )

    # Security settings
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", "change-this-secret-in-production")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "1440"))
    client_jwt_expiration_minutes: int = int(os.getenv("CLIENT_JWT_EXPIRATION_MINUTES", "1440"))
    password_reset_ttl_minutes: int = int(os.getenv("PASSWORD_RESET_TTL_MINUTES", "60"))
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))

    # Google OAuth / Gmail settings
    google_client_id: Optional[str] = os.getenv("GOOGLE_CLIENT_ID")
    google_client_secret: Optional[str] = os.getenv("GOOGLE_CLIENT_SECRET")
    google_redirect_uri: str = os.getenv(
        "GOOGLE_REDIRECT_URI", "http://localhost:3000/auth/google/callback"
    )
    gmail_http_timeout: float = float(os.getenv("GMAIL_HTTP_TIMEOUT", "10"))

    # Circulation defaults, used when a library has no loan policy
    default_loan_period_days: int = int(os.getenv("DEFAULT_LOAN_PERIOD_DAYS", "15"))
    default_loan_limit: int = int(os.getenv("DEFAULT_LOAN_LIMIT", "3"))
    default_renewals_allowed: int = int(os.getenv("DEFAULT_RENEWALS_ALLOWED", "1"))
    default_reminder_days: int = int(os.getenv("DEFAULT_REMINDER_DAYS", "2"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Bibliodesk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Feature flags
    enable_email_notifications: bool = _env_bool("ENABLE_EMAIL_NOTIFICATIONS", "True")

    def oauth_config(self) -> OAuthConfig:
        return OAuthConfig(
            client_id=self.google_client_id or "",
            client_secret=self.google_client_secret or "",
            redirect_uri=self.google_redirect_uri,
        )


settings = Settings()
