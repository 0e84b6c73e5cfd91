import base64
import logging
from email.message import EmailMessage
from typing import Optional

import httpx

from bibliodesk.errors import UpstreamError
from bibliodesk.services.http_client import get_http_client

logger = logging.getLogger(__name__)

GMAIL_SEND_URL = "https://gmail.googleapis.com/gmail/v1/users/me/messages/send"


class GmailAuthorizationError(UpstreamError):
    """The provider rejected the access token (HTTP 401)."""


def build_message(sender: str, to: str, subject: str, body: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = sender
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body, subtype="html", charset="utf-8")
    return message


def encode_message(message: EmailMessage) -> str:
    return base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")


class GmailEmailService:
    """Sends a single message through the Gmail REST API."""

    def __init__(self, client: Optional[httpx.Client] = None, send_url: str = GMAIL_SEND_URL):
        self._client = client
        self.send_url = send_url

    @property
    def client(self) -> httpx.Client:
        return self._client or get_http_client()

    def send(self, access_token: str, sender: str, to: str, subject: str, body: str) -> str:
        """Send and return the provider message id."""
        raw = encode_message(build_message(sender, to, subject, body))
        try:
            response = self.client.post(
                self.send_url,
                json={"raw": raw},
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            logger.error(f"Gmail send request failed: {exc}")
            raise UpstreamError("Falha ao enviar email", detail=str(exc)) from exc

        if response.status_code == 401:
            logger.info("Gmail rejected the access token")
            raise GmailAuthorizationError("Token de acesso do Gmail rejeitado", detail=response.text, status_code=401)
        if response.status_code >= 400:
            logger.error(f"Gmail send returned {response.status_code}: {response.text}")
            raise UpstreamError("Falha ao enviar email", detail=response.text, status_code=response.status_code)

        message_id = response.json().get("id", "")
        logger.info(f"Email sent to {to} (id={message_id})")
        return message_id
