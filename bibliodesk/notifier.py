"""Outbound notifications.

Core services only see the ``Notifier`` protocol; the Gmail transport is
plugged in by the API or CLI at construction.
"""

import logging
from typing import TYPE_CHECKING, List, Optional, Protocol, Tuple

if TYPE_CHECKING:
    from bibliodesk.email_accounts import EmailAccounts

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, to: str, subject: str, body: str) -> Optional[str]:
        ...


class LoggingNotifier:
    """Records messages instead of sending them. Used when email is disabled."""

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str, str]] = []

    def notify(self, to: str, subject: str, body: str) -> Optional[str]:
        self.sent.append((to, subject, body))
        logger.info(f"Notification to {to} recorded (not sent): {subject}")
        return None


class GmailNotifier:
    """Sends through the Gmail account of the default library."""

    def __init__(self, email_accounts: "EmailAccounts") -> None:
        self.email_accounts = email_accounts

    def notify(self, to: str, subject: str, body: str) -> Optional[str]:
        return self.email_accounts.send_default(to, subject, body)


def send_best_effort(notifier: Notifier, to: str, subject: str, body: str) -> bool:
    """Fire-and-forget send: failures are logged and never reach the caller."""
    try:
        notifier.notify(to, subject, body)
    except Exception as exc:
        logger.warning(f"Best-effort email to {to} failed: {exc}")
        return False
    return True
