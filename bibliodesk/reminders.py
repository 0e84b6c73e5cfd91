import logging
from datetime import date, timedelta
from typing import Dict, Optional

from bibliodesk.circulation import Circulation
from bibliodesk.config import settings
from bibliodesk.notifier import Notifier, send_best_effort
from bibliodesk.policies import PolicyStore

logger = logging.getLogger(__name__)


def reminder_message(loan: dict, library_name: str) -> tuple:
    due = date.fromisoformat(loan["due_date"]).strftime("%d/%m/%Y")
    title = loan["book"]["title"]
    subject = f"Lembrete: livro {title} vence em {due}"
    body = (
        f"<p>Olá {loan['client']['fullName']},</p>"
        f"<p>Este é um lembrete de que o livro \"<strong>{title}</strong>\" deve ser devolvido até {due}.</p>"
        "<p>Por favor, devolva dentro do prazo para evitar multas.</p>"
        f"<p>{library_name}</p>"
    )
    return subject, body


def send_return_reminders(
    circulation: Circulation,
    policies: PolicyStore,
    notifier: Notifier,
    today: Optional[date] = None,
) -> Dict[str, int]:
    """Email every client whose ongoing loan falls due in ``return_reminder_days``.

    Returns ``{"needing": <loans due on the target day>, "sent": <emails delivered>}``.
    """
    today = today or date.today()
    library = policies.default_library()
    setting = policies.get_notification_setting(library.id) if library else None

    days_before = setting.return_reminder_days if setting else settings.default_reminder_days
    loans = circulation.loans_due_on(today + timedelta(days=days_before))
    result = {"needing": len(loans), "sent": 0}

    if setting is not None and not setting.notify_email:
        logger.info("Return reminders skipped: email notifications disabled")
        return result

    library_name = library.name if library else "Biblioteca"
    for loan in loans:
        if not loan["client"]["email"]:
            continue
        subject, body = reminder_message(loan, library_name)
        if send_best_effort(notifier, loan["client"]["email"], subject, body):
            result["sent"] += 1

    logger.info(f"Return reminders finished: needing={result['needing']} sent={result['sent']}")
    return result
