import logging
import os
import subprocess
import sys
from datetime import date
from typing import Optional

import typer
from rich.console import Console

from bibliodesk import database
from bibliodesk.circulation import Circulation
from bibliodesk.config import settings
from bibliodesk.errors import LibraryError
from bibliodesk.policies import PolicyStore
from bibliodesk.security import Role
from bibliodesk.ui_helpers import print_loans_result, print_reminder_result, set_output_mode
from bibliodesk.users import Users

APP_NAME = "Bibliodesk CLI"

console = Console()

# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)

_state = {"db_file": None}


def _db_file() -> Optional[str]:
    return _state["db_file"]


def _fail(exc: LibraryError) -> None:
    console.print(f"[bold red]{exc.message}[/]")
    fields = getattr(exc, "fields", None)
    if fields:
        for name, messages in fields.items():
            console.print(f"[red]  {name}: {', '.join(messages)}[/]")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    output: str = typer.Option(
        "plain",
        "--output",
        "-o",
        help="Output format: plain | json | rich",
    ),
    db: Optional[str] = typer.Option(
        None,
        "--db",
        envvar="LIBRARY_DB_FILE",
        help="SQLite database file",
    ),
):
    """Global CLI options (output mode, database file)."""
    logging.basicConfig(level=settings.log_level)
    set_output_mode(output)
    _state["db_file"] = db


@app.command("init-db")
def cli_init_db():
    """Create the database schema if it does not exist yet."""
    database.initialize_database(_db_file())
    print(f"Database ready at {_db_file() or database.DATABASE_FILE}")


@app.command("create-user")
def cli_create_user(
    name: str = typer.Argument(..., help="Full name"),
    email: str = typer.Argument(..., help="Login email"),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, help="Password"),
    role: Role = typer.Option(Role.LIBRARIAN, "--role", "-r", help="administrator or librarian"),
):
    """Create a staff account."""
    database.initialize_database(_db_file())
    try:
        user = Users(_db_file()).create_user(name, email, password, role)
    except LibraryError as exc:
        _fail(exc)
    print(f"Created {user.role.value} {user.email} (id {user.id})")


@app.command("create-library")
def cli_create_library(
    name: str = typer.Argument(..., help="Library name"),
    phone: Optional[str] = typer.Option(None, "--phone", help="Phone number"),
    address: Optional[str] = typer.Option(None, "--address", help="Street address"),
):
    """Register a library (the lowest id is the one whose policies apply)."""
    database.initialize_database(_db_file())
    try:
        library = PolicyStore(_db_file()).create_library(name, phone, address)
    except LibraryError as exc:
        _fail(exc)
    print(f"Created library {library.name} (id {library.id})")


@app.command("loans")
def cli_loans(
    overdue: bool = typer.Option(False, "--overdue", help="Only ongoing loans past their due date"),
    status: Optional[str] = typer.Option(None, "--status", "-s", help="ongoing | returned | overdue"),
    client_id: Optional[int] = typer.Option(None, "--client", "-c", help="Only loans of this client"),
):
    """List loans with their derived overdue state."""
    database.initialize_database(_db_file())
    try:
        loans = Circulation(_db_file()).list_loans(
            status=status, overdue=True if overdue else None, client_id=client_id
        )
    except LibraryError as exc:
        _fail(exc)
    print_loans_result(loans)


@app.command("remind")
def cli_remind(
    dry_run: bool = typer.Option(False, "--dry-run", help="Log the reminders instead of emailing them"),
):
    """Email return reminders for loans due in the configured number of days."""
    from bibliodesk.api import build_services
    from bibliodesk.notifier import LoggingNotifier
    from bibliodesk.reminders import send_return_reminders

    database.initialize_database(_db_file())
    services = build_services(_db_file(), notifier=LoggingNotifier() if dry_run else None)
    result = send_return_reminders(services.circulation, services.policies, services.notifier, today=date.today())
    print_reminder_result(result)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the API with uvicorn."""
    host = host or settings.api_host
    port = port or int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    env = dict(os.environ)
    if _db_file():
        env["LIBRARY_DB_FILE"] = _db_file()
    args = [sys.executable, "-m", "uvicorn", "bibliodesk.api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    raise typer.Exit(code=subprocess.run(args, env=env).returncode)


if __name__ == "__main__":
    app()
