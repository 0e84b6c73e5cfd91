import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "BIBLIODESK_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_loans_result(loans: List[Dict[str, Any]]) -> None:
    """Print loans according to the current output mode.
    - plain: '<id> - <title> #<copy> -> <client> (due <date>) [<status>]' lines, or 'No loans found.'
    - json: JSON array of the loan payloads
    - rich: Rich table
    """
    mode = get_output_mode()

    if not loans:
        print("No loans found.")
        return

    if mode == "json":
        print(json.dumps(loans, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Book", style="white")
        table.add_column("Copy", style="white")
        table.add_column("Client", style="white")
        table.add_column("Due", style="white")
        table.add_column("Status", style="white")
        for loan in loans:
            status = loan["effective_status"]
            style = "red" if loan["overdue"] else "green" if status == "returned" else "yellow"
            table.add_row(
                str(loan["id"]),
                loan["book"]["title"],
                f"#{loan['copy']['number']}",
                loan["client"]["fullName"],
                loan["due_date"],
                f"[{style}]{status}[/]",
            )
        _console.print(table)
    else:
        for loan in loans:
            print(
                f"{loan['id']} - {loan['book']['title']} #{loan['copy']['number']} -> "
                f"{loan['client']['fullName']} (due {loan['due_date']}) [{loan['effective_status']}]"
            )


def print_reminder_result(result: Dict[str, int]) -> None:
    mode = get_output_mode()

    if mode == "json":
        print(json.dumps(result, ensure_ascii=False))
    elif mode == "rich":
        content = f"[bold]Loans due:[/] {result['needing']}\n[bold]Reminders sent:[/] {result['sent']}"
        _console.print(Panel.fit(content, title="✉️  Reminders", border_style="blue"))
    else:
        print(f"Loans due: {result['needing']}")
        print(f"Reminders sent: {result['sent']}")
