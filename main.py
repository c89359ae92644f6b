import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import settings
from errors import LibraryError
from library import Library

console = Console()

app = typer.Typer(help="Library loan administration CLI")


def _library() -> Library:
    return Library()


def _fail(exc: LibraryError) -> None:
    console.print(f"[bold red]Error:[/] {exc.message}")
    raise typer.Exit(code=1)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address (default: API_HOST)"),
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: API_PORT)"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Start the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    console.print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
        "--log-level", settings.log_level.lower(),
    ]
    if reload:
        args.append("--reload")
    try:
        subprocess.run(args, check=False, env=os.environ.copy())
    except KeyboardInterrupt:
        console.print("[dim]Server stopped[/]")


@app.command("stats")
def cli_stats():
    """Show the librarian dashboard counters."""
    try:
        stats = _library().queries.dashboard_stats()
    except LibraryError as exc:
        _fail(exc)
        return
    content = (
        f"[bold]Total Books:[/] {stats['totalBooks']}\n"
        f"[bold]Available Copies:[/] {stats['availableBooks']}\n"
        f"[bold]Total Users:[/] {stats['totalUsers']}\n"
        f"[bold]Pending Loans:[/] {stats['pendingLoans']}\n"
        f"[bold]Active Loans:[/] {stats['activeLoans']}\n"
        f"[bold]Overdue Loans:[/] {stats['overdueLoans']}"
    )
    console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))


@app.command("loans")
def cli_loans(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="pending | approved | rejected | returned"),
    page: int = typer.Option(1, "--page", "-p"),
    limit: int = typer.Option(20, "--limit", "-l"),
):
    """List loans, newest request first."""
    try:
        items, pagination = _library().queries.list_loans(status=status, page=page, limit=limit)
    except LibraryError as exc:
        _fail(exc)
        return
    if not items:
        console.print("No loans found.")
        return

    table = Table(title="📚 Loans", show_lines=True, header_style="bold cyan")
    table.add_column("ID", style="magenta", no_wrap=True)
    table.add_column("Book", style="white")
    table.add_column("User", style="white")
    table.add_column("Status", style="green")
    table.add_column("Due", style="dim")
    for item in items:
        book = item.get("book") or {}
        user = item.get("user") or {}
        table.add_row(
            item["id"],
            book.get("title", "(deleted book)"),
            user.get("name", item["userId"]),
            item["status"],
            (item.get("dueDate") or "")[:10],
        )
    console.print(table)
    console.print(
        f"[dim]Page {pagination['page']} of {pagination['totalPages']} ({pagination['totalItems']} loans)[/]"
    )


@app.command("current-loans")
def cli_current_loans(user_id: str = typer.Argument(..., help="User id")):
    """Show a user's approved loans with days remaining."""
    try:
        items = _library().queries.list_current_loans(user_id)
    except LibraryError as exc:
        _fail(exc)
        return
    if not items:
        console.print(f"User {user_id} has no current loans.")
        return

    table = Table(title=f"Current loans of {user_id}", header_style="bold cyan")
    table.add_column("Book", style="white")
    table.add_column("Due", style="dim")
    table.add_column("Days left", justify="right")
    for item in items:
        book = item.get("book") or {}
        days = item["daysRemaining"]
        days_cell = f"[bold red]{days} (overdue)[/]" if item["isOverdue"] else str(days)
        table.add_row(book.get("title", "(deleted book)"), (item.get("dueDate") or "")[:10], days_cell)
    console.print(table)


@app.command("reconcile")
def cli_reconcile(book: Optional[str] = typer.Option(None, "--book", "-b", help="Only this book id")):
    """Recompute availableStock from approved loans and clear stale loan claims."""
    try:
        report = _library().reconcile(book)
    except LibraryError as exc:
        _fail(exc)
        return
    if not report["books"]:
        console.print("All stock counters are consistent.")
    for change in report["books"]:
        console.print(f"Book {change['bookId']}: availableStock {change['before']} -> {change['after']}")
    if report["releasedClaims"] or report["restoredClaims"]:
        console.print(
            f"Loan claims: {len(report['releasedClaims'])} released, {len(report['restoredClaims'])} restored"
        )


if __name__ == "__main__":
    app()
