"""Command-line interface for the circulation engine.

Built with Typer for commands and Rich for output.
"""

import logging
from datetime import timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__
from .config import get_config
from .coordinator import BorrowStatus, CirculationCoordinator
from .errors import CirculationError
from .loans.schemas import LoanStatus

# Create the main app
app = typer.Typer(
    name="circulation",
    help="Lend items fairly: copies, loans, waitlists and fines.",
    no_args_is_help=True,
)

# Create sub-apps for command groups
item_app = typer.Typer(help="Register items and change their copy counts.")
app.add_typer(item_app, name="item")

# Rich console for pretty output
console = Console()
err_console = Console(stderr=True)


# ============================================================================
# Helper Functions
# ============================================================================


def print_error(message: str) -> None:
    """Print an error message."""
    console.print(f"[bold red]Error:[/bold red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[dim]{message}[/dim]")


def get_coordinator() -> CirculationCoordinator:
    """Build a coordinator from the environment configuration."""
    return CirculationCoordinator.from_config()


def format_status(status: str) -> str:
    """Colour a loan or reservation status."""
    colours = {
        "borrowed": "green",
        "overdue": "bold red",
        "returned": "dim",
        "lost": "red",
        "active": "cyan",
        "offered": "bold yellow",
        "fulfilled": "dim",
        "expired": "dim",
        "cancelled": "dim",
    }
    colour = colours.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Lend items fairly: copies, loans, waitlists and fines."""
    config = get_config()
    logging.basicConfig(
        level="DEBUG" if verbose else config.log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"circulation v{__version__}")


# ============================================================================
# Item Commands
# ============================================================================


@item_app.command("add")
def item_add(
    item_id: str = typer.Argument(..., help="Catalog ID of the item"),
    copies: int = typer.Option(1, "--copies", "-c", help="Number of copies"),
    replacement_cost: Optional[float] = typer.Option(
        None, "--replacement-cost", "-r", help="Charge for a lost copy"
    ),
) -> None:
    """Start circulating an item."""
    coordinator = get_coordinator()
    try:
        item = coordinator.register_item(item_id, copies, replacement_cost)
    except (CirculationError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Added {item.id} with {item.total_copies} copies")


@item_app.command("show")
def item_show(
    item_id: str = typer.Argument(..., help="Item ID"),
) -> None:
    """Show an item's copies and waitlist."""
    coordinator = get_coordinator()
    try:
        item = coordinator.get_availability(item_id)
    except CirculationError as e:
        print_error(str(e))
        raise typer.Exit(1)

    queue = coordinator.queue.list_queue(item_id)
    console.print(Panel(
        f"[bold]Available:[/bold] {item.available_copies} / {item.total_copies}\n"
        f"[bold]In use:[/bold] {item.copies_in_use}\n"
        f"[bold]Waiting:[/bold] {len(queue)}",
        title=f"[bold cyan]{item.id}[/bold cyan]",
    ))


@item_app.command("set-copies")
def item_set_copies(
    item_id: str = typer.Argument(..., help="Item ID"),
    total: int = typer.Argument(..., help="New number of copies owned"),
) -> None:
    """Apply an acquisition or withdrawal of copies."""
    coordinator = get_coordinator()
    try:
        item = coordinator.on_catalog_copy_count_changed(item_id, total)
    except (CirculationError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(
        f"{item.id} now has {item.total_copies} copies ({item.available_copies} free)"
    )


# ============================================================================
# Circulation Commands
# ============================================================================


@app.command()
def borrow(
    item_id: str = typer.Argument(..., help="Item ID"),
    user_id: str = typer.Argument(..., help="User ID"),
    days: Optional[int] = typer.Option(
        None, "--days", "-d", min=1, help="Loan period in days (default from config)"
    ),
) -> None:
    """Borrow an item, or join its waitlist."""
    coordinator = get_coordinator()
    loan_period = timedelta(days=days) if days else None
    try:
        result = coordinator.borrow_item(item_id, user_id, loan_period=loan_period)
    except CirculationError as e:
        print_error(str(e))
        raise typer.Exit(1)

    if result.status == BorrowStatus.BORROWED:
        print_success(f"{user_id} borrowed {item_id}")
        console.print(f"Loan: {result.loan.id}")
        console.print(f"[dim]Due: {result.loan.due_date:%Y-%m-%d %H:%M}[/dim]")
    else:
        print_warning(
            f"No copy free. {user_id} queued at position "
            f"{result.reservation.queue_position}"
        )
        console.print(f"Reservation: {result.reservation.id}")


@app.command("return")
def return_(
    loan_id: str = typer.Argument(..., help="Loan ID"),
) -> None:
    """Return a borrowed copy."""
    coordinator = get_coordinator()
    try:
        result = coordinator.return_item(loan_id)
    except CirculationError as e:
        print_error(str(e))
        raise typer.Exit(1)

    print_success(f"Returned {result.loan.item_id}")
    if result.fine_assessed:
        print_warning(f"Late return. Fine: {result.fine_assessed:.2f}")


@app.command()
def lost(
    loan_id: str = typer.Argument(..., help="Loan ID"),
) -> None:
    """Mark the copy of a loan as lost."""
    coordinator = get_coordinator()
    try:
        loan = coordinator.mark_lost(loan_id)
    except CirculationError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_warning(f"Copy of {loan.item_id} lost. Fine: {loan.fine_amount:.2f}")


@app.command()
def cancel(
    reservation_id: str = typer.Argument(..., help="Reservation ID"),
    user_id: str = typer.Argument(..., help="User cancelling the reservation"),
) -> None:
    """Cancel a reservation."""
    coordinator = get_coordinator()
    try:
        result = coordinator.cancel_reservation(reservation_id, user_id)
    except CirculationError as e:
        print_error(str(e))
        raise typer.Exit(1)
    print_success(f"Reservation for {result.reservation.item_id} cancelled")


@app.command()
def pay(
    loan_id: str = typer.Argument(..., help="Loan ID"),
    amount: float = typer.Argument(..., help="Amount paid"),
) -> None:
    """Record a fine payment."""
    coordinator = get_coordinator()
    try:
        result = coordinator.pay_fine(loan_id, amount)
    except (CirculationError, ValueError) as e:
        print_error(str(e))
        raise typer.Exit(1)

    if result.fully_paid:
        print_success("Fine paid in full")
    else:
        print_info(
            f"Partial payment of {amount:.2f} recorded. "
            f"Fine of {result.loan.fine_amount:.2f} stays open"
        )


@app.command()
def tick() -> None:
    """Run the overdue and offer-expiry sweeps once."""
    coordinator = get_coordinator()
    result = coordinator.tick()
    console.print(
        f"Overdue: {result.overdue_transitioned}  "
        f"Expired offers: {result.expired_reservations}"
    )


# ============================================================================
# Reports
# ============================================================================


@app.command()
def queue(
    item_id: str = typer.Argument(..., help="Item ID"),
) -> None:
    """Show an item's waitlist."""
    coordinator = get_coordinator()
    reservations = coordinator.queue.list_queue(item_id)

    if not reservations:
        console.print("[dim]Nobody is waiting[/dim]")
        return

    table = Table(title=f"Waitlist for {item_id}", show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("User", style="cyan")
    table.add_column("Status")
    table.add_column("Expires")

    for reservation in reservations:
        table.add_row(
            str(reservation.queue_position),
            reservation.user_id,
            format_status(reservation.status),
            (reservation.expires_at or "-")[:16],
        )

    console.print(table)


@app.command()
def loans(
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by user"),
    item_id: Optional[str] = typer.Option(None, "--item", "-i", help="Filter by item"),
    overdue: bool = typer.Option(False, "--overdue", "-o", help="Show only overdue loans"),
) -> None:
    """List loan records."""
    coordinator = get_coordinator()

    if overdue:
        records = coordinator.ledger.list_overdue()
    else:
        records = coordinator.ledger.list_loans(user_id=user_id, item_id=item_id)

    if not records:
        console.print("[dim]No loans found[/dim]")
        return

    table = Table(title="Loans", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim", max_width=8)
    table.add_column("Item", style="cyan")
    table.add_column("User")
    table.add_column("Due")
    table.add_column("Status")
    table.add_column("Fine", justify="right")

    for loan in records:
        fine = f"{loan.fine_amount:.2f}" if loan.fine_amount else "-"
        if loan.fine_amount and loan.fine_paid:
            fine += " [green](paid)[/green]"
        table.add_row(
            loan.id[:8],
            loan.item_id,
            loan.user_id,
            loan.due_date[:10],
            format_status(loan.status),
            fine,
        )

    console.print(table)


@app.command()
def stats(
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Statistics for one user"),
) -> None:
    """Show circulation statistics."""
    coordinator = get_coordinator()
    result = coordinator.get_library_stats(user_id)

    lines = []
    if result.total_items is not None:
        lines.append(
            f"[bold]Items:[/bold] {result.total_items}  "
            f"[bold]Copies:[/bold] {result.available_copies} free of {result.total_copies}"
        )
    lines.append(
        f"[bold]Loans:[/bold] {result.loans.total_loans} total, "
        f"{result.loans.active_loans} active, {result.loans.overdue_loans} overdue, "
        f"{result.loans.lost_loans} lost"
    )
    lines.append(
        f"[bold]Fines:[/bold] {result.loans.total_fines:.2f} assessed, "
        f"{result.loans.unpaid_fines:.2f} unpaid"
    )
    lines.append(
        f"[bold]Reservations:[/bold] {result.reservations.active_reservations} waiting, "
        f"{result.reservations.offered_reservations} offered, "
        f"{result.reservations.fulfilled_reservations} fulfilled"
    )

    title = f"Circulation for {user_id}" if user_id else "Circulation"
    console.print(Panel("\n".join(lines), title=title))


if __name__ == "__main__":
    app()
