from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..alerts.engine import SearchOutcome
from ..models.location import Location
from ..models.search import SearchResult

SOURCE_TAGS = {
    "pyp": "[cyan]PYP[/cyan]",
    "row52": "[magenta]Row52[/magenta]",
}


class TerminalOutput:
    """Rich terminal output for searches, locations and alert runs."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def display_search(self, query: str, result: SearchResult, limit: int | None = None):
        if result.cancelled:
            self.console.print("\n[yellow]Search cancelled.[/yellow]")

        self.console.print()
        self.console.print(
            Panel(
                f"[bold white]Junkyard inventory: {query or 'all vehicles'}[/bold white]\n"
                f"[dim]{result.total_count} vehicles from {result.locations_covered} "
                f"locations in {result.search_time_ms / 1000:.1f}s[/dim]",
                border_style="green",
            )
        )

        if result.locations_with_errors:
            self.console.print(
                f"[yellow]{len(result.locations_with_errors)} locations could not be searched:[/yellow] "
                f"[dim]{', '.join(result.locations_with_errors)}[/dim]"
            )

        if not result.vehicles:
            self.console.print(
                "\n[yellow]No vehicles found matching your criteria.[/yellow]\n"
                "[dim]Try a broader query or fewer filters.[/dim]\n"
            )
            return

        shown = result.vehicles[:limit] if limit else result.vehicles
        table = Table(show_lines=False, padding=(0, 1))
        table.add_column("Vehicle", style="bold")
        table.add_column("Color")
        table.add_column("Yard")
        table.add_column("Row/Space", style="dim")
        table.add_column("Added")
        table.add_column("Miles", justify="right")
        table.add_column("Source")

        for v in shown:
            yard = v.yard_location
            position = "/".join(p for p in (yard.section, yard.row, yard.space) if p)
            table.add_row(
                f"[link={v.details_url}]{v.title}[/link]" if v.details_url else v.title,
                v.color or "[dim]-[/dim]",
                f"{v.location.name}, {v.location.state_abbr}",
                position or "-",
                v.available_date.strftime("%Y-%m-%d"),
                f"{v.distance:.0f}",
                SOURCE_TAGS.get(v.source, v.source),
            )
        self.console.print(table)

        if limit and result.total_count > limit:
            self.console.print(f"[dim]...and {result.total_count - limit} more[/dim]")
        self.console.print()

    def display_locations(self, locations: list[Location]):
        table = Table(title=f"{len(locations)} locations", padding=(0, 1))
        table.add_column("Code", style="bold cyan")
        table.add_column("Name")
        table.add_column("City")
        table.add_column("State")
        table.add_column("Phone", style="dim")
        table.add_column("Source")
        for loc in sorted(locations, key=lambda l: (l.state, l.name)):
            table.add_row(
                loc.location_code,
                loc.name,
                loc.city,
                loc.state_abbr,
                loc.phone,
                SOURCE_TAGS.get(loc.source, loc.source),
            )
        self.console.print(table)

    def display_alert_cycle(self, outcomes: list[SearchOutcome]):
        """Display a summary of one alert run."""
        self.console.print()
        if not outcomes:
            self.console.print("[dim]No searches with alerts enabled (or all are locked).[/dim]")
            return

        table = Table(show_header=True, box=None, padding=(0, 2))
        table.add_column("Search", style="bold")
        table.add_column("Status")
        table.add_column("New", justify="right", style="bold green")
        for outcome in outcomes:
            failed = "failed" in outcome.status or outcome.status.startswith("error")
            status = f"[red]{outcome.status}[/red]" if failed else outcome.status
            table.add_row(outcome.search_id, status, str(outcome.new_vehicles or ""))
        self.console.print(Panel(table, title="[bold]Alert Cycle[/bold]"))
        self.console.print()
