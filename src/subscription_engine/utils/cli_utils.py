from rich.console import Console
from rich.table import Table


def get_rich_console() -> Console: return Console(stderr=True)


def tick_summary_table(summary: dict[str, int]) -> Table:
    """Renders scheduler tick counters as a two-column table."""
    table = Table(title="Scheduler tick")
    table.add_column("Counter", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in summary.items():
        table.add_row(key, str(value))
    return table
