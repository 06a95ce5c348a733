"""Console output for the pacer CLI, rendered with rich."""

import logging
from datetime import datetime
from typing import Any, Optional

from rich.box import ROUNDED, SIMPLE
from rich.console import Console
from rich.json import JSON
from rich.panel import Panel
from rich.pretty import Pretty
from rich.table import Table
from rich.text import Text

from pacer.domain.interfaces.user_interface import UserInterface
from pacer.domain.models.common import Mode, Payload
from pacer.domain.models.stats import RateStats

logger = logging.getLogger(__name__)

# Health thresholds for the stats indicator
WARN_DELAY_MS = 500
CRITICAL_DELAY_MS = 1500


def health_label(stats: RateStats) -> Text:
    """Green/yellow/red indicator a dashboard can show next to the stats."""
    if stats.current_delay_ms >= CRITICAL_DELAY_MS or stats.mode is Mode.CONSERVATIVE:
        return Text("throttled", style="bold red")
    if stats.current_delay_ms >= WARN_DELAY_MS or stats.queue_depth > 3:
        return Text("busy", style="bold yellow")
    return Text("healthy", style="bold green")


def build_stats_table(stats: RateStats, title: str = "Request client") -> Table:
    table = Table(title=title, box=SIMPLE, show_header=False, title_justify="left")
    table.add_column("metric", style="dim")
    table.add_column("value", justify="right")
    table.add_row("health", health_label(stats))
    table.add_row("mode", stats.mode.value)
    table.add_row("current delay", f"{stats.current_delay_ms:g} ms")
    table.add_row("requests (60s)", str(stats.requests_in_window))
    table.add_row("rate-limit hits", str(stats.rate_limit_hit_count))
    table.add_row("queued", str(stats.queue_depth))
    table.add_row("in flight", str(stats.in_flight))
    table.add_row("cached responses", str(stats.cache_size))
    if stats.last_rate_limit_at:
        last = datetime.fromtimestamp(stats.last_rate_limit_at).strftime("%H:%M:%S")
        table.add_row("last 429", last)
    return table


class ConsoleDisplay(UserInterface):
    """Concrete implementation of UserInterface using the rich library for console output."""

    def __init__(self, console: Optional[Console] = None):
        self._console = console or Console()

    @property
    def console(self) -> Console:
        return self._console

    def display_payload(self, payload: Payload, **kwargs: Any) -> None:
        title = kwargs.get("title", "Response")
        cached = kwargs.get("cached", False)
        age_ms = kwargs.get("age_ms")
        if cached:
            age = f" · {age_ms // 60000} min old" if age_ms is not None else ""
            title = f"{title} [yellow](cached{age})[/yellow]"
        if isinstance(payload, (dict, list)):
            body: Any = JSON.from_data(payload)
        elif payload is None:
            body = Text("(empty)", style="dim")
        else:
            body = Pretty(payload)
        self.console.print(Panel(body, title=title, title_align="left", box=ROUNDED,
                                 border_style="yellow" if cached else "blue"))

    def display_stats(self, stats: RateStats, **kwargs: Any) -> None:
        self.console.print(build_stats_table(stats, title=kwargs.get("title", "Request client")))

    def display_error(self, error_message: str, **kwargs: Any) -> None:
        logger.debug(f"Displaying error: {error_message}")
        self.console.print(f"[bold red]Error:[/bold red] {error_message}")

    def display_warning(self, warning_message: str, **kwargs: Any) -> None:
        self.console.print(f"[bold yellow]Warning:[/bold yellow] {warning_message}")

    def display_info(self, info_message: str, **kwargs: Any) -> None:
        self.console.print(f"[cyan]{info_message}[/cyan]")
