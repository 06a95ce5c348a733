"""Main entry point for the pacer CLI.

Sets up the Typer application, builds the client (Composition Root) and
defines the commands used to exercise it from a terminal: one-off fetches
with degraded-mode fallback, a polling dashboard, and state inspection.
"""

import asyncio
import logging
from typing import Any, Coroutine, Dict, List, Optional

import typer
from rich.console import Group
from rich.live import Live
from rich.text import Text
from typing_extensions import Annotated

from pacer.core.client import RateLimitedClient
from pacer.core.services.fallback_service import FallbackService, FetchOutcome, FetchSource
from pacer.domain.errors import RequestFailure
from pacer.domain.models.common import Endpoint
from pacer.domain.models.request import RequestDescriptor
from pacer.infrastructure.cli.display import ConsoleDisplay, build_stats_table
from pacer.infrastructure.config.settings import ClientSettings, get_config, load_client_settings, load_configuration
from pacer.infrastructure.monitoring.logger_setup import DEFAULT_LOG_FORMAT, setup_logging
from pacer.infrastructure.persistence.fallback_store import DiskFallbackStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_THROTTLED = 2

app = typer.Typer(
    name="pacer",
    help="pacer: adaptive rate-limited API client with caching and degraded-mode fallback.",
    add_completion=False,
)


# --- Composition Root ---

def create_client(settings: ClientSettings) -> RateLimitedClient:
    """Builds the single client instance for this process."""
    return RateLimitedClient.from_settings(settings)


def create_fallback_store(settings: ClientSettings) -> DiskFallbackStore:
    return DiskFallbackStore(settings.fallback_dir)


def configure(ctx: typer.Context) -> ClientSettings:
    """Loads configuration, sets up logging and applies global CLI overrides."""
    options: Dict[str, Any] = ctx.obj or {}
    load_configuration()
    setup_logging(
        log_level=options.get("log_level") or get_config('logging.level', 'WARNING'),
        log_format=get_config('logging.format', DEFAULT_LOG_FORMAT),
        log_file=get_config('logging.file'),
    )
    settings = load_client_settings()
    if options.get("base_url"):
        settings.base_url = options["base_url"]
    logger.debug(f"Client settings: {settings}")
    return settings


def run_async(coro: Coroutine[Any, Any, int]) -> int:
    """Runs a command coroutine to completion and returns its exit code."""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        return EXIT_OK


def parse_params(values: Optional[List[str]]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for item in values or []:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got '{item}'")
        params[key] = value
    return params


def render_outcome(ui: ConsoleDisplay, outcome: FetchOutcome, title: str) -> int:
    if outcome.source is FetchSource.LIVE:
        ui.display_payload(outcome.payload, title=title)
        return EXIT_OK
    if outcome.source is FetchSource.CACHED:
        ui.display_warning(outcome.notice)
        ui.display_payload(outcome.payload, title=title, cached=True, age_ms=outcome.age_ms)
        return EXIT_OK
    ui.display_warning(outcome.notice)
    return EXIT_THROTTLED


# --- CLI Options ---

ParamOption = Annotated[
    Optional[List[str]],
    typer.Option("--param", "-p", help="Query parameter as key=value. Repeatable."),
]


@app.callback()
def main_callback(
    ctx: typer.Context,
    base_url: Annotated[Optional[str], typer.Option("--base-url", help="API base URL (overrides config).")] = None,
    conservative: Annotated[bool, typer.Option("--conservative", help="Start in conservative mode.")] = False,
    log_level: Annotated[Optional[str], typer.Option("--log-level", help="DEBUG, INFO, WARNING...")] = None,
):
    """Global options shared by every command."""
    ctx.obj = {"base_url": base_url, "conservative": conservative, "log_level": log_level}


@app.command()
def get(
    ctx: typer.Context,
    endpoint: Annotated[str, typer.Argument(help="Endpoint path, e.g. /evenements")],
    param: ParamOption = None,
    no_cache: Annotated[bool, typer.Option("--no-cache", help="Bypass the response cache.")] = False,
    show_stats: Annotated[bool, typer.Option("--stats", help="Print client statistics afterwards.")] = False,
):
    """Fetch an endpoint, falling back to persisted data when throttled."""
    settings = configure(ctx)
    descriptor = RequestDescriptor("GET", Endpoint(endpoint), parse_params(param), cache=not no_cache)
    ui = ConsoleDisplay()
    code = run_async(_get(settings, ui, descriptor, ctx.obj["conservative"], show_stats))
    raise typer.Exit(code)


async def _get(settings: ClientSettings, ui: ConsoleDisplay, descriptor: RequestDescriptor, conservative: bool, show_stats: bool) -> int:
    async with create_client(settings) as client:
        if conservative:
            client.use_conservative_mode()
        try:
            outcome = await FallbackService(client).fetch(descriptor)
        except RequestFailure as e:
            ui.display_error(str(e))
            return EXIT_FAILED
        code = render_outcome(ui, outcome, title=str(descriptor))
        if show_stats:
            ui.display_stats(client.get_queue_stats())
        return code


@app.command()
def watch(
    ctx: typer.Context,
    endpoint: Annotated[str, typer.Argument(help="Endpoint path to poll.")],
    param: ParamOption = None,
    interval: Annotated[float, typer.Option("--interval", "-i", min=0.0, help="Seconds between polls.")] = 1.0,
    count: Annotated[int, typer.Option("--count", "-n", min=0, help="Number of polls (0 = until Ctrl+C).")] = 0,
):
    """Poll an endpoint like a dashboard and show the client's health live."""
    settings = configure(ctx)
    descriptor = RequestDescriptor("GET", Endpoint(endpoint), parse_params(param))
    ui = ConsoleDisplay()
    code = run_async(_watch(settings, ui, descriptor, ctx.obj["conservative"], interval, count))
    raise typer.Exit(code)


async def _watch(settings: ClientSettings, ui: ConsoleDisplay, descriptor: RequestDescriptor,
                 conservative: bool, interval: float, count: int) -> int:
    async with create_client(settings) as client:
        if conservative:
            client.use_conservative_mode()
        service = FallbackService(client)
        polls = 0
        status = Text("waiting for first response...", style="dim")
        with Live(build_stats_table(client.get_queue_stats()), console=ui.console, refresh_per_second=4) as live:
            while count == 0 or polls < count:
                try:
                    outcome = await service.fetch(descriptor)
                    status = Text(f"poll {polls + 1}: {outcome.source.value}", style="green" if outcome.has_data else "yellow")
                    if outcome.notice:
                        status.append(f" ({outcome.notice})")
                except RequestFailure as e:
                    status = Text(f"poll {polls + 1}: {e}", style="red")
                polls += 1
                live.update(Group(build_stats_table(client.get_queue_stats(), title=str(descriptor)), status))
                if count == 0 or polls < count:
                    await asyncio.sleep(interval)
    return EXIT_OK


@app.command()
def stats(ctx: typer.Context):
    """Show the client's current statistics and mode."""
    settings = configure(ctx)
    ui = ConsoleDisplay()
    run_async(_stats(settings, ui, ctx.obj["conservative"]))


async def _stats(settings: ClientSettings, ui: ConsoleDisplay, conservative: bool) -> int:
    async with create_client(settings) as client:
        if conservative:
            client.use_conservative_mode()
        ui.display_stats(client.get_queue_stats())
    return EXIT_OK


@app.command(name="clear-fallback")
def clear_fallback_command(ctx: typer.Context):
    """Delete every persisted fallback snapshot and the last rate-limit marker."""
    settings = configure(ctx)
    ui = ConsoleDisplay()
    store = create_fallback_store(settings)
    try:
        store.clear()
    finally:
        store.close()
    ui.display_info(f"Cleared fallback store at {settings.fallback_dir}")


def cli_entry_point():
    """Function called by the `pacer` console script."""
    app()


if __name__ == "__main__":
    cli_entry_point()
