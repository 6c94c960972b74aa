"""Command-line interface for QuarryCrawl."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional, Tuple

import click
import structlog
from rich.console import Console
from rich.table import Table

from quarrycrawl import __version__
from quarrycrawl.config.config import Config, CrawlOptions, MonitoringConfig, load_config
from quarrycrawl.crawler.factory import CrawlerFactory, parse_strategy
from quarrycrawl.observability.logging import configure_logging
from quarrycrawl.observability.metrics import MetricsManager
from quarrycrawl.protocols import CrawlStatistics, CrawlStrategy

console = Console(stderr=True)
logger = structlog.get_logger(__name__)


class ShutdownManager:
    """Turns SIGINT/SIGTERM into a cooperative crawl cancellation."""

    def __init__(self) -> None:
        self.is_shutting_down = False
        self._shutdown_signals = (signal.SIGINT, signal.SIGTERM)
        self._callbacks: List[Callable[[], None]] = []

    def on_shutdown(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def _signal_handler(self, signum: int) -> None:
        if self.is_shutting_down:
            # Second signal: give up on a graceful stop
            raise KeyboardInterrupt
        self.is_shutting_down = True
        logger.info("Shutdown signal received", signal=signum)
        console.print(f"\n[yellow]Received signal {signum}, finishing in-flight requests...[/yellow]")
        for callback in self._callbacks:
            callback()

    def install(self) -> None:
        """Install signal handlers on the running loop."""
        loop = asyncio.get_running_loop()
        for sig in self._shutdown_signals:
            try:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            except NotImplementedError:
                # Windows event loops do not support signal handlers
                signal.signal(sig, lambda signum, frame: self._signal_handler(signum))


def _load(ctx: click.Context) -> Config:
    config: Config = ctx.obj["config"]
    return config


def _print_statistics(stats: CrawlStatistics, robots_blocked: int) -> None:
    table = Table(title="Crawl statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Requests", str(stats.total_requests))
    table.add_row("Successful", str(stats.successful_requests))
    table.add_row("Failed", str(stats.failed_requests))
    table.add_row("Robots blocked", str(robots_blocked))
    table.add_row("Avg response (ms)", f"{stats.average_response_time_ms:.1f}")
    table.add_row("Requests/s", f"{stats.requests_per_second:.2f}")
    for code, count in sorted(stats.status_code_distribution.items()):
        table.add_row(f"Status {code}", str(count))
    console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", type=click.Path(exists=True, path_type=Path), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides the config file)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Optional[Path], log_level: Optional[str]) -> None:
    """QuarryCrawl - concurrent web crawler."""
    ctx.ensure_object(dict)
    config = load_config(config_path)
    if log_level:
        config = config.model_copy(
            update={"monitoring": MonitoringConfig(**{**config.monitoring.model_dump(), "log_level": log_level})}
        )
    configure_logging(config.monitoring)
    ctx.obj["config"] = config


@cli.command()
@click.argument("seeds", nargs=-1, required=True)
@click.option(
    "--strategy",
    "-s",
    default=CrawlStrategy.BREADTH_FIRST.value,
    show_default=True,
    help="bfs, dfs, intelligent or sitemap",
)
@click.option("--max-depth", type=int, help="Deepest link level to follow")
@click.option("--max-pages", type=int, help="Maximum pages to fetch")
@click.option("--concurrency", type=int, help="Parallel workers")
@click.option("--delay", type=float, help="Seconds between fetches per worker")
@click.option("--include", "include_patterns", multiple=True, help="Regex a URL must match (repeatable)")
@click.option("--exclude", "exclude_patterns", multiple=True, help="Regex that rejects a URL (repeatable)")
@click.option("--external/--same-domain", default=None, help="Follow links to other domains")
@click.option("--ignore-robots", is_flag=True, help="Do not consult robots.txt")
@click.option("--images", is_flag=True, help="Collect image URLs")
@click.option("--with-body", is_flag=True, help="Include page bodies in the JSON output")
@click.pass_context
def crawl(
    ctx: click.Context,
    seeds: Tuple[str, ...],
    strategy: str,
    max_depth: Optional[int],
    max_pages: Optional[int],
    concurrency: Optional[int],
    delay: Optional[float],
    include_patterns: Tuple[str, ...],
    exclude_patterns: Tuple[str, ...],
    external: Optional[bool],
    ignore_robots: bool,
    images: bool,
    with_body: bool,
) -> None:
    """Crawl from SEEDS and print one JSON object per fetched page."""
    config = _load(ctx)
    try:
        resolved = parse_strategy(strategy)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--strategy") from e

    overrides: dict[str, Any] = config.crawl.model_dump(exclude_unset=True)
    for key, value in (
        ("max_depth", max_depth),
        ("max_pages", max_pages),
        ("concurrency", concurrency),
        ("delay_between_fetches", delay),
        ("follow_external_links", external),
    ):
        if value is not None:
            overrides[key] = value
    if include_patterns:
        overrides["include_patterns"] = include_patterns
    if exclude_patterns:
        overrides["exclude_patterns"] = exclude_patterns
    if ignore_robots:
        overrides["respect_robots"] = False
    if images:
        overrides["include_images"] = True

    try:
        options = CrawlOptions.for_strategy(resolved, **overrides)
    except ValueError as e:
        raise click.UsageError(str(e)) from e

    async def run_crawl() -> int:
        MetricsManager(config.monitoring).start()
        shutdown = ShutdownManager()
        shutdown.install()

        async with CrawlerFactory(config).create(resolved, options) as crawler:
            shutdown.on_shutdown(crawler.cancel)
            async for result in crawler.crawl(list(seeds)):
                sys.stdout.write(json.dumps(result.to_dict(include_body=with_body)) + "\n")
                sys.stdout.flush()
            coordinator = crawler.coordinator
            _print_statistics(crawler.statistics, coordinator.robots_blocked if coordinator else 0)
            return 130 if shutdown.is_shutting_down else 0

    try:
        exit_code = asyncio.run(run_crawl())
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    sys.exit(exit_code)


@cli.command()
@click.argument("url")
@click.pass_context
def robots(ctx: click.Context, url: str) -> None:
    """Report whether URL may be crawled and what its robots.txt declares."""
    config = _load(ctx)

    async def check() -> None:
        async with CrawlerFactory(config).create() as crawler:
            allowed = await crawler.is_allowed(url)
            document = await crawler.robots.get_document(url)
            delay = await crawler.robots.crawl_delay(url, crawler.options.user_agent)
        console.print(f"[bold]{url}[/bold]: {'[green]allowed' if allowed else '[red]disallowed'}")
        if document is None:
            console.print("No robots.txt found (everything allowed)")
            return
        console.print(f"Groups: {', '.join(sorted(document.rules))}")
        if delay is not None:
            console.print(f"Crawl-delay: {delay}s")
        for sitemap_url in document.sitemap_urls:
            console.print(f"Sitemap: {sitemap_url}")

    asyncio.run(check())


@cli.command()
@click.argument("sitemap_url")
@click.pass_context
def sitemap(ctx: click.Context, sitemap_url: str) -> None:
    """Print every page URL listed by SITEMAP_URL, following sitemap indexes."""
    config = _load(ctx)

    async def extract() -> List[str]:
        async with CrawlerFactory(config).create(CrawlStrategy.SITEMAP) as crawler:
            return await crawler.sitemaps.extract_urls(sitemap_url)

    for url in asyncio.run(extract()):
        click.echo(url)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
