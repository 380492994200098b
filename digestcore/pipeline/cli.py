"""CLI interface for the digest pipeline.

Usage:
    digestcore init
    digestcore add-source general "Example Blog" https://example.com/feed.xml
    digestcore ingest --channel general
    digestcore digest --channel general --tenant team-a
    digestcore status
    digestcore set-quota team-a 200
"""

from __future__ import annotations

import asyncio
import json
import sys
from datetime import timedelta
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from digestcore.config import DEFAULT_CONFIG_PATH, DEFAULT_DB_PATH, DigestSettings, LLMSettings, load_config
from digestcore.connectors.content_fetcher import ArticleFetcher
from digestcore.connectors.rss import RSSConnector
from digestcore.digest.generator import DigestGenerator
from digestcore.digest.queue import DigestQueue
from digestcore.digest.summarizer import DigestSummarizer
from digestcore.enrich.cache import FullTextCache
from digestcore.enrich.fetcher import BoundedFetcher
from digestcore.errors import DigestError
from digestcore.llm.client import LLMClient
from digestcore.llm.quota import QuotaStore
from digestcore.observability.logging import setup_logging
from digestcore.observability.metrics import MetricsRecorder
from digestcore.pipeline.orchestrator import FailedSourceRegistry, IngestOrchestrator
from digestcore.storage.db import DatabaseManager
from digestcore.storage.models import Source, utcnow

console = Console()


def run_async(coro):
    """Run an async function in a fresh event loop."""
    return asyncio.run(coro)


@click.group()
@click.option("--db", default=DEFAULT_DB_PATH, help="Database path")
@click.option("--config", default=DEFAULT_CONFIG_PATH, help="Config file path")
@click.option("--log-level", default="WARNING", help="Log level (DEBUG, INFO, ...)")
@click.option("--json-logs", is_flag=True, help="Emit logs as JSON lines")
@click.pass_context
def cli(ctx, db: str, config: str, log_level: str, json_logs: bool):
    """Feed digest pipeline CLI."""
    setup_logging(log_level, json_logs=json_logs)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db
    ctx.obj["config"] = load_config(config)


@cli.command()
@click.pass_context
def init(ctx):
    """Create the database and apply migrations."""

    async def _run():
        db = DatabaseManager(ctx.obj["db_path"])
        await db.initialize()
        await db.close()
        console.print(f"[green]Database ready:[/green] {ctx.obj['db_path']}")

    run_async(_run())


@cli.command("add-source")
@click.argument("channel_id")
@click.argument("name")
@click.argument("url")
@click.option("--disabled", is_flag=True, help="Add the source disabled")
@click.pass_context
def add_source(ctx, channel_id: str, name: str, url: str, disabled: bool):
    """Register a feed URL for a channel."""

    async def _run():
        db = DatabaseManager(ctx.obj["db_path"])
        await db.initialize()
        try:
            source = Source.create(channel_id, name, url)
            source.enabled = not disabled
            await db.upsert_source(source)
            console.print(f"[green]Saved source[/green] {name} ({source.id}) for channel {channel_id}")
        finally:
            await db.close()

    run_async(_run())


async def _ingest(
    config: dict,
    db: DatabaseManager,
    metrics: MetricsRecorder,
    registry: FailedSourceRegistry,
    channel_id: Optional[str],
):
    orchestrator = IngestOrchestrator.from_config(config, db, RSSConnector(), metrics, registry)
    channels = [channel_id] if channel_id else await db.list_channels()
    summaries = []
    for channel in channels:
        summaries.append((channel, await orchestrator.ingest_channel(channel)))
    return summaries


@cli.command()
@click.option("--channel", "channel_id", help="Only ingest this channel (default: all)")
@click.pass_context
def ingest(ctx, channel_id: Optional[str]):
    """Fetch enabled feeds and store new items."""

    async def _run():
        db = DatabaseManager(ctx.obj["db_path"])
        await db.initialize()
        try:
            metrics = MetricsRecorder(db)
            registry = FailedSourceRegistry()
            with console.status("[bold green]Ingesting..."):
                summaries = await _ingest(ctx.obj["config"], db, metrics, registry, channel_id)

            table = Table(title="Ingest Results")
            table.add_column("Channel", style="magenta")
            table.add_column("Source", style="cyan")
            table.add_column("Fetched", justify="right")
            table.add_column("Inserted", justify="right", style="green")
            table.add_column("Duplicates", justify="right", style="yellow")
            table.add_column("Error", style="red")
            table.add_column("Time", justify="right")

            for channel, summary in summaries:
                for r in summary.results:
                    table.add_row(
                        channel,
                        r.source_id,
                        str(r.fetched),
                        str(r.inserted),
                        str(r.duplicates),
                        (r.error_message or "")[:50],
                        f"{r.duration_seconds:.1f}s",
                    )
            console.print(table)
        finally:
            await db.close()

    run_async(_run())


@cli.command()
@click.option("--channel", "channel_id", required=True, help="Channel to build the digest for")
@click.option("--tenant", "tenant_id", default=None, help="Tenant whose LLM quota is charged")
@click.option("--hours", type=int, default=None, help="Window length in hours (default: since last digest)")
@click.option("--ingest/--no-ingest", "run_ingest", default=False, help="Ingest the channel first")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
@click.pass_context
def digest(ctx, channel_id: str, tenant_id: Optional[str], hours: Optional[int], run_ingest: bool, as_json: bool):
    """Build, persist and print a digest for a channel."""
    config = ctx.obj["config"]
    settings = DigestSettings.from_config(config)
    llm_settings = LLMSettings.from_config(config)

    async def _run():
        db = DatabaseManager(ctx.obj["db_path"])
        await db.initialize()
        try:
            metrics = MetricsRecorder(db)
            registry = FailedSourceRegistry()
            if run_ingest:
                with console.status("[bold green]Ingesting..."):
                    await _ingest(config, db, metrics, registry, channel_id)

            quota = QuotaStore(db, default_quota=llm_settings.default_daily_quota)
            llm = LLMClient(llm_settings, metrics, quota) if llm_settings.configured else None
            fetcher = BoundedFetcher.from_settings(
                settings,
                ArticleFetcher(),
                FullTextCache(settings.fulltext_cache_ttl_seconds),
                metrics,
            )
            summarizer = DigestSummarizer(settings, llm_settings, llm, metrics)
            generator = DigestGenerator(settings, db, fetcher, summarizer, metrics, registry)
            queue = DigestQueue(generator.run_job, metrics)

            if hours:
                end = utcnow()
                start = end - timedelta(hours=hours)
            else:
                start, end = await generator.resolve_digest_window(channel_id)

            with console.status("[bold green]Building digest..."):
                return await queue.enqueue(channel_id, start, end, tenant_id)
        finally:
            await db.close()

    try:
        result = run_async(_run())
    except DigestError as e:
        console.print(f"[red]Digest failed:[/red] {e}")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(result.to_dict(), ensure_ascii=False, indent=2))
        return

    console.print(f"\n[bold]{result.overview_text}[/bold]\n")
    for item in result.items:
        console.print(f"[cyan]{item.source_name}[/cyan] [bold]{item.title}[/bold]")
        console.print(f"  {item.url}")
        console.print(f"  {item.summary}\n")
    meta = result.summary_meta
    console.print(
        f"[dim]llm_used={meta.llm_used} llm_items={meta.llm_items} "
        f"skipped={meta.skipped_llm_items} fulltext={meta.used_fulltext_count} "
        f"fallback={meta.fallback_reason.value if meta.fallback_reason else '-'}[/dim]"
    )


@cli.command()
@click.pass_context
def status(ctx):
    """Show database counts, sources and recent digest runs."""

    async def _run():
        db = DatabaseManager(ctx.obj["db_path"])
        await db.initialize()
        try:
            stats = await db.get_stats()

            console.print("\n[bold]Database Status[/bold]")
            console.print(f"  Path: {ctx.obj['db_path']}")
            console.print(f"  Sources: {stats['total_sources']}")
            console.print(f"  Items: {stats['total_items']}")
            console.print(f"  Digests: {stats['total_digests']}")
            console.print(f"  Metrics: {stats['total_metrics']}")
            console.print(f"  Tenants: {stats['total_tenants']}")

            for channel in await db.list_channels():
                sources = await db.list_enabled_sources(channel)
                last = await db.get_last_digest(channel)
                table = Table(title=f"Channel {channel}")
                table.add_column("Source", style="cyan")
                table.add_column("Items", justify="right")
                table.add_column("Last Fetch")
                for s in sources:
                    last_fetch = (
                        s.last_fetched_at.strftime("%Y-%m-%d %H:%M")
                        if s.last_fetched_at
                        else "never"
                    )
                    table.add_row(s.name, str(await db.count_items(s.id)), last_fetch)
                console.print(table)
                if last is not None:
                    console.print(f"  Last digest window ends {last.range_end:%Y-%m-%d %H:%M} UTC")

            runs = await db.list_metrics("digest_run", limit=5)
            if runs:
                table = Table(title="Recent Digest Runs")
                table.add_column("When")
                table.add_column("Channel", style="cyan")
                table.add_column("Status")
                table.add_column("Details")
                for m in runs:
                    color = "green" if m.status == "success" else "red"
                    table.add_row(
                        m.created_at.strftime("%Y-%m-%d %H:%M") if m.created_at else "?",
                        m.operation,
                        f"[{color}]{m.status}",
                        json.dumps(m.metadata or {})[:60],
                    )
                console.print(table)
        finally:
            await db.close()

    run_async(_run())


@cli.command("set-quota")
@click.argument("tenant_id")
@click.argument("quota", type=int)
@click.pass_context
def set_quota(ctx, tenant_id: str, quota: int):
    """Set a tenant's daily LLM call quota."""
    llm_settings = LLMSettings.from_config(ctx.obj["config"])

    async def _run():
        db = DatabaseManager(ctx.obj["db_path"])
        await db.initialize()
        try:
            store = QuotaStore(db, default_quota=llm_settings.default_daily_quota)
            await store.set_quota(tenant_id, quota)
            return await store.usage(tenant_id)
        finally:
            await db.close()

    try:
        usage = run_async(_run())
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    console.print(
        f"[green]Tenant {tenant_id}:[/green] {usage['used']}/{usage['quota']} used, "
        f"{usage['remaining']} remaining"
    )


def main():
    cli()


if __name__ == "__main__":
    main()
