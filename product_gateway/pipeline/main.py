"""CLI entry point for the product gateway.

This module provides the ``product-gateway`` command group: product lookups
through the provider fallback chain, connection and quota diagnostics, and
the background queue commands an external scheduler (cron, systemd timer)
calls to run processing passes.
"""

import asyncio
import functools
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import click
from rich.console import Console
from rich.table import Table

from product_gateway.gateway import ProductGateway
from product_gateway.models.config import ConfigManager, GatewayConfig
from product_gateway.models.data_models import BatchStatus, BulkResult, JobPriority, QueueRunResult
from product_gateway.models.response import ApiResponse
from product_gateway.pipeline.output import JSONOutputFormatter


console = Console()

PRIORITIES = {
    "low": JobPriority.LOW,
    "normal": JobPriority.NORMAL,
    "high": JobPriority.HIGH,
    "urgent": JobPriority.URGENT,
}


def _load_config(ctx: click.Context) -> GatewayConfig:
    cli_overrides = {}
    if ctx.obj.get("log_level"):
        cli_overrides["log_level"] = ctx.obj["log_level"].upper()
    return ConfigManager(ctx.obj["config_path"]).load_config(cli_overrides)


def _run_with_gateway(ctx: click.Context, func: Callable[[ProductGateway], Awaitable[Any]]) -> Any:
    """Build a gateway, run ``func`` against it and close it."""
    config = _load_config(ctx)

    async def runner() -> Any:
        gateway = ProductGateway.from_config(config)
        try:
            return await func(gateway)
        finally:
            await gateway.aclose()

    return asyncio.run(runner())


def handle_errors(command: Callable) -> Callable:
    """Map failures to exit code 1 and Ctrl-C to 130."""
    @functools.wraps(command)
    def wrapper(*args, **kwargs):
        try:
            return command(*args, **kwargs)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted by user[/yellow]")
            sys.exit(130)  # Standard exit code for SIGINT
        except (click.exceptions.Exit, click.ClickException):
            raise
        except Exception as e:
            console.print(f"\n[red]Error:[/red] {e}", style="bold red")
            if "--debug" in sys.argv:
                console.print_exception()
            sys.exit(1)
    return wrapper


def _emit(result: Any, as_json: bool, output: Optional[Path], render: Callable[[Any], None]) -> None:
    formatter = JSONOutputFormatter()
    if output is not None:
        formatter.save(result, str(output))
        console.print(f"[bold]Output saved to:[/bold] {output}")
    if as_json:
        click.echo(formatter.dumps(result))
    elif output is None:
        render(result)


def _parse_payload(payload: Optional[str]) -> Dict[str, Any]:
    if not payload:
        return {}
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"payload is not valid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise click.BadParameter("payload must be a JSON object")
    return parsed


# -- rendering ----------------------------------------------------------------

def _product_table(products: List[Dict[str, Any]], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ASIN", style="cyan")
    table.add_column("Title")
    table.add_column("Price", justify="right", style="green")
    table.add_column("Rating", justify="right", style="magenta")
    table.add_column("Availability", style="yellow")
    for product in products:
        table.add_row(
            str(product.get("asin", "")),
            str(product.get("title", ""))[:60],
            f"{product.get('price', 0.0):.2f} {product.get('currency', '')}",
            f"{product.get('rating', 0.0):.1f}",
            str(product.get("availability", "")),
        )
    return table


def _render_response(response: Optional[ApiResponse]) -> None:
    if response is None:
        console.print("[yellow]Product not available from any provider[/yellow]")
        return
    if not response.get_products():
        console.print("[yellow]No products found[/yellow]")
        error = response.get_meta("last_error")
        if error:
            console.print(f"  Last error: {error}")
        return

    console.print(_product_table(response.get_products(), "Products"))
    meta = response.metadata
    cached = " (cached)" if meta.get("cache_hit") else ""
    console.print(f"Provider: [cyan]{meta.get('provider')}[/cyan]{cached}  "
                  f"Time: {meta.get('execution_time', 0.0):.3f}s  Credits: {meta.get('credits_used', 0)}")


def _render_bulk(bulk: BulkResult) -> None:
    console.print(_product_table(list(bulk.products.values()), f"{len(bulk.products)} products"))
    if bulk.failed:
        console.print(f"[red]Failed ({len(bulk.failed)}):[/red] {', '.join(bulk.failed)}")


def _render_connections(results: Dict[str, Dict[str, Any]]) -> None:
    table = Table(title="Provider Connections")
    table.add_column("Provider", style="cyan")
    table.add_column("Status")
    table.add_column("Latency", justify="right")
    table.add_column("Message")
    for key, result in results.items():
        status = "[green]OK[/green]" if result.get("success") else "[red]FAILED[/red]"
        table.add_row(key, status, f"{result.get('latency', 0.0):.3f}s", str(result.get("message", "")))
    console.print(table)


def _render_quota(quota: Dict[str, Dict[str, Any]]) -> None:
    table = Table(title="Provider Quota")
    table.add_column("Provider", style="cyan")
    table.add_column("Used", justify="right")
    table.add_column("Remaining", justify="right", style="green")
    table.add_column("Limit", justify="right")
    table.add_column("Rate limit")
    for key, info in quota.items():
        limits = info.get("rate_limits") or {}
        rate = f"{limits['requests']}/{limits['window']}s" if limits else "-"
        table.add_row(
            key,
            str(info.get("credits_used", 0)),
            str(info.get("credits_remaining", 0)),
            str(info.get("credits_limit", 0)),
            rate,
        )
    console.print(table)


def _render_batch(status: BatchStatus) -> None:
    table = Table(title=f"Batch {status.batch_id}", show_header=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    for name in ("total", "pending", "processing", "completed", "failed", "cancelled"):
        table.add_row(name.capitalize(), str(getattr(status, name)))
    table.add_row("Progress", f"{status.progress:.1f}%")
    table.add_row("Complete", "yes" if status.is_complete else "no")
    console.print(table)


def _render_run(run: QueueRunResult) -> None:
    if run.status == "locked":
        console.print("[yellow]Another processing pass is running[/yellow]")
        return
    console.print(f"Processed {run.processed} jobs: [green]{run.succeeded} succeeded[/green], "
                  f"[red]{run.failed} failed[/red]" + (" (stopped early)" if run.stopped_early else ""))
    for error in run.errors:
        console.print(f"  job {error.get('job_id')}: {error.get('error')}")


# -- commands -----------------------------------------------------------------

@click.group()
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default="config/config.yaml",
    help="Path to configuration YAML file",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides config)",
)
@click.version_option(version="1.0.0", prog_name="product-gateway")
@click.pass_context
def cli(ctx: click.Context, config_path: Path, log_level: Optional[str]) -> None:
    """
    Product Gateway - multi-provider product data with fallback and caching.

    Examples:

        # Look up one product through the provider chain
        $ product-gateway get-product B08N5WRWNW

        # Queue an import batch, then run a processing pass
        $ product-gateway enqueue import_product --asin B0001 --asin B0002
        $ product-gateway process-queue --limit 10
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["log_level"] = log_level


@cli.command("get-product")
@click.argument("asin")
@click.option("--provider", "-p", help="Try this provider first")
@click.option("--json", "as_json", is_flag=True, help="Print the raw JSON envelope")
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Write JSON to a file")
@click.pass_context
@handle_errors
def get_product(ctx: click.Context, asin: str, provider: Optional[str], as_json: bool, output: Optional[Path]) -> None:
    """Fetch a single product by ASIN."""
    result = _run_with_gateway(ctx, lambda gw: gw.manager.get_product(asin, provider=provider))
    _emit(result, as_json, output, _render_response)
    if result is None:
        sys.exit(1)


@cli.command("search")
@click.argument("keyword")
@click.option("--page", type=int, default=1, show_default=True)
@click.option("--per-page", type=int, default=10, show_default=True)
@click.option("--sort", help="Provider sort order")
@click.option("--provider", "-p", help="Try this provider first")
@click.option("--json", "as_json", is_flag=True, help="Print the raw JSON envelope")
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Write JSON to a file")
@click.pass_context
@handle_errors
def search(
    ctx: click.Context,
    keyword: str,
    page: int,
    per_page: int,
    sort: Optional[str],
    provider: Optional[str],
    as_json: bool,
    output: Optional[Path],
) -> None:
    """Search products by keyword."""
    options = {"page": page, "per_page": per_page, "sort": sort}
    options = {k: v for k, v in options.items() if v is not None}
    result = _run_with_gateway(ctx, lambda gw: gw.manager.search_products(keyword, options, provider=provider))
    _emit(result, as_json, output, _render_response)


@cli.command("bulk")
@click.argument("asins", nargs=-1)
@click.option("--file", "-f", "asin_file", type=click.Path(exists=True, path_type=Path),
              help="File with one ASIN per line")
@click.option("--provider", "-p", help="Try this provider first")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.option("--output", "-o", type=click.Path(path_type=Path), help="Write JSON to a file")
@click.pass_context
@handle_errors
def bulk(
    ctx: click.Context,
    asins: tuple,
    asin_file: Optional[Path],
    provider: Optional[str],
    as_json: bool,
    output: Optional[Path],
) -> None:
    """Fetch many products at once."""
    ids = list(asins)
    if asin_file is not None:
        ids.extend(line.strip() for line in asin_file.read_text().splitlines() if line.strip())
    if not ids:
        raise click.UsageError("give at least one ASIN or --file")

    result = _run_with_gateway(ctx, lambda gw: gw.manager.get_multiple_products(ids, provider=provider))
    _emit(result, as_json, output, _render_bulk)


@cli.command("test-connection")
@click.option("--provider", "-p", help="Test only this provider")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
@handle_errors
def test_connection(ctx: click.Context, provider: Optional[str], as_json: bool) -> None:
    """Check that providers are reachable and credentials work."""
    results = _run_with_gateway(ctx, lambda gw: gw.test_connection(provider))
    _emit(results, as_json, None, _render_connections)
    if not all(result.get("success") for result in results.values()):
        sys.exit(1)


@cli.command("quota")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
@handle_errors
def quota(ctx: click.Context, as_json: bool) -> None:
    """Show credit usage and rate limits per provider."""
    async def read_quota(gateway: ProductGateway) -> Dict[str, Dict[str, Any]]:
        return gateway.get_quota_info()

    _emit(_run_with_gateway(ctx, read_quota), as_json, None, _render_quota)


@cli.command("enqueue")
@click.argument("action")
@click.option("--payload", help="Job payload as a JSON object")
@click.option("--asin", "asins", multiple=True, help="Queue one job per ASIN as a batch")
@click.option("--priority", type=click.Choice(sorted(PRIORITIES)), default="normal", show_default=True)
@click.option("--provider", "-p", help="Preferred provider for the job")
@click.option("--batch-id", help="Batch identifier (generated when omitted)")
@click.pass_context
@handle_errors
def enqueue(
    ctx: click.Context,
    action: str,
    payload: Optional[str],
    asins: tuple,
    priority: str,
    provider: Optional[str],
    batch_id: Optional[str],
) -> None:
    """Queue a background job, or a batch with --asin."""
    base = _parse_payload(payload)

    async def add(gateway: ProductGateway) -> Any:
        if asins:
            return gateway.queue.add_bulk(
                action,
                [{**base, "asin": asin} for asin in asins],
                batch_id=batch_id,
                priority=PRIORITIES[priority],
                provider_hint=provider,
            )
        return gateway.enqueue_job(
            action,
            base,
            {"priority": PRIORITIES[priority], "provider": provider, "batch_id": batch_id},
        )

    queued = _run_with_gateway(ctx, add)
    if isinstance(queued, str):
        console.print(f"Queued {len(asins)} jobs in batch [cyan]{queued}[/cyan]")
    else:
        console.print(f"Queued job [cyan]{queued.id}[/cyan] ({queued.action}, priority {queued.priority})")


@cli.command("process-queue")
@click.option("--limit", type=int, help="Maximum jobs in this pass (default: queue.batch_size)")
@click.option("--recover/--no-recover", default=True, show_default=True,
              help="Requeue jobs stuck in processing before the pass")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
@handle_errors
def process_queue(ctx: click.Context, limit: Optional[int], recover: bool, as_json: bool) -> None:
    """Run one queue processing pass (call from a scheduler)."""
    async def run(gateway: ProductGateway) -> QueueRunResult:
        if recover:
            gateway.queue.recover_stale_jobs()
        return await gateway.process_queue(limit)

    _emit(_run_with_gateway(ctx, run), as_json, None, _render_run)


@cli.command("batch-status")
@click.argument("batch_id")
@click.option("--json", "as_json", is_flag=True, help="Print JSON")
@click.pass_context
@handle_errors
def batch_status(ctx: click.Context, batch_id: str, as_json: bool) -> None:
    """Show progress of a queued batch."""
    async def read_status(gateway: ProductGateway) -> BatchStatus:
        return gateway.get_batch_status(batch_id)

    _emit(_run_with_gateway(ctx, read_status), as_json, None, _render_batch)


@cli.command("cleanup")
@click.option("--days", type=int, help="Delete finished jobs older than this (default: queue.retention_days)")
@click.option("--clear-cache", is_flag=True, help="Also drop every cached response")
@click.pass_context
@handle_errors
def cleanup(ctx: click.Context, days: Optional[int], clear_cache: bool) -> None:
    """Purge old queue jobs and optionally the response cache."""
    async def purge(gateway: ProductGateway) -> int:
        deleted = gateway.queue.cleanup_old_jobs(days)
        if clear_cache:
            gateway.cache.clear_all()
        return deleted

    deleted = _run_with_gateway(ctx, purge)
    console.print(f"Deleted {deleted} finished jobs" + (" and cleared the cache" if clear_cache else ""))


if __name__ == "__main__":
    cli()
