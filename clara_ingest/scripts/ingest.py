"""Ingestion CLI script."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import orjson
import typer
from tqdm import tqdm

from clara_ingest.api.deps import build_pipeline
from clara_ingest.core.config import settings
from clara_ingest.core.errors import DiscoveryError
from clara_ingest.core.logging import setup_logging
from clara_ingest.ingestion.crawler import PageFetcher
from clara_ingest.ingestion.discovery import UrlDiscoverer
from clara_ingest.ingestion.models import UrlResult
from clara_ingest.ingestion.tracking import SQLiteTrackingStore
from clara_ingest.ingestion.triggers import encode_message, plan_batches

setup_logging()
logger = logging.getLogger(__name__)

app = typer.Typer()


def _read_url_file(url_file: Optional[str]) -> list[str]:
    if not url_file:
        return []
    p = Path(url_file)
    if not p.exists():
        logger.warning(f"URL file not found: {url_file}")
        return []
    out: list[str] = []
    for line in p.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        out.append(line)
    return out


async def _discover(domain: str, max_urls: int, max_depth: int, allow_prefix: Optional[list[str]]) -> list[str]:
    options = {"max_urls": max_urls, "max_depth": max_depth}
    if allow_prefix:
        options["allow_paths"] = allow_prefix
    async with PageFetcher() as fetcher:
        result = await UrlDiscoverer(fetcher).discover(domain, settings.discovery_config(**options))
    logger.info(f"Discovery breakdown: {result.breakdown}")
    return [item.url for item in result.urls]


@app.command()
def discover(
    domain: str = typer.Option(None, help="Domain to crawl, defaults to TARGET_DOMAIN"),
    max_urls: int = typer.Option(settings.max_urls, help="Maximum URLs to discover"),
    max_depth: int = typer.Option(settings.max_depth, help="Link-following depth"),
    allow_prefix: Optional[list[str]] = typer.Option(None, help="Allowed path prefixes (repeatable)"),
    output: Optional[str] = typer.Option(None, help="Write URLs to this file instead of stdout"),
):
    """Discover URLs on the target domain."""
    try:
        urls = asyncio.run(_discover(domain or settings.target_domain, max_urls, max_depth, allow_prefix))
    except DiscoveryError as e:
        logger.error(str(e))
        raise typer.Exit(code=1)

    if output:
        Path(output).write_text("\n".join(urls) + "\n", encoding="utf-8")
        logger.info(f"Wrote {len(urls)} URLs to {output}")
    else:
        for url in urls:
            typer.echo(url)


async def _run(urls: list[str], discover_first: bool, max_urls: int) -> int:
    pipeline = build_pipeline(settings)
    try:
        if discover_first:
            try:
                result = await pipeline.discoverer.discover(
                    settings.target_domain, settings.discovery_config(max_urls=max_urls)
                )
            except DiscoveryError as e:
                logger.error(str(e))
                return 1
            urls = urls + [item.url for item in result.urls]

        urls = pipeline.orchestrator.dedupe(urls)
        if not urls:
            logger.error("No URLs to process")
            return 1

        with tqdm(total=len(urls), desc="Ingesting", unit="url") as progress:

            def _on_result(result: UrlResult) -> None:
                progress.update(1)
                progress.set_postfix_str(result.state.value)

            pipeline.orchestrator.progress_callback = _on_result
            summary = await pipeline.orchestrator.run(urls)
    finally:
        await pipeline.close()

    metrics = summary.metrics
    logger.info(
        f"Run {metrics.execution_id} {metrics.status.value}: processed={metrics.processed_urls} "
        f"skipped={metrics.skipped_urls} rejected={metrics.rejected_urls} failed={metrics.failed_urls} "
        f"vectors={metrics.vectors_created}"
    )
    for error in summary.errors:
        logger.warning(f"  {error}")
    return 0 if metrics.failed_urls == 0 else 2


@app.command()
def run(
    urls: Optional[list[str]] = typer.Argument(None, help="URLs to process"),
    url_file: Optional[str] = typer.Option(None, help="File with one URL per line"),
    discover_first: bool = typer.Option(False, "--discover", help="Run discovery on TARGET_DOMAIN first"),
    max_urls: int = typer.Option(settings.max_urls, help="Discovery cap when --discover is set"),
):
    """Run the ingestion pipeline over a URL list."""
    targets = list(urls or []) + _read_url_file(url_file)
    code = asyncio.run(_run(targets, discover_first, max_urls))
    raise typer.Exit(code=code)


@app.command()
def plan(
    discovery_id: str = typer.Argument(..., help="Identifier shared by every message of this pass"),
    url_file: str = typer.Option(..., help="File with one URL per line"),
    batch_size: int = typer.Option(settings.batch_size, help="URLs per batch message"),
):
    """Print queue messages (JSON lines) for a URL list: batches then sentinels."""
    urls = _read_url_file(url_file)
    for message in plan_batches(urls, discovery_id, batch_size):
        sys.stdout.write(encode_message(message).decode("utf-8") + "\n")


@app.command()
def runs(limit: int = typer.Option(10, help="Number of runs to show")):
    """Show recent run metrics."""
    store = SQLiteTrackingStore(settings.tracking_db_path)
    try:
        for metrics in asyncio.run(store.list_run_metrics(limit=limit)):
            typer.echo(orjson.dumps(metrics.model_dump(mode="json")).decode("utf-8"))
    finally:
        store.close()


@app.command()
def purge():
    """Delete expired tracking records and run metrics."""
    store = SQLiteTrackingStore(settings.tracking_db_path)
    try:
        removed = asyncio.run(store.purge_expired())
    finally:
        store.close()
    logger.info(f"Purged {removed} expired rows")


if __name__ == "__main__":
    app()
