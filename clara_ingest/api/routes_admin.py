"""Admin API routes: the ingestion trigger surface."""

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Request, status
from pydantic import ValidationError

from clara_ingest.api.deps import Pipeline, get_pipeline, limiter
from clara_ingest.core.config import settings
from clara_ingest.core.errors import DiscoveryError
from clara_ingest.core.schemas import AdminStats, IngestAccepted, IngestRequest, RunList
from clara_ingest.core.security import verify_api_key
from clara_ingest.ingestion.triggers import MessageOutcome
from clara_ingest.vector.qdrant_client import get_collection_info

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(verify_api_key)])


async def _collect_urls(pipeline: Pipeline, payload: IngestRequest) -> list[str]:
    urls = list(payload.urls)
    if payload.discover:
        options = {"max_urls": payload.max_urls} if payload.max_urls else {}
        result = await pipeline.discoverer.discover(
            pipeline.config.target_domain, pipeline.config.discovery_config(**options)
        )
        urls.extend(item.url for item in result.urls)
    return urls


async def _run_ingest(pipeline: Pipeline, payload: IngestRequest, execution_id: str) -> None:
    try:
        urls = await _collect_urls(pipeline, payload)
    except DiscoveryError as e:
        logger.error(f"Ingest {execution_id} aborted: {e}")
        return
    await pipeline.orchestrator.run(urls, execution_id=execution_id)


@router.post("/ingest", response_model=IngestAccepted, status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(settings.ingest_rate_limit)
async def trigger_ingest(
    request: Request,
    background_tasks: BackgroundTasks,
    payload: IngestRequest,
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Trigger an ingestion run for a URL list, optionally discovered."""
    if not payload.urls and not payload.discover:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Provide urls or set discover")

    execution_id = f"api-{uuid4().hex[:12]}"
    logger.info(f"Ingest requested: {len(payload.urls)} urls, discover={payload.discover}, id={execution_id}")

    if not payload.wait:
        background_tasks.add_task(_run_ingest, pipeline, payload, execution_id)
        return IngestAccepted(execution_id=execution_id, total_urls=len(payload.urls) if not payload.discover else None)

    try:
        urls = await _collect_urls(pipeline, payload)
    except DiscoveryError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    summary = await pipeline.orchestrator.run(urls, execution_id=execution_id)
    return IngestAccepted(status="completed", execution_id=execution_id, total_urls=len(urls), summary=summary)


@router.post("/messages", response_model=MessageOutcome)
async def handle_message(
    body: dict[str, Any] = Body(...),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """Handle one queue message (URL batch or sentinel)."""
    try:
        return await pipeline.handler.handle(body)
    except (ValidationError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid message: {e}")


@router.get("/runs", response_model=RunList)
async def list_runs(limit: int = 20, pipeline: Pipeline = Depends(get_pipeline)):
    """Most recent run metrics, newest first."""
    return RunList(runs=await pipeline.tracking_store.list_run_metrics(limit=max(1, min(limit, 200))))


@router.get("/stats", response_model=AdminStats)
async def get_stats(pipeline: Pipeline = Depends(get_pipeline)):
    """Get collection and tracking statistics."""
    try:
        index = pipeline.orchestrator.config.vector_index
        info = get_collection_info(pipeline.vector_store.client, index)
        return AdminStats(
            collection_name=index,
            total_chunks=info.get("points_count") or 0,
            embedding_model=pipeline.orchestrator.embedding_model,
            vector_size=info.get("vector_size", pipeline.vector_store.vector_size),
            content_status=await pipeline.tracking_store.status_counts(),
        )
    except Exception as e:
        logger.error(f"Error getting stats: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Internal server error",
        )
