"""Qdrant client, collection management and the vector store adapter."""

import asyncio
import logging
from typing import Any, Optional

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    FilterSelector,
    MatchValue,
    PointStruct,
    Range,
    VectorParams,
)

from clara_ingest.core.config import settings
from clara_ingest.core.errors import StoreUnavailable
from clara_ingest.ingestion.models import SearchHit, VectorRecord

logger = logging.getLogger(__name__)


def get_client(url: Optional[str] = None, api_key: Optional[str] = None) -> QdrantClient:
    """Get Qdrant client instance."""
    url = url or settings.qdrant_url
    api_key = api_key or settings.qdrant_api_key or None

    if url == ":memory:":
        return QdrantClient(":memory:")
    return QdrantClient(url=url, api_key=api_key)


def ensure_collection(client: QdrantClient, collection: str, vector_size: int) -> None:
    """Ensure Qdrant collection exists with proper configuration."""
    if client.collection_exists(collection):
        logger.debug(f"Collection {collection} already exists")
        return

    logger.info(f"Creating collection: {collection}")
    client.create_collection(
        collection_name=collection,
        vectors_config=VectorParams(
            size=vector_size,
            distance=Distance.COSINE,
        ),
    )
    logger.info(f"Collection {collection} created with vector size {vector_size}")


def get_collection_info(client: QdrantClient, collection: str) -> dict:
    """Get collection information."""
    try:
        info = client.get_collection(collection)
        return {
            "name": collection,
            "vector_size": info.config.params.vectors.size,
            "points_count": info.points_count,
            "status": str(info.status),
        }
    except Exception as e:
        logger.error(f"Error getting collection info: {e}")
        return {}


def _build_filter(conditions: Optional[dict[str, Any]]) -> Optional[Filter]:
    if not conditions:
        return None
    return Filter(
        must=[FieldCondition(key=key, match=MatchValue(value=value)) for key, value in conditions.items()]
    )


class QdrantVectorStore:
    """Vector store over a Qdrant collection per index.

    Point ids are the chunk ids, so writing the same key twice replaces the
    earlier point. Collections are created on first write.
    """

    def __init__(self, client: QdrantClient, vector_size: int):
        self.client = client
        self.vector_size = vector_size
        self._ready: set[str] = set()

    def _ensure(self, index: str) -> None:
        if index not in self._ready:
            ensure_collection(self.client, index, self.vector_size)
            self._ready.add(index)

    def _upsert(self, index: str, records: list[VectorRecord]) -> int:
        self._ensure(index)
        points = [
            PointStruct(id=record.key, vector=record.vector, payload=record.metadata)
            for record in records
        ]
        self.client.upsert(collection_name=index, points=points, wait=True)
        return len(points)

    async def put_vectors(self, index: str, records: list[VectorRecord]) -> int:
        if not records:
            return 0
        try:
            written = await asyncio.to_thread(self._upsert, index, records)
        except Exception as e:
            logger.error(f"Qdrant upsert into {index} failed: {e}")
            raise StoreUnavailable(f"Vector store write failed for {index}: {e}") from e
        logger.info(f"Upserted {written} vectors to {index}")
        return written

    def _delete_from(self, index: str, url: str, first_index: int) -> None:
        if not self.client.collection_exists(index):
            return
        selector = FilterSelector(
            filter=Filter(
                must=[
                    FieldCondition(key="url", match=MatchValue(value=url)),
                    FieldCondition(key="chunk_index", range=Range(gte=first_index)),
                ]
            )
        )
        self.client.delete(collection_name=index, points_selector=selector, wait=True)

    async def delete_chunks_from(self, index: str, url: str, first_index: int) -> None:
        """Delete the chunks of ``url`` whose index is ``first_index`` or higher."""
        try:
            await asyncio.to_thread(self._delete_from, index, url, first_index)
        except Exception as e:
            logger.error(f"Qdrant delete in {index} failed: {e}")
            raise StoreUnavailable(f"Vector store delete failed for {index}: {e}") from e

    def _search(
        self, index: str, query_vector: list[float], k: int, conditions: Optional[dict[str, Any]]
    ) -> list[SearchHit]:
        if not self.client.collection_exists(index):
            return []
        response = self.client.query_points(
            collection_name=index,
            query=query_vector,
            limit=k,
            query_filter=_build_filter(conditions),
            with_payload=True,
        )
        return [
            SearchHit(id=str(point.id), score=point.score, metadata=point.payload or {})
            for point in response.points
        ]

    async def search(
        self,
        index: str,
        query_vector: list[float],
        k: int,
        filter: Optional[dict[str, Any]] = None,
    ) -> list[SearchHit]:
        """Nearest neighbours of ``query_vector``; ``filter`` matches payload fields exactly."""
        try:
            return await asyncio.to_thread(self._search, index, query_vector, k, filter)
        except Exception as e:
            raise StoreUnavailable(f"Vector search failed for {index}: {e}") from e

    async def count(self, index: str) -> int:
        def _count() -> int:
            if not self.client.collection_exists(index):
                return 0
            return self.client.count(collection_name=index, exact=True).count

        return await asyncio.to_thread(_count)

    async def ping(self) -> bool:
        try:
            await asyncio.to_thread(self.client.get_collections)
            return True
        except Exception as e:
            logger.error(f"Vector store health check failed: {e}")
            return False
