"""Qdrant read path for knowledge retrieval.

Vectors are written by the ingestion pipeline. Each point's payload carries
``bot_profile_id``, ``document_id``, ``title``, ``source`` and ``content``.
"""

from __future__ import annotations

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import FieldCondition, Filter, MatchValue

from app.core.config import get_settings

COLLECTION_NAME = "botforge_knowledge"

_client: AsyncQdrantClient | None = None


async def get_qdrant_client() -> AsyncQdrantClient:
    """Lazy-init a shared async Qdrant client."""
    global _client
    if _client is None:
        settings = get_settings()
        _client = AsyncQdrantClient(url=settings.qdrant_url, check_compatibility=False)
    return _client


async def search_chunks(
    query_vector: list[float],
    bot_profile_id: str,
    limit: int = 5,
    score_threshold: float | None = None,
) -> list[dict]:
    """Nearest chunks belonging to one bot, best first.

    Returns dicts with ``id``, ``score`` and ``payload``.
    """
    client = await get_qdrant_client()
    query_filter = Filter(
        must=[FieldCondition(key="bot_profile_id", match=MatchValue(value=bot_profile_id))]
    )
    response = await client.query_points(
        collection_name=COLLECTION_NAME,
        query=query_vector,
        query_filter=query_filter,
        limit=limit,
        score_threshold=score_threshold,
        with_payload=True,
    )
    return [
        {
            "id": str(hit.id),
            "score": hit.score,
            "payload": hit.payload or {},
        }
        for hit in response.points
    ]
