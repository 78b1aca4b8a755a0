"""Query embedding via LiteLLM, provider-agnostic."""

from __future__ import annotations

from litellm import aembedding

from app.core.config import get_settings


async def embed_texts(
    texts: list[str],
    model: str | None = None,
    api_key: str | None = None,
) -> list[list[float]]:
    """Embed ``texts`` in one call, preserving input order.

    Args:
        texts: Strings to embed. Chat retrieval sends a single query.
        model: LiteLLM embedding model. Defaults to ``settings.default_embedding_model``.
        api_key: Optional provider key; falls back to provider env vars.
    """
    if not texts:
        return []

    kwargs: dict = {"model": model or get_settings().default_embedding_model, "input": texts}
    if api_key:
        kwargs["api_key"] = api_key

    response = await aembedding(**kwargs)
    return [item["embedding"] for item in response.data]
