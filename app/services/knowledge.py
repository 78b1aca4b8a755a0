"""Knowledge context — retrieve snippets for the latest user turn and
format them into a prompt block.

Retrieval is optional for a chat turn: any failure yields an empty result
and the turn proceeds without grounding.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from app.services.embedding import embed_texts
from app.services.vector_store import search_chunks

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "### Relevant information from knowledge base:\n\n"


@dataclass(frozen=True)
class DocumentReference:
    document_id: str
    title: str = ""
    source: str = ""
    score: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "documentId": self.document_id,
            "title": self.title,
            "source": self.source,
            "score": self.score,
        }


@dataclass
class KnowledgeResult:
    """Ranked snippets plus the documents they came from."""
    snippets: list[str] = field(default_factory=list)
    used_documents: list[DocumentReference] = field(default_factory=list)


@dataclass(frozen=True)
class KnowledgeContext:
    """Audit summary attached to the assistant message."""
    documents: tuple[DocumentReference, ...] = ()

    @property
    def has_knowledge_context(self) -> bool:
        return len(self.documents) > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents": [d.to_dict() for d in self.documents],
            "hasKnowledgeContext": self.has_knowledge_context,
        }


class KnowledgeStore(ABC):
    @abstractmethod
    async def retrieve(self, bot_id: str, query: str, top_k: int) -> KnowledgeResult:
        ...


class QdrantKnowledgeStore(KnowledgeStore):
    """Embeds the query with LiteLLM and searches the bot's Qdrant points."""

    def __init__(self, embedding_model: str | None = None, api_key: str | None = None) -> None:
        self.embedding_model = embedding_model
        self.api_key = api_key

    async def retrieve(self, bot_id: str, query: str, top_k: int) -> KnowledgeResult:
        vectors = await embed_texts([query], model=self.embedding_model, api_key=self.api_key)
        if not vectors:
            return KnowledgeResult()

        hits = await search_chunks(query_vector=vectors[0], bot_profile_id=bot_id, limit=top_k)

        result = KnowledgeResult()
        for hit in hits[:top_k]:
            payload = hit["payload"]
            content = payload.get("content", "")
            if content:
                result.snippets.append(content)
            result.used_documents.append(DocumentReference(
                document_id=str(payload.get("document_id", "")),
                title=payload.get("title", ""),
                source=payload.get("source", ""),
                score=float(hit["score"]),
            ))
        return result


class KnowledgeContextAssembler:
    def __init__(self, store: KnowledgeStore) -> None:
        self.store = store

    async def retrieve(self, bot_id: str, query_text: str, top_k: int = 5) -> KnowledgeResult:
        """At most ``top_k`` snippets; empty on any failure."""
        if not query_text.strip():
            return KnowledgeResult()
        try:
            result = await self.store.retrieve(bot_id, query_text, top_k)
        except Exception:
            logger.warning("Knowledge retrieval failed for bot %s", bot_id, exc_info=True)
            return KnowledgeResult()
        return KnowledgeResult(
            snippets=result.snippets[:top_k],
            used_documents=result.used_documents[:top_k],
        )


def format_context(result: KnowledgeResult) -> str:
    """Prompt-ready block, or an empty string when nothing was found."""
    if not result.snippets:
        return ""
    return CONTEXT_HEADER + "\n\n".join(result.snippets) + "\n\n"


def build_knowledge_context(result: KnowledgeResult) -> KnowledgeContext:
    return KnowledgeContext(documents=tuple(result.used_documents))
