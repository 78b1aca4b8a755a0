"""Knowledge assembly — retrieval cap, failure isolation and formatting."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from app.services.knowledge import (
    CONTEXT_HEADER,
    DocumentReference,
    KnowledgeContextAssembler,
    KnowledgeResult,
    KnowledgeStore,
    QdrantKnowledgeStore,
    build_knowledge_context,
    format_context,
)
from app.services.vector_store import COLLECTION_NAME, search_chunks


class StaticStore(KnowledgeStore):
    def __init__(self, result=None, error=None):
        self.result = result or KnowledgeResult()
        self.error = error
        self.calls = []

    async def retrieve(self, bot_id, query, top_k):
        self.calls.append((bot_id, query, top_k))
        if self.error:
            raise self.error
        return self.result


def _result(n: int) -> KnowledgeResult:
    return KnowledgeResult(
        snippets=[f"snippet {i}" for i in range(n)],
        used_documents=[DocumentReference(document_id=f"doc-{i}", score=1 - i / 10) for i in range(n)],
    )


async def test_retrieve_caps_at_top_k():
    store = StaticStore(_result(8))
    result = await KnowledgeContextAssembler(store).retrieve("bot-1", "refund policy", top_k=3)

    assert store.calls == [("bot-1", "refund policy", 3)]
    assert result.snippets == ["snippet 0", "snippet 1", "snippet 2"]
    assert [d.document_id for d in result.used_documents] == ["doc-0", "doc-1", "doc-2"]


async def test_blank_query_skips_store():
    store = StaticStore(_result(2))
    result = await KnowledgeContextAssembler(store).retrieve("bot-1", "   ")

    assert store.calls == []
    assert result.snippets == []


async def test_store_failure_yields_empty_result(caplog):
    store = StaticStore(error=ConnectionError("qdrant unreachable"))
    result = await KnowledgeContextAssembler(store).retrieve("bot-1", "hours?")

    assert result.snippets == []
    assert result.used_documents == []
    assert "Knowledge retrieval failed" in caplog.text


def test_format_context():
    assert format_context(KnowledgeResult()) == ""

    block = format_context(_result(2))
    assert block.startswith(CONTEXT_HEADER)
    assert block == CONTEXT_HEADER + "snippet 0\n\nsnippet 1\n\n"


def test_knowledge_context_summary():
    empty = build_knowledge_context(KnowledgeResult())
    assert empty.to_dict() == {"documents": [], "hasKnowledgeContext": False}

    summary = build_knowledge_context(
        KnowledgeResult(
            snippets=["a"],
            used_documents=[DocumentReference("d1", title="FAQ", source="faq.md", score=0.9)],
        )
    ).to_dict()
    assert summary["hasKnowledgeContext"] is True
    assert summary["documents"] == [
        {"documentId": "d1", "title": "FAQ", "source": "faq.md", "score": 0.9}
    ]


async def test_qdrant_store_embeds_then_searches():
    hits = [
        {"id": "p1", "score": 0.92, "payload": {"content": "Open 9-5", "document_id": "d1", "title": "Hours"}},
        {"id": "p2", "score": 0.81, "payload": {"document_id": "d2"}},
    ]
    embed = AsyncMock(return_value=[[0.1, 0.2, 0.3]])
    search = AsyncMock(return_value=hits)

    with patch("app.services.knowledge.embed_texts", embed), \
         patch("app.services.knowledge.search_chunks", search):
        result = await QdrantKnowledgeStore(embedding_model="text-embedding-3-small").retrieve(
            "bot-1", "opening hours", 5
        )

    embed.assert_awaited_once_with(["opening hours"], model="text-embedding-3-small", api_key=None)
    search.assert_awaited_once_with(query_vector=[0.1, 0.2, 0.3], bot_profile_id="bot-1", limit=5)
    # Hits without content still count as used documents
    assert result.snippets == ["Open 9-5"]
    assert [d.document_id for d in result.used_documents] == ["d1", "d2"]
    assert result.used_documents[0].title == "Hours"


async def test_qdrant_store_without_vectors():
    with patch("app.services.knowledge.embed_texts", AsyncMock(return_value=[])), \
         patch("app.services.knowledge.search_chunks", AsyncMock()) as search:
        result = await QdrantKnowledgeStore().retrieve("bot-1", "anything", 5)

    assert result.snippets == []
    search.assert_not_awaited()


async def test_search_chunks_filters_by_bot():
    hit = SimpleNamespace(id="p1", score=0.9, payload={"content": "Open 9-5"})
    client = AsyncMock()
    client.query_points.return_value = SimpleNamespace(points=[hit])

    with patch("app.services.vector_store.get_qdrant_client", AsyncMock(return_value=client)):
        hits = await search_chunks([0.1, 0.2], bot_profile_id="bot-1", limit=3)

    assert hits == [{"id": "p1", "score": 0.9, "payload": {"content": "Open 9-5"}}]
    kwargs = client.query_points.call_args.kwargs
    assert kwargs["collection_name"] == COLLECTION_NAME
    assert kwargs["limit"] == 3
    (condition,) = kwargs["query_filter"].must
    assert condition.key == "bot_profile_id"
    assert condition.match.value == "bot-1"
