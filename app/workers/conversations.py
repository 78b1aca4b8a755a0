"""Deferred conversation lifecycle jobs."""

from __future__ import annotations

import logging
from datetime import datetime

from app.services.conversation_store import SqlConversationStore
from app.services.scheduler import complete_if_idle

logger = logging.getLogger(__name__)


async def complete_conversation(ctx: dict, conversation_id: str, scheduled_at: str) -> dict:
    """ARQ job: close a conversation once its follow-up window has passed.

    ``scheduled_at`` is when the assistant turn finished; any user message
    stored after it keeps the conversation active. Tests may inject a store
    via ``ctx["conversation_store"]``.
    """
    store = ctx.get("conversation_store") or SqlConversationStore()
    completed = await complete_if_idle(store, conversation_id, datetime.fromisoformat(scheduled_at))
    return {"conversation_id": conversation_id, "completed": completed}
