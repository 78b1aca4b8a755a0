"""Conversation and message persistence used by the chat path."""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlmodel import select

from app.core.database import async_session_factory
from app.models.base import load_json, utcnow
from app.models.conversation import Conversation, ConversationStatus
from app.models.message import Message, MessageRole

logger = logging.getLogger(__name__)

_TERMINAL_STATUSES = {
    ConversationStatus.COMPLETED,
    ConversationStatus.FAILED,
    ConversationStatus.ABANDONED,
}


class ConversationNotFoundError(LookupError):
    pass


class ConversationStore(ABC):
    @abstractmethod
    async def create(
        self,
        bot_id: str,
        metadata: dict[str, Any] | None = None,
        source: str = "playground",
        external_user_id: str | None = None,
    ) -> str:
        ...

    @abstractmethod
    async def get(self, conversation_id: str) -> Conversation | None:
        ...

    @abstractmethod
    async def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        response_messages: list[dict[str, Any]] | None = None,
        context_used: dict[str, Any] | None = None,
        processing_time_ms: int | None = None,
        token_count: int | None = None,
    ) -> str:
        ...

    @abstractmethod
    async def set_status(self, conversation_id: str, status: ConversationStatus) -> None:
        ...

    @abstractmethod
    async def has_user_message_since(self, conversation_id: str, since: datetime) -> bool:
        ...

    @abstractmethod
    async def set_paused(
        self, conversation_id: str, paused: bool, metadata: dict[str, Any] | None = None
    ) -> None:
        ...


class SqlConversationStore(ConversationStore):
    async def create(
        self,
        bot_id: str,
        metadata: dict[str, Any] | None = None,
        source: str = "playground",
        external_user_id: str | None = None,
    ) -> str:
        conversation = Conversation(
            bot_profile_id=uuid.UUID(bot_id),
            source=source,
            external_user_id=external_user_id,
            metadata_json=json.dumps({"source": source, **(metadata or {})}, default=str),
        )
        async with async_session_factory() as session:
            session.add(conversation)
            await session.commit()
        logger.info("Created conversation %s for bot %s (%s)", conversation.id, bot_id, source)
        return str(conversation.id)

    async def get(self, conversation_id: str) -> Conversation | None:
        try:
            conversation_uuid = uuid.UUID(conversation_id)
        except ValueError:
            return None
        async with async_session_factory() as session:
            return await session.get(Conversation, conversation_uuid)

    async def append_message(
        self,
        conversation_id: str,
        role: MessageRole,
        content: str,
        response_messages: list[dict[str, Any]] | None = None,
        context_used: dict[str, Any] | None = None,
        processing_time_ms: int | None = None,
        token_count: int | None = None,
    ) -> str:
        """Store one message and bump the conversation back to ACTIVE."""
        async with async_session_factory() as session:
            conversation = await session.get(Conversation, uuid.UUID(conversation_id))
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)

            message = Message(
                conversation_id=conversation.id,
                role=role,
                content=content,
                response_messages=json.dumps(response_messages or [], default=str),
                context_used=json.dumps(context_used or {}, default=str),
                processing_time_ms=processing_time_ms,
                token_count=token_count,
            )
            session.add(message)

            # Increment in SQL, not on the loaded row.
            await session.execute(
                update(Conversation)
                .where(Conversation.id == conversation.id)
                .values(
                    message_count=Conversation.message_count + 1,
                    status=ConversationStatus.ACTIVE,
                    ended_at=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return str(message.id)

    async def set_status(self, conversation_id: str, status: ConversationStatus) -> None:
        async with async_session_factory() as session:
            conversation = await session.get(Conversation, uuid.UUID(conversation_id))
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            conversation.status = status
            conversation.ended_at = utcnow() if status in _TERMINAL_STATUSES else None
            conversation.updated_at = utcnow()
            session.add(conversation)
            await session.commit()

    async def has_user_message_since(self, conversation_id: str, since: datetime) -> bool:
        stmt = (
            select(Message.id)
            .where(
                Message.conversation_id == uuid.UUID(conversation_id),
                Message.role == MessageRole.USER,
                Message.created_at > since,
            )
            .limit(1)
        )
        async with async_session_factory() as session:
            return (await session.execute(stmt)).first() is not None

    async def set_paused(
        self, conversation_id: str, paused: bool, metadata: dict[str, Any] | None = None
    ) -> None:
        async with async_session_factory() as session:
            conversation = await session.get(Conversation, uuid.UUID(conversation_id))
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            if metadata:
                merged = load_json(conversation.metadata_json, {}) or {}
                merged.update(metadata)
                conversation.metadata_json = json.dumps(merged, default=str)
            conversation.is_paused = paused
            conversation.updated_at = utcnow()
            session.add(conversation)
            await session.commit()
