"""Pause conversation tool — hand the conversation over to a human."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from app.core.database import async_session_factory
from app.models.base import load_json, utcnow
from app.models.conversation import Conversation
from app.services.tools.base import ToolContext, ToolDefinition, ToolFunction, ToolKind, tool_error

logger = logging.getLogger(__name__)

TOOL_ID = "pause-conversation"

DEFAULT_PAUSE_CONDITION = "The user wants to end the conversation or talk to a human"


class PauseConversationConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pause_condition_prompt: str = Field(
        default=DEFAULT_PAUSE_CONDITION, min_length=1, alias="pauseConditionPrompt"
    )
    pause_message: str = Field(default="", alias="pauseMessage")


class CheckPauseConditionParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(description="User message to check against pause conditions")
    detected_pause_condition: bool = Field(
        alias="detectedPauseCondition",
        description="Whether the pause condition has been detected in the user message",
    )
    pause_condition_reason: str | None = Field(
        default=None,
        alias="pauseConditionReason",
        description="Explanation of why the pause condition was or was not detected",
    )


class PauseConversationParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reason: str = Field(description="Reason why the conversation is being paused")
    trigger_message: str | None = Field(
        default=None,
        alias="triggerMessage",
        description="The user message that triggered the pause",
    )


def _config(raw: dict[str, Any] | None) -> PauseConversationConfig:
    return PauseConversationConfig.model_validate(raw or {})


def describe_check_pause_condition(config: dict[str, Any]) -> str:
    condition = _config(config).pause_condition_prompt
    return (
        "Analyze the user message to determine if it matches the pause condition. "
        f'Pause condition: "{condition}". You must determine if the user message '
        "indicates that the conversation should be paused based on this specific condition."
    )


async def check_pause_condition(
    params: CheckPauseConditionParams, context: ToolContext
) -> dict[str, Any]:
    condition = _config(context.config).pause_condition_prompt
    detected = params.detected_pause_condition
    return {
        "success": True,
        "detected": detected,
        "data": {
            "shouldPause": detected,
            "reason": params.pause_condition_reason
            or ("Pause condition met" if detected else "No pause condition detected"),
            "triggerMessage": params.message,
            "pauseCondition": condition,
        },
    }


async def pause_conversation(
    params: PauseConversationParams, context: ToolContext
) -> dict[str, Any]:
    if not context.conversation_id:
        return tool_error("NO_CONVERSATION_ID", "No conversation ID provided")

    pause_message = _config(context.config).pause_message.strip()
    paused_at = utcnow().isoformat()

    async with async_session_factory() as session:
        conversation = await session.get(Conversation, uuid.UUID(context.conversation_id))
        if conversation is None:
            return tool_error("CONVERSATION_NOT_FOUND", "Conversation not found")

        metadata = load_json(conversation.metadata_json, {}) or {}
        metadata.update({
            "pausedAt": paused_at,
            "pausedReason": params.reason,
            "pausedBy": TOOL_ID,
            "triggerMessage": params.trigger_message,
            "shouldSendResponse": bool(pause_message),
        })
        conversation.is_paused = True
        conversation.metadata_json = json.dumps(metadata)
        conversation.updated_at = utcnow()
        session.add(conversation)
        await session.commit()

    logger.info("Paused conversation %s: %s", context.conversation_id, params.reason)

    result: dict[str, Any] = {
        "success": True,
        "message": pause_message,
        "data": {
            "conversationId": context.conversation_id,
            "pausedAt": paused_at,
            "reason": params.reason,
            "pauseMessage": pause_message,
            "shouldSendResponse": bool(pause_message),
        },
    }
    if not pause_message:
        result["skipResponse"] = True
    return result


PAUSE_CONVERSATION_TOOL = ToolDefinition(
    id=TOOL_ID,
    name="Pause Conversation",
    description="Pause the conversation and stop bot responses when a condition is met",
    kind=ToolKind.REGISTRY,
    functions={
        "checkPauseCondition": ToolFunction(
            description=(
                "Check if the user message matches conditions that should pause the conversation"
            ),
            parameters=CheckPauseConditionParams,
            execute=check_pause_condition,
            describe=describe_check_pause_condition,
        ),
        "pauseConversation": ToolFunction(
            description="Pause the current conversation and prevent further bot responses",
            parameters=PauseConversationParams,
            execute=pause_conversation,
        ),
    },
    default_config={"pauseConditionPrompt": DEFAULT_PAUSE_CONDITION},
    config_model=PauseConversationConfig,
)
