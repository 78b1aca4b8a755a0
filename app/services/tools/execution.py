"""Tool execution — validate, invoke, and record a single tool call.

Every failure comes back as a structured result the model can read; nothing
raises to the generation loop. Calls are never retried here because handlers
may have side effects; the model decides whether to call again.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import uuid
from typing import Any

from pydantic import ValidationError
from sqlmodel import select

from app.core.database import async_session_factory
from app.models.base import load_json, utcnow
from app.models.tool import BotTool, Tool
from app.models.tool_usage import ToolExecutionError, ToolUsageMetric
from app.services.tools.base import ToolContext, ToolDefinition, tool_error
from app.services.tools.registry import ToolRegistry, get_tool_registry

logger = logging.getLogger(__name__)


class ToolUnavailableError(Exception):
    """The tool or its bot attachment cannot be used right now."""


class ToolExecutionService:
    def __init__(self, registry: ToolRegistry | None = None) -> None:
        self.registry = registry or get_tool_registry()

    async def execute_tool(
        self,
        tool_id: str,
        function_name: str,
        params: dict[str, Any],
        context: ToolContext,
        definition: ToolDefinition | None = None,
    ) -> Any:
        """Run ``tool_id.function_name`` with ``params`` for this request.

        ``definition`` lets callers pass a custom tool synthesized for the
        request; registry tools are looked up by id.
        """
        try:
            definition = definition or self.registry.get(tool_id)
            if definition is None:
                raise ToolUnavailableError(f"Tool not found: {tool_id}")

            function = definition.functions.get(function_name)
            if function is None:
                raise ToolUnavailableError(f"Function {function_name} not found in tool {tool_id}")

            config = await self._load_config(tool_id, context.bot_id, definition)

            try:
                validated = function.parameters.model_validate(params or {})
            except ValidationError as exc:
                logger.info("Invalid parameters for %s.%s: %s", tool_id, function_name, exc)
                return tool_error(
                    "INVALID_PARAMETERS",
                    f"Invalid parameters for {function_name}",
                    details=exc.errors(include_url=False, include_context=False),
                )

            await self._record_usage(tool_id, context.bot_id, function_name)

            return await function.execute(validated, dataclasses.replace(context, config=config))
        except Exception as exc:
            logger.exception("Error executing tool %s.%s", tool_id, function_name)
            await self._record_error(tool_id, context.bot_id, function_name, exc, params)
            return tool_error("EXECUTION_FAILED", str(exc) or "Unknown error occurred")

    async def _load_config(
        self, tool_id: str, bot_id: str, definition: ToolDefinition
    ) -> dict[str, Any]:
        """Check the tool is usable by this bot and return its effective config."""
        async with async_session_factory() as session:
            tool = await session.get(Tool, tool_id)
            if tool is None or not tool.is_active:
                raise ToolUnavailableError(f"Tool {tool_id} is not active")

            stmt = select(BotTool).where(
                BotTool.tool_id == tool_id,
                BotTool.bot_profile_id == uuid.UUID(bot_id),
            )
            bot_tool = (await session.execute(stmt)).scalars().first()

        if bot_tool is None or not bot_tool.is_enabled:
            raise ToolUnavailableError(f"Tool {tool_id} is not enabled for this bot")

        config = load_json(bot_tool.config, {})
        if isinstance(config, dict) and config:
            return config
        return dict(definition.default_config)

    async def _record_usage(self, tool_id: str, bot_id: str, function_name: str) -> None:
        try:
            async with async_session_factory() as session:
                stmt = select(ToolUsageMetric).where(
                    ToolUsageMetric.tool_id == tool_id,
                    ToolUsageMetric.bot_profile_id == uuid.UUID(bot_id),
                    ToolUsageMetric.function_name == function_name,
                )
                metric = (await session.execute(stmt)).scalars().first()
                if metric is None:
                    metric = ToolUsageMetric(
                        tool_id=tool_id,
                        bot_profile_id=uuid.UUID(bot_id),
                        function_name=function_name,
                    )
                metric.count += 1
                metric.last_used_at = utcnow()
                metric.updated_at = utcnow()
                session.add(metric)
                await session.commit()
        except Exception:
            logger.warning("Failed to record usage for %s.%s", tool_id, function_name, exc_info=True)

    async def _record_error(
        self,
        tool_id: str,
        bot_id: str,
        function_name: str,
        exc: Exception,
        params: dict[str, Any] | None,
    ) -> None:
        try:
            async with async_session_factory() as session:
                session.add(ToolExecutionError(
                    tool_id=tool_id,
                    bot_profile_id=uuid.UUID(bot_id),
                    function_name=function_name,
                    error_message=str(exc) or type(exc).__name__,
                    params_json=json.dumps(params or {}, default=str),
                ))
                await session.commit()
        except Exception:
            logger.warning("Failed to record tool error for %s.%s", tool_id, function_name, exc_info=True)
