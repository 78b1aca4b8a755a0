"""Turn a bot's stored tool attachments into the per-request enabled tool set."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from app.core.exceptions import ToolSynthesisError
from app.models.base import load_json
from app.models.tool import BotTool, Tool, ToolType
from app.services.tools.base import ToolContext, ToolDefinition, ToolKind
from app.services.tools.custom_tool import create_custom_tool_definition, custom_function_name
from app.services.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolKeyScheme(StrEnum):
    """How a tool function is named to the model.

    Tenants reference these names in prompts and automations, so both
    schemes must keep producing exactly the same strings.
    """

    NAMESPACED = "namespaced"  # "{tool_id}_{function_name}"
    TENANT_NAMED = "tenant_named"  # stored execute name, else the function name


def tool_key(
    scheme: ToolKeyScheme,
    tool_id: str,
    function_name: str,
    configured_name: str | None = None,
) -> str:
    if scheme is ToolKeyScheme.TENANT_NAMED:
        return configured_name or function_name
    return f"{tool_id}_{function_name}"


def resolve_tool(stored: Tool, registry: ToolRegistry) -> ToolDefinition | None:
    """Registry lookup first, then synthesis for stored custom tools.

    A custom tool that cannot be synthesized is logged and left out.
    """
    definition = registry.get(stored.id)
    if definition is not None:
        return definition
    if stored.type != ToolType.CUSTOM:
        logger.warning("Tool %s (%s) is not registered, skipping", stored.id, stored.type)
        return None
    try:
        return create_custom_tool_definition(stored)
    except ToolSynthesisError:
        logger.warning("Could not build custom tool %s, skipping", stored.id, exc_info=True)
        return None


ToolInvoker = Callable[[str, str, dict[str, Any], ToolContext, ToolDefinition], Awaitable[Any]]


@dataclass(frozen=True)
class EnabledTool:
    """One model-callable function with its invocation bound to the request."""

    key: str
    tool_id: str
    function_name: str
    description: str
    parameters: dict[str, Any]
    invoke: Callable[[dict[str, Any]], Awaitable[Any]]

    def as_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.key,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


def _stored_config(bot_tool: BotTool, definition: ToolDefinition) -> dict[str, Any]:
    config = load_json(bot_tool.config, {})
    if isinstance(config, dict) and config:
        return config
    return dict(definition.default_config)


def build_enabled_tool_set(
    attachments: Iterable[tuple[BotTool, Tool]],
    registry: ToolRegistry,
    invoker: ToolInvoker,
    context: ToolContext,
) -> dict[str, EnabledTool]:
    """Build the request-scoped map of tool key to EnabledTool.

    ``invoker`` is normally ``ToolExecutionService.execute_tool``; each
    closure carries the request context so handlers can scope side effects.
    Inactive tools and disabled attachments are skipped.
    """
    enabled: dict[str, EnabledTool] = {}

    for bot_tool, stored in attachments:
        if not bot_tool.is_enabled or not stored.is_active:
            continue

        definition = resolve_tool(stored, registry)
        if definition is None:
            continue

        is_custom = stored.type == ToolType.CUSTOM or definition.kind == ToolKind.CUSTOM
        scheme = ToolKeyScheme.TENANT_NAMED if is_custom else ToolKeyScheme.NAMESPACED
        configured_name = custom_function_name(stored) if is_custom else None
        config = _stored_config(bot_tool, definition)

        for function_name, function in definition.functions.items():
            key = tool_key(scheme, definition.id, function_name, configured_name)
            if key in enabled:
                logger.warning(
                    "Tool key %s from %s collides with %s, keeping the first",
                    key,
                    definition.id,
                    enabled[key].tool_id,
                )
                continue

            enabled[key] = EnabledTool(
                key=key,
                tool_id=definition.id,
                function_name=function_name,
                description=function.description_for(config),
                parameters=function.json_schema(),
                invoke=_bind(invoker, definition, function_name, context),
            )

    return enabled


def _bind(
    invoker: ToolInvoker,
    definition: ToolDefinition,
    function_name: str,
    context: ToolContext,
) -> Callable[[dict[str, Any]], Awaitable[Any]]:
    async def invoke(arguments: dict[str, Any]) -> Any:
        return await invoker(definition.id, function_name, arguments, context, definition)

    return invoke


def encode_tool_result(result: Any) -> str:
    """Serialize a tool result for a ``tool`` role message."""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)
