"""Registry of statically known (built-in) tools."""

from __future__ import annotations

import logging
from functools import lru_cache

from app.services.tools.base import ToolDefinition, ToolKind

logger = logging.getLogger(__name__)


class ToolRegistry:
    """In-process map of tool id to definition. Read-only once built."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition) -> None:
        self._tools[tool.id] = tool
        logger.debug("Registered tool %s (%d functions)", tool.id, len(tool.functions))

    def get(self, tool_id: str) -> ToolDefinition | None:
        return self._tools.get(tool_id)

    def get_all(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def get_all_by_kind(self, kind: ToolKind) -> list[ToolDefinition]:
        return [t for t in self._tools.values() if t.kind == kind]

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools

    def __len__(self) -> int:
        return len(self._tools)


@lru_cache
def get_tool_registry() -> ToolRegistry:
    """Process-wide registry with every built-in tool registered."""
    from app.services.tools.custom_tool import CUSTOM_TOOL_TEMPLATE
    from app.services.tools.lead_capture import LEAD_CAPTURE_TOOL
    from app.services.tools.pause_conversation import PAUSE_CONVERSATION_TOOL

    registry = ToolRegistry()
    registry.register(LEAD_CAPTURE_TOOL)
    registry.register(PAUSE_CONVERSATION_TOOL)
    registry.register(CUSTOM_TOOL_TEMPLATE)
    return registry
