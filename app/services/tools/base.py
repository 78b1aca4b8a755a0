"""Tool interface shared by built-in and tenant-authored tools."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class ToolKind(StrEnum):
    """Where a tool definition comes from."""

    REGISTRY = "registry"  # registered at import time, lives for the process
    CUSTOM = "custom"  # synthesized per request from stored configuration


@dataclass(frozen=True)
class ToolContext:
    """Request-scoped data every tool handler receives."""

    bot_id: str
    organization_id: str
    user_id: str | None = None
    conversation_id: str | None = None
    webhook_payload: dict[str, Any] | None = None
    config: dict[str, Any] = field(default_factory=dict)


ToolExecutor = Callable[[BaseModel, ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class ToolFunction:
    description: str
    parameters: type[BaseModel]
    execute: ToolExecutor
    # Builds a config-dependent description; falls back to ``description``.
    describe: Callable[[dict[str, Any]], str] | None = None

    def description_for(self, config: dict[str, Any]) -> str:
        if self.describe is not None:
            return self.describe(config)
        return self.description

    def json_schema(self) -> dict[str, Any]:
        """Parameter contract in the JSON-schema form model providers expect."""
        schema = self.parameters.model_json_schema(by_alias=True)
        schema.pop("title", None)
        schema.setdefault("properties", {})
        schema.setdefault("type", "object")
        return schema


@dataclass(frozen=True)
class ToolDefinition:
    id: str
    name: str
    description: str
    kind: ToolKind
    functions: Mapping[str, ToolFunction]
    version: str = "1.0.0"
    default_config: dict[str, Any] = field(default_factory=dict)
    config_model: type[BaseModel] | None = None


def tool_error(code: str, message: str, details: Any = None) -> dict[str, Any]:
    """Standard failure payload returned to the model as a tool result."""
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}
