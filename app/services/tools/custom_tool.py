"""Tenant-authored HTTP tools.

A custom tool is stored as a ``Tool`` row of type ``custom``. Its single
``execute`` function forwards the model's arguments to the tenant's server
as a JSON POST and hands the response back to the model. The parameter
contract comes from the stored ``functions.execute`` entry, either a JSON
schema object (``schema``) or a flat list of parameter specs
(``parameters``).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Literal

import httpx
from pydantic import BaseModel, ConfigDict, Field, create_model

from app.core.exceptions import ToolSynthesisError
from app.models.base import load_json
from app.models.tool import Tool
from app.services.tools.base import ToolContext, ToolDefinition, ToolFunction, ToolKind, tool_error

logger = logging.getLogger(__name__)

TEMPLATE_ID = "custom-tool-template"
USER_AGENT = "ChatBot-CustomTool/1.0"

_TYPE_MAP: dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
    "object": dict[str, Any],
    "array": list[Any],
}


class HttpHeader(BaseModel):
    name: str
    value: str


class CustomToolConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    run_async: bool = Field(default=False, alias="async")
    strict: bool = False
    server_url: str = Field(alias="serverUrl")
    secret_token: str = Field(alias="secretToken")
    timeout: float = Field(default=30, ge=1, le=300)
    http_headers: list[HttpHeader] = Field(default_factory=list, alias="httpHeaders")


class PassthroughParams(BaseModel):
    """Accepts any arguments; used by the template before synthesis."""

    model_config = ConfigDict(extra="allow")


def _arguments(params: BaseModel) -> dict[str, Any]:
    return params.model_dump(by_alias=True, exclude_unset=True)


async def execute_custom_tool(params: BaseModel, context: ToolContext) -> dict[str, Any]:
    """POST the call to the tenant's server and relay the answer."""
    if not context.config:
        return tool_error("EXECUTION_ERROR", "Custom tool configuration is missing")

    try:
        config = CustomToolConfig.model_validate(context.config)
    except ValueError as exc:
        return tool_error("EXECUTION_ERROR", f"Invalid custom tool configuration: {exc}")

    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {config.secret_token}",
        "User-Agent": USER_AGENT,
    }
    for header in config.http_headers:
        headers[header.name] = header.value

    payload = {
        "parameters": _arguments(params),
        "context": {
            "botId": context.bot_id,
            "userId": context.user_id,
            "organizationId": context.organization_id,
            "conversationId": context.conversation_id,
            "webhookPayload": context.webhook_payload,
        },
        "metadata": {"timestamp": datetime.now(timezone.utc).isoformat()},
    }

    try:
        async with httpx.AsyncClient(timeout=config.timeout) as client:
            response = await client.post(config.server_url, json=payload, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("Custom tool request to %s failed: %s", config.server_url, exc)
        return tool_error("NETWORK_ERROR", str(exc) or type(exc).__name__)

    try:
        body: Any = response.json()
    except ValueError:
        body = response.text

    if response.status_code >= 400:
        return tool_error(
            "HTTP_ERROR",
            f"HTTP {response.status_code}: {response.reason_phrase}",
            details=body,
        )

    return {
        "success": True,
        "data": body,
        "metadata": {"httpStatus": response.status_code},
    }


# ── Synthesis ────────────────────────────────────────────────


def _field_type(spec: dict[str, Any]) -> Any:
    enum = spec.get("enum")
    if spec.get("type") == "string" and isinstance(enum, list) and enum:
        return Literal[tuple(str(v) for v in enum)]
    return _TYPE_MAP.get(spec.get("type"), Any)


def _property_specs(function_config: dict[str, Any]) -> list[tuple[str, dict[str, Any], bool]]:
    """Normalize either stored format to (name, spec, required) triples."""
    schema = function_config.get("schema")
    if isinstance(schema, dict):
        properties = schema.get("properties")
        if not isinstance(properties, dict):
            return []
        required = set(schema.get("required") or [])
        return [
            (name, spec, name in required)
            for name, spec in properties.items()
            if isinstance(spec, dict)
        ]

    parameters = function_config.get("parameters")
    if isinstance(parameters, list):
        specs = []
        for param in parameters:
            if isinstance(param, dict) and isinstance(param.get("name"), str) and param["name"]:
                spec = dict(param)
                if param.get("enumValues"):
                    spec["enum"] = param["enumValues"]
                specs.append((param["name"], spec, bool(param.get("required"))))
        return specs

    return []


def build_parameters_model(model_name: str, function_config: dict[str, Any]) -> type[BaseModel]:
    """Create a pydantic model for a stored parameter contract.

    Property names are tenant-chosen and may not be valid identifiers, so
    each one gets a positional field name with the original as its alias.
    """
    fields: dict[str, Any] = {}
    for i, (name, spec, required) in enumerate(_property_specs(function_config)):
        description = spec.get("description") if isinstance(spec.get("description"), str) else None
        annotation = _field_type(spec)
        if required:
            fields[f"p_{i}"] = (annotation, Field(alias=name, description=description))
        else:
            fields[f"p_{i}"] = (
                annotation | None,
                Field(default=None, alias=name, description=description),
            )

    return create_model(
        model_name,
        __config__=ConfigDict(populate_by_name=True, extra="ignore"),
        **fields,
    )


def create_custom_tool_definition(stored: Tool) -> ToolDefinition:
    """Build a request-scoped definition from a stored custom tool.

    Pure: reads only the row. Raises ToolSynthesisError when the stored
    configuration cannot describe a callable function.
    """
    functions = load_json(stored.functions, {})
    if not isinstance(functions, dict):
        raise ToolSynthesisError(f"Tool {stored.id}: functions must be an object")
    function_config = functions.get("execute") or {}
    if not isinstance(function_config, dict):
        raise ToolSynthesisError(f"Tool {stored.id}: functions.execute must be an object")

    try:
        parameters = build_parameters_model("CustomToolParams", function_config)
    except (TypeError, ValueError) as exc:
        raise ToolSynthesisError(f"Tool {stored.id}: invalid parameter schema: {exc}") from exc

    description = function_config.get("description")
    if not isinstance(description, str) or not description:
        description = f"Execute {stored.name}"

    default_config = load_json(stored.required_configs, {})

    return ToolDefinition(
        id=stored.id,
        name=stored.name,
        description=stored.description or f"Custom tool: {stored.name}",
        kind=ToolKind.CUSTOM,
        functions={
            "execute": ToolFunction(
                description=description,
                parameters=parameters,
                execute=execute_custom_tool,
            ),
        },
        default_config=default_config if isinstance(default_config, dict) else {},
        config_model=CustomToolConfig,
    )


def custom_function_name(stored: Tool) -> str | None:
    """The tenant-configured function name, if one is stored."""
    functions = load_json(stored.functions, {})
    if not isinstance(functions, dict):
        return None
    execute = functions.get("execute")
    if isinstance(execute, dict):
        name = execute.get("name")
        if isinstance(name, str) and name:
            return name
    return None


CUSTOM_TOOL_TEMPLATE = ToolDefinition(
    id=TEMPLATE_ID,
    name="Custom Tool Template",
    description="Template for custom HTTP-based tools",
    kind=ToolKind.CUSTOM,
    functions={
        "execute": ToolFunction(
            description="Execute custom tool via HTTP request",
            parameters=PassthroughParams,
            execute=execute_custom_tool,
        ),
    },
    default_config={"async": False, "strict": False, "timeout": 30, "httpHeaders": []},
    config_model=CustomToolConfig,
)
