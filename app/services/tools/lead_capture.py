"""Lead capture tool — detect buying intent and store contact details."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from app.core.database import async_session_factory
from app.models.lead import Lead
from app.services.tools.base import ToolContext, ToolDefinition, ToolFunction, ToolKind, tool_error

logger = logging.getLogger(__name__)

TOOL_ID = "lead-capture"

DEFAULT_TRIGGERS = ["pricing", "demo", "contact", "quote", "trial"]

LeadField = Literal[
    "name", "email", "phone", "company", "message", "website", "budget", "timeline"
]

FIELD_LABELS: dict[str, str] = {
    "name": "your full name",
    "email": "your email address",
    "phone": "your phone number",
    "company": "your company name",
    "message": "any additional information or questions",
    "website": "your website",
    "budget": "your budget",
    "timeline": "your timeline",
}

TRIGGER_MESSAGES: dict[str, str] = {
    "pricing": "To provide you with pricing information, I need to collect some details from you.",
    "demo": "To schedule a product demo for you, I need some information.",
    "trial": "To set up your free trial, I need to collect some details.",
}


class LeadCaptureConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    required_fields: list[LeadField] = Field(default=["name", "phone"], alias="requiredFields")
    lead_notifications: bool = Field(default=True, alias="leadNotifications")
    notification_email: str | None = Field(default=None, alias="notificationEmail")
    lead_capture_triggers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TRIGGERS), alias="leadCaptureTriggers"
    )
    custom_trigger_phrases: list[str] = Field(default_factory=list, alias="customTriggerPhrases")


# ── Parameter schemas ────────────────────────────────────────


class DetectTriggerKeywordParams(BaseModel):
    message: str = Field(description="User message to check for trigger keywords")


class RequestLeadInfoParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fields: list[LeadField] | None = Field(
        default=None, description="Fields to request from the lead"
    )
    message: str | None = Field(
        default=None, description="Custom message to display when requesting information"
    )
    trigger_keyword: str | None = Field(
        default=None,
        alias="triggerKeyword",
        description="Keyword that triggered the lead capture",
    )


class SaveLeadParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, description="Full name of the lead (required)")
    phone: str = Field(min_length=1, description="Phone number of the lead (required)")
    email: str | None = Field(default=None, description="Email address of the lead (optional)")
    company: str | None = Field(default=None, description="Company name of the lead")
    notes: str | None = Field(default=None, description="Additional notes about the lead")
    website: str | None = Field(default=None, description="Website of the lead")
    budget: str | None = Field(default=None, description="Budget information")
    timeline: str | None = Field(default=None, description="Timeline information")
    source: str | None = Field(
        default=None, description="Source of the lead (e.g., 'chat', 'website')"
    )
    trigger_keyword: str | None = Field(
        default=None,
        alias="triggerKeyword",
        description="Keyword that triggered the lead capture",
    )


# ── Handlers ─────────────────────────────────────────────────


def _config(context: ToolContext) -> LeadCaptureConfig:
    return LeadCaptureConfig.model_validate(context.config or {})


async def detect_trigger_keyword(
    params: DetectTriggerKeywordParams, context: ToolContext
) -> dict[str, Any]:
    config = _config(context)
    triggers = [*config.lead_capture_triggers, *config.custom_trigger_phrases]

    message_lower = params.message.lower()
    detected_keywords = [k for k in triggers if k.lower() in message_lower]
    trigger_keyword = detected_keywords[0] if detected_keywords else None

    return {
        "success": True,
        "detected": trigger_keyword is not None,
        "triggerKeyword": trigger_keyword,
        "message": (
            f'Detected lead capture trigger keyword: "{trigger_keyword}"'
            if trigger_keyword
            else "No lead capture trigger keywords detected"
        ),
        "allTriggerKeywords": triggers,
    }


async def request_lead_info(
    params: RequestLeadInfoParams, context: ToolContext
) -> dict[str, Any]:
    config = _config(context)
    fields = params.fields or list(config.required_fields)
    labels = ", ".join(FIELD_LABELS.get(f, f) for f in fields)

    form_message = params.message or "I need to collect some information from you."
    if params.trigger_keyword in TRIGGER_MESSAGES:
        form_message = TRIGGER_MESSAGES[params.trigger_keyword]

    return {
        "success": True,
        "formMessage": form_message,
        "fieldsToRequest": fields,
        "assistantInstructions": f"Please ask for {labels or 'required information'} from the user.",
        "triggerKeyword": params.trigger_keyword,
    }


async def save_lead(params: SaveLeadParams, context: ToolContext) -> dict[str, Any]:
    config = _config(context)

    missing = [f for f in config.required_fields if not getattr(params, f, None)]
    if missing:
        return tool_error(
            "MISSING_REQUIRED_FIELDS", f"Missing required fields: {', '.join(missing)}"
        )

    lead = Lead(
        tenant_id=uuid.UUID(context.organization_id),
        bot_profile_id=uuid.UUID(context.bot_id),
        conversation_id=uuid.UUID(context.conversation_id) if context.conversation_id else None,
        name=params.name,
        phone=params.phone,
        email=params.email,
        company=params.company,
        website=params.website,
        budget=params.budget,
        timeline=params.timeline,
        notes=params.notes,
        source=params.source or "chat",
        trigger_keyword=params.trigger_keyword,
    )
    async with async_session_factory() as session:
        session.add(lead)
        await session.commit()
        await session.refresh(lead)

    logger.info("Saved lead %s for bot %s", lead.id, context.bot_id)
    return {
        "success": True,
        "leadId": str(lead.id),
        "message": f"Successfully saved lead information for {params.name}.",
        "data": {
            "name": lead.name,
            "phone": lead.phone,
            "email": lead.email,
            "company": lead.company,
            "source": lead.source,
            "triggerKeyword": lead.trigger_keyword,
            "timestamp": lead.created_at.isoformat(),
            "notificationSent": config.lead_notifications,
        },
    }


LEAD_CAPTURE_TOOL = ToolDefinition(
    id=TOOL_ID,
    name="Lead Info Collector",
    description="Collect and store lead information during conversations",
    kind=ToolKind.REGISTRY,
    functions={
        "detectTriggerKeyword": ToolFunction(
            description="Detect if a user message contains lead capture trigger keywords.",
            parameters=DetectTriggerKeywordParams,
            execute=detect_trigger_keyword,
        ),
        "requestLeadInfo": ToolFunction(
            description="Request specific information from the lead",
            parameters=RequestLeadInfoParams,
            execute=request_lead_info,
        ),
        "saveLead": ToolFunction(
            description="Save lead contact information.",
            parameters=SaveLeadParams,
            execute=save_lead,
        ),
    },
    default_config={
        "requiredFields": ["name", "email"],
        "leadNotifications": True,
        "leadCaptureTriggers": ["pricing", "demo", "contact", "quote"],
    },
    config_model=LeadCaptureConfig,
)
