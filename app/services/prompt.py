"""System prompt assembly for a chat turn."""

from __future__ import annotations

from collections.abc import Container
from datetime import datetime, timezone

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."

LEAD_CAPTURE_KEY = "lead-capture_detectTriggerKeyword"
PAUSE_CHECK_KEY = "pause-conversation_checkPauseCondition"

LEAD_CAPTURE_DIRECTIVE = (
    "Run the `lead-capture_detectTriggerKeyword` tool in every message. "
    "And if it returns `{detected: true}`, then run the `lead-capture_requestLeadInfo` tool. "
    "Once you have collected all the information, run the `lead-capture_saveLead` tool."
)

PAUSE_DIRECTIVE = (
    "Run the `pause-conversation_checkPauseCondition` tool in every message. "
    "If it returns `{detected: true}`, then run the `pause-conversation_pauseConversation` tool."
)

BEHAVIOR_DIRECTIVE = (
    "The responses should be concise and to the point. Refrain from sending links. "
    "Should the responses be in a rich text format (like **example**)? => False."
)

IFRAME_DIRECTIVE = (
    "You are being displayed in an iframe on a website. Keep responses concise, "
    "professional, and focused on providing value to the website visitor."
)


def tool_directives(enabled_keys: Container[str]) -> list[str]:
    """Directives forcing always-on tools to run, in a fixed order."""
    directives = []
    if LEAD_CAPTURE_KEY in enabled_keys:
        directives.append(LEAD_CAPTURE_DIRECTIVE)
    if PAUSE_CHECK_KEY in enabled_keys:
        directives.append(PAUSE_DIRECTIVE)
    return directives


def build_system_prompt(
    base_prompt: str | None,
    knowledge_block: str,
    enabled_keys: Container[str],
    source: str,
    now: datetime | None = None,
) -> str:
    """Base prompt, knowledge, tool directives, time, then behaviour rules.

    Sections are separated by blank lines; empty sections are dropped.
    """
    now = now or datetime.now(timezone.utc)

    behavior = BEHAVIOR_DIRECTIVE
    if source == "iframe":
        behavior += "\n\n" + IFRAME_DIRECTIVE

    sections = [
        base_prompt or DEFAULT_SYSTEM_PROMPT,
        knowledge_block.strip(),
        *tool_directives(enabled_keys),
        f"The current date and time is {now.isoformat()}.",
        behavior,
    ]
    return "\n\n".join(s for s in sections if s)
