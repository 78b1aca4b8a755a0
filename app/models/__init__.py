"""Import all models so SQLModel.metadata picks them up."""

from app.models.bot_profile import BotProfile
from app.models.conversation import Conversation, ConversationStatus
from app.models.credit import CreditBalance, CreditTransaction, TransactionType
from app.models.knowledge_base import KnowledgeBase
from app.models.lead import Lead
from app.models.message import Message, MessageRole
from app.models.tenant import SubscriptionStatus, Tenant
from app.models.tool import BotTool, Tool, ToolType
from app.models.tool_usage import ToolExecutionError, ToolUsageMetric
from app.models.usage_event import UsageEvent

__all__ = [
    "BotProfile",
    "BotTool",
    "Conversation",
    "ConversationStatus",
    "CreditBalance",
    "CreditTransaction",
    "KnowledgeBase",
    "Lead",
    "Message",
    "MessageRole",
    "SubscriptionStatus",
    "Tenant",
    "Tool",
    "ToolExecutionError",
    "ToolType",
    "ToolUsageMetric",
    "TransactionType",
    "UsageEvent",
]
