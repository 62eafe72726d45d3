"""Shared models, configuration and logging for the conversation engine."""

from shared.models import (
    ChatMessage,
    ConversationScope,
    Intent,
    MissingParam,
    Outcome,
    OutcomeKind,
    PendingTool,
    Phase,
    ToolCall,
    ToolCallResult,
    ToolDescriptor,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "ChatMessage",
    "ConversationScope",
    "Intent",
    "MissingParam",
    "Outcome",
    "OutcomeKind",
    "PendingTool",
    "Phase",
    "ToolCall",
    "ToolCallResult",
    "ToolDescriptor",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
