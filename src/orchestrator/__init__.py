"""Orchestrator - conversation orchestration engine.

Detects the tools a message needs, collects missing tool parameters
over several turns, runs tool chains and answers from their results.
"""

from orchestrator.llm import LLMProvider, create_llm_provider
from orchestrator.reasoner import Reasoner, ReasonerError
from orchestrator.tools import ToolOrchestrator
from orchestrator.state import (
    ConversationState,
    FileStateStore,
    InMemoryStateStore,
    StateInvariantError,
    StateStore,
    StateStoreError,
)
from orchestrator.conversation import ConversationManager

__all__ = [
    "LLMProvider",
    "create_llm_provider",
    "Reasoner",
    "ReasonerError",
    "ToolOrchestrator",
    "ConversationState",
    "FileStateStore",
    "InMemoryStateStore",
    "StateInvariantError",
    "StateStore",
    "StateStoreError",
    "ConversationManager",
]
