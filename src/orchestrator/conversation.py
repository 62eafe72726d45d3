"""Conversation Manager for the Orchestrator.

Drives the per-conversation orchestration state machine:

    NORMAL ──tools, params missing──▶ COLLECTING_PARAMS
      ▲                                    │
      │◀──cancel / all params filled───────┘
      │
      └── EXECUTING_TOOLS (entered and left within a single turn)

Each call to process_message handles one user utterance and returns one
Outcome. Turns of the same conversation run one at a time; turns of
different conversations run concurrently.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from shared.logging import get_logger
from shared.models import ChatMessage, ConversationScope, Intent, Outcome, Phase, ToolCall
from mcp_client.catalog import ToolCatalog
from mcp_client.registry import ToolProviderRegistry
from orchestrator.deadline import Deadline
from orchestrator.history import ChatHistory
from orchestrator.locks import KeyedLock
from orchestrator.reasoner import ReasonerError
from orchestrator.state import (
    ConversationState,
    InMemoryStateStore,
    StateInvariantError,
    StateStore,
    StateStoreError,
)
from orchestrator.tools import ToolOrchestrator

logger = get_logger(__name__)


CANCELLED_MESSAGE = "Okay, cancelled."
EMPTY_MESSAGE = "Please enter a message."
STORE_FAILURE_MESSAGE = "Something went wrong while saving our conversation. Please try again."
UNEXPECTED_FAILURE_MESSAGE = "Something went wrong while handling your message. Please try again."
ANSWER_FAILURE_MESSAGE = "I'm having trouble reaching the assistant right now. Please try again in a moment."


@dataclass
class _Turn:
    """Everything one turn needs besides the state it transitions."""
    conversation_id: str
    utterance: str
    catalog: ToolCatalog
    deadline: Deadline
    log: structlog.BoundLogger


class ConversationManager:
    """
    Orchestration state machine driver.

    Responsibilities:
    - Serialize turns per conversation
    - Load state, dispatch on its phase, save the new state once
    - Convert every failure into an Outcome
    """

    def __init__(
        self,
        orchestrator: ToolOrchestrator,
        store: Optional[StateStore] = None,
        registry: Optional[ToolProviderRegistry] = None,
        history: Optional[ChatHistory] = None,
        history_window: int = 10,
        strict_invariants: bool = False
    ) -> None:
        """
        Initialize conversation manager.

        Args:
            orchestrator: Tool orchestrator (carries the Reasoner)
            store: Conversation state store; in-memory by default
            registry: Source of tool catalogs when none is passed per call
            history: Chat history used as context for plain answers
            history_window: Number of recent messages given as context
            strict_invariants: Raise on corrupt state instead of resetting it
        """
        self.orchestrator = orchestrator
        self.reasoner = orchestrator.reasoner
        self.store = store or InMemoryStateStore()
        self.registry = registry
        self.history = history
        self.history_window = history_window
        self.strict_invariants = strict_invariants

        self._locks = KeyedLock()
        self._handlers: dict[Phase, Callable[[ConversationState, _Turn], Awaitable[Outcome]]] = {
            Phase.NORMAL: self._handle_normal,
            Phase.COLLECTING_PARAMS: self._handle_parameter_collection,
            Phase.EXECUTING_TOOLS: self._handle_interrupted_execution,
        }

    def _catalog_for(self, conversation_id: str, user_id: Optional[str]) -> ToolCatalog:
        if self.registry is None:
            return ToolCatalog()
        return self.registry.catalog_for(
            ConversationScope(conversation_id=conversation_id, user_id=user_id)
        )

    async def process_message(
        self,
        conversation_id: str,
        utterance: str,
        catalog: Optional[ToolCatalog] = None,
        timeout: Optional[float] = None,
        user_id: Optional[str] = None
    ) -> Outcome:
        """
        Handle one user utterance.

        Args:
            conversation_id: Conversation identifier
            utterance: The user's message
            catalog: Tools reachable in this turn; built from the registry if omitted
            timeout: Time budget in seconds for LLM and tool calls
            user_id: Selects user-scoped tool providers when the catalog is built here

        Returns:
            Clarification, final answer, cancellation or error outcome
        """
        if not utterance or not utterance.strip():
            return Outcome.error(EMPTY_MESSAGE)

        log = logger.bind(conversation_id=conversation_id)

        async with self._locks.hold(conversation_id):
            try:
                stored = await self.store.load(conversation_id)
            except StateStoreError as e:
                log.error("Failed to load conversation state", error=str(e))
                return Outcome.error(STORE_FAILURE_MESSAGE)
            except Exception as e:
                log.error("State store raised on load", error=str(e), exc_info=True)
                return Outcome.error(STORE_FAILURE_MESSAGE)

            state = self._checked(stored, log)
            turn = _Turn(
                conversation_id=conversation_id,
                utterance=utterance,
                catalog=catalog if catalog is not None else self._catalog_for(conversation_id, user_id),
                deadline=Deadline(timeout),
                log=log
            )

            log.info("Processing message", phase=state.phase.value)

            try:
                outcome = await self._handlers[state.phase](state, turn)
                state.check_invariants()
            except StateInvariantError:
                if self.strict_invariants:
                    raise
                log.error("State machine produced an invalid state", exc_info=True)
                return Outcome.error(UNEXPECTED_FAILURE_MESSAGE)
            except Exception as e:
                log.error("Message processing failed", error=str(e), exc_info=True)
                return Outcome.error(UNEXPECTED_FAILURE_MESSAGE)

            try:
                await self.store.save(conversation_id, state)
            except StateStoreError as e:
                log.error("Failed to save conversation state", error=str(e))
                return Outcome.error(STORE_FAILURE_MESSAGE)
            except Exception as e:
                log.error("State store raised on save", error=str(e), exc_info=True)
                return Outcome.error(STORE_FAILURE_MESSAGE)

            log.info("Message processed", outcome=outcome.kind.value, phase=state.phase.value)
            return outcome

    def _checked(self, stored: ConversationState, log: structlog.BoundLogger) -> ConversationState:
        """A working copy of the stored state, repaired if it is invalid."""
        state = stored.model_copy(deep=True)
        try:
            state.check_invariants()
        except StateInvariantError as e:
            if self.strict_invariants:
                raise
            log.error("Invalid conversation state, resetting", error=str(e))
            state.reset()
        return state

    async def reset_conversation(self, conversation_id: str) -> None:
        """
        Clear a conversation's orchestration state.

        Raises:
            StateStoreError: If the state cannot be written
        """
        async with self._locks.hold(conversation_id):
            state = await self.store.load(conversation_id)
            if state.is_initial:
                return
            await self.store.save(conversation_id, ConversationState())
            logger.info("Conversation state reset", conversation_id=conversation_id)

    async def _handle_normal(self, state: ConversationState, turn: _Turn) -> Outcome:
        tools = await self.orchestrator.detect_required_tools(
            turn.utterance, turn.catalog, turn.deadline
        )

        if not tools:
            state.reset()
            return await self._plain_answer(turn)

        missing = self.orchestrator.check_missing_parameters(tools, state.collected_params)
        if missing:
            state.begin_collection(tools, missing, turn.utterance)
            question = await self.orchestrator.generate_clarification_question(
                state.missing_params, turn.deadline
            )
            turn.log.info(
                "Collecting parameters",
                tools=[tool.name for tool in tools],
                missing=[m.parameter for m in missing]
            )
            return Outcome.clarification(question)

        state.begin_execution(tools, turn.utterance)
        return await self._execute(state, turn)

    async def _handle_parameter_collection(self, state: ConversationState, turn: _Turn) -> Outcome:
        intent = await self.orchestrator.classify_intent(
            turn.utterance, state.missing_params[0], turn.deadline
        )
        turn.log.debug("Reply classified", intent=intent.value)

        if intent is Intent.CANCEL:
            state.reset()
            return Outcome.cancelled(CANCELLED_MESSAGE)

        if intent is Intent.NEW_TOPIC:
            state.reset()
            return await self._handle_normal(state, turn)

        parameter = state.fill_parameter(turn.utterance)
        turn.log.info("Parameter collected", parameter=parameter)

        if not state.all_parameters_filled:
            question = await self.orchestrator.generate_clarification_question(
                state.missing_params, turn.deadline
            )
            return Outcome.clarification(question)

        state.begin_execution()
        return await self._execute(state, turn)

    async def _handle_interrupted_execution(self, state: ConversationState, turn: _Turn) -> Outcome:
        # Execution never spans turns; a stored EXECUTING_TOOLS phase is a leftover
        turn.log.warning("Found interrupted tool execution, starting over")
        state.reset()
        return await self._handle_normal(state, turn)

    async def _execute(self, state: ConversationState, turn: _Turn) -> Outcome:
        calls = [
            ToolCall(name=pending.name, parameters=pending.parameters)
            for pending in state.pending_tools
        ]
        results = await self.orchestrator.execute_tool_chain(
            calls, state.collected_params, turn.catalog, turn.deadline
        )
        state.tool_results.extend(results)

        text = await self.orchestrator.generate_response(
            state.original_message or turn.utterance, results, turn.deadline
        )
        failed = [result.tool for result in results if not result.succeeded]
        succeeded = len(results) - len(failed)

        turn.log.info("Tool chain finished", succeeded=succeeded, failed=failed)
        state.reset()

        if results and succeeded == 0:
            return Outcome.error(text)
        return Outcome.final_answer(text)

    async def _plain_answer(self, turn: _Turn) -> Outcome:
        history: list[ChatMessage] = []
        if self.history is not None and self.history_window > 0:
            history = await self.history.list_messages(
                turn.conversation_id, limit=self.history_window, include_system=False
            )
            # The caller may already have recorded the current utterance
            if history and history[-1].role == "user" and history[-1].content == turn.utterance:
                history = history[:-1]

        try:
            return Outcome.final_answer(
                await self.reasoner.answer(turn.utterance, history, turn.deadline)
            )
        except ReasonerError as e:
            turn.log.warning("Plain answer failed", error=str(e))
            return Outcome.error(ANSWER_FAILURE_MESSAGE)
