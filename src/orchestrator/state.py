"""Conversation state and state stores.

ConversationState is the durable record of one conversation's
orchestration state machine. Stores persist it as JSON; they are only
ever used by the ConversationManager, which serializes access per
conversation.
"""

import asyncio
import hashlib
import os
import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import aiofiles
from pydantic import BaseModel, Field, ValidationError

from shared.logging import get_logger
from shared.models import (
    MissingParam,
    PendingTool,
    Phase,
    ToolCallResult,
    ToolDescriptor,
    utcnow,
)

logger = get_logger(__name__)


class StateStoreError(Exception):
    """Conversation state could not be loaded or saved."""
    pass


class StateInvariantError(Exception):
    """A conversation state violates the state machine invariants."""
    pass


class ConversationState(BaseModel):
    """
    Orchestration state of one conversation.

    Invariants:
    - phase is COLLECTING_PARAMS exactly when missing_params is non-empty
    - phase NORMAL means no pending tools and no missing params
    - pending tools always come with the original message
    """
    phase: Phase = Phase.NORMAL
    pending_tools: list[PendingTool] = Field(default_factory=list)
    missing_params: list[MissingParam] = Field(default_factory=list)
    collected_params: dict[str, str] = Field(default_factory=dict)
    original_message: Optional[str] = None
    tool_results: list[ToolCallResult] = Field(default_factory=list)

    @property
    def is_initial(self) -> bool:
        return self == ConversationState()

    def reset(self) -> None:
        """Return to the initial state as a whole."""
        self.phase = Phase.NORMAL
        self.pending_tools = []
        self.missing_params = []
        self.collected_params = {}
        self.original_message = None
        self.tool_results = []

    def begin_collection(
        self,
        tools: list[ToolDescriptor],
        missing: list[MissingParam],
        original_message: str
    ) -> None:
        """Remember the detected tools and start asking for parameters."""
        if not missing:
            raise ValueError("Parameter collection needs at least one missing parameter")

        self.phase = Phase.COLLECTING_PARAMS
        self.pending_tools = [PendingTool(name=tool.name) for tool in tools]
        self.missing_params = list(missing)
        self.original_message = original_message

    def begin_execution(
        self,
        tools: Optional[list[ToolDescriptor]] = None,
        original_message: Optional[str] = None
    ) -> None:
        """
        Enter tool execution.

        Called with the tools when they can run right away, or without
        arguments once parameter collection has finished.
        """
        if tools is not None:
            self.pending_tools = [PendingTool(name=tool.name) for tool in tools]
        if original_message is not None:
            self.original_message = original_message

        self.missing_params = []
        self.tool_results = []
        self.phase = Phase.EXECUTING_TOOLS

    def fill_parameter(self, value: str) -> str:
        """
        Store a value for the first missing parameter.

        Every missing entry with that parameter name is satisfied, since
        collected values are shared by all tools in the chain.

        Returns:
            The name of the parameter that was filled
        """
        if not self.missing_params:
            raise StateInvariantError("No missing parameter to fill")

        name = self.missing_params[0].parameter
        self.collected_params[name] = value
        self.missing_params = [m for m in self.missing_params if m.parameter != name]
        return name

    @property
    def all_parameters_filled(self) -> bool:
        return not self.missing_params

    def check_invariants(self) -> None:
        """
        Raises:
            StateInvariantError: If the state is not reachable by the state machine
        """
        if self.phase is Phase.COLLECTING_PARAMS and not self.missing_params:
            raise StateInvariantError("Collecting parameters with nothing missing")
        if self.missing_params and self.phase is not Phase.COLLECTING_PARAMS:
            raise StateInvariantError(f"Missing parameters in phase '{self.phase.value}'")
        if self.phase is Phase.NORMAL and self.pending_tools:
            raise StateInvariantError("Pending tools in normal phase")
        if self.pending_tools and not self.original_message:
            raise StateInvariantError("Pending tools without the original message")


class StateStore(ABC):
    """Persistence for conversation state, keyed by conversation id."""

    @abstractmethod
    async def load(self, conversation_id: str) -> ConversationState:
        """
        Load a conversation's state; unknown conversations get the initial state.

        Raises:
            StateStoreError: If the state cannot be read
        """
        pass

    @abstractmethod
    async def save(self, conversation_id: str, state: ConversationState) -> None:
        """
        Raises:
            StateStoreError: If the state cannot be written
        """
        pass

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        """Remove a conversation's state. Returns False if there was none."""
        pass


class InMemoryStateStore(StateStore):
    """
    Process-local state store.

    States are kept serialized so callers never share mutable objects
    with the store. Entries not saved for longer than the TTL are
    treated as absent.
    """

    def __init__(self, ttl_minutes: Optional[int] = None) -> None:
        self.ttl = timedelta(minutes=ttl_minutes) if ttl_minutes else None
        self._states: dict[str, tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    def _expired(self, saved_at: datetime, now: datetime) -> bool:
        return self.ttl is not None and now - saved_at > self.ttl

    async def load(self, conversation_id: str) -> ConversationState:
        entry = self._states.get(conversation_id)
        if entry is None:
            return ConversationState()

        payload, saved_at = entry
        if self._expired(saved_at, utcnow()):
            await self.delete(conversation_id)
            return ConversationState()

        try:
            return ConversationState.model_validate_json(payload)
        except ValidationError as e:
            raise StateStoreError(f"Corrupt state for conversation {conversation_id}: {e}") from e

    async def save(self, conversation_id: str, state: ConversationState) -> None:
        async with self._lock:
            self._states[conversation_id] = (state.model_dump_json(), utcnow())

    async def delete(self, conversation_id: str) -> bool:
        async with self._lock:
            return self._states.pop(conversation_id, None) is not None

    async def cleanup_expired(self) -> int:
        """
        Remove expired states.

        Returns:
            Number of states removed
        """
        now = utcnow()
        async with self._lock:
            expired = [
                conversation_id
                for conversation_id, (_, saved_at) in self._states.items()
                if self._expired(saved_at, now)
            ]
            for conversation_id in expired:
                del self._states[conversation_id]

        if expired:
            logger.info("Expired conversation states cleaned up", count=len(expired))

        return len(expired)

    def __len__(self) -> int:
        return len(self._states)


_SAFE_ID = re.compile(r"^[A-Za-z0-9_\-]{1,128}$")


class FileStateStore(StateStore):
    """
    One JSON file per conversation.

    Writes go to a temporary file first and are moved into place, so a
    crash never leaves a half-written state behind.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, conversation_id: str) -> Path:
        if _SAFE_ID.match(conversation_id):
            name = conversation_id
        else:
            name = hashlib.sha256(conversation_id.encode()).hexdigest()
        return self.directory / f"{name}.json"

    async def load(self, conversation_id: str) -> ConversationState:
        path = self._path(conversation_id)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                payload = await f.read()
        except FileNotFoundError:
            return ConversationState()
        except (OSError, UnicodeDecodeError) as e:
            raise StateStoreError(f"Cannot read state for conversation {conversation_id}: {e}") from e

        try:
            return ConversationState.model_validate_json(payload)
        except ValidationError as e:
            raise StateStoreError(f"Corrupt state for conversation {conversation_id}: {e}") from e

    async def save(self, conversation_id: str, state: ConversationState) -> None:
        path = self._path(conversation_id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(state.model_dump_json(indent=2))
            os.replace(tmp_path, path)
        except OSError as e:
            raise StateStoreError(f"Cannot write state for conversation {conversation_id}: {e}") from e

    async def delete(self, conversation_id: str) -> bool:
        try:
            self._path(conversation_id).unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StateStoreError(f"Cannot delete state for conversation {conversation_id}: {e}") from e
