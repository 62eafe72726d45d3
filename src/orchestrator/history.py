"""In-memory chat history store.

Keeps the messages of each conversation so plain answers can be given
with some context. Orchestration state is not kept here; see
orchestrator.state.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Optional

from shared.logging import get_logger
from shared.models import ChatMessage, utcnow

logger = get_logger(__name__)


class ChatHistory:
    """
    Message history per conversation.

    Responsibilities:
    - Append messages in arrival order
    - Prune old messages (system messages are kept)
    - Expire idle conversations
    """

    def __init__(
        self,
        max_conversation_length: int = 50,
        conversation_ttl_minutes: int = 60
    ) -> None:
        """
        Initialize the history store.

        Args:
            max_conversation_length: Maximum messages per conversation
            conversation_ttl_minutes: Idle time after which a conversation is dropped
        """
        self.max_length = max_conversation_length
        self.ttl = timedelta(minutes=conversation_ttl_minutes)

        self._messages: dict[str, list[ChatMessage]] = {}
        self._updated_at: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    def _is_expired(self, conversation_id: str) -> bool:
        updated_at = self._updated_at.get(conversation_id)
        return updated_at is not None and utcnow() - updated_at > self.ttl

    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str
    ) -> ChatMessage:
        """
        Add a message to a conversation, creating the conversation if needed.

        Args:
            conversation_id: Conversation identifier
            role: Message role (user, assistant, system)
            content: Message content

        Returns:
            The stored message
        """
        message = ChatMessage(role=role, content=content)

        async with self._lock:
            if self._is_expired(conversation_id):
                self._messages.pop(conversation_id, None)

            messages = self._messages.setdefault(conversation_id, [])
            messages.append(message)
            self._updated_at[conversation_id] = message.timestamp

            # Prune if over limit (keep system messages)
            if len(messages) > self.max_length:
                system_msgs = [m for m in messages if m.role == "system"]
                other_msgs = [m for m in messages if m.role != "system"]
                keep_count = max(self.max_length - len(system_msgs), 0)
                self._messages[conversation_id] = system_msgs + (
                    other_msgs[-keep_count:] if keep_count else []
                )

        return message

    async def list_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        include_system: bool = True
    ) -> list[ChatMessage]:
        """
        Messages of a conversation, oldest first.

        Args:
            conversation_id: Conversation identifier
            limit: Only return the most recent messages
            include_system: Whether to include system messages
        """
        if self._is_expired(conversation_id):
            await self.delete(conversation_id)
            return []

        messages = list(self._messages.get(conversation_id, []))
        if not include_system:
            messages = [m for m in messages if m.role != "system"]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    async def delete(self, conversation_id: str) -> bool:
        """Drop a conversation's history. Returns False if there was none."""
        async with self._lock:
            self._updated_at.pop(conversation_id, None)
            if self._messages.pop(conversation_id, None) is not None:
                logger.info("Conversation history deleted", conversation_id=conversation_id)
                return True
        return False

    async def cleanup_expired(self) -> int:
        """
        Remove expired conversations.

        Returns:
            Number of conversations removed
        """
        async with self._lock:
            expired = [cid for cid in self._messages if self._is_expired(cid)]
            for cid in expired:
                del self._messages[cid]
                self._updated_at.pop(cid, None)

        if expired:
            logger.info("Expired conversation histories cleaned up", count=len(expired))

        return len(expired)

    def get_stats(self) -> dict[str, Any]:
        """Get history statistics."""
        return {
            "total_conversations": len(self._messages),
            "max_length": self.max_length,
            "ttl_minutes": self.ttl.total_seconds() / 60
        }
