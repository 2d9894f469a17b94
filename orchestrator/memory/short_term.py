"""
Conversation Store
==================

In-memory conversation history, keyed by conversation id. It plays two
roles in the pipeline:

- history source: the live window of recent turns that is replayed to the
  model, and the older turns the chat-history context source scores
- persistence collaborator: finished turns are handed to `save_turn`

Design Notes:
- Each conversation has a list of messages (role, content, metadata)
- Old messages are trimmed when the per-conversation limit is exceeded
- Only plain dict/list operations, so no awaits happen mid-update
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


@dataclass
class Message:
    """
    A single message in the conversation.

    Attributes:
        role: Who sent the message ("user", "assistant", "system")
        content: The message text
        timestamp: When the message was added
        metadata: Optional extra data (request id, model, tokens)
    """
    role: str
    content: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary format for LLM API calls."""
        return {"role": self.role, "content": self.content}


class ConversationStore:
    """
    In-memory conversation storage.

    Example:
        store = ConversationStore(max_messages=200)

        store.add_message("conv-1", "user", "Hello!")
        store.add_message("conv-1", "assistant", "Hi there!")

        history = store.get_recent("conv-1", limit=10)
    """

    def __init__(self, max_messages: int = 200, max_turns: int = 1000):
        """
        Args:
            max_messages: Maximum messages to keep per conversation
            max_turns: Maximum finished turns kept for inspection
        """
        self.max_messages = max_messages
        self.max_turns = max_turns
        self._conversations: dict[str, list[Message]] = {}
        self._turns: list[dict[str, Any]] = []

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: dict | None = None
    ) -> None:
        """
        Append a message to a conversation, trimming the oldest over the limit.
        """
        messages = self._conversations.setdefault(conversation_id, [])
        messages.append(Message(role=role, content=content, metadata=metadata or {}))

        if len(messages) > self.max_messages:
            self._conversations[conversation_id] = messages[-self.max_messages:]

    def get_recent(self, conversation_id: str | None, limit: int = 20) -> list[dict]:
        """
        Get the most recent messages, oldest first, in LLM message format.
        """
        if not conversation_id or limit <= 0:
            return []
        return [m.to_dict() for m in self._conversations.get(conversation_id, [])[-limit:]]

    def get_older(self, conversation_id: str | None, skip_recent: int) -> list[Message]:
        """
        Get messages older than the live window of `skip_recent` messages.
        """
        if not conversation_id:
            return []
        messages = self._conversations.get(conversation_id, [])
        cut = max(len(messages) - max(skip_recent, 0), 0)
        return messages[:cut]

    def get_all_messages(self, conversation_id: str) -> list[Message]:
        """Get all messages of a conversation as Message objects."""
        return self._conversations.get(conversation_id, []).copy()

    async def save_turn(self, turn: dict[str, Any]) -> None:
        """
        Persist a finished turn.

        Args:
            turn: Dict with conversation_id, request_id, user_text and
                assistant_text, plus the canonical request, the response
                envelope and the metrics
        """
        conversation_id = turn.get("conversation_id")
        if conversation_id:
            metadata = {"request_id": turn.get("request_id")}
            self.add_message(conversation_id, "user", turn.get("user_text", ""), metadata)
            self.add_message(
                conversation_id,
                "assistant",
                turn.get("assistant_text", ""),
                {**metadata, "metrics": turn.get("metrics", {})},
            )
        self._turns.append(turn)
        if len(self._turns) > self.max_turns:
            self._turns = self._turns[-self.max_turns:]

    @property
    def turns(self) -> list[dict[str, Any]]:
        """All persisted turns, in order."""
        return list(self._turns)

    def clear(self, conversation_id: str) -> None:
        """Clear a conversation's history."""
        self._conversations.pop(conversation_id, None)

    def get_message_count(self, conversation_id: str) -> int:
        return len(self._conversations.get(conversation_id, []))
