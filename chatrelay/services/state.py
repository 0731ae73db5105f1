# chatrelay/services/state.py

from pydantic import BaseModel, Field
from typing import Any, ClassVar, Dict, List, Literal, Optional


class Message(BaseModel):
    """A message in the conversation."""

    role: Literal["user", "system", "assistant"]
    content: str


class ConversationState(BaseModel):
    """
    Transcript handed to the AI service for one chat user.

    Stored as JSON on the Conversation row and cached for a minute in the
    conversations cache.
    """

    phone_number: str
    config_id: str
    user_id: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)

    # Only the most recent messages are kept
    MAX_MESSAGES: ClassVar[int] = 50

    def add_message(self, role: Literal["user", "system", "assistant"], content: str) -> None:
        """Add a message to the conversation history."""
        self.messages.append(Message(role=role, content=content))
        if len(self.messages) > self.MAX_MESSAGES:
            self.messages = self.messages[-self.MAX_MESSAGES:]

    def as_records(self) -> List[Dict[str, Any]]:
        return [m.model_dump() for m in self.messages]
