# chatrelay/data_schemas/queued_message.py

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, Literal, Optional


class QueuedMessage(BaseModel):
    """An inbound chat message waiting for the worker"""

    id: str
    platform: Literal["whatsapp", "telegram"]
    config_id: Optional[str] = None
    session_or_phone_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime
    attempts: int = 0
    next_attempt_at: datetime
    status: Literal["pending", "processing", "completed", "dead"] = "pending"
    last_error: Optional[str] = None
