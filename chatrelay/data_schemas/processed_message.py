# chatrelay/data_schemas/processed_message.py

from sqlmodel import SQLModel, Field
from datetime import datetime
from sqlalchemy import UniqueConstraint

from chatrelay.models import timestamp_field, utcnow


class ProcessedMessage(SQLModel, table=True):
    """Platform message ids already enqueued, so webhook redeliveries are dropped"""
    __table_args__ = (UniqueConstraint("platform", "message_id"), {'extend_existing': True})

    id: int = Field(default=None, primary_key=True)
    platform: str
    message_id: str = Field(index=True)  # WhatsApp wamid or Telegram update id
    received_at: datetime = timestamp_field(default_factory=utcnow, index=True)
