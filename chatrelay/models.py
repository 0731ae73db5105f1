# chatrelay/models.py

from sqlmodel import SQLModel, Field
from sqlalchemy import Column, DateTime, JSON, UniqueConstraint
from datetime import datetime, timezone
from typing import Optional, Any, Dict, List
import uuid


def utcnow() -> datetime:
    # Naive UTC, SQLite drops tzinfo on the way back anyway
    return datetime.now(timezone.utc).replace(tzinfo=None)


def timestamp_field(**kwargs) -> Any:
    """A naive UTC datetime column, whatever sqlmodel would map ``datetime`` to"""
    return Field(sa_type=DateTime, **kwargs)


def new_id() -> str:
    return uuid.uuid4().hex


class User(SQLModel, table=True):
    """Account the chat gateways act on behalf of"""
    __table_args__ = {'extend_existing': True}

    id: str = Field(default_factory=new_id, primary_key=True)
    email: Optional[str] = Field(default=None, index=True)
    name: Optional[str] = None
    image: Optional[str] = None
    ai_model: Optional[str] = None  # overrides OPENAI_MODEL for this user
    created_at: datetime = timestamp_field(default_factory=utcnow)


class PlatformConfig(SQLModel, table=True):
    """A connected chat-platform number/bot and its credentials"""
    __table_args__ = {'extend_existing': True}

    id: str = Field(default_factory=new_id, primary_key=True)
    platform: str = Field(default="whatsapp", index=True)  # whatsapp | telegram
    phone_number_id: Optional[str] = Field(default=None, index=True)
    access_token: str = ""
    app_secret: Optional[str] = None  # signs WhatsApp webhook bodies
    business_name: Optional[str] = None
    active: bool = Field(default=True)
    created_at: datetime = timestamp_field(default_factory=utcnow)


class PhoneMapping(SQLModel, table=True):
    """Maps an external chat user (phone number or chat id) to a User"""
    __table_args__ = (
        UniqueConstraint("external_user_id", "config_id"),
        {'extend_existing': True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    external_user_id: str = Field(index=True)
    config_id: str = Field(index=True)
    user_id: str = Field(index=True)


class WhatsAppGatewaySession(SQLModel, table=True):
    """Session of the external WhatsApp bridge process"""
    __table_args__ = {'extend_existing': True}

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(unique=True, index=True)
    user_id: str = Field(index=True)
    phone_number: Optional[str] = None
    status: str = Field(default="PENDING")  # PENDING, CONNECTED, DISCONNECTED
    connected_at: Optional[datetime] = timestamp_field(default=None)
    last_ping_at: Optional[datetime] = timestamp_field(default=None)
    created_at: datetime = timestamp_field(default_factory=utcnow)


class TelegramGatewaySession(SQLModel, table=True):
    """Pairing between a user and the external Telegram bridge"""
    __table_args__ = {'extend_existing': True}

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True)
    telegram_username: Optional[str] = None
    agent_id: str = "assistant"
    status: str = Field(default="PENDING")
    last_active_at: Optional[datetime] = timestamp_field(default=None)
    created_at: datetime = timestamp_field(default_factory=utcnow)


class PendingMessage(SQLModel, table=True):
    """Durable backlog row for one inbound chat message"""
    __table_args__ = {'extend_existing': True}

    id: str = Field(default_factory=new_id, primary_key=True)
    platform: str = Field(index=True)
    config_id: Optional[str] = Field(default=None, index=True)
    session_or_phone_id: str
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    enqueued_at: datetime = timestamp_field(default_factory=utcnow)
    attempts: int = Field(default=0)
    next_attempt_at: datetime = timestamp_field(default_factory=utcnow, index=True)
    status: str = Field(default="pending", index=True)  # pending, processing, completed, dead
    last_error: Optional[str] = None


class Conversation(SQLModel, table=True):
    """Recent transcript for one chat user on one config"""
    __table_args__ = (
        UniqueConstraint("phone_number", "config_id"),
        {'extend_existing': True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    phone_number: str = Field(index=True)
    config_id: str = Field(index=True)
    user_id: Optional[str] = None
    messages: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    message_count: int = 0
    created_at: datetime = timestamp_field(default_factory=utcnow)
    last_message_at: datetime = timestamp_field(default_factory=utcnow, index=True)


class AiInteraction(SQLModel, table=True):
    """Raw message event, the input of the hourly rollup"""
    __table_args__ = {'extend_existing': True}

    id: Optional[int] = Field(default=None, primary_key=True)
    config_id: Optional[str] = Field(default=None, index=True)
    platform: str = "whatsapp"
    external_user_id: Optional[str] = None
    user_id: Optional[str] = None
    user_message: str = ""
    ai_response: str = ""
    response_time_ms: Optional[float] = None
    had_error: bool = False
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = timestamp_field(default_factory=utcnow, index=True)


class MessageAnalytics(SQLModel, table=True):
    """Hourly aggregate per configuration"""
    __table_args__ = (
        UniqueConstraint("config_id", "date", "hour"),
        {'extend_existing': True},
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    config_id: str = Field(index=True)
    date: datetime = timestamp_field(index=True)  # midnight of the bucket's day
    hour: int
    bucket_start: datetime = timestamp_field(index=True)
    messages_received: int = 0
    messages_sent: int = 0
    messages_failed: int = 0
    unique_users: int = 0
    avg_response_time: Optional[float] = None
    min_response_time: Optional[float] = None
    max_response_time: Optional[float] = None
    avg_messages_per_user: Optional[float] = None
    total_conversations: int = 0
    avg_conversation_length: Optional[float] = None
    error_count: int = 0
    error_rate: Optional[float] = None
    created_at: datetime = timestamp_field(default_factory=utcnow)
    updated_at: datetime = timestamp_field(default_factory=utcnow)


class PerformanceMetric(SQLModel, table=True):
    """Point-in-time health sample per configuration"""
    __table_args__ = {'extend_existing': True}

    id: Optional[int] = Field(default=None, primary_key=True)
    config_id: str = Field(index=True)
    cache_hit_rate: float = 0.0
    queue_size: int = 0
    queue_backlog: int = 0
    circuit_breaker_trips: int = 0
    recorded_at: datetime = timestamp_field(default_factory=utcnow, index=True)
