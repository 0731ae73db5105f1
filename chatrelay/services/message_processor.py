# chatrelay/services/message_processor.py

from datetime import timedelta
from typing import Any, Dict, Optional
from sqlmodel import Session, select
import logging

from chatrelay.core.cache import CacheService, conversation_key, platform_config_key, user_mapping_key
from chatrelay.core.circuit_breaker import AI_PROCESSING, DATABASE, WHATSAPP_API, CircuitBreaker
from chatrelay.core.scheduler import Clock, SystemClock
from chatrelay.core.telegram_client import TelegramClient
from chatrelay.core.whatsapp_client import WhatsAppClient
from chatrelay.data_schemas import QueuedMessage
from chatrelay.models import AiInteraction, Conversation, PhoneMapping, PlatformConfig, User
from chatrelay.services.ai_service import AIService
from chatrelay.services.errors import (
    ChatErrorType,
    MessageProcessingError,
    error_type_for,
    get_fallback_message,
)
from chatrelay.services.prompts import UNREGISTERED_SENDER_MESSAGE
from chatrelay.services.state import ConversationState

logger = logging.getLogger(__name__)

# A conversation idle for longer than this starts over
CONVERSATION_STALE_AFTER = timedelta(hours=24)


class MessageProcessor:
    """
    Handles one queued message end to end.

    Config and sender lookups read through the caches; every call to the
    database, the AI backend and the chat API goes through the matching
    shared circuit breaker. Failures before the reply is sent are raised
    (classified) so the queue can retry; failures after it are logged only,
    since retrying would send the reply twice.
    """

    def __init__(
        self,
        engine,
        cache: CacheService,
        breakers: Dict[str, CircuitBreaker],
        ai_service: AIService,
        api_version: str = "v22.0",
        telegram_bot_token: str = "",
        http_timeout: float = 10.0,
        clock: Optional[Clock] = None,
    ):
        self.engine = engine
        self.cache = cache
        self.breakers = breakers
        self.ai_service = ai_service
        self.api_version = api_version
        self.telegram_bot_token = telegram_bot_token
        self.http_timeout = http_timeout
        self.clock = clock or SystemClock()

    # Lookups

    async def _db(self, fn):
        """Run a synchronous database callable through the database breaker"""
        async def _call():
            with Session(self.engine) as session:
                return fn(session)

        return await self.breakers[DATABASE].execute(_call)

    async def get_platform_config(self, config_id: str) -> Optional[Dict[str, Any]]:
        def _load(session):
            config = session.get(PlatformConfig, config_id)
            if config is None or not config.active:
                return None
            return config.model_dump(include={"id", "platform", "phone_number_id", "access_token"})

        async def _loader():
            return await self._db(_load)

        return await self.cache.platform_configs.get_or_set(platform_config_key(config_id), _loader)

    async def get_user_mapping(self, external_user_id: str, config_id: str) -> Optional[Dict[str, Any]]:
        def _load(session):
            row = session.exec(
                select(PhoneMapping, User)
                .where(PhoneMapping.user_id == User.id)
                .where(PhoneMapping.external_user_id == external_user_id)
                .where(PhoneMapping.config_id == config_id)
            ).first()
            if row is None:
                return None
            _, user = row
            return {"user_id": user.id, "name": user.name, "email": user.email}

        async def _loader():
            return await self._db(_load)

        return await self.cache.user_mappings.get_or_set(
            user_mapping_key(external_user_id, config_id), _loader
        )

    async def load_conversation(self, phone_number: str, config_id: str, user_id: Optional[str]) -> ConversationState:
        key = conversation_key(phone_number, config_id)
        cached = self.cache.conversations.get(key)
        if cached is None:
            def _load(session):
                conversation = session.exec(
                    select(Conversation)
                    .where(Conversation.phone_number == phone_number)
                    .where(Conversation.config_id == config_id)
                ).first()
                if conversation is None:
                    return None
                return {"messages": conversation.messages or [], "last_message_at": conversation.last_message_at}

            cached = await self._db(_load)
            if cached is not None:
                self.cache.conversations.set(key, cached)

        history = []
        if cached and self.clock.utcnow() - cached["last_message_at"] <= CONVERSATION_STALE_AFTER:
            history = [m for m in cached["messages"] if m.get("role") in ("user", "assistant", "system")]
        return ConversationState(
            phone_number=phone_number, config_id=config_id, user_id=user_id, messages=history
        )

    # Outbound

    def client_for(self, config: Dict[str, Any]):
        if config["platform"] == "telegram":
            return TelegramClient(config.get("access_token") or self.telegram_bot_token, timeout=self.http_timeout)
        return WhatsAppClient(
            token=config["access_token"],
            phone_number_id=config["phone_number_id"],
            api_version=self.api_version,
            timeout=self.http_timeout,
        )

    async def send(self, config: Dict[str, Any], to: str, text: str) -> dict:
        client = self.client_for(config)
        return await self.breakers[WHATSAPP_API].execute(lambda: client.send_message(to, text))

    # Persistence

    async def record_interaction(self, **fields) -> None:
        def _save(session):
            session.add(AiInteraction(**fields))
            session.commit()

        await self._db(_save)

    async def save_conversation(self, state: ConversationState) -> None:
        now = self.clock.utcnow()

        def _save(session):
            conversation = session.exec(
                select(Conversation)
                .where(Conversation.phone_number == state.phone_number)
                .where(Conversation.config_id == state.config_id)
            ).first()
            if conversation is None:
                conversation = Conversation(
                    phone_number=state.phone_number,
                    config_id=state.config_id,
                    created_at=now,
                )
            conversation.user_id = state.user_id or conversation.user_id
            conversation.messages = state.as_records()
            conversation.message_count = len(state.messages)
            conversation.last_message_at = now
            session.add(conversation)
            session.commit()

        await self._db(_save)
        self.cache.conversations.invalidate(conversation_key(state.phone_number, state.config_id))

    # Entry points

    async def process(self, message: QueuedMessage) -> Dict[str, Any]:
        payload = message.payload
        sender = message.session_or_phone_id
        text = (payload.get("message_body") or "").strip()
        if not text:
            logger.info(f"Message {message.id} has no text ({payload.get('type')}), skipping")
            return {"status": "ignored"}

        try:
            config = await self.get_platform_config(message.config_id) if message.config_id else None
        except Exception as e:
            raise MessageProcessingError(error_type_for(e), f"Config lookup failed: {e}", e) from e
        if config is None:
            raise MessageProcessingError(
                ChatErrorType.CONFIG_NOT_FOUND, f"No active configuration {message.config_id}"
            )

        try:
            mapping = await self.get_user_mapping(sender, config["id"])
        except Exception as e:
            raise MessageProcessingError(error_type_for(e), f"Sender lookup failed: {e}", e) from e

        if mapping is None:
            logger.info(f"Unregistered sender {sender} on config {config['id']}")
            await self._send_or_raise(config, sender, UNREGISTERED_SENDER_MESSAGE)
            return {"status": "unregistered"}

        try:
            conversation = await self.load_conversation(sender, config["id"], mapping["user_id"])
        except Exception as e:
            raise MessageProcessingError(error_type_for(e), f"Conversation lookup failed: {e}", e) from e

        try:
            model = await self.ai_service.select_model(mapping["user_id"])
        except Exception as e:
            raise MessageProcessingError(error_type_for(e), f"Model lookup failed: {e}", e) from e

        started = self.clock.now()
        try:
            reply = await self.breakers[AI_PROCESSING].execute(
                lambda: self.ai_service.generate_reply(
                    conversation, text, user_name=mapping.get("name"), platform=config["platform"], model=model
                )
            )
        except Exception as e:
            raise MessageProcessingError(ChatErrorType.AI_PROCESSING_FAILED, f"AI processing failed: {e}", e) from e
        response_time_ms = (self.clock.now() - started) * 1000

        await self._send_or_raise(config, sender, reply)

        conversation.add_message("user", text)
        conversation.add_message("assistant", reply)
        try:
            await self.save_conversation(conversation)
            await self.record_interaction(
                config_id=config["id"],
                platform=config["platform"],
                external_user_id=sender,
                user_id=mapping["user_id"],
                user_message=text,
                ai_response=reply,
                response_time_ms=response_time_ms,
                created_at=self.clock.utcnow(),
            )
        except Exception:
            logger.exception(f"Reply to {sender} sent but persisting message {message.id} failed")

        return {"status": "sent", "responseTimeMs": round(response_time_ms, 1)}

    async def _send_or_raise(self, config, to, text) -> None:
        try:
            await self.send(config, to, text)
        except Exception as e:
            raise MessageProcessingError(ChatErrorType.MESSAGE_SEND_FAILED, f"Send failed: {e}", e) from e

    async def notify_failure(self, message: QueuedMessage, error: BaseException) -> None:
        """Tell the sender we gave up and record the error event. Best effort."""
        error_type = error_type_for(error)
        try:
            await self.record_interaction(
                config_id=message.config_id,
                platform=message.platform,
                external_user_id=message.session_or_phone_id,
                user_message=message.payload.get("message_body") or "",
                had_error=True,
                error_type=error_type.value,
                error_message=str(error)[:1000],
                created_at=self.clock.utcnow(),
            )
        except Exception:
            logger.exception(f"Could not record failure of message {message.id}")

        if error_type in (ChatErrorType.CONFIG_NOT_FOUND, ChatErrorType.MESSAGE_SEND_FAILED):
            # No way to reach the sender
            return
        try:
            config = await self.get_platform_config(message.config_id) if message.config_id else None
            if config is not None:
                await self.send(config, message.session_or_phone_id, get_fallback_message(error_type))
        except Exception:
            logger.exception(f"Failed to send fallback message for {message.id}")
