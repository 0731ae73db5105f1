# chatrelay/services/webhook_service.py

from fastapi import HTTPException
from fastapi.responses import PlainTextResponse
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select
from typing import Any, Dict, Optional
import hmac
import logging

from chatrelay.core.scheduler import Clock, SystemClock
from chatrelay.core.telegram_client import TelegramClient
from chatrelay.core.whatsapp_client import WhatsAppClient
from chatrelay.data_schemas import ProcessedMessage
from chatrelay.models import PlatformConfig
from chatrelay.services.message_queue import MessageQueue

logger = logging.getLogger(__name__)


class WebhookService:
    """Accepts platform webhooks and turns each inbound message into a queue entry"""

    def __init__(self, queue: MessageQueue, engine, clock: Optional[Clock] = None):
        self.queue = queue
        self.engine = engine
        self.clock = clock or SystemClock()

    async def verify_webhook(
        self, mode: str, token: str, challenge: str, verify_token: str
    ):
        """Verify webhook for WhatsApp API"""
        if mode and token:
            if mode == "subscribe" and verify_token and token == verify_token:
                return PlainTextResponse(content=challenge or "OK")
            raise HTTPException(status_code=403, detail="Invalid verify token")
        raise HTTPException(status_code=400, detail="Invalid request")

    def _find_whatsapp_config(self, session: Session, phone_number_id: str) -> Optional[PlatformConfig]:
        return session.exec(
            select(PlatformConfig)
            .where(PlatformConfig.platform == "whatsapp")
            .where(PlatformConfig.phone_number_id == phone_number_id)
            .where(PlatformConfig.active == True)  # noqa: E712
        ).first()

    def _claim(self, session: Session, platform: str, message_id: Optional[str]) -> bool:
        """Record a platform message id; False if it was seen before"""
        if not message_id:
            return True
        session.add(ProcessedMessage(platform=platform, message_id=message_id, received_at=self.clock.utcnow()))
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.info(f"Duplicate {platform} delivery {message_id}, skipping")
            return False
        return True

    def _release(self, session: Session, platform: str, message_id: Optional[str]) -> None:
        """Forget a claimed message id so the platform's redelivery is accepted"""
        if not message_id:
            return
        session.execute(
            delete(ProcessedMessage)
            .where(ProcessedMessage.platform == platform)
            .where(ProcessedMessage.message_id == message_id)
        )
        session.commit()

    async def _enqueue_claimed(
        self, session: Session, platform: str, message_id: Optional[str], message: Dict[str, Any], config_id: str
    ) -> None:
        try:
            await self.queue.enqueue(platform, message["from"], message, config_id=config_id)
        except Exception:
            logger.exception(f"Failed to enqueue {platform} message {message_id}, releasing claim")
            self._release(session, platform, message_id)
            raise

    async def handle_whatsapp(self, body: Dict[str, Any], raw_body: bytes = b"", signature: Optional[str] = None) -> Dict[str, Any]:
        """Handle incoming webhook events from WhatsApp"""
        logger.info(f"Received WhatsApp webhook: {body}")

        if body.get("object") != "whatsapp_business_account":
            raise HTTPException(status_code=400, detail="Invalid webhook body")

        messages = WhatsAppClient.extract_messages(body)
        if not messages:
            statuses = WhatsAppClient.extract_statuses(body)
            if statuses:
                return {"status": "ok", "type": "status_update", "count": len(statuses)}
            return {"status": "no_message"}

        enqueued = skipped = 0
        with Session(self.engine) as session:
            configs: Dict[str, Optional[PlatformConfig]] = {}
            for message in messages:
                phone_number_id = message.get("phone_number_id")
                if phone_number_id not in configs:
                    config = self._find_whatsapp_config(session, phone_number_id)
                    if config is not None and config.app_secret:
                        if not WhatsAppClient.verify_signature(raw_body, signature, config.app_secret):
                            logger.warning(f"Bad webhook signature for phone number {phone_number_id}")
                            raise HTTPException(status_code=403, detail="Invalid signature")
                    configs[phone_number_id] = config

                config = configs[phone_number_id]
                if config is None:
                    logger.warning(f"No active config for phone number {phone_number_id}, dropping message")
                    skipped += 1
                    continue
                message_id = message.get("message_id")
                if not self._claim(session, "whatsapp", message_id):
                    skipped += 1
                    continue

                await self._enqueue_claimed(session, "whatsapp", message_id, message, config.id)
                enqueued += 1

        return {"status": "ok", "enqueued": enqueued, "skipped": skipped}

    async def handle_telegram(self, config_id: str, update: Dict[str, Any], secret_token: Optional[str] = None) -> Dict[str, Any]:
        """Handle one Telegram Bot API update delivered for ``config_id``"""
        with Session(self.engine) as session:
            config = session.get(PlatformConfig, config_id)
            if config is None or not config.active or config.platform != "telegram":
                raise HTTPException(status_code=404, detail="Unknown bot configuration")
            if config.app_secret and not hmac.compare_digest(secret_token or "", config.app_secret):
                logger.warning(f"Bad Telegram secret token for config {config_id}")
                raise HTTPException(status_code=403, detail="Invalid secret token")

            message = TelegramClient.extract_message(update)
            if message is None:
                return {"status": "no_message"}
            update_id = str(update.get("update_id") or "") or None
            if not self._claim(session, "telegram", update_id):
                return {"status": "duplicate"}

            await self._enqueue_claimed(session, "telegram", update_id, message, config_id)
        return {"status": "ok", "enqueued": 1}
