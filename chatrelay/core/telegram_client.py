# chatrelay/core/telegram_client.py

from typing import Dict, Any, Optional
import httpx
import logging

from chatrelay.core.whatsapp_client import ChatApiError

logger = logging.getLogger(__name__)

# Telegram rejects longer text messages
MAX_MESSAGE_LENGTH = 4096


class TelegramClient:
    """Client for the Telegram Bot API"""

    def __init__(self, bot_token: str, timeout: float = 10.0):
        self.bot_token = bot_token
        self.timeout = timeout
        self.base_url = f"https://api.telegram.org/bot{bot_token}"

    @staticmethod
    def extract_message(update: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Pull the text message out of a webhook update, if any"""
        message = update.get("message") or update.get("edited_message")
        if not message or not message.get("text"):
            return None
        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        return {
            "type": "text",
            "from": str(chat.get("id")),
            "name": sender.get("username") or sender.get("first_name"),
            "timestamp": message.get("date"),
            "message_id": str(message.get("message_id")),
            "message_body": message["text"],
        }

    async def send_message(self, chat_id: str, message: str) -> dict:
        """Send a text message to a chat."""
        if not self.bot_token:
            raise ChatApiError("TELEGRAM_BOT_TOKEN is not configured")

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                f"{self.base_url}/sendMessage",
                json={"chat_id": chat_id, "text": message[:MAX_MESSAGE_LENGTH]},
            )

        if response.status_code != 200:
            raise ChatApiError(
                f"Failed to send Telegram message: {response.text}",
                status_code=response.status_code,
            )

        data = response.json()
        if not data.get("ok", False):
            raise ChatApiError(f"Telegram API error: {data.get('description')}")
        logger.info(f"Sent Telegram message to chat {chat_id}")
        return data
