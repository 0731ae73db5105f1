# chatrelay/core/whatsapp_client.py

from typing import Dict, Any, List
import hashlib
import hmac
import httpx
import logging
import re

logger = logging.getLogger(__name__)


class ChatApiError(Exception):
    """A chat platform API call failed"""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class WhatsAppClient:
    """Client for interacting with WhatsApp Cloud API"""

    def __init__(
        self,
        token: str,
        phone_number_id: str,
        api_version: str = "v22.0",
        timeout: float = 10.0,
    ):
        """Initialize WhatsApp client with credentials"""
        self.token = token
        self.phone_number_id = phone_number_id
        self.timeout = timeout
        self.base_url = f"https://graph.facebook.com/{api_version}/{phone_number_id}"
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _prepare_message_payload(self, to: str, message: str) -> Dict[str, Any]:
        """Prepare the message payload"""
        return {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": message}
        }

    @staticmethod
    def process_text_for_whatsapp(text: str) -> str:
        """Process text to be WhatsApp-friendly"""
        # Remove brackets
        text = re.sub(r"\【.*?\】", "", text).strip()

        # Convert markdown-style bold to WhatsApp-style bold
        text = re.sub(r"\*\*(.*?)\*\*", r"*\1*", text)

        return text

    @staticmethod
    def verify_signature(body: bytes, signature: str, app_secret: str) -> bool:
        """Check the X-Hub-Signature-256 header against the raw body"""
        if not signature or not app_secret:
            return False
        expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
        received = signature.replace("sha256=", "")
        return hmac.compare_digest(expected, received)

    @staticmethod
    def extract_messages(body: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Flatten every inbound message of a webhook body"""
        messages = []
        for entry in body.get("entry") or []:
            for change in entry.get("changes") or []:
                if change.get("field") != "messages":
                    continue
                value = change.get("value") or {}
                metadata = value.get("metadata") or {}
                contacts = {c.get("wa_id"): c for c in value.get("contacts") or []}
                for message in value.get("messages") or []:
                    msg_type = message.get("type")
                    contact = contacts.get(message.get("from"), {})
                    messages.append({
                        "type": msg_type,
                        "from": message.get("from"),
                        "name": contact.get("profile", {}).get("name"),
                        "timestamp": message.get("timestamp"),
                        "message_id": message.get("id"),
                        "phone_number_id": metadata.get("phone_number_id"),
                        "message_body": message.get("text", {}).get("body") if msg_type == "text" else None,
                    })
        return messages

    @staticmethod
    def extract_statuses(body: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Delivery/read receipts carried by a webhook body"""
        statuses = []
        for entry in body.get("entry") or []:
            for change in entry.get("changes") or []:
                statuses.extend((change.get("value") or {}).get("statuses") or [])
        return statuses

    async def send_message(self, to: str, message: str) -> dict:
        """Send a message to a WhatsApp user."""
        payload = self._prepare_message_payload(to, self.process_text_for_whatsapp(message))
        url = f"{self.base_url}/messages"

        # Timeouts propagate as httpx.TimeoutException; the breaker counts them
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(url, headers=self.headers, json=payload)

        if response.status_code != 200:
            if response.status_code == 401:
                logger.error("WhatsApp token authentication error. Check if token has expired.")
            raise ChatApiError(
                f"Failed to send WhatsApp message: {response.text}",
                status_code=response.status_code,
            )

        logger.info(f"Sent WhatsApp message to {to}")
        return response.json()
