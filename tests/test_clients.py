# tests/test_clients.py

import hashlib
import hmac

import httpx
import pytest
from unittest.mock import MagicMock, patch

from chatrelay.core.telegram_client import MAX_MESSAGE_LENGTH, TelegramClient
from chatrelay.core.whatsapp_client import ChatApiError, WhatsAppClient


def _response(status_code=200, json_data=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = json_data or {}
    response.text = text
    return response


def test_whatsapp_client_init():
    client = WhatsAppClient(token="test_token", phone_number_id="test_id", api_version="v21.0")
    assert client.token == "test_token"
    assert client.phone_number_id == "test_id"
    assert "Bearer test_token" in client.headers["Authorization"]
    assert client.base_url == "https://graph.facebook.com/v21.0/test_id"


def test_process_text_for_whatsapp():
    text = "Hello **world** 【test】"
    result = WhatsAppClient.process_text_for_whatsapp(text)
    assert result == "Hello *world*"


def test_prepare_message_payload():
    client = WhatsAppClient(token="test_token", phone_number_id="test_id")
    payload = client._prepare_message_payload("1234", "Hello")
    assert payload == {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": "1234",
        "type": "text",
        "text": {"preview_url": False, "body": "Hello"}
    }


def test_verify_signature():
    body = b'{"object":"whatsapp_business_account"}'
    signature = "sha256=" + hmac.new(b"secret", body, hashlib.sha256).hexdigest()

    assert WhatsAppClient.verify_signature(body, signature, "secret") is True
    assert WhatsAppClient.verify_signature(body, signature, "other") is False
    assert WhatsAppClient.verify_signature(body, None, "secret") is False


def test_extract_messages(whatsapp_text_message_payload):
    [message] = WhatsAppClient.extract_messages(whatsapp_text_message_payload(text="yo"))
    assert message["from"] == "15550001111"
    assert message["name"] == "Test User"
    assert message["phone_number_id"] == "123456789"
    assert message["message_body"] == "yo"


def test_extract_messages_non_text():
    body = {
        "entry": [{"changes": [{"field": "messages", "value": {"messages": [{"from": "1", "type": "image", "id": "x"}]}}]}]
    }
    [message] = WhatsAppClient.extract_messages(body)
    assert message["type"] == "image"
    assert message["message_body"] is None


@pytest.mark.asyncio
async def test_send_message():
    client = WhatsAppClient(token="test_token", phone_number_id="test_id")

    with patch("httpx.AsyncClient.post") as mock_post:
        mock_post.return_value = _response(json_data={"messages": [{"id": "wamid.1"}]})
        result = await client.send_message("1234", "Hello")

    assert result == {"messages": [{"id": "wamid.1"}]}
    assert mock_post.call_args.kwargs["json"]["to"] == "1234"


@pytest.mark.asyncio
async def test_send_message_error_status():
    client = WhatsAppClient(token="test_token", phone_number_id="test_id")

    with patch("httpx.AsyncClient.post") as mock_post:
        mock_post.return_value = _response(status_code=401, text="expired")
        with pytest.raises(ChatApiError) as exc_info:
            await client.send_message("1234", "Hello")
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_send_message_timeout_propagates():
    client = WhatsAppClient(token="test_token", phone_number_id="test_id")

    with patch("httpx.AsyncClient.post") as mock_post:
        mock_post.side_effect = httpx.TimeoutException("Timeout")
        with pytest.raises(httpx.TimeoutException):
            await client.send_message("1234", "Hello")


def test_telegram_extract_message(telegram_update):
    message = TelegramClient.extract_message(telegram_update(chat_id=42, text="hey"))
    assert message["from"] == "42"
    assert message["name"] == "ada"
    assert message["message_body"] == "hey"
    assert TelegramClient.extract_message({"update_id": 1, "message": {"chat": {"id": 1}}}) is None


@pytest.mark.asyncio
async def test_telegram_send_message_truncates():
    client = TelegramClient("bot-token")

    with patch("httpx.AsyncClient.post") as mock_post:
        mock_post.return_value = _response(json_data={"ok": True, "result": {}})
        await client.send_message("42", "x" * (MAX_MESSAGE_LENGTH + 10))

    assert mock_post.call_args.args[0] == "https://api.telegram.org/botbot-token/sendMessage"
    assert len(mock_post.call_args.kwargs["json"]["text"]) == MAX_MESSAGE_LENGTH


@pytest.mark.asyncio
async def test_telegram_send_message_errors():
    with pytest.raises(ChatApiError):
        await TelegramClient("").send_message("42", "hi")

    client = TelegramClient("bot-token")
    with patch("httpx.AsyncClient.post") as mock_post:
        mock_post.return_value = _response(json_data={"ok": False, "description": "chat not found"})
        with pytest.raises(ChatApiError) as exc_info:
            await client.send_message("42", "hi")
    assert "chat not found" in str(exc_info.value)
