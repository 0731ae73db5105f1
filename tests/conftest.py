# tests/conftest.py

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session
from unittest.mock import AsyncMock, MagicMock

from chatrelay import create_app
from chatrelay.container import Container
from chatrelay.core.config import Settings
from chatrelay.core.database import init_db, make_engine
from chatrelay.core.scheduler import ManualClock, ManualScheduler
from chatrelay.models import PhoneMapping, PlatformConfig, User

TEST_ENV = {
    "DATABASE_URL": "sqlite://",
    "AUTH_SECRET": "test-auth-secret",
    "WHATSAPP_GATEWAY_SECRET": "wa-gateway-secret",
    "TELEGRAM_GATEWAY_SECRET": "tg-gateway-secret",
    "ADMIN_API_KEY": "admin_secret_key",
    "WHATSAPP_VERIFY_TOKEN": "verify-me",
    "OPENAI_API_KEY": "sk-test",
    "QUEUE_BACKEND": "database",
    "LOG_LEVEL": "WARNING",
}

# Cleared so a developer's .env cannot change test behaviour
UNSET_ENV = ["CRON_SECRET", "TELEGRAM_BOT_TOKEN", "QUEUE_MAX_ATTEMPTS", "QUEUE_BATCH_SIZE"]


@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    """Load test environment variables for all tests"""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    for key in UNSET_ENV:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def clock():
    """Virtual time, starting 2025-01-01 12:00 UTC"""
    return ManualClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def engine():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def ai_service():
    service = MagicMock()
    service.select_model = AsyncMock(return_value="gpt-4o-mini")
    service.generate_reply = AsyncMock(return_value="Hello from the assistant")
    return service


@pytest.fixture
def container(settings, engine, clock, scheduler, ai_service):
    return Container(settings, engine=engine, clock=clock, scheduler=scheduler, ai_service=ai_service)


@pytest.fixture
def app(container):
    """Create application for testing."""
    return create_app(container=container)


@pytest.fixture
def client(app):
    """Create a test client for the app."""
    return TestClient(app)


@pytest.fixture
def seeded(session):
    """A user registered on one WhatsApp and one Telegram config"""
    user = User(id="user-1", email="ada@example.com", name="Ada", image="https://example.com/ada.png")
    whatsapp = PlatformConfig(
        id="cfg-wa", platform="whatsapp", phone_number_id="123456789", access_token="wa-token"
    )
    telegram = PlatformConfig(id="cfg-tg", platform="telegram", access_token="tg-bot-token")
    session.add_all([
        user,
        whatsapp,
        telegram,
        PhoneMapping(external_user_id="15550001111", config_id="cfg-wa", user_id="user-1"),
        PhoneMapping(external_user_id="777", config_id="cfg-tg", user_id="user-1"),
    ])
    session.commit()
    return {"user_id": "user-1", "whatsapp": "cfg-wa", "telegram": "cfg-tg"}


@pytest.fixture
def whatsapp_text_message_payload():
    """Generate a standard WhatsApp text message webhook payload."""

    def _create_payload(
        sender_id="15550001111",
        text="test",
        message_id="wamid.test",
        phone_number_id="123456789",
        profile_name="Test User",
    ):
        return {
            "object": "whatsapp_business_account",
            "entry": [
                {
                    "id": "waba-1",
                    "changes": [
                        {
                            "value": {
                                "messaging_product": "whatsapp",
                                "metadata": {
                                    "display_phone_number": "15556078886",
                                    "phone_number_id": phone_number_id,
                                },
                                "contacts": [
                                    {
                                        "profile": {"name": profile_name},
                                        "wa_id": sender_id,
                                    }
                                ],
                                "messages": [
                                    {
                                        "from": sender_id,
                                        "text": {"body": text},
                                        "type": "text",
                                        "id": message_id,
                                        "timestamp": "1735732800",
                                    }
                                ],
                            },
                            "field": "messages",
                        }
                    ],
                }
            ],
        }

    return _create_payload


@pytest.fixture
def telegram_update():
    def _create_update(update_id=1001, chat_id=777, text="hi there", username="ada"):
        return {
            "update_id": update_id,
            "message": {
                "message_id": 55,
                "date": 1735732800,
                "chat": {"id": chat_id, "type": "private"},
                "from": {"id": chat_id, "username": username, "first_name": "Ada"},
                "text": text,
            },
        }

    return _create_update
