# tests/test_gateway.py

import jwt
import pytest
from datetime import datetime
from sqlmodel import Session, select
from unittest.mock import MagicMock

from chatrelay.container import get_session
from chatrelay.core.tokens import SECURITY_FIX_TIMESTAMP
from chatrelay.models import TelegramGatewaySession, WhatsAppGatewaySession

WA_SECRET = {"X-Gateway-Secret": "wa-gateway-secret"}
TG_SECRET = {"X-Gateway-Secret": "tg-gateway-secret"}


def _claims(token, audience):
    # Tokens are minted at virtual time, so expiry is not checked here
    return jwt.decode(
        token, "test-auth-secret", algorithms=["HS256"], audience=audience, options={"verify_exp": False}
    )


@pytest.fixture
def wa_session(seeded, session):
    row = WhatsAppGatewaySession(session_id="sess-1", user_id="user-1", phone_number="15550001111", status="CONNECTED")
    session.add(row)
    session.add(WhatsAppGatewaySession(session_id="sess-2", user_id="user-1", status="DISCONNECTED"))
    session.commit()
    return row


@pytest.fixture
def tg_session(seeded, session):
    session.add(TelegramGatewaySession(user_id="user-1", telegram_username="ada", status="CONNECTED"))
    session.commit()


@pytest.fixture
def spy_session(app):
    """Replace the request's database session with a mock to watch for access"""
    mock_session = MagicMock()

    def override_get_session():
        yield mock_session

    app.dependency_overrides[get_session] = override_get_session
    yield mock_session
    app.dependency_overrides.pop(get_session, None)


# WhatsApp, keyed by session id


def test_whatsapp_refresh_issues_token(client, wa_session, engine, clock):
    response = client.post("/gateway/whatsapp/refresh", json={"sessionId": "sess-1"}, headers=WA_SECRET)

    assert response.status_code == 200
    body = response.json()
    claims = _claims(body["token"], "whatsapp-gateway")
    assert claims["userId"] == "user-1"
    assert claims["tokenType"] == "whatsapp-gateway"
    assert claims["exp"] - claims["iat"] == 3600
    assert claims["nbf"] == SECURITY_FIX_TIMESTAMP
    assert body["expiresAt"] == "2025-01-01T13:00:00.000Z"
    assert datetime.fromisoformat(body["expiresAt"].replace("Z", "+00:00"))

    with Session(engine) as session:
        row = session.exec(select(WhatsAppGatewaySession).where(WhatsAppGatewaySession.session_id == "sess-1")).one()
        assert row.last_ping_at == clock.utcnow()


@pytest.mark.parametrize("headers", [{}, {"X-Gateway-Secret": "wrong"}, TG_SECRET])
def test_whatsapp_refresh_rejects_bad_secret_without_touching_db(client, spy_session, headers):
    response = client.post("/gateway/whatsapp/refresh", json={"sessionId": "sess-1"}, headers=headers)

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}
    assert spy_session.method_calls == []


def test_whatsapp_refresh_missing_session_id(client, wa_session):
    response = client.post("/gateway/whatsapp/refresh", json={}, headers=WA_SECRET)
    assert response.status_code == 400
    assert "sessionId" in response.json()["error"]


def test_whatsapp_refresh_invalid_json_body(client, wa_session):
    response = client.post(
        "/gateway/whatsapp/refresh", content=b"not json", headers={**WA_SECRET, "Content-Type": "application/json"}
    )
    assert response.status_code == 400


def test_whatsapp_refresh_unknown_session(client, wa_session):
    response = client.post("/gateway/whatsapp/refresh", json={"sessionId": "nope"}, headers=WA_SECRET)
    assert response.status_code == 404
    assert response.json() == {"error": "Session not found"}
    assert "token" not in response.json()


def test_whatsapp_refresh_requires_connected_session(client, wa_session):
    response = client.post("/gateway/whatsapp/refresh", json={"sessionId": "sess-2"}, headers=WA_SECRET)
    assert response.status_code == 400
    assert response.json() == {"error": "Session not connected"}


def test_whatsapp_refresh_server_secret_unconfigured(client, container, wa_session):
    container.gateway.whatsapp_secret = None
    response = client.post("/gateway/whatsapp/refresh", json={"sessionId": "sess-1"}, headers=WA_SECRET)
    assert response.status_code == 500
    assert "error" in response.json()


def test_refresh_without_signing_secret_is_500(client, container, wa_session, monkeypatch):
    monkeypatch.delenv("AUTH_SECRET", raising=False)
    container.gateway.auth_secret = None
    response = client.post("/gateway/whatsapp/refresh", json={"sessionId": "sess-1"}, headers=WA_SECRET)
    assert response.status_code == 500
    assert response.json() == {"error": "Token signing not configured"}


# Telegram, keyed by user id


def test_telegram_refresh_issues_token_and_touches_session(client, tg_session, engine, clock):
    response = client.post("/gateway/telegram/refresh", json={"userId": "user-1"}, headers=TG_SECRET)

    assert response.status_code == 200
    claims = _claims(response.json()["token"], "telegram-gateway")
    assert claims["sub"] == "user-1"
    assert claims["email"] == "ada@example.com"

    with Session(engine) as session:
        row = session.exec(select(TelegramGatewaySession)).one()
        assert row.last_active_at == clock.utcnow()


def test_telegram_refresh_without_session_row_still_issues_token(client, seeded):
    response = client.post("/gateway/telegram/refresh", json={"userId": "user-1"}, headers=TG_SECRET)
    assert response.status_code == 200


def test_telegram_refresh_rejects_bad_secret_without_touching_db(client, spy_session):
    response = client.post("/gateway/telegram/refresh", json={"userId": "user-1"}, headers=WA_SECRET)
    assert response.status_code == 401
    assert spy_session.method_calls == []


def test_telegram_refresh_missing_user_id(client, seeded):
    response = client.post("/gateway/telegram/refresh", json={"userId": ""}, headers=TG_SECRET)
    assert response.status_code == 400


def test_telegram_refresh_unknown_user(client, seeded):
    response = client.post("/gateway/telegram/refresh", json={"userId": "ghost"}, headers=TG_SECRET)
    assert response.status_code == 404
    assert response.json() == {"error": "User not found"}


def test_secret_is_checked_before_body(client, spy_session):
    response = client.post("/gateway/telegram/refresh", json={}, headers={})
    assert response.status_code == 401
