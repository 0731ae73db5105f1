# chatrelay/services/gateway_service.py

"""
Token refresh for the always-on WhatsApp and Telegram bridge processes.

A bridge cannot hold a browser session. It proves itself with a shared
secret (``X-Gateway-Secret``) and receives a short-lived token scoped to
one user, which it uses when calling back into the API on that user's
behalf. Each refresh also stamps the session's liveness timestamp, which
is how stale bridges are detected.
"""

from datetime import timedelta, timezone
from typing import Any, Dict, Optional
from sqlmodel import Session, select
import logging

from chatrelay.core.scheduler import Clock, SystemClock
from chatrelay.core.tokens import JWTConfigurationError, generate_jwt
from chatrelay.models import TelegramGatewaySession, User, WhatsAppGatewaySession

logger = logging.getLogger(__name__)

GATEWAY_TOKEN_MINUTES = 60
CONNECTED = "CONNECTED"


class GatewayError(Exception):
    """Refresh rejected; carries the HTTP status to answer with"""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


def check_gateway_secret(expected: Optional[str], provided: Optional[str]) -> None:
    """500 when the server has no secret, 401 when the caller's is wrong.

    Plain equality: the value is a static shared key, not a per-request MAC.
    """
    if not expected:
        logger.error("Gateway secret is not configured on the server")
        raise GatewayError(500, "Gateway secret not configured")
    if not provided or provided != expected:
        logger.warning("Gateway refresh with missing or invalid secret")
        raise GatewayError(401, "Unauthorized")


class GatewayTokenService:
    def __init__(
        self,
        whatsapp_secret: Optional[str],
        telegram_secret: Optional[str],
        auth_secret: Optional[str] = None,
        clock: Optional[Clock] = None,
    ):
        self.whatsapp_secret = whatsapp_secret
        self.telegram_secret = telegram_secret
        self.auth_secret = auth_secret
        self.clock = clock or SystemClock()

    def _mint(self, user: User, token_type: str) -> Dict[str, Any]:
        issued = self.clock.utcnow()
        try:
            token = generate_jwt(
                user,
                token_type=token_type,
                expiry_minutes=GATEWAY_TOKEN_MINUTES,
                secret=self.auth_secret,
                now=issued.replace(tzinfo=timezone.utc).timestamp(),
            )
        except JWTConfigurationError as e:
            logger.error(f"Cannot mint {token_type} token: {e}")
            raise GatewayError(500, "Token signing not configured") from e
        expires_at = issued + timedelta(minutes=GATEWAY_TOKEN_MINUTES)
        return {"token": token, "expiresAt": expires_at.isoformat(timespec="milliseconds") + "Z"}

    def refresh_whatsapp(self, session: Session, provided_secret: Optional[str], session_id: Optional[str]) -> Dict[str, Any]:
        check_gateway_secret(self.whatsapp_secret, provided_secret)
        if not session_id:
            raise GatewayError(400, "Missing sessionId")

        gateway_session = session.exec(
            select(WhatsAppGatewaySession).where(WhatsAppGatewaySession.session_id == session_id)
        ).first()
        if gateway_session is None:
            raise GatewayError(404, "Session not found")
        if gateway_session.status != CONNECTED:
            raise GatewayError(400, "Session not connected")

        user = session.get(User, gateway_session.user_id)
        if user is None:
            raise GatewayError(404, "User not found")

        result = self._mint(user, "whatsapp-gateway")

        gateway_session.last_ping_at = self.clock.utcnow()
        session.add(gateway_session)
        session.commit()
        logger.info(f"Refreshed WhatsApp gateway token for session {session_id}")
        return result

    def refresh_telegram(self, session: Session, provided_secret: Optional[str], user_id: Optional[str]) -> Dict[str, Any]:
        check_gateway_secret(self.telegram_secret, provided_secret)
        if not user_id:
            raise GatewayError(400, "Missing userId")

        user = session.get(User, user_id)
        if user is None:
            raise GatewayError(404, "User not found")

        result = self._mint(user, "telegram-gateway")

        gateway_session = session.exec(
            select(TelegramGatewaySession).where(TelegramGatewaySession.user_id == user_id)
        ).first()
        if gateway_session is not None:
            gateway_session.last_active_at = self.clock.utcnow()
            session.add(gateway_session)
            session.commit()
        logger.info(f"Refreshed Telegram gateway token for user {user_id}")
        return result
