# chatrelay/routes/gateway.py

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlmodel import Session
from typing import Any, Dict, Optional
import logging

from chatrelay.container import Container, get_container, get_session
from chatrelay.data_schemas import RefreshSessionRequest, RefreshUserRequest, TokenResponse
from chatrelay.services.gateway_service import GatewayError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/gateway", tags=["gateway"])


async def _read_body(request: Request) -> Dict[str, Any]:
    # Body problems surface as "missing identifier" after the secret check
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error(e: GatewayError) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content={"error": e.message})


@router.post("/whatsapp/refresh", response_model=TokenResponse)
async def refresh_whatsapp_token(
    request: Request,
    x_gateway_secret: Optional[str] = Header(None),
    container: Container = Depends(get_container),
    session: Session = Depends(get_session),
):
    """Issue a fresh token to the WhatsApp bridge for a connected session"""
    body = await _read_body(request)
    try:
        session_id = RefreshSessionRequest.model_validate(body).sessionId
    except ValidationError:
        session_id = None
    try:
        return container.gateway.refresh_whatsapp(session, x_gateway_secret, session_id)
    except GatewayError as e:
        return _error(e)
    except Exception:
        logger.exception("WhatsApp gateway token refresh failed")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


@router.post("/telegram/refresh", response_model=TokenResponse)
async def refresh_telegram_token(
    request: Request,
    x_gateway_secret: Optional[str] = Header(None),
    container: Container = Depends(get_container),
    session: Session = Depends(get_session),
):
    """Issue a fresh token to the Telegram bridge for a user"""
    body = await _read_body(request)
    try:
        user_id = RefreshUserRequest.model_validate(body).userId
    except ValidationError:
        user_id = None
    try:
        return container.gateway.refresh_telegram(session, x_gateway_secret, user_id)
    except GatewayError as e:
        return _error(e)
    except Exception:
        logger.exception("Telegram gateway token refresh failed")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})
