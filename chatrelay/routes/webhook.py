# chatrelay/routes/webhook.py

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from typing import Optional
import json
import logging

from chatrelay.container import Container, get_container

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
    container: Container = Depends(get_container),
):
    return await container.webhooks.verify_webhook(
        mode, token, challenge, container.settings.WHATSAPP_VERIFY_TOKEN
    )


@router.post("/whatsapp")
async def whatsapp_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None),
    container: Container = Depends(get_container),
):
    raw_body = await request.body()
    try:
        body = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook body")

    return await container.webhooks.handle_whatsapp(body, raw_body, x_hub_signature_256)


@router.post("/telegram/{config_id}")
async def telegram_webhook(
    config_id: str,
    request: Request,
    x_telegram_bot_api_secret_token: Optional[str] = Header(None),
    container: Container = Depends(get_container),
):
    try:
        update = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON")
    if not isinstance(update, dict):
        raise HTTPException(status_code=400, detail="Invalid update")

    return await container.webhooks.handle_telegram(config_id, update, x_telegram_bot_api_secret_token)
