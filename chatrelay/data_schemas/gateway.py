# chatrelay/data_schemas/gateway.py

from pydantic import BaseModel
from typing import Optional


# Identifiers are optional so a missing one is answered with 400, not 422
class RefreshSessionRequest(BaseModel):
    sessionId: Optional[str] = None


class RefreshUserRequest(BaseModel):
    userId: Optional[str] = None


class TokenResponse(BaseModel):
    token: str
    expiresAt: str
