# chatrelay/services/errors.py

from enum import Enum

import httpx
from sqlalchemy.exc import SQLAlchemyError

from chatrelay.core.circuit_breaker import CircuitOpenError, AI_PROCESSING, DATABASE, WHATSAPP_API
from chatrelay.core.whatsapp_client import ChatApiError


class ChatErrorType(str, Enum):
    CONFIG_NOT_FOUND = "CONFIG_NOT_FOUND"
    MESSAGE_PROCESSING_FAILED = "MESSAGE_PROCESSING_FAILED"
    AI_PROCESSING_FAILED = "AI_PROCESSING_FAILED"
    MESSAGE_SEND_FAILED = "MESSAGE_SEND_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


FALLBACK_MESSAGES = {
    ChatErrorType.CONFIG_NOT_FOUND:
        "This number is not configured yet. Please contact your administrator.",
    ChatErrorType.MESSAGE_PROCESSING_FAILED:
        "Sorry, I couldn't process your message. Please try rephrasing or contact support if the issue persists.",
    ChatErrorType.AI_PROCESSING_FAILED:
        "I'm having trouble understanding your message right now. Please try again in a moment.",
    ChatErrorType.MESSAGE_SEND_FAILED:
        "Failed to send message. Please try again later.",
    ChatErrorType.DATABASE_ERROR:
        "I'm experiencing technical difficulties. Please try again shortly.",
    ChatErrorType.SERVICE_UNAVAILABLE:
        "I'm temporarily unavailable. Your message was received and I'll get back to you shortly.",
    ChatErrorType.UNKNOWN_ERROR:
        "Something went wrong. Please try again or contact support if the problem continues.",
}


class MessageProcessingError(Exception):
    """Processing of a queued message failed; carries the classified type"""

    def __init__(self, error_type: ChatErrorType, message: str, cause: Exception = None):
        super().__init__(message)
        self.error_type = error_type
        self.cause = cause


def get_fallback_message(error_type: ChatErrorType) -> str:
    return FALLBACK_MESSAGES.get(error_type, FALLBACK_MESSAGES[ChatErrorType.UNKNOWN_ERROR])


def error_type_for(error: BaseException) -> ChatErrorType:
    """Map a low-level exception onto the user-facing taxonomy"""
    if isinstance(error, MessageProcessingError):
        return error.error_type
    if isinstance(error, CircuitOpenError):
        if error.name == AI_PROCESSING:
            return ChatErrorType.AI_PROCESSING_FAILED
        if error.name == DATABASE:
            return ChatErrorType.DATABASE_ERROR
        if error.name == WHATSAPP_API:
            return ChatErrorType.MESSAGE_SEND_FAILED
        return ChatErrorType.SERVICE_UNAVAILABLE
    if isinstance(error, SQLAlchemyError):
        return ChatErrorType.DATABASE_ERROR
    if isinstance(error, (ChatApiError, httpx.HTTPError)):
        return ChatErrorType.MESSAGE_SEND_FAILED
    return ChatErrorType.UNKNOWN_ERROR
