from .gateway import RefreshSessionRequest, RefreshUserRequest, TokenResponse
from .processed_message import ProcessedMessage
from .queued_message import QueuedMessage
from .worker import WorkerControlRequest

__all__ = [
    "RefreshSessionRequest",
    "RefreshUserRequest",
    "TokenResponse",
    "ProcessedMessage",
    "QueuedMessage",
    "WorkerControlRequest",
]
