# chatrelay/container.py

"""
Composition root.

One ``Container`` per application holds the process-wide instances: the
three circuit breakers, the named caches and the message queue. Every call
site for a dependency reaches it through the same breaker here. Routes get
the container through the ``get_container`` dependency; tests build their
own with an in-memory engine and a manual clock.
"""

from fastapi import Depends, Request
from sqlmodel import Session
from typing import Generator, Optional
import logging

from chatrelay.core.cache import CacheService
from chatrelay.core.circuit_breaker import DATABASE, build_circuit_breakers
from chatrelay.core.config import Settings
from chatrelay.core.database import make_engine
from chatrelay.core.scheduler import AsyncioScheduler, Clock, SystemClock, TaskScheduler
from chatrelay.models import User
from chatrelay.services.ai_service import AIService
from chatrelay.services.analytics_service import AnalyticsService
from chatrelay.services.gateway_service import GatewayTokenService
from chatrelay.services.message_processor import MessageProcessor
from chatrelay.services.message_queue import (
    DatabaseMessageQueue,
    InMemoryMessageQueue,
    MessageQueue,
    RetryPolicy,
)
from chatrelay.services.webhook_service import WebhookService
from chatrelay.services.worker_service import WorkerService

logger = logging.getLogger(__name__)


class Container:
    def __init__(
        self,
        settings: Settings,
        engine=None,
        clock: Optional[Clock] = None,
        scheduler: Optional[TaskScheduler] = None,
        queue: Optional[MessageQueue] = None,
        ai_service: Optional[AIService] = None,
    ):
        self.settings = settings
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or AsyncioScheduler(self.clock)
        self.engine = engine if engine is not None else make_engine(settings.DATABASE_URL)

        self.breakers = build_circuit_breakers(settings, self.clock, self.scheduler)
        self.cache = CacheService(self.clock)
        self.queue = queue or self._build_queue()

        self.ai_service = ai_service or AIService(
            default_model=settings.OPENAI_MODEL,
            api_key=settings.OPENAI_API_KEY,
            model_cache=self.cache.ai_models,
            model_resolver=self._user_model,
        )
        self.processor = MessageProcessor(
            self.engine,
            self.cache,
            self.breakers,
            self.ai_service,
            api_version=settings.WHATSAPP_API_VERSION,
            telegram_bot_token=settings.TELEGRAM_BOT_TOKEN,
            http_timeout=settings.HTTP_TIMEOUT,
            clock=self.clock,
        )
        self.worker = WorkerService(
            self.queue, self.processor, self.cache, self.breakers, batch_size=settings.QUEUE_BATCH_SIZE
        )
        self.analytics = AnalyticsService(
            self.engine, clock=self.clock, retention_days=settings.ANALYTICS_RETENTION_DAYS
        )
        self.gateway = GatewayTokenService(
            settings.WHATSAPP_GATEWAY_SECRET,
            settings.TELEGRAM_GATEWAY_SECRET,
            auth_secret=settings.AUTH_SECRET,
            clock=self.clock,
        )
        self.webhooks = WebhookService(self.queue, self.engine, clock=self.clock)

    def _build_queue(self) -> MessageQueue:
        policy = RetryPolicy(
            max_attempts=self.settings.QUEUE_MAX_ATTEMPTS,
            base_delay=self.settings.QUEUE_BACKOFF_BASE,
            max_delay=self.settings.QUEUE_BACKOFF_MAX,
        )
        if self.settings.QUEUE_BACKEND == "memory":
            logger.warning("Using the in-memory message queue; backlog is lost on restart")
            return InMemoryMessageQueue(policy, self.clock)
        return DatabaseMessageQueue(self.engine, policy, self.clock)

    async def _user_model(self, user_id: str) -> Optional[str]:
        async def _load():
            with Session(self.engine) as session:
                user = session.get(User, user_id)
                return user.ai_model if user else None

        return await self.breakers[DATABASE].execute(_load)

    def session(self) -> Session:
        return Session(self.engine)


def get_container(request: Request) -> Container:
    return request.app.state.container


def get_session(container: Container = Depends(get_container)) -> Generator:
    """Database session bound to the container's engine"""
    with container.session() as session:
        yield session
