# chatrelay/services/worker_service.py

import logging
from typing import Any, Dict

from chatrelay.core.cache import CacheService
from chatrelay.services.message_processor import MessageProcessor
from chatrelay.services.message_queue import MessageQueue

logger = logging.getLogger(__name__)


class WorkerService:
    """Drains one batch of the message queue per invocation"""

    def __init__(self, queue: MessageQueue, processor: MessageProcessor, cache: CacheService, breakers, batch_size: int = 20):
        self.queue = queue
        self.processor = processor
        self.cache = cache
        self.breakers = breakers
        self.batch_size = batch_size

    async def process_batch(self, limit: int = None) -> Dict[str, Any]:
        batch = await self.queue.dequeue_batch(limit or self.batch_size)
        processed = failed = dead_lettered = 0

        for message in batch:
            try:
                await self.processor.process(message)
            except Exception as e:
                failed += 1
                outcome = await self.queue.mark_failed(message, e)
                if outcome == "dead":
                    dead_lettered += 1
                    await self.processor.notify_failure(message, e)
                continue
            await self.queue.mark_completed(message)
            processed += 1

        if batch:
            logger.info(
                f"Worker batch done: {processed} processed, {failed} failed, {dead_lettered} dead-lettered"
            )
        return {
            "processed": processed,
            "failed": failed,
            "deadLettered": dead_lettered,
            "queueStats": await self.queue.get_stats(),
            "cacheStats": self.cache.get_stats(),
            "circuitBreakerStats": self.circuit_breaker_stats(),
        }

    def circuit_breaker_stats(self) -> Dict[str, Any]:
        return {name: breaker.get_stats() for name, breaker in self.breakers.items()}
