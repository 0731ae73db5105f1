# chatrelay/services/message_queue.py

"""
Backlog of inbound chat messages.

The worker is triggered from outside (cron or a manual POST) and drains a
batch per call, so the backlog has to survive between invocations:
``DatabaseMessageQueue`` keeps it in the ``PendingMessage`` table.
``InMemoryMessageQueue`` is only correct for a single long-lived process
and is meant for tests and local development.

A failed message is retried with exponential backoff until it has failed
``max_attempts`` times, then it is dead-lettered: kept with
``status="dead"`` and logged, never retried again.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import timedelta
from typing import Any, Deque, Dict, List, Optional, Tuple

from sqlalchemy import delete, update
from sqlmodel import Session, select, func

from chatrelay.core.scheduler import Clock, SystemClock
from chatrelay.data_schemas import QueuedMessage
from chatrelay.models import PendingMessage

logger = logging.getLogger(__name__)

# How long a dequeued message stays invisible before another worker may take it
PROCESSING_LEASE_SECONDS = 300


class RetryPolicy:
    """Bounded exponential backoff: base, 2*base, 4*base, ... capped at max_delay"""

    def __init__(self, max_attempts: int = 5, base_delay: float = 2.0, max_delay: float = 300.0):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay

    def delay_for(self, attempts: int) -> float:
        """Delay before the next try, given how many tries have failed."""
        if attempts < 1:
            return 0.0
        return min(self.base_delay * (2 ** (attempts - 1)), self.max_delay)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


class MessageQueue(ABC):
    """Interface the webhook intake and the worker depend on"""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None, clock: Optional[Clock] = None):
        self.retry_policy = retry_policy or RetryPolicy()
        self.clock = clock or SystemClock()
        self.paused = False
        self._completed = 0
        # (completed at, processing seconds) of recent completions
        self._recent: Deque[Tuple[float, float]] = deque(maxlen=1000)

    @abstractmethod
    async def enqueue(
        self,
        platform: str,
        session_or_phone_id: str,
        payload: Dict[str, Any],
        config_id: Optional[str] = None,
    ) -> QueuedMessage:
        ...

    @abstractmethod
    async def _take_due(self, limit: int) -> List[QueuedMessage]:
        ...

    @abstractmethod
    async def _remove(self, message: QueuedMessage) -> None:
        ...

    @abstractmethod
    async def _save(self, message: QueuedMessage) -> None:
        ...

    @abstractmethod
    async def counts(self) -> Dict[str, int]:
        """Number of messages per status"""

    @abstractmethod
    async def dead_letters(self, limit: int = 50) -> List[QueuedMessage]:
        ...

    @abstractmethod
    async def clear_failed(self) -> int:
        """Delete dead-lettered messages, returning how many"""

    async def dequeue_batch(self, limit: int) -> List[QueuedMessage]:
        """Claim up to ``limit`` due messages, oldest first."""
        if self.paused or limit <= 0:
            return []
        return await self._take_due(limit)

    async def mark_completed(self, message: QueuedMessage) -> None:
        now = self.clock.utcnow()
        await self._remove(message)
        self._completed += 1
        self._recent.append((self.clock.now(), (now - message.enqueued_at).total_seconds()))

    async def mark_failed(self, message: QueuedMessage, error: BaseException) -> str:
        """Record a failed try. Returns "retry" or "dead"."""
        message.attempts += 1
        message.last_error = f"{type(error).__name__}: {error}"[:1000]

        if self.retry_policy.exhausted(message.attempts):
            message.status = "dead"
            await self._save(message)
            logger.error(
                f"Message {message.id} ({message.platform}) dead-lettered after "
                f"{message.attempts} attempts: {message.last_error}"
            )
            return "dead"

        delay = self.retry_policy.delay_for(message.attempts)
        message.status = "pending"
        message.next_attempt_at = self.clock.utcnow() + timedelta(seconds=delay)
        await self._save(message)
        logger.warning(
            f"Message {message.id} failed attempt {message.attempts}/"
            f"{self.retry_policy.max_attempts}, retrying in {delay:.0f}s"
        )
        return "retry"

    async def size(self) -> int:
        counts = await self.counts()
        return counts.get("pending", 0) + counts.get("processing", 0)

    def pause(self) -> None:
        logger.info("Message queue paused")
        self.paused = True

    def resume(self) -> None:
        logger.info("Message queue resumed")
        self.paused = False

    def get_throughput(self) -> Dict[str, float]:
        cutoff = self.clock.now() - 60
        last_minute = [duration for at, duration in self._recent if at >= cutoff]
        durations = [duration for _, duration in self._recent]
        return {
            "messagesPerMinute": len(last_minute),
            "avgProcessingTime": round(sum(durations) / len(durations), 3) if durations else 0.0,
        }

    async def get_stats(self) -> Dict[str, Any]:
        counts = await self.counts()
        return {
            "size": counts.get("pending", 0) + counts.get("processing", 0),
            "pending": counts.get("pending", 0),
            "processing": counts.get("processing", 0),
            "failed": counts.get("dead", 0),
            "completed": self._completed,
            "paused": self.paused,
        }

    def _new_message(self, platform, session_or_phone_id, payload, config_id) -> QueuedMessage:
        now = self.clock.utcnow()
        return QueuedMessage(
            id=uuid.uuid4().hex,
            platform=platform,
            config_id=config_id,
            session_or_phone_id=session_or_phone_id,
            payload=payload,
            enqueued_at=now,
            next_attempt_at=now,
        )


class InMemoryMessageQueue(MessageQueue):
    """Single-process queue; contents are lost on restart"""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None, clock: Optional[Clock] = None):
        super().__init__(retry_policy, clock)
        # Insertion order is FIFO order
        self._messages: Dict[str, QueuedMessage] = {}

    async def enqueue(self, platform, session_or_phone_id, payload, config_id=None) -> QueuedMessage:
        message = self._new_message(platform, session_or_phone_id, payload, config_id)
        self._messages[message.id] = message
        logger.info(f"Enqueued {platform} message {message.id} from {session_or_phone_id}")
        return message

    async def _take_due(self, limit: int) -> List[QueuedMessage]:
        now = self.clock.utcnow()
        batch = []
        for message in self._messages.values():
            if len(batch) >= limit:
                break
            if message.status in ("pending", "processing") and message.next_attempt_at <= now:
                message.status = "processing"
                message.next_attempt_at = now + timedelta(seconds=PROCESSING_LEASE_SECONDS)
                batch.append(message)
        return [m.model_copy() for m in batch]

    async def _remove(self, message: QueuedMessage) -> None:
        self._messages.pop(message.id, None)

    async def _save(self, message: QueuedMessage) -> None:
        self._messages[message.id] = message.model_copy()

    async def counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for message in self._messages.values():
            counts[message.status] = counts.get(message.status, 0) + 1
        return counts

    async def dead_letters(self, limit: int = 50) -> List[QueuedMessage]:
        return [m.model_copy() for m in self._messages.values() if m.status == "dead"][:limit]

    async def clear_failed(self) -> int:
        dead = [mid for mid, m in self._messages.items() if m.status == "dead"]
        for mid in dead:
            del self._messages[mid]
        return len(dead)


def _to_queued(row: PendingMessage) -> QueuedMessage:
    return QueuedMessage(
        id=row.id,
        platform=row.platform,
        config_id=row.config_id,
        session_or_phone_id=row.session_or_phone_id,
        payload=row.payload or {},
        enqueued_at=row.enqueued_at,
        attempts=row.attempts,
        next_attempt_at=row.next_attempt_at,
        status=row.status,
        last_error=row.last_error,
    )


class DatabaseMessageQueue(MessageQueue):
    """Queue backed by the PendingMessage table, shared by every instance"""

    def __init__(self, engine, retry_policy: Optional[RetryPolicy] = None, clock: Optional[Clock] = None):
        super().__init__(retry_policy, clock)
        self.engine = engine

    async def enqueue(self, platform, session_or_phone_id, payload, config_id=None) -> QueuedMessage:
        message = self._new_message(platform, session_or_phone_id, payload, config_id)
        with Session(self.engine) as session:
            session.add(PendingMessage(**message.model_dump()))
            session.commit()
        logger.info(f"Enqueued {platform} message {message.id} from {session_or_phone_id}")
        return message

    def _claim_row(self, session: Session, row: PendingMessage, lease_until) -> bool:
        """Lease ``row`` only if it still holds the state it was read with"""
        result = session.execute(
            update(PendingMessage)
            .where(
                PendingMessage.id == row.id,
                PendingMessage.status == row.status,
                PendingMessage.next_attempt_at == row.next_attempt_at,
            )
            .values(status="processing", next_attempt_at=lease_until)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _take_due(self, limit: int) -> List[QueuedMessage]:
        now = self.clock.utcnow()
        lease_until = now + timedelta(seconds=PROCESSING_LEASE_SECONDS)
        with Session(self.engine) as session:
            # Row locks where the dialect has them; the conditional claim
            # covers the rest, so concurrent workers never share a message
            candidates = session.exec(
                select(PendingMessage)
                .where(
                    # a "processing" row whose lease ran out belongs to a crashed worker
                    PendingMessage.status.in_(("pending", "processing")),
                    PendingMessage.next_attempt_at <= now,
                )
                .order_by(PendingMessage.enqueued_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).all()
            claimed = [row.id for row in candidates if self._claim_row(session, row, lease_until)]
            session.commit()
            if not claimed:
                return []
            rows = session.exec(
                select(PendingMessage)
                .where(PendingMessage.id.in_(claimed))
                .order_by(PendingMessage.enqueued_at)
            ).all()
            return [_to_queued(row) for row in rows]

    async def _remove(self, message: QueuedMessage) -> None:
        with Session(self.engine) as session:
            session.execute(delete(PendingMessage).where(PendingMessage.id == message.id))
            session.commit()

    async def _save(self, message: QueuedMessage) -> None:
        with Session(self.engine) as session:
            row = session.get(PendingMessage, message.id)
            if row is None:
                row = PendingMessage(**message.model_dump())
            else:
                row.attempts = message.attempts
                row.status = message.status
                row.next_attempt_at = message.next_attempt_at
                row.last_error = message.last_error
            session.add(row)
            session.commit()

    async def counts(self) -> Dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PendingMessage.status, func.count(PendingMessage.id)).group_by(PendingMessage.status)
            ).all()
        return {status: count for status, count in rows}

    async def dead_letters(self, limit: int = 50) -> List[QueuedMessage]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PendingMessage)
                .where(PendingMessage.status == "dead")
                .order_by(PendingMessage.enqueued_at.desc())
                .limit(limit)
            ).all()
            return [_to_queued(row) for row in rows]

    async def clear_failed(self) -> int:
        with Session(self.engine) as session:
            result = session.execute(delete(PendingMessage).where(PendingMessage.status == "dead"))
            session.commit()
            return result.rowcount or 0
