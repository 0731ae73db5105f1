# chatrelay/services/analytics_service.py

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from sqlalchemy import delete
from sqlmodel import Session, select
import logging

from chatrelay.core.scheduler import Clock, SystemClock
from chatrelay.models import (
    AiInteraction,
    Conversation,
    MessageAnalytics,
    PerformanceMetric,
    PlatformConfig,
)

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 90


def floor_to_hour(moment: datetime) -> datetime:
    return moment.replace(minute=0, second=0, microsecond=0)


def _average(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


class AnalyticsService:
    """Hourly rollup of raw message events, plus retention pruning"""

    def __init__(self, engine, clock: Optional[Clock] = None, retention_days: int = DEFAULT_RETENTION_DAYS):
        self.engine = engine
        self.clock = clock or SystemClock()
        self.retention_days = retention_days

    def aggregate_hour(self, config_id: str, hour_start: datetime) -> MessageAnalytics:
        """
        Compute the bucket for [hour_start, hour_start + 1h) and upsert it.

        The bucket is recomputed from the raw events every time and written
        over any existing row for (config, date, hour), so running this
        twice for the same hour stores the same totals.
        """
        hour_start = floor_to_hour(hour_start)
        hour_end = hour_start + timedelta(hours=1)
        day = hour_start.replace(hour=0)

        with Session(self.engine) as session:
            interactions = session.exec(
                select(AiInteraction)
                .where(AiInteraction.config_id == config_id)
                .where(AiInteraction.created_at >= hour_start)
                .where(AiInteraction.created_at < hour_end)
            ).all()
            conversations = session.exec(
                select(Conversation)
                .where(Conversation.config_id == config_id)
                .where(Conversation.last_message_at >= hour_start)
                .where(Conversation.last_message_at < hour_end)
            ).all()

            received = sent = failed = 0
            users = set()
            response_times: List[float] = []
            for interaction in interactions:
                if interaction.external_user_id:
                    users.add(interaction.external_user_id)
                if interaction.had_error:
                    failed += 1
                    continue
                received += 1
                sent += 1
                if interaction.response_time_ms is not None:
                    response_times.append(interaction.response_time_ms)

            lengths = [
                (c.last_message_at - c.created_at).total_seconds() / 60 for c in conversations
            ]
            handled = received + sent

            bucket = session.exec(
                select(MessageAnalytics)
                .where(MessageAnalytics.config_id == config_id)
                .where(MessageAnalytics.date == day)
                .where(MessageAnalytics.hour == hour_start.hour)
            ).first()
            if bucket is None:
                bucket = MessageAnalytics(
                    config_id=config_id,
                    date=day,
                    hour=hour_start.hour,
                    bucket_start=hour_start,
                    created_at=self.clock.utcnow(),
                )

            bucket.messages_received = received
            bucket.messages_sent = sent
            bucket.messages_failed = failed
            bucket.unique_users = len(users)
            bucket.avg_response_time = _average(response_times)
            bucket.min_response_time = min(response_times) if response_times else None
            bucket.max_response_time = max(response_times) if response_times else None
            bucket.avg_messages_per_user = handled / len(users) if users else None
            bucket.total_conversations = len(conversations)
            bucket.avg_conversation_length = _average(lengths)
            bucket.error_count = failed
            bucket.error_rate = failed / handled if handled else None
            bucket.updated_at = self.clock.utcnow()

            session.add(bucket)
            session.commit()
            session.refresh(bucket)
            logger.info(
                f"Aggregated analytics for {config_id} at {hour_start.isoformat()}: "
                f"{received} received, {failed} failed"
            )
            return bucket

    def record_performance_metric(
        self,
        config_id: str,
        cache_stats: Dict[str, Any],
        queue_stats: Dict[str, Any],
        breaker_stats: Dict[str, Dict[str, Any]],
    ) -> PerformanceMetric:
        metric = PerformanceMetric(
            config_id=config_id,
            cache_hit_rate=float(cache_stats.get("hitRate", 0.0)) * 100,
            queue_size=int(queue_stats.get("size", 0)),
            queue_backlog=int(queue_stats.get("pending", 0)),
            circuit_breaker_trips=sum(int(s.get("timesOpened", 0)) for s in breaker_stats.values()),
            recorded_at=self.clock.utcnow(),
        )
        with Session(self.engine) as session:
            session.add(metric)
            session.commit()
            session.refresh(metric)
        return metric

    def active_config_ids(self) -> List[str]:
        with Session(self.engine) as session:
            return list(session.exec(select(PlatformConfig.id).where(PlatformConfig.active == True)).all())  # noqa: E712

    def prune(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete buckets and metrics strictly older than the retention window"""
        cutoff = (now or self.clock.utcnow()) - timedelta(days=self.retention_days)
        with Session(self.engine) as session:
            analytics = session.execute(
                delete(MessageAnalytics).where(MessageAnalytics.bucket_start < cutoff)
            )
            metrics = session.execute(
                delete(PerformanceMetric).where(PerformanceMetric.recorded_at < cutoff)
            )
            session.commit()
        counts = {"analytics": analytics.rowcount or 0, "metrics": metrics.rowcount or 0}
        logger.info(f"Pruned analytics older than {cutoff.isoformat()}: {counts}")
        return counts

    def run_hourly(
        self,
        cache_stats: Optional[Dict[str, Any]] = None,
        queue_stats: Optional[Dict[str, Any]] = None,
        breaker_stats: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Aggregate the previous hour for every active config, then prune"""
        now = self.clock.utcnow()
        hour_start = floor_to_hour(now) - timedelta(hours=1)

        results = []
        for config_id in self.active_config_ids():
            try:
                self.aggregate_hour(config_id, hour_start)
                self.record_performance_metric(
                    config_id, cache_stats or {}, queue_stats or {}, breaker_stats or {}
                )
                results.append({"configId": config_id, "status": "success"})
            except Exception as e:
                logger.exception(f"Analytics aggregation failed for config {config_id}")
                results.append({"configId": config_id, "status": "error", "error": str(e)})

        cleanup = self.prune(now)
        return {"hour": hour_start, "results": results, "cleanup": cleanup}

    def get_summary(self, config_id: str, start: datetime, end: datetime) -> Dict[str, Any]:
        """Totals and averages of the hourly buckets between start and end"""
        with Session(self.engine) as session:
            buckets = session.exec(
                select(MessageAnalytics)
                .where(MessageAnalytics.config_id == config_id)
                .where(MessageAnalytics.bucket_start >= start)
                .where(MessageAnalytics.bucket_start <= end)
                .order_by(MessageAnalytics.bucket_start)
            ).all()

        total_fields = [
            "messages_received", "messages_sent", "messages_failed",
            "unique_users", "total_conversations", "error_count",
        ]
        average_fields = [
            "avg_response_time", "avg_messages_per_user", "avg_conversation_length", "error_rate",
        ]
        return {
            "totals": {f: sum(getattr(b, f) for b in buckets) for f in total_fields},
            "averages": {
                f: _average([getattr(b, f) for b in buckets if getattr(b, f) is not None])
                for f in average_fields
            },
            "hourlyData": [b.model_dump() for b in buckets],
        }
