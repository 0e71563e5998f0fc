"""Publish job status events to the shared updates channel."""

from __future__ import annotations

import logging

from redis.asyncio import Redis

from unbias_pipeline.jobs.models import JobUpdateEvent

logger = logging.getLogger(__name__)


class UpdatePublisher:
    """Fire-and-forget publisher; delivery is the fan-out's concern."""

    def __init__(self, redis: Redis, *, channel: str = "job-updates") -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event: JobUpdateEvent) -> int:
        """Publish one event and return the number of channel subscribers that received it."""

        receivers = await self.redis.publish(self.channel, event.to_json())
        logger.debug(
            "Published %s for job %s to %s (%s receivers)",
            event.status.value,
            event.job_id,
            self.channel,
            receivers,
        )
        return int(receivers)
