"""Deliver published job updates to the connections subscribed to each job."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from unbias_pipeline.jobs.models import JobUpdateEvent

logger = logging.getLogger(__name__)

JOB_UPDATE_EVENT = "jobUpdate"


def room_for(job_id: str) -> str:
    return f"job_{job_id}"


class Emitter(Protocol):
    async def emit(self, event: str, data: Any = None, *, room: str | None = None) -> None: ...


class SubscriptionRegistry:
    """Two-way index between connection ids and the job ids they follow."""

    def __init__(self) -> None:
        self._jobs_by_sid: dict[str, set[str]] = {}
        self._sids_by_job: dict[str, set[str]] = {}

    def connect(self, sid: str) -> None:
        self._jobs_by_sid.setdefault(sid, set())

    def subscribe(self, sid: str, job_id: str) -> bool:
        """Track the subscription; False when it already existed."""

        jobs = self._jobs_by_sid.setdefault(sid, set())
        if job_id in jobs:
            return False
        jobs.add(job_id)
        self._sids_by_job.setdefault(job_id, set()).add(sid)
        return True

    def unsubscribe_all(self, sid: str) -> list[str]:
        jobs = self._jobs_by_sid.get(sid, set())
        removed = sorted(jobs)
        for job_id in removed:
            sids = self._sids_by_job.get(job_id)
            if sids is None:
                continue
            sids.discard(sid)
            if not sids:
                del self._sids_by_job[job_id]
        if sid in self._jobs_by_sid:
            self._jobs_by_sid[sid] = set()
        return removed

    def disconnect(self, sid: str) -> list[str]:
        removed = self.unsubscribe_all(sid)
        self._jobs_by_sid.pop(sid, None)
        return removed

    def is_subscribed(self, sid: str, job_id: str) -> bool:
        return job_id in self._jobs_by_sid.get(sid, set())

    def jobs_for(self, sid: str) -> frozenset[str]:
        return frozenset(self._jobs_by_sid.get(sid, set()))

    def subscribers(self, job_id: str) -> frozenset[str]:
        return frozenset(self._sids_by_job.get(job_id, set()))


class RealtimeFanout:
    """Consume the updates channel and emit each event to its job room.

    There is no replay: an event for a job with no current subscribers is
    dropped, and late subscribers must read the job store.
    """

    def __init__(
        self,
        subscriber: Redis,
        *,
        registry: SubscriptionRegistry,
        emitter: Emitter,
        channel: str = "job-updates",
        reconnect_delay_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.subscriber = subscriber
        self.registry = registry
        self.emitter = emitter
        self.channel = channel
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self._sleep = sleep

    async def deliver(self, raw: str | bytes) -> int:
        """Emit one raw channel message; returns the number of targeted connections."""

        try:
            event = JobUpdateEvent.from_json(raw)
        except (ValueError, KeyError, json.JSONDecodeError) as error:
            logger.warning("Ignoring malformed job update %r: %s", raw, error)
            return 0

        subscribers = self.registry.subscribers(event.job_id)
        room = room_for(event.job_id)
        if not subscribers:
            logger.info("No clients in %s; dropping %s update", room, event.status.value)
            return 0

        await self.emitter.emit(JOB_UPDATE_EVENT, event.to_payload(), room=room)
        logger.info(
            "Emitted %s update to %s (%s clients)",
            event.status.value,
            room,
            len(subscribers),
        )
        return len(subscribers)

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        """Listen on the dedicated subscriber connection until stopped or cancelled.

        A Redis connection error drops the current subscription; the channel is
        subscribed again after ``reconnect_delay_seconds``.
        """

        while stop_event is None or not stop_event.is_set():
            try:
                await self._listen(stop_event)
            except (RedisError, OSError) as error:
                logger.error(
                    "Fan-out lost its subscription to %s: %s; resubscribing in %.1fs",
                    self.channel,
                    error,
                    self.reconnect_delay_seconds,
                )
                await self._sleep(self.reconnect_delay_seconds)

    async def _listen(self, stop_event: asyncio.Event | None) -> None:
        pubsub = self.subscriber.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            logger.info("Fan-out subscribed to %s", self.channel)
            while stop_event is None or not stop_event.is_set():
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message is None or message.get("type") != "message":
                    continue
                try:
                    await self.deliver(message["data"])
                except Exception:  # noqa: BLE001
                    logger.exception("Failed to deliver job update from %s", self.channel)
        finally:
            await self._close(pubsub)

    async def _close(self, pubsub: Any) -> None:
        try:
            await pubsub.unsubscribe(self.channel)
            await pubsub.aclose()
        except (RedisError, OSError) as error:
            logger.debug("Closing fan-out subscription to %s failed: %s", self.channel, error)
